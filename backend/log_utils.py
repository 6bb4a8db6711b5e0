"""
Logging utilities.

Portal URLs, channel names and create_link commands come from remote
servers; a LogRecord factory escapes line breaks in log arguments so they
can't forge log entries, and masks bearer tokens so they never reach the
logs.

Install once at startup via configure_logging().
"""

import logging
import re

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+")


def _sanitize_value(value):
    """Escape line breaks and mask bearer tokens in a log argument."""
    if isinstance(value, str):
        value = value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
        return _BEARER_RE.sub(r"\1***", value)
    return value


def _safe_record_factory(*args, **kwargs):
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install the sanitizing LogRecord factory for every logger."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """Timestamped console logging, e.g. ``[2025-01-31 20:15:02] INFO ...``."""
    level_upper = level.upper()
    if level_upper not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        level_upper = "INFO"
    install_safe_logging()
    logging.basicConfig(level=getattr(logging, level_upper), format=LOG_FORMAT, datefmt=DATE_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level_upper))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
