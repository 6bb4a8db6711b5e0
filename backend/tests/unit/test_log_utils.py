"""Tests for log_utils: line break escaping and token masking."""

import logging

import pytest

from log_utils import (
    DATE_FORMAT,
    LOG_FORMAT,
    _safe_record_factory,
    _sanitize_value,
    configure_logging,
    install_safe_logging,
)


class TestSanitizeValue:
    def test_escapes_newlines(self):
        assert _sanitize_value("line1\nline2") == "line1\\nline2"

    def test_escapes_crlf(self):
        assert _sanitize_value("line1\r\nline2") == "line1\\r\\nline2"

    def test_passes_non_strings(self):
        assert _sanitize_value(42) == 42
        assert _sanitize_value(None) is None

    def test_masks_bearer_token(self):
        assert _sanitize_value("Authorization: Bearer abc.DEF-123") == "Authorization: Bearer ***"

    def test_url_unchanged(self):
        url = "http://portal.test:8080/stalker_portal/server/load.php?type=stb&action=handshake"
        assert _sanitize_value(url) == url


class TestSafeRecordFactory:
    def _make_record(self, msg, args):
        return _safe_record_factory(
            "test", logging.INFO, __file__, 0, msg, args, None,
        )

    def test_sanitizes_channel_name(self):
        record = self._make_record("[STREAM-PROBE] ...Checking stream [%s]: %s", ("http", "http://x/\nFAKE"))
        assert "\n" not in record.getMessage()

    def test_masks_token_in_args(self):
        record = self._make_record("headers=%s", ("{'Authorization': 'Bearer secret'}",))
        assert "secret" not in record.getMessage()

    def test_dict_args(self):
        record = self._make_record("%(name)s", ({"name": "Evil\nName"},))
        assert record.getMessage() == "Evil\\nName"

    def test_no_args_unchanged(self):
        record = self._make_record("Simple message", None)
        assert record.getMessage() == "Simple message"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_logging(self):
        factory = logging.getLogRecordFactory()
        root_level = logging.getLogger().level
        httpx_level = logging.getLogger("httpx").level
        yield
        logging.setLogRecordFactory(factory)
        logging.getLogger().setLevel(root_level)
        logging.getLogger("httpx").setLevel(httpx_level)

    def test_installs_factory(self):
        install_safe_logging()
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_sets_levels(self):
        configure_logging("debug")

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_unknown_level_falls_back_to_info(self):
        configure_logging("verbose")

        assert logging.getLogger().level == logging.INFO

    def test_format(self):
        formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
        record = logging.LogRecord("portal_client", logging.INFO, __file__, 0, "hello", None, None)
        record.created = 0

        line = formatter.format(record)

        assert line.endswith("] INFO portal_client: hello")
        assert line.startswith("[19")
