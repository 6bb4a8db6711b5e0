from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings
from typing import Optional
import json
import os
import logging
import random
from pathlib import Path

from models import Identity, StreamTester, ThresholdConfig

# Set up logging
logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"
M3U_TESTER_CONFIG_FILE = CONFIG_DIR / "m3u-tester.json"

_HEX_DIGITS = "0123456789ABCDEF"


def random_device_id() -> str:
    """Random 64 hex digits device id."""
    return "".join(random.choice(_HEX_DIGITS) for _ in range(64))


def random_serial_number() -> str:
    """Random 13 hex digits serial number."""
    return "".join(random.choice(_HEX_DIGITS) for _ in range(13))


class PortalSettings(BaseModel):
    """User-configurable portal connection settings."""
    hostname: str = ""
    port: int = 80
    context_path: Optional[str] = None  # e.g. "stalker_portal"
    mac: str = ""
    # Device identifiers, generated when missing
    device_id1: Optional[str] = None
    device_id2: Optional[str] = None  # defaults to device_id1
    serial_number: Optional[str] = None
    user_agent: Optional[str] = None
    # Seconds a portal token is reused before a new handshake
    token_cache_duration: int = 300
    # Stream tester used to validate resolved URLs: "http" or "ffmpeg"
    stream_tester: str = StreamTester.FFMPEG.value
    # Random channels tested before generating a playlist (0 disables the check)
    max_number_of_channels_to_test: int = 5
    # Network settings
    request_timeout: float = 30.0
    request_retries: int = 3
    # Stream probe settings
    probe_timeout: float = 30.0
    ffmpeg_duration: int = 5  # seconds of stream decoded by the ffmpeg tester
    ffmpeg_path: str = "ffmpeg"

    @field_validator("stream_tester")
    @classmethod
    def _check_stream_tester(cls, value: str) -> str:
        try:
            return StreamTester(value).value
        except ValueError:
            raise ValueError(f'Stream tester "{value}" not supported')

    @field_validator("request_retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Retry count should be >= 1")
        return value

    @model_validator(mode="after")
    def _fill_device_ids(self) -> "PortalSettings":
        if not self.device_id1:
            self.device_id1 = random_device_id()
        if not self.device_id2:
            self.device_id2 = self.device_id1
        if not self.serial_number:
            self.serial_number = random_serial_number()
        return self

    def is_configured(self) -> bool:
        return bool(self.hostname and self.mac)

    def identity(self) -> Identity:
        return Identity(
            hostname=self.hostname,
            port=self.port,
            context_path=self.context_path,
            mac=self.mac,
            device_id1=self.device_id1,
            device_id2=self.device_id2,
            serial_number=self.serial_number,
            user_agent=self.user_agent,
        )


class M3uTesterSettings(BaseModel):
    """Settings of the playlist health check."""
    stream_tester: str = StreamTester.FFMPEG.value
    # Negative value: only failures are counted
    min_success: int = 1
    # Negative value: only successes are counted
    max_failures: int = 1
    user_agent: Optional[str] = None

    @field_validator("stream_tester")
    @classmethod
    def _check_stream_tester(cls, value: str) -> str:
        try:
            return StreamTester(value).value
        except ValueError:
            raise ValueError(f'Stream tester "{value}" not supported')

    def thresholds(self) -> ThresholdConfig:
        return ThresholdConfig(min_success=self.min_success, max_failures=self.max_failures)


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    config_dir: str = "/config"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# In-memory cache of settings
_cached_settings: PortalSettings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info("Ensured config directory exists: %s", CONFIG_DIR)


def load_settings() -> PortalSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info("Loading settings from %s", CONFIG_FILE)

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = PortalSettings(**data)
            logger.info("Loaded settings successfully, configured: %s", _cached_settings.is_configured())
            return _cached_settings
        except (OSError, ValueError) as e:
            logger.error("Failed to load settings from %s: %s", CONFIG_FILE, e)

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = PortalSettings()
    return _cached_settings


def save_settings(settings: PortalSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        settings_json = json.dumps(settings.model_dump(), indent=2)
        CONFIG_FILE.write_text(settings_json)
        _cached_settings = settings
        logger.info("Settings saved successfully to %s", CONFIG_FILE)
    except OSError as e:
        logger.error("Failed to save settings to %s: %s", CONFIG_FILE, e)
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> PortalSettings:
    """Get the current portal settings."""
    return load_settings()


def load_m3u_tester_settings() -> M3uTesterSettings:
    """Load the playlist tester settings, falling back to defaults."""
    if M3U_TESTER_CONFIG_FILE.exists():
        try:
            data = json.loads(M3U_TESTER_CONFIG_FILE.read_text())
            return M3uTesterSettings(**data)
        except (OSError, ValueError) as e:
            logger.error("Failed to load M3U tester settings from %s: %s", M3U_TESTER_CONFIG_FILE, e)
    return M3uTesterSettings()


def get_log_level_from_env() -> str:
    """Get log level from environment variable or default to INFO."""
    return os.environ.get("LOG_LEVEL", Settings().log_level).upper()
