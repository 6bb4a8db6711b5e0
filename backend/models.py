"""
Value types shared by the portal client, the stream prober and the M3U tester.

Everything here is immutable: an Identity is used as a cache key, and a
BatchResult is only built once an evaluation is finished.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# User agent of a MAG250 set-top box, accepted by most portals
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 (KHTML, like Gecko) MAG250"
)


class StreamTester(str, Enum):
    """Available stream liveness strategies."""
    HTTP = "http"
    FFMPEG = "ffmpeg"


@dataclass(frozen=True)
class Identity:
    """Descriptor of one portal session (a MAC on a given portal).

    Equality and hashing use every field, so ``context_path=None`` and
    ``context_path=""`` are two different identities.
    """
    hostname: str
    port: int
    context_path: Optional[str]
    mac: str
    device_id1: str
    device_id2: str
    serial_number: str
    user_agent: Optional[str] = None

    @property
    def base_url(self) -> str:
        context = f"/{self.context_path}" if self.context_path else ""
        return f"http://{self.hostname}:{self.port}{context}"

    @property
    def label(self) -> str:
        return f"{self.base_url} [{self.mac}]"

    @property
    def effective_user_agent(self) -> str:
        return self.user_agent or DEFAULT_USER_AGENT

    def url_for(self, path: str) -> str:
        """Absolute URL of a portal path (``/server/load.php?...``)."""
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path


@dataclass(frozen=True)
class AuthToken:
    value: str
    issued_at: float = field(default_factory=time.time)

    def age(self, now: Optional[float] = None) -> float:
        """Seconds elapsed since the token was issued."""
        return abs((now if now is not None else time.time()) - self.issued_at)


@dataclass(frozen=True)
class PlaylistEntry:
    name: str
    url: str

    @property
    def is_separator(self) -> bool:
        # Fake channels used as group separators, e.g. "#### SPORTS ####"
        return self.name.startswith("#")


@dataclass(frozen=True)
class ThresholdConfig:
    """Early-stop thresholds of a playlist evaluation.

    A negative ``min_success`` means only failures are counted (stop once
    ``max_failures`` is reached). A negative ``max_failures`` means only
    successes are counted.
    """
    min_success: int = 1
    max_failures: int = 1

    def capped(self, real_entries: int) -> "ThresholdConfig":
        """Limit positive thresholds to the number of real (non separator) entries."""
        min_success = self.min_success
        max_failures = self.max_failures
        if min_success > 0:
            min_success = min(min_success, real_entries)
        if max_failures > 0:
            max_failures = min(max_failures, real_entries)
        return ThresholdConfig(min_success=min_success, max_failures=max_failures)


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one playlist evaluation."""
    status: bool
    succeeded_streams: tuple[PlaylistEntry, ...] = ()
    failed_streams: tuple[PlaylistEntry, ...] = ()
    source: Optional[str] = None

    @property
    def probed_count(self) -> int:
        return len(self.succeeded_streams) + len(self.failed_streams)
