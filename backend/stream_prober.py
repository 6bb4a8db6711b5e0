"""
Stream Prober service.
Answers "is this stream playable right now" with one of two testers:
- http: fetch the URL and check the answer,
- ffmpeg: decode a few seconds of the stream into a null sink.
Both are bounded by the same timeout and only return a boolean; failure
causes are logged.
"""
import asyncio
import logging
import shutil
from contextlib import asynccontextmanager
from typing import Optional, Union

import httpx

from config import PortalSettings
from models import DEFAULT_USER_AGENT, StreamTester
from portal_client import DEFAULT_TIMEOUT
from portal_errors import UnsupportedStreamTesterError, describe_transport_error

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PROBE_TIMEOUT = DEFAULT_TIMEOUT  # seconds
FFMPEG_TESTER_DURATION = 5  # seconds of stream read by ffmpeg
HTTP_PROBE_MAX_REDIRECTS = 5
PLAYLIST_ACCEPT = "application/vnd.apple.mpegurl, application/x-mpegURL, text/plain"


def check_ffmpeg_available(ffmpeg_path: str = "ffmpeg") -> bool:
    """Check if ffmpeg is available on the system."""
    return shutil.which(ffmpeg_path) is not None


def resolve_tester(tester: Union[StreamTester, str, None]) -> StreamTester:
    """Map a tester name to a StreamTester (None means ffmpeg).

    Raises UnsupportedStreamTesterError for unknown names.
    """
    if tester is None:
        return StreamTester.FFMPEG
    try:
        return StreamTester(tester)
    except ValueError:
        raise UnsupportedStreamTesterError(tester) from None


@asynccontextmanager
async def spawn_decoder(cmd: list[str]):
    """Start a decoder process and make sure it is killed and reaped on exit."""
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        yield process
    finally:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()


class StreamProber:
    """Stream liveness checks with a hard wall-clock budget."""

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        ffmpeg_duration: int = FFMPEG_TESTER_DURATION,
        ffmpeg_path: str = "ffmpeg",
    ):
        self.timeout = timeout
        self.ffmpeg_duration = ffmpeg_duration
        self.ffmpeg_path = ffmpeg_path

    async def check_stream(
        self,
        url: str,
        tester: Union[StreamTester, str, None] = StreamTester.FFMPEG,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Return True if the stream at ``url`` is playable.

        Never raises for stream problems; an unknown ``tester`` raises
        UnsupportedStreamTesterError before anything is attempted.
        """
        kind = resolve_tester(tester)
        logger.info("[STREAM-PROBE] ...Checking stream [%s]: %s", kind.value, url)

        if not url:
            return False

        user_agent = user_agent or DEFAULT_USER_AGENT
        if kind == StreamTester.HTTP:
            return await self._check_stream_http(url, user_agent)
        return await self._check_stream_ffmpeg(url, user_agent)

    async def _check_stream_http(self, url: str, user_agent: str) -> bool:
        headers = {
            "User-Agent": user_agent,
            "Accept": PLAYLIST_ACCEPT,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                max_redirects=HTTP_PROBE_MAX_REDIRECTS,
            ) as client:
                # The whole body is buffered; the guard bounds the total time
                response = await asyncio.wait_for(
                    client.get(url, headers=headers), timeout=self.timeout
                )
        except asyncio.TimeoutError:
            logger.error("[STREAM-PROBE] Stream test failed for %s: request aborted due to timeout", url)
            return False
        except Exception as e:
            logger.error("[STREAM-PROBE] Stream test failed for %s: %s", url, describe_transport_error(e))
            return False

        if response.status_code >= 400:
            logger.error("[STREAM-PROBE] Segment request failed: HTTP %s", response.status_code)
            return False

        logger.info("[STREAM-PROBE] Stream is accessible and playable (%s bytes received)", len(response.content))
        return True

    def build_ffmpeg_command(self, url: str, user_agent: str) -> list[str]:
        """ffmpeg invocation reading ``ffmpeg_duration`` seconds without audio into a null sink."""
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-loglevel", "error",
            "-user_agent", user_agent,
            "-t", str(self.ffmpeg_duration),
            "-i", url,
            "-an",
            "-f", "null",
            "-",
        ]

    async def _check_stream_ffmpeg(self, url: str, user_agent: str) -> bool:
        cmd = self.build_ffmpeg_command(url, user_agent)
        try:
            async with spawn_decoder(cmd) as process:
                try:
                    _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        "[STREAM-PROBE] ffmpeg for %s has been killed (timeout of %ss reached)",
                        url, self.timeout,
                    )
                    return False
        except FileNotFoundError:
            logger.error("[STREAM-PROBE] ffmpeg binary not found: %s", self.ffmpeg_path)
            return False
        except (OSError, ValueError) as e:
            # ValueError: arguments the OS can't pass, e.g. an embedded NUL
            logger.error("[STREAM-PROBE] Could not start ffmpeg for %s: %s", url, e)
            return False

        if process.returncode != 0:
            error_text = stderr.decode(errors="replace").strip()[:500] if stderr else ""
            if not error_text:
                error_text = f"Exit code {process.returncode} (no stderr output)"
            logger.error("[STREAM-PROBE] Stream failed: %s", error_text)
            return False

        logger.info("[STREAM-PROBE] Stream is accessible and playable.")
        return True


# Shared instance used by check_stream()
_prober: Optional[StreamProber] = None


def get_prober() -> StreamProber:
    global _prober
    if _prober is None:
        _prober = StreamProber()
    return _prober


def set_prober(prober: Optional[StreamProber]):
    global _prober
    _prober = prober


async def check_stream(
    url: str,
    tester: Union[StreamTester, str, None] = StreamTester.FFMPEG,
    user_agent: Optional[str] = None,
) -> bool:
    """Check a stream with the shared prober."""
    return await get_prober().check_stream(url, tester, user_agent)


def prober_from_settings(settings: PortalSettings) -> StreamProber:
    return StreamProber(
        timeout=settings.probe_timeout,
        ffmpeg_duration=settings.ffmpeg_duration,
        ffmpeg_path=settings.ffmpeg_path,
    )
