"""
Playlist health check.

Streams of a playlist are probed one at a time, in random order, until the
configured thresholds decide the outcome:

- ``min_success < 0``: only failures count, stop at ``max_failures`` failures
  and the playlist is healthy if fewer failures were seen;
- ``max_failures < 0``: only successes count, stop at ``min_success``
  successes;
- otherwise stop at ``min_success`` successes or more than ``max_failures``
  failures, and the playlist is healthy if enough streams played.
"""
import logging
import random
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, TypeVar, Union

from config import M3uTesterSettings, PortalSettings
from models import BatchResult, PlaylistEntry, StreamTester, ThresholdConfig
from stream_prober import StreamProber, get_prober, resolve_tester

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SAMPLE_SIZE = 5


def shuffle_entries(entries: Iterable[T], rng: Optional[random.Random] = None) -> list[T]:
    """Uniformly shuffled copy of ``entries``; the input is left untouched.

    Separator channels tend to sit at the top of a playlist, so testing in
    source order would often start with entries that can't play.
    """
    shuffled = list(entries)
    (rng or random).shuffle(shuffled)
    return shuffled


def should_stop(thresholds: ThresholdConfig, succeeded: int, failed: int) -> bool:
    """Early-stop predicate, evaluated after every probe."""
    if thresholds.min_success < 0:
        return failed >= thresholds.max_failures
    if thresholds.max_failures < 0:
        return succeeded >= thresholds.min_success
    return succeeded >= thresholds.min_success or failed > thresholds.max_failures


def final_status(thresholds: ThresholdConfig, succeeded: int, failed: int) -> bool:
    if thresholds.min_success < 0:
        return failed < thresholds.max_failures
    return succeeded >= thresholds.min_success


async def check_m3u(
    entries: Sequence[PlaylistEntry],
    thresholds: ThresholdConfig,
    *,
    tester: Union[StreamTester, str] = StreamTester.FFMPEG,
    user_agent: Optional[str] = None,
    prober: Optional[StreamProber] = None,
    rng: Optional[random.Random] = None,
    source: Optional[str] = None,
) -> BatchResult:
    """Evaluate a playlist and return its BatchResult.

    Raises UnsupportedStreamTesterError for an unknown ``tester``.
    """
    tester = resolve_tester(tester)
    prober = prober or get_prober()

    real_entries = sum(1 for entry in entries if not entry.is_separator)
    thresholds = thresholds.capped(real_entries)

    items = shuffle_entries(entries, rng)
    if not items:
        return BatchResult(status=False, source=source)

    logger.info("[M3U-TEST] ...Testing %s (%s channels)", source or "playlist", len(items))

    succeeded: list[PlaylistEntry] = []
    failed: list[PlaylistEntry] = []
    for entry in items:
        if await prober.check_stream(entry.url, tester, user_agent):
            succeeded.append(entry)
        else:
            failed.append(entry)

        if should_stop(thresholds, len(succeeded), len(failed)):
            logger.debug(
                "[M3U-TEST] Limits reached after %s probes (success: %s, failures: %s)",
                len(succeeded) + len(failed), len(succeeded), len(failed),
            )
            break

    status = final_status(thresholds, len(succeeded), len(failed))
    logger.info(
        "[M3U-TEST] %s is %s (success: %s, failures: %s)",
        source or "Playlist", "HEALTHY" if status else "UNHEALTHY", len(succeeded), len(failed),
    )
    return BatchResult(
        status=status,
        succeeded_streams=tuple(succeeded),
        failed_streams=tuple(failed),
        source=source,
    )


@dataclass(frozen=True)
class SampleResult:
    tested: int
    succeeded: int
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.skipped or self.succeeded > 0


async def check_random_sample(
    entries: Sequence[PlaylistEntry],
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    *,
    tester: Union[StreamTester, str] = StreamTester.FFMPEG,
    user_agent: Optional[str] = None,
    prober: Optional[StreamProber] = None,
    rng: Optional[random.Random] = None,
) -> SampleResult:
    """Probe a few random streams before committing to a full generation.

    A portal is worth using if at least one of the sampled streams plays.
    ``sample_size == 0`` disables the check.
    """
    tester = resolve_tester(tester)
    prober = prober or get_prober()
    if sample_size == 0:
        return SampleResult(tested=0, succeeded=0, skipped=True)

    sample = [entry for entry in shuffle_entries(entries, rng) if entry.url][:sample_size]
    logger.info(
        "[M3U-TEST] Testing %s channels randomly... : %s",
        len(sample), ", ".join(f'"{entry.name}"' for entry in sample),
    )

    succeeded = 0
    for entry in sample:
        if await prober.check_stream(entry.url, tester, user_agent):
            succeeded += 1

    logger.info("[M3U-TEST] %s/%s streams were tested successfully", succeeded, len(sample))
    return SampleResult(tested=len(sample), succeeded=succeeded)


async def check_m3u_with_settings(
    entries: Sequence[PlaylistEntry],
    settings: M3uTesterSettings,
    *,
    prober: Optional[StreamProber] = None,
    rng: Optional[random.Random] = None,
    source: Optional[str] = None,
) -> BatchResult:
    """check_m3u() with the tester, user agent and thresholds of ``settings``."""
    return await check_m3u(
        entries,
        settings.thresholds(),
        tester=settings.stream_tester,
        user_agent=settings.user_agent,
        prober=prober,
        rng=rng,
        source=source,
    )


async def sample_from_settings(
    entries: Sequence[PlaylistEntry],
    settings: PortalSettings,
    *,
    prober: Optional[StreamProber] = None,
    rng: Optional[random.Random] = None,
) -> SampleResult:
    """check_random_sample() sized and configured by the portal settings."""
    return await check_random_sample(
        entries,
        settings.max_number_of_channels_to_test,
        tester=settings.stream_tester,
        user_agent=settings.user_agent,
        prober=prober,
        rng=rng,
    )
