"""
Authenticated client for Stalker-style IPTV portals.

Every request is a single GET on ``/server/load.php`` with the STB headers
(MAC cookie, serial number, bearer token). Network failures are retried with
exponential backoff, every attempt is bounded by a wall-clock timeout, and
failures are reported as PortalError.
"""
import asyncio
import json
import logging
import random
import re
from typing import Optional
from urllib.parse import quote, unquote

import httpx

from config import PortalSettings
from models import Identity
from portal_errors import PortalError, PortalErrorKind, classify_transport_error
from token_cache import TokenCache

logger = logging.getLogger(__name__)

DEFAULT_RETRY_COUNT = 3  # should be >= 1
DEFAULT_TIMEOUT = 10.0 * DEFAULT_RETRY_COUNT  # seconds
MAX_REDIRECTS = 10
BACKOFF_BASE = 0.5  # seconds, doubled at each retry
BACKOFF_MAX = 32.0
BACKOFF_JITTER = 0.2  # up to +20% of the delay

# Portal "type" parameter of each generation kind
GENRE_PATHS = {
    "iptv": "/server/load.php?type=itv&action=get_genres",
    "vod": "/server/load.php?type=vod&action=get_categories",
    "series": "/server/load.php?type=series&action=get_categories",
}
LINK_TYPES = {"iptv": "itv", "vod": "vod", "series": "vod"}

_STREAM_URL_RE = re.compile(r"(https?://\S+)")
# Escapes of URL delimiters (; / ? : @ & = + $ , #), left encoded when decoding
_RESERVED_ESCAPE_RE = re.compile(r"(%(?:2[346BbCcFf]|3[AaBbDdFf]|40))")


def decode_uri(url: str) -> str:
    """Percent-decode ``url`` except for escaped delimiters.

    ``token=a%2Bb%26c`` stays one query parameter with its value intact.
    """
    parts = _RESERVED_ESCAPE_RE.split(url)
    # Odd indexes hold the reserved escapes themselves
    return "".join(part if i % 2 else unquote(part) for i, part in enumerate(parts))


def compute_backoff(attempt: int, base: float = BACKOFF_BASE, max_delay: float = BACKOFF_MAX) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^attempt plus jitter."""
    delay = min(max_delay, base * (2 ** attempt))
    return delay + delay * BACKOFF_JITTER * random.random()


def extract_stream_url(cmd: Optional[str]) -> Optional[str]:
    """Extract the media URL of a create_link command.

    Portals answer with commands such as ``"ffmpeg http://host/ch/1?token=x"``;
    only the URL part is kept.
    """
    if not cmd:
        return None
    match = _STREAM_URL_RE.search(cmd)
    if not match:
        return None
    return decode_uri(match.group(1).strip())


class PortalClient:
    """Async portal client bound to a default Identity."""

    def __init__(
        self,
        identity: Optional[Identity] = None,
        token_cache: Optional[TokenCache] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRY_COUNT,
        max_redirects: int = MAX_REDIRECTS,
        backoff_base: float = BACKOFF_BASE,
    ):
        if retries < 1:
            raise ValueError("Retry count should be >= 1")
        self.identity = identity
        self.token_cache = token_cache if token_cache is not None else TokenCache()
        self.timeout = timeout
        self.retries = retries
        self.backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            max_redirects=max_redirects,
        )

    async def __aenter__(self) -> "PortalClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def default_headers(self, identity: Identity, token: Optional[str] = None) -> dict[str, str]:
        """STB headers sent with every portal request."""
        user_agent = identity.effective_user_agent
        headers = {
            "Accept": "application/json",
            "User-Agent": user_agent,
            "X-User-Agent": user_agent,
            "Cookie": f"mac={identity.mac}; stb_lang=en",
            "SN": identity.serial_number,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def fetch_data(
        self,
        path: str,
        ignore_error: bool = False,
        headers: Optional[dict[str, str]] = None,
        token: Optional[str] = None,
        identity: Optional[Identity] = None,
    ) -> dict:
        """GET a portal path and return its JSON payload.

        Without explicit ``headers`` the STB headers are built, using ``token``
        or else a token from the cache. With ``ignore_error`` any failure
        (including the token handshake) resolves to an empty dict.

        Raises PortalError when ``ignore_error`` is False and the request
        could not produce a payload.
        """
        identity = identity or self.identity
        if identity is None:
            raise ValueError("No portal identity configured")

        url = identity.url_for(path)
        try:
            if headers is None:
                if not token:
                    token = await self.token_cache.get_token(self, identity)
                headers = self.default_headers(identity, token)
            return await self._get_json(url, headers)
        except PortalError as e:
            logger.error(
                "[PORTAL] Error at %s [%s] (ignore: %s): %s", url, identity.mac, ignore_error, e
            )
            if ignore_error:
                return {}
            raise

    async def _get_json(self, url: str, headers: dict[str, str]) -> dict:
        attempt = 0
        while True:
            try:
                return await self._attempt(url, headers)
            except PortalError as e:
                if not e.is_transient or attempt >= self.retries:
                    raise
                attempt += 1
                delay = compute_backoff(attempt, self.backoff_base)
                logger.info(
                    "[PORTAL] ...Retrying %s [%s/%s] in %.1fs: %s",
                    url, attempt, self.retries, delay, e,
                )
                await asyncio.sleep(delay)

    async def _attempt(self, url: str, headers: dict[str, str]) -> dict:
        """One bounded GET. The wait_for guard cancels the request at the timeout."""
        try:
            response = await asyncio.wait_for(
                self._client.get(url, headers=headers), timeout=self.timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError, OSError) as e:
            raise classify_transport_error(e, url) from e

        if not response.is_success:
            logger.error(
                "[PORTAL] Did not get an OK from the server (%s). Code: %s",
                url, response.status_code,
            )
            raise PortalError.from_response(response)

        if not response.content.strip():
            return {}
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PortalError(
                PortalErrorKind.MALFORMED_PAYLOAD,
                f"Wrong JSON data received: {e}",
                url=url,
                status_code=response.status_code,
                cause=e,
            ) from e
        if not isinstance(data, dict):
            raise PortalError(
                PortalErrorKind.MALFORMED_PAYLOAD,
                f"Unexpected payload type {type(data).__name__}",
                url=url,
                status_code=response.status_code,
            )
        return data

    # -------------------------------------------------------------------------
    # Portal endpoints
    # -------------------------------------------------------------------------

    async def get_genres(self, kind: str = "iptv", identity: Optional[Identity] = None) -> list:
        """Genres (live TV) or categories (VOD, series) of the portal."""
        if kind not in GENRE_PATHS:
            raise ValueError(f"Invalid generation kind: {kind}")
        data = await self.fetch_data(GENRE_PATHS[kind], identity=identity)
        return data.get("js") or []

    async def get_all_channels(self, identity: Optional[Identity] = None) -> list:
        data = await self.fetch_data(
            "/server/load.php?type=itv&action=get_all_channels", identity=identity
        )
        js = data.get("js") or {}
        return js.get("data") or []

    async def create_link(
        self,
        command: str,
        kind: str = "iptv",
        episode: Optional[str] = None,
        identity: Optional[Identity] = None,
    ) -> Optional[str]:
        """Ask the portal for the playable command of a channel or video (best effort)."""
        link_type = LINK_TYPES.get(kind, "")
        path = (
            f"/server/load.php?type={link_type}&action=create_link&cmd={quote(command, safe='')}"
            f"&series={episode or ''}&forced_storage=undefined&disable_ad=0&download=0"
            "&JsHttpRequest=1-xml"
        )
        data = await self.fetch_data(path, ignore_error=True, identity=identity)
        js = data.get("js")
        if not isinstance(js, dict):
            return None
        return js.get("cmd")

    async def resolve_stream_url(
        self,
        command: str,
        kind: str = "iptv",
        episode: Optional[str] = None,
        identity: Optional[Identity] = None,
    ) -> Optional[str]:
        """Playable URL of a channel/video command, or None when it can't be resolved."""
        cmd = await self.create_link(command, kind, episode, identity)
        url = extract_stream_url(cmd)
        if url is None:
            logger.error("[PORTAL] Error fetching media URL for command %s", command)
        return url

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def client_from_settings(settings: PortalSettings, token_cache: Optional[TokenCache] = None) -> PortalClient:
    """Build a client for the configured portal."""
    if token_cache is None:
        token_cache = TokenCache(ttl=settings.token_cache_duration)
    return PortalClient(
        settings.identity(),
        token_cache=token_cache,
        timeout=settings.request_timeout,
        retries=settings.request_retries,
    )
