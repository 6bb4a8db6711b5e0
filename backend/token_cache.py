"""
Portal auth token cache.

Keeps the current token of each Identity for a limited time. Tokens are
obtained through the two-step STB handshake (handshake + get_profile) and only
cached once the profile call accepted them.

There is no request coalescing: two callers that miss the cache at the same
time both run a handshake and the last one to finish wins. Entries are never
modified in place, so a lost race only costs an extra handshake.
"""
import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from models import AuthToken, Identity
from portal_errors import PortalError, PortalErrorKind

if TYPE_CHECKING:
    from portal_client import PortalClient

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 300  # seconds

HANDSHAKE_PATH = "/server/load.php?type=stb&action=handshake"


def profile_path(identity: Identity) -> str:
    """Path of the get_profile call validating a freshly issued token."""
    return (
        "/server/load.php?type=stb&action=get_profile&hd=1&auth_second_step=0"
        "&num_banks=1&stb_type=&image_version=&hw_version=&not_valid_token=0"
        f"&device_id={identity.device_id1}&device_id2={identity.device_id2}"
        f"&signature=&sn={identity.serial_number}&ver="
    )


@dataclass
class TokenCacheStats:
    entries: int
    hits: int
    misses: int
    handshakes: int
    ttl: float


class TokenCache:
    """TTL cache of portal tokens, keyed by Identity."""

    def __init__(self, ttl: float = DEFAULT_TOKEN_TTL):
        self._ttl = ttl
        self._tokens: dict[Identity, AuthToken] = {}
        self._hits = 0
        self._misses = 0
        self._handshakes = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    def peek(self, identity: Identity) -> Optional[AuthToken]:
        """Return the live token of an identity without any network call."""
        entry = self._tokens.get(identity)
        if entry is None:
            return None
        if entry.age() > self._ttl:
            return None
        return entry

    async def get_token(
        self,
        client: "PortalClient",
        identity: Identity,
        force_refresh: bool = False,
    ) -> str:
        """Return a valid token for ``identity``, running the handshake if needed.

        Raises PortalError when either handshake step fails.
        """
        if not force_refresh:
            entry = self._tokens.get(identity)
            if entry is not None:
                if entry.age() > self._ttl:
                    logger.debug("[TOKEN] Removed cached token for %s", identity.label)
                    self._tokens.pop(identity, None)
                else:
                    self._hits += 1
                    return entry.value

        self._misses += 1
        token = await self._handshake(client, identity)
        self._tokens[identity] = AuthToken(value=token)
        logger.debug(
            "[TOKEN] Fetched token for %s (renewed in %s seconds)", identity.label, self._ttl
        )
        return token

    async def _handshake(self, client: "PortalClient", identity: Identity) -> str:
        self._handshakes += 1

        data = await client.fetch_data(
            HANDSHAKE_PATH,
            headers=client.default_headers(identity),
            identity=identity,
        )
        js = data.get("js") if isinstance(data, dict) else None
        token = js.get("token") if isinstance(js, dict) else None
        if not token:
            raise PortalError(
                PortalErrorKind.MALFORMED_PAYLOAD,
                "Handshake answer did not contain a token",
                url=identity.url_for(HANDSHAKE_PATH),
            )

        # Not cached until the portal accepted the token for this device
        await client.fetch_data(
            profile_path(identity),
            headers=client.default_headers(identity, token),
            identity=identity,
        )
        return token

    def invalidate(self, identity: Identity) -> bool:
        """Drop the token of an identity. Returns True if one was cached."""
        return self._tokens.pop(identity, None) is not None

    def clear(self) -> int:
        count = len(self._tokens)
        self._tokens.clear()
        return count

    def stats(self) -> TokenCacheStats:
        return TokenCacheStats(
            entries=len(self._tokens),
            hits=self._hits,
            misses=self._misses,
            handshakes=self._handshakes,
            ttl=self._ttl,
        )
