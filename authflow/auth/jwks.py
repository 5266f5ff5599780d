"""
JWKS (JSON Web Key Set) retrieval and caching.

This module handles:
- Fetching the provider's signing keys
- Caching them for a configurable TTL
- Coalescing concurrent refreshes into a single request
- Forced invalidation when a key id misses (key rotation)

The cache is the only structure shared between sessions. A fetched key set is
stored as an immutable snapshot that is swapped in one assignment, so readers
never take a lock and never observe a half-built index.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from authflow.auth.storage import Clock
from authflow.errors import KeySetFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JwksSnapshot:
    """One fetched key set, indexed by ``kid``."""

    keys: Dict[str, Dict[str, Any]]
    fetched_at: float
    ttl: float
    document: Dict[str, Any] = field(default_factory=dict)

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class JwksCache:
    """
    Provider key set cache with single-flight refresh.

    Args:
        jwks_uri: Provider keys endpoint
        http_client: Shared async HTTP client
        ttl: Seconds a fetched key set is served without refetching
        timeout: Request timeout for the keys endpoint
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        jwks_uri: str,
        http_client: httpx.AsyncClient,
        *,
        ttl: float = 3600,
        timeout: float = 10.0,
        clock: Clock = time.time,
    ):
        self.jwks_uri = jwks_uri
        self._http = http_client
        self._ttl = ttl
        self._timeout = timeout
        self._clock = clock
        self._snapshot: Optional[JwksSnapshot] = None
        self._inflight: Optional["asyncio.Task[JwksSnapshot]"] = None

    @property
    def snapshot(self) -> Optional[JwksSnapshot]:
        return self._snapshot

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Return the JWK with this ``kid``, refreshing first if the cache is cold or stale.

        Returns:
            Matching JWK dictionary, or None if the key set has no such key
        """
        snapshot = self._snapshot
        if snapshot is None or not snapshot.is_fresh(self._clock()):
            snapshot = await self.refresh()
        return snapshot.keys.get(kid)

    async def get_jwks(self) -> Dict[str, Any]:
        """Return the cached JWKS document, fetching it when needed."""
        snapshot = self._snapshot
        if snapshot is None or not snapshot.is_fresh(self._clock()):
            snapshot = await self.refresh()
        return snapshot.document

    async def refresh(self) -> JwksSnapshot:
        """
        Fetch the key set, joining an in-flight fetch if one exists.

        All concurrent callers receive the same snapshot, or the same
        ``KeySetFetchError``.
        """
        task = self._inflight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        # Shielded so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Force the next lookup to refetch regardless of TTL."""
        self._snapshot = None
        logger.debug("JWKS cache invalidated", extra={"jwks_uri": self.jwks_uri})

    def _clear_inflight(self, task: "asyncio.Task[JwksSnapshot]") -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled
            task.exception()

    async def _fetch(self) -> JwksSnapshot:
        try:
            response = await self._http.get(self.jwks_uri, timeout=self._timeout)
        except httpx.HTTPError as e:
            logger.error(
                "Failed to fetch JWKS",
                extra={"jwks_uri": self.jwks_uri, "error": str(e)},
            )
            raise KeySetFetchError(
                f"Failed to fetch JWKS from {self.jwks_uri}: {e}",
                context={"jwks_uri": self.jwks_uri},
            ) from e

        if not response.is_success:
            logger.error(
                "JWKS endpoint returned an error",
                extra={"jwks_uri": self.jwks_uri, "status": response.status_code},
            )
            raise KeySetFetchError(
                f"Failed to fetch JWKS from {self.jwks_uri}. Status: {response.status_code}",
                context={"jwks_uri": self.jwks_uri, "status": response.status_code},
            )

        try:
            document = response.json()
        except ValueError as e:
            raise KeySetFetchError("Invalid JWKS response: body is not JSON") from e

        if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
            raise KeySetFetchError("Invalid JWKS response: missing 'keys' field")

        keys = {
            key["kid"]: key
            for key in document["keys"]
            if isinstance(key, dict) and isinstance(key.get("kid"), str)
        }

        snapshot = JwksSnapshot(
            keys=keys,
            fetched_at=self._clock(),
            ttl=self._ttl,
            document=document,
        )
        self._snapshot = snapshot

        logger.info(
            "JWKS fetched successfully",
            extra={"jwks_uri": self.jwks_uri, "keys_count": len(keys)},
        )

        return snapshot
