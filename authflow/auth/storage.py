"""
Key/value session storage.

Wraps any mutable mapping (a ``BoundSession`` of the server-side
``ServerSessionStore``, or a plain dict in tests and in the popup-side
orchestrator) with get/set/delete and TTL semantics.

The browser only holds an opaque session id in Starlette's signed cookie;
PKCE values and tokens stay on the server.
"""

import asyncio
import logging
import secrets
import time
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional, Tuple

logger = logging.getLogger(__name__)


Clock = Callable[[], float]

_MISSING = object()


class SessionStorage:
    """
    Namespaced key/value store with per-entry expiry.

    Each entry is stored as ``{"value": ..., "expires_at": <epoch or None>}``
    under ``prefix + key``. Expired entries are removed on read.
    """

    def __init__(
        self,
        backing: Optional[MutableMapping[str, Any]] = None,
        *,
        clock: Clock = time.time,
        prefix: str = "authflow_",
        default_ttl: Optional[float] = None,
    ):
        self._backing = backing if backing is not None else {}
        self._clock = clock
        self._prefix = prefix
        self._default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._backing.get(self._key(key), _MISSING)
        if entry is _MISSING or not isinstance(entry, dict):
            return default

        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            self._backing.pop(self._key(key), None)
            return default

        return entry.get("value", default)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        self._backing[self._key(key)] = {"value": value, "expires_at": expires_at}

    def delete(self, key: str) -> None:
        self._backing.pop(self._key(key), None)

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        """Remove every key of this namespace, leaving other session data alone."""
        for key in [k for k in self._backing if k.startswith(self._prefix)]:
            self._backing.pop(key, None)


# =============================================================================
# Server-side Sessions
# =============================================================================

SESSION_ID_KEY = "sid"


class ServerSessionStore:
    """
    In-memory session data keyed by an opaque session id.

    The signed cookie only carries the id. Sessions idle for longer than
    ``max_age`` seconds are dropped. Data lives in this process, so every
    worker serving a user must share the store (single worker deployments).

    Args:
        max_age: Idle lifetime of a session in seconds
        clock: Returns the current time in epoch seconds
    """

    def __init__(self, *, max_age: float, clock: Clock = time.time):
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._touched: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._max_age = max_age
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def bind(self, cookie_session: MutableMapping[str, Any]) -> "BoundSession":
        """View of the session whose id is in ``cookie_session`` (usually ``request.session``)."""
        self._prune()
        return BoundSession(self, cookie_session)

    def lookup(self, sid: str) -> Optional[Dict[str, Any]]:
        data = self._sessions.get(sid)
        if data is not None:
            self._touched[sid] = self._clock()
        return data

    def create(self) -> Tuple[str, Dict[str, Any]]:
        sid = secrets.token_urlsafe(32)
        data: Dict[str, Any] = {}
        self._sessions[sid] = data
        self._touched[sid] = self._clock()
        return sid, data

    def lock(self, sid: str) -> asyncio.Lock:
        """Lock serializing token refreshes of one session across requests."""
        if sid not in self._locks:
            self._locks[sid] = asyncio.Lock()
        return self._locks[sid]

    def discard(self, sid: str) -> None:
        self._sessions.pop(sid, None)
        self._touched.pop(sid, None)
        lock = self._locks.get(sid)
        if lock is None or not lock.locked():
            self._locks.pop(sid, None)

    def _prune(self) -> None:
        deadline = self._clock() - self._max_age
        expired = [sid for sid, touched in self._touched.items() if touched < deadline]
        for sid in expired:
            self.discard(sid)
        if expired:
            logger.debug("Dropped idle sessions", extra={"count": len(expired)})


class BoundSession(MutableMapping[str, Any]):
    """
    Mapping over one server-side session.

    Reads of a browser without a (known) session id see an empty mapping; the
    first write creates the session and puts its id in the cookie.
    """

    def __init__(self, store: ServerSessionStore, cookie_session: MutableMapping[str, Any]):
        self._store = store
        self._cookie = cookie_session
        self._data: Optional[Dict[str, Any]] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._cookie.get(SESSION_ID_KEY) if self._existing() is not None else None

    @property
    def lock(self) -> asyncio.Lock:
        sid = self.session_id
        return self._store.lock(sid) if sid else asyncio.Lock()

    def _existing(self) -> Optional[Dict[str, Any]]:
        if self._data is None:
            sid = self._cookie.get(SESSION_ID_KEY)
            if isinstance(sid, str):
                self._data = self._store.lookup(sid)
        return self._data

    def _writable(self) -> Dict[str, Any]:
        data = self._existing()
        if data is None:
            sid, data = self._store.create()
            self._cookie[SESSION_ID_KEY] = sid
            self._data = data
        return data

    def __getitem__(self, key: str) -> Any:
        data = self._existing()
        if data is None:
            raise KeyError(key)
        return data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._writable()[key] = value

    def __delitem__(self, key: str) -> None:
        data = self._existing()
        if data is None:
            raise KeyError(key)
        del data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._existing() or {}))

    def __len__(self) -> int:
        return len(self._existing() or {})
