"""
Explicit dependency context for the authentication components.

Instead of module level singletons, every component receives the pieces of
an ``AuthContext`` it needs: the per-session key/value storage, the shared
HTTP client, a clock, a random source and the session's refresh lock.
Tests swap in fakes for the storage, client, clock and random source.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from authflow.auth.crypto import RandomSource
from authflow.auth.storage import Clock, SessionStorage


@dataclass
class AuthContext:
    """
    Collaborators of one session's authentication components.

    Attributes:
        storage: Per-session key/value store (never shared across sessions)
        http_client: Shared async HTTP client; created lazily when omitted
        clock: Returns the current time in epoch seconds
        token_bytes: Cryptographically secure random byte source
        session_lock: Serializes token refreshes of this session; shared by
            every request of the session when it comes from the server-side
            session store
    """

    storage: SessionStorage = field(default_factory=SessionStorage)
    http_client: Optional[httpx.AsyncClient] = None
    clock: Clock = time.time
    token_bytes: RandomSource = secrets.token_bytes
    session_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def get_http_client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient()
        return self.http_client
