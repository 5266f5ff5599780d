"""
Cross-window plumbing for the popup flow.

- ``MessageChannel``: origin-tagged, typed message queue between the callback
  window and the orchestrator
- ``Popup``: what the orchestrator needs from an authentication window
- ``BrowserPopup``: opens the authorization URL in the system browser
"""

import asyncio
import logging
import webbrowser
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from authflow.models import AUTH_RESPONSE_TYPE, AuthResponseMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelMessage:
    """A raw message as delivered by the transport, with its sender origin."""

    data: Any
    origin: str

    def as_auth_response(self) -> Optional[AuthResponseMessage]:
        """Parse the payload as an auth-response envelope, or None if it is not one."""
        if not isinstance(self.data, dict) or self.data.get("type") != AUTH_RESPONSE_TYPE:
            return None
        try:
            return AuthResponseMessage.model_validate(self.data)
        except ValidationError:
            logger.debug("Ignoring malformed auth-response message", extra={"origin": self.origin})
            return None


class MessageChannel:
    """
    In-process message channel.

    Transports (a websocket relay, a test, the callback handler of a local
    redirect listener) ``post`` messages; the orchestrator ``receive``s them
    in order.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "asyncio.Queue[ChannelMessage]" = asyncio.Queue(maxsize)

    def post(self, data: Any, origin: str) -> None:
        if isinstance(data, AuthResponseMessage):
            data = data.model_dump()
        self._queue.put_nowait(ChannelMessage(data=data, origin=origin))

    async def receive(self) -> ChannelMessage:
        return await self._queue.get()

    def receive_nowait(self) -> Optional[ChannelMessage]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> None:
        """Drop undelivered messages left over from a previous flow."""
        while not self._queue.empty():
            self._queue.get_nowait()


class Popup(Protocol):
    def open(self, url: str) -> None:
        ...

    @property
    def closed(self) -> bool:
        ...

    def close(self) -> None:
        ...


class BrowserPopup:
    """
    Opens the authorization URL with the ``webbrowser`` module.

    A system browser window cannot be observed, so ``closed`` only becomes
    true through ``close()``, called by the orchestrator or by a transport
    that learns the user gave up.
    """

    def __init__(self, browser: Optional[str] = None):
        self._browser = browser
        self._closed = True

    def open(self, url: str) -> None:
        controller = webbrowser.get(self._browser) if self._browser else webbrowser
        if not controller.open(url):
            raise OSError("Unable to open a browser window")
        self._closed = False
        logger.info("Authentication window opened")

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
