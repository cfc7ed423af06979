"""
Transport layer: how a session obtains a raw websocket handle.

The session only relies on the aiohttp ``ClientWebSocketResponse`` surface
(async iteration of messages, ``send_str``/``send_bytes``/``send_json``,
``close()``, ``closed``, ``exception()``), so tests can plug in an
in-memory transport with the same shape.
"""

from typing import Any, Optional, Protocol

import aiohttp
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MAX_MESSAGE_SIZE = 5 * 1024 * 1024  # 5 MiB


class Transport(Protocol):
    """Factory for websocket handles."""

    async def connect(self, endpoint: str) -> Any:
        ...

    async def aclose(self) -> None:
        ...


class AiohttpTransport:
    """
    Websocket transport backed by a shared ``aiohttp.ClientSession``.

    One ClientSession is reused across every handle this transport creates;
    each ``connect`` returns a fresh websocket, never a reused one.
    """

    def __init__(
        self,
        heartbeat: Optional[float] = 30.0,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        compress: int = 15,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            heartbeat: Seconds between protocol pings (None disables them).
                A missing pong closes the socket.
            max_message_size: Largest inbound frame accepted.
            compress: permessage-deflate window bits (0 disables).
            session: Externally owned ClientSession to reuse.
        """
        self.heartbeat = heartbeat
        self.max_message_size = max_message_size
        self.compress = compress
        self._session = session
        self._owns_session = session is None

    async def connect(self, endpoint: str) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

        return await self._session.ws_connect(
            endpoint,
            heartbeat=self.heartbeat,
            max_msg_size=self.max_message_size,
            compress=self.compress,
            autoping=True,
        )

    async def aclose(self) -> None:
        """Close the underlying ClientSession if this transport created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug("transport_session_closed")
        self._session = None
