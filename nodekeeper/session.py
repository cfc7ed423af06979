"""
Connection session: exactly one transport handle to exactly one endpoint.

Lifecycle:
IDLE -> OPENING -> OPEN -> CLOSED
          |                  ^
          +------------------+  (timeout / transport failure)

A session is single-use. Reconnecting means building a new session; the
old one is closed first so no stale event can reach the owner.
"""

import asyncio
from contextlib import suppress
from enum import Enum
from typing import Any, Optional, Protocol, Union

import aiohttp
import structlog

from nodekeeper.transport import Transport

logger = structlog.get_logger(__name__)

Payload = Union[str, bytes, bytearray, dict, list]


class SessionState(Enum):
    """Session lifecycle states."""
    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


class SessionListener(Protocol):
    """Named event slots a session reports to its owner."""

    def on_open(self, endpoint: str) -> None:
        ...

    def on_error(self, reason: str) -> None:
        ...

    def on_close(self, reason: str) -> None:
        ...

    def on_message(self, data: Any) -> None:
        ...


class _DetachedListener:
    """Sink used after close(); swallows everything."""

    def on_open(self, endpoint: str) -> None:
        pass

    def on_error(self, reason: str) -> None:
        pass

    def on_close(self, reason: str) -> None:
        pass

    def on_message(self, data: Any) -> None:
        pass


_DETACHED = _DetachedListener()


def _describe(error: BaseException) -> str:
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


class ConnectionSession:
    """
    Owns one websocket handle.

    Events are delivered to the listener in order: ``on_open`` once on
    success, then at most one ``on_error`` followed by exactly one
    ``on_close`` for the disconnection. After ``close()`` nothing is
    delivered.

    Usage:
        async with ConnectionSession(endpoint, transport, listener) as session:
            if await session.open(timeout=30):
                await session.send("ping")
                reason = await session.wait_closed()
    """

    def __init__(
        self,
        endpoint: str,
        transport: Transport,
        listener: Optional[SessionListener] = None,
    ):
        self.endpoint = endpoint
        self.state = SessionState.IDLE
        self._transport = transport
        self._listener = listener or _DETACHED
        self._handle: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._close_reason: Optional[str] = None
        self._close_emitted = False

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    async def open(self, timeout: float) -> bool:
        """
        Establish the transport connection.

        Returns False (after emitting on_error then on_close) if no
        confirmation arrives within `timeout` seconds or the transport
        refuses the connection.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session for {self.endpoint} already used ({self.state.value})")

        self.state = SessionState.OPENING
        logger.debug("session_opening", endpoint=self.endpoint, timeout=timeout)

        try:
            handle = await asyncio.wait_for(self._transport.connect(self.endpoint), timeout)
        except asyncio.TimeoutError:
            self._fail(f"no confirmation within {timeout}s")
            return False
        except (aiohttp.ClientError, OSError, ValueError) as e:
            self._fail(_describe(e))
            return False

        if self.state is SessionState.CLOSED:
            # close() ran while we were connecting
            await self._release(handle)
            return False

        self._handle = handle
        self.state = SessionState.OPEN
        logger.info("session_opened", endpoint=self.endpoint)

        self._listener.on_open(self.endpoint)
        self._reader = asyncio.create_task(self._read_loop())
        return True

    async def _read_loop(self) -> None:
        error: Optional[str] = None
        handle = self._handle

        try:
            async for msg in handle:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    self._listener.on_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    exc = handle.exception()
                    error = _describe(exc) if exc else "websocket error"
                    break
        except (aiohttp.ClientError, OSError) as e:
            error = _describe(e)

        if error is not None:
            self._fail(error)
        else:
            self._finish(f"closed by remote (code {handle.close_code})")

    def _fail(self, reason: str) -> None:
        if self._close_emitted:
            return
        logger.warning("session_error", endpoint=self.endpoint, reason=reason)
        self._listener.on_error(reason)
        self._finish(reason)

    def _finish(self, reason: str) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        self.state = SessionState.CLOSED
        self._close_reason = reason
        logger.info("session_closed", endpoint=self.endpoint, reason=reason)
        self._listener.on_close(reason)
        self._closed.set()

    async def wait_closed(self) -> Optional[str]:
        """Wait until the connection ends; returns the close reason."""
        await self._closed.wait()
        return self._close_reason

    async def send(self, payload: Payload) -> bool:
        """
        Write one message.

        Returns True only if the session is open and the transport accepted
        the write. Never raises for a missing or broken connection.
        """
        handle = self._handle
        if self.state is not SessionState.OPEN or handle is None or handle.closed:
            return False

        try:
            if isinstance(payload, (bytes, bytearray)):
                await handle.send_bytes(bytes(payload))
            elif isinstance(payload, str):
                await handle.send_str(payload)
            else:
                await handle.send_json(payload)
        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            logger.warning("session_send_failed", endpoint=self.endpoint, error=_describe(e))
            return False

        return True

    async def close(self) -> None:
        """
        Detach the listener and release the handle. Idempotent.

        Safe from any state; the handle is closed exactly once.
        """
        self._listener = _DETACHED
        self.state = SessionState.CLOSED
        if self._close_reason is None:
            self._close_reason = "closed locally"
        self._closed.set()

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._release(handle)

    async def _release(self, handle: Any) -> None:
        try:
            await handle.close()
        except (aiohttp.ClientError, OSError) as e:
            logger.debug("session_handle_close_error", endpoint=self.endpoint, error=_describe(e))

    async def __aenter__(self) -> "ConnectionSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
