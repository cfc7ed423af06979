"""
Connection manager: one resilient logical connection per service id.

State machine per service:

DISCONNECTED --connect()--> CONNECTING --on_open--> CONNECTED
     ^                        |    ^                    |
     |   retry ceiling hit    |    | backoff + advance  | error / close
     +------ (give_up) -------+    +--------------------+

CONNECTED/CONNECTING --close()--> CLOSING --> DISCONNECTED (record removed)

Errors and closes take the same retry path. Each service runs its cycle in
its own asyncio task; the task owns the session and always closes it before
the next attempt is built.
"""

import asyncio
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import structlog

from nodekeeper.backoff import BackoffPolicy
from nodekeeper.errors import (
    ConfigurationError,
    RetryCeilingExceeded,
    TransientConnectionError,
)
from nodekeeper.rotator import EndpointRotator
from nodekeeper.session import ConnectionSession, Payload
from nodekeeper.transport import AiohttpTransport, Transport

logger = structlog.get_logger(__name__)

MAX_RECENT_ERRORS = 100


class ConnectionState(Enum):
    """Logical connection states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


@dataclass
class ConnectionCallbacks:
    """
    Event slots exposed to application code.

    Every slot is optional. Exceptions raised by a callback are logged and
    never interrupt the connect cycle.
    """
    on_connected: Optional[Callable[[str], None]] = None
    on_disconnected: Optional[Callable[[str, str], None]] = None
    on_give_up: Optional[Callable[[str, RetryCeilingExceeded], None]] = None
    on_error: Optional[Callable[[str, TransientConnectionError], None]] = None
    on_message: Optional[Callable[[str, Any], None]] = None


@dataclass
class ConnectionRecord:
    """Book-keeping for one logical service connection."""
    service_id: str
    rotator: EndpointRotator
    state: ConnectionState = ConnectionState.DISCONNECTED
    retry_count: int = 0
    session: Optional[ConnectionSession] = None
    task: Optional[asyncio.Task] = None
    connected_since: Optional[datetime] = None
    connected: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def current_endpoint_index(self) -> int:
        return self.rotator.index

    @property
    def endpoint(self) -> str:
        return self.rotator.current()

    @property
    def is_active(self) -> bool:
        """True while a connect cycle is running for this record."""
        return self.task is not None and not self.task.done()

    def to_dict(self) -> dict:
        return {
            "service_id": self.service_id,
            "state": self.state.value,
            "endpoint": self.endpoint,
            "endpoint_index": self.current_endpoint_index,
            "retry_count": self.retry_count,
            "connected_since": (
                self.connected_since.isoformat() if self.connected_since else None
            ),
        }


class _RecordListener:
    """Routes one session's events into its record and the app callbacks."""

    def __init__(self, manager: "ConnectionManager", record: ConnectionRecord):
        self._manager = manager
        self._record = record

    def on_open(self, endpoint: str) -> None:
        record = self._record
        record.state = ConnectionState.CONNECTED
        record.retry_count = 0
        record.connected_since = datetime.now(timezone.utc)
        record.connected.set()

        logger.info(
            "service_connected",
            service_id=record.service_id,
            endpoint=endpoint,
            endpoint_index=record.current_endpoint_index,
        )
        self._manager._emit("on_connected", record.service_id)

    def on_error(self, reason: str) -> None:
        error = TransientConnectionError(self._record.endpoint, reason)
        self._manager._record_error(self._record.service_id, error)
        self._manager._emit("on_error", self._record.service_id, error)

    def on_close(self, reason: str) -> None:
        record = self._record
        record.connected.clear()

        if record.state is ConnectionState.CONNECTED:
            record.state = ConnectionState.CONNECTING
            record.connected_since = None
            logger.warning("service_disconnected", service_id=record.service_id, reason=reason)
            self._manager._emit("on_disconnected", record.service_id, reason)

    def on_message(self, data: Any) -> None:
        self._manager._emit("on_message", self._record.service_id, data)


class ConnectionManager:
    """
    Keeps named connections alive across a set of interchangeable endpoints.

    Design:
    - One record per service id, created on first connect(), removed only
      by close()
    - Every failure advances the endpoint and waits backoff.delay(retry)
    - retry_count resets on every successful open
    - Exceeding max_retries emits a single give_up; connect() restarts
    - No buffering: send() on a disconnected service returns False
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        transport: Optional[Transport] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: int = 20,
        open_timeout: float = 30.0,
        callbacks: Optional[ConnectionCallbacks] = None,
        session_factory: Callable[..., ConnectionSession] = ConnectionSession,
    ):
        """
        Initialize the manager.

        Args:
            endpoints: Default endpoint set for every service (non-empty)
            transport: Websocket transport (aiohttp by default)
            backoff: Reconnect delay policy
            max_retries: Consecutive failures tolerated before giving up
            open_timeout: Per-attempt connection timeout in seconds
            callbacks: Application event slots
            session_factory: Builds sessions (endpoint, transport, listener)
        """
        self.endpoints = EndpointRotator(endpoints).endpoints

        if max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {max_retries}")
        if open_timeout <= 0:
            raise ConfigurationError(f"open_timeout must be positive, got {open_timeout}")

        self.transport = transport or AiohttpTransport()
        self.backoff = backoff or BackoffPolicy()
        self.max_retries = max_retries
        self.open_timeout = open_timeout
        self.callbacks = callbacks or ConnectionCallbacks()
        self._session_factory = session_factory
        self._records: dict[str, ConnectionRecord] = {}
        self._recent_errors: deque = deque(maxlen=MAX_RECENT_ERRORS)

        logger.info(
            "connection_manager_initialized",
            endpoints=list(self.endpoints),
            max_retries=max_retries,
            open_timeout=open_timeout,
        )

    @classmethod
    def from_settings(cls, settings, callbacks: Optional[ConnectionCallbacks] = None) -> "ConnectionManager":
        """Build a manager from a ConnectionSettings instance."""
        return cls(
            endpoints=settings.endpoints,
            transport=AiohttpTransport(
                heartbeat=settings.heartbeat,
                max_message_size=settings.max_message_size,
            ),
            backoff=settings.backoff(),
            max_retries=settings.max_retries,
            open_timeout=settings.open_timeout,
            callbacks=callbacks,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(
        self,
        service_id: str,
        endpoints: Optional[Sequence[str]] = None,
    ) -> ConnectionRecord:
        """
        Start (or restart) the connect cycle for `service_id`.

        A no-op if a cycle is already running. After a give_up, calling
        this again resets retry_count and tries again from the next
        endpoint.
        """
        record = self._records.get(service_id)

        if record is not None and record.is_active:
            logger.debug("connect_already_active", service_id=service_id, state=record.state.value)
            return record

        rotator = EndpointRotator(endpoints) if endpoints is not None else None

        if record is None:
            record = ConnectionRecord(
                service_id=service_id,
                rotator=rotator or EndpointRotator(self.endpoints),
            )
            self._records[service_id] = record
        elif rotator is not None:
            record.rotator = rotator

        record.retry_count = 0
        record.state = ConnectionState.CONNECTING
        record.task = asyncio.create_task(
            self._run_cycle(record),
            name=f"nodekeeper-connect-{service_id}",
        )

        logger.info("connect_requested", service_id=service_id, endpoint=record.endpoint)
        return record

    async def send(self, service_id: str, payload: Payload) -> bool:
        """Send through the active session; False if not connected."""
        record = self._records.get(service_id)
        if record is None or record.state is not ConnectionState.CONNECTED:
            return False

        session = record.session
        if session is None:
            return False

        return await session.send(payload)

    async def close(self, service_id: str) -> None:
        """
        Close and forget `service_id`.

        Cancels a pending reconnect sleep or in-flight attempt, then
        releases the session.
        """
        record = self._records.get(service_id)
        if record is None:
            return

        was_connected = record.state is ConnectionState.CONNECTED
        record.state = ConnectionState.CLOSING
        logger.info("service_closing", service_id=service_id)

        task, record.task = record.task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        if record.session is not None:
            await record.session.close()
            record.session = None

        record.state = ConnectionState.DISCONNECTED
        record.connected_since = None
        record.connected.clear()
        del self._records[service_id]

        logger.info("service_closed", service_id=service_id)
        if was_connected:
            self._emit("on_disconnected", service_id, "closed by application")

    async def close_all(self) -> None:
        """Close every service and the transport."""
        for service_id in list(self._records):
            await self.close(service_id)
        await self.transport.aclose()

    async def wait_until_connected(self, service_id: str, timeout: float) -> bool:
        """
        Wait for `service_id` to reach CONNECTED.

        Returns False on timeout, on give_up, or if the service is unknown.
        """
        record = self._records.get(service_id)
        if record is None:
            return False
        if record.state is ConnectionState.CONNECTED:
            return True

        waiter = asyncio.ensure_future(record.connected.wait())
        watched = {waiter}
        if record.task is not None:
            watched.add(record.task)

        try:
            await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        return record.state is ConnectionState.CONNECTED

    def get(self, service_id: str) -> Optional[ConnectionRecord]:
        return self._records.get(service_id)

    def state(self, service_id: str) -> ConnectionState:
        record = self._records.get(service_id)
        return record.state if record else ConnectionState.DISCONNECTED

    @property
    def service_ids(self) -> list[str]:
        return list(self._records)

    def status(self) -> dict:
        """Snapshot of every service plus the five most recent errors, newest first."""
        return {
            "services": {sid: record.to_dict() for sid, record in self._records.items()},
            "recent_errors": list(reversed(self._recent_errors))[:5],
            "error_count": len(self._recent_errors),
        }

    # ------------------------------------------------------------------
    # Connect cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, record: ConnectionRecord) -> None:
        try:
            await self._cycle(record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("connect_cycle_crashed", service_id=record.service_id, error=str(e))
            record.state = ConnectionState.DISCONNECTED

    async def _cycle(self, record: ConnectionRecord) -> None:
        while True:
            session = self._session_factory(
                record.endpoint,
                self.transport,
                _RecordListener(self, record),
            )
            record.session = session

            try:
                if await session.open(self.open_timeout):
                    await session.wait_closed()
            finally:
                await session.close()
                record.session = None

            if record.retry_count >= self.max_retries:
                record.rotator.advance()
                record.state = ConnectionState.DISCONNECTED
                error = RetryCeilingExceeded(record.service_id, record.retry_count + 1)
                logger.error(
                    "connection_give_up",
                    service_id=record.service_id,
                    attempts=error.attempts,
                )
                self._emit("on_give_up", record.service_id, error)
                return

            delay = self.backoff.delay(record.retry_count)
            record.retry_count += 1
            next_endpoint = record.rotator.advance()
            record.state = ConnectionState.CONNECTING

            logger.info(
                "reconnect_scheduled",
                service_id=record.service_id,
                attempt=record.retry_count,
                endpoint=next_endpoint,
                delay_seconds=delay,
            )
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    def _emit(self, slot: str, *args) -> None:
        callback = getattr(self.callbacks, slot)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("connection_callback_error", callback=slot, error=str(e))

    def _record_error(self, service_id: str, error: TransientConnectionError) -> None:
        self._recent_errors.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service_id": service_id,
            "endpoint": error.endpoint,
            "message": error.reason,
        })
