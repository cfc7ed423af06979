"""
Comprehensive tests for the ConnectionManager state machine.

Tests:
- Failover across endpoints with retry counting
- Retry ceiling and the single give_up event
- Reconnect after a live connection drops
- close() cancelling pending reconnects
- send() without buffering
- Handle release between attempts
"""

import asyncio

import pytest

from fakes import FakeTransport, wait_until
from nodekeeper.backoff import BackoffPolicy
from nodekeeper.errors import ConfigurationError, RetryCeilingExceeded, TransientConnectionError
from nodekeeper.manager import ConnectionCallbacks, ConnectionManager, ConnectionState

FAST_BACKOFF = BackoffPolicy(base_delay=0.001, factor=2.0, max_delay=0.004, cap_index=3)


class EventLog:
    """Collects manager callbacks as (name, service_id, detail) tuples."""

    def __init__(self):
        self.events: list[tuple] = []
        self.gave_up = asyncio.Event()

    def callbacks(self) -> ConnectionCallbacks:
        return ConnectionCallbacks(
            on_connected=lambda sid: self.events.append(("connected", sid, None)),
            on_disconnected=lambda sid, reason: self.events.append(("disconnected", sid, reason)),
            on_give_up=self._give_up,
            on_error=lambda sid, err: self.events.append(("error", sid, err)),
            on_message=lambda sid, data: self.events.append(("message", sid, data)),
        )

    def _give_up(self, service_id, error):
        self.events.append(("give_up", service_id, error))
        self.gave_up.set()

    @property
    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]

    def count(self, name: str) -> int:
        return self.names.count(name)


@pytest.fixture
def event_log():
    return EventLog()


def make_manager(transport, event_log, endpoints=("A", "B", "C"), **kwargs):
    kwargs.setdefault("backoff", FAST_BACKOFF)
    kwargs.setdefault("max_retries", 5)
    kwargs.setdefault("open_timeout", 1.0)
    return ConnectionManager(
        list(endpoints),
        transport=transport,
        callbacks=event_log.callbacks(),
        **kwargs,
    )


class TestConstruction:

    def test_empty_endpoint_set_is_fatal(self, fake_transport):
        with pytest.raises(ConfigurationError):
            ConnectionManager([], transport=fake_transport)

    def test_negative_retry_ceiling_rejected(self, fake_transport):
        with pytest.raises(ConfigurationError):
            ConnectionManager(["A"], transport=fake_transport, max_retries=-1)

    def test_non_positive_timeout_rejected(self, fake_transport):
        with pytest.raises(ConfigurationError):
            ConnectionManager(["A"], transport=fake_transport, open_timeout=0)


@pytest.mark.asyncio
async def test_failover_scenario_a_b_c(event_log):
    """Fails on A, then B, succeeds on C."""
    transport = FakeTransport([OSError("A down"), OSError("B down"), "ok"])
    manager = make_manager(transport, event_log)

    await manager.connect("ledger")
    assert await manager.wait_until_connected("ledger", timeout=2.0)

    record = manager.get("ledger")
    assert record.current_endpoint_index == 2
    assert record.retry_count == 0
    assert record.state is ConnectionState.CONNECTED
    assert event_log.names == ["error", "error", "connected"]
    assert transport.attempts == ["A", "B", "C"]

    await manager.close_all()


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 4, 7])
async def test_k_failures_then_success(event_log, failures):
    transport = FakeTransport([OSError("down")] * failures)
    manager = make_manager(transport, event_log, max_retries=10)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    record = manager.get("svc")
    assert record.retry_count == 0
    assert record.current_endpoint_index == failures % 3
    assert len(transport.attempts) == failures + 1
    assert event_log.count("error") == failures

    await manager.close_all()


@pytest.mark.asyncio
async def test_errors_carry_endpoint(event_log):
    transport = FakeTransport([OSError("refused")])
    manager = make_manager(transport, event_log)

    await manager.connect("svc")
    await manager.wait_until_connected("svc", timeout=2.0)

    _, service_id, error = event_log.events[0]
    assert service_id == "svc"
    assert isinstance(error, TransientConnectionError)
    assert error.endpoint == "A"
    assert "refused" in error.reason

    await manager.close_all()


@pytest.mark.asyncio
async def test_retry_ceiling_emits_single_give_up(event_log):
    transport = FakeTransport(default=OSError("everything is down"))
    manager = make_manager(transport, event_log, max_retries=3)

    await manager.connect("svc")
    await asyncio.wait_for(event_log.gave_up.wait(), 2.0)
    await asyncio.sleep(0.02)

    assert event_log.count("give_up") == 1
    assert len(transport.attempts) == 4  # first try + 3 retries
    assert manager.state("svc") is ConnectionState.DISCONNECTED

    error = event_log.events[-1][2]
    assert isinstance(error, RetryCeilingExceeded)
    assert error.service_id == "svc"
    assert error.attempts == 4

    # Record survives the failure
    assert "svc" in manager.service_ids

    await manager.close_all()


@pytest.mark.asyncio
async def test_connect_after_give_up_restarts_cycle(event_log):
    transport = FakeTransport([OSError("down")] * 3)
    manager = make_manager(transport, event_log, max_retries=2)

    await manager.connect("svc")
    await asyncio.wait_for(event_log.gave_up.wait(), 2.0)
    assert len(transport.attempts) == 3

    # Script exhausted: the next attempt succeeds
    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)
    assert manager.get("svc").retry_count == 0
    assert transport.attempts == ["A", "B", "C", "A"]

    await manager.close_all()


@pytest.mark.asyncio
async def test_zero_retry_ceiling_gives_up_after_first_failure(event_log):
    transport = FakeTransport([OSError("down")])
    manager = make_manager(transport, event_log, max_retries=0)

    await manager.connect("svc")
    await asyncio.wait_for(event_log.gave_up.wait(), 2.0)

    assert transport.attempts == ["A"]
    assert event_log.names == ["error", "give_up"]

    await manager.close_all()


@pytest.mark.asyncio
async def test_connect_while_active_is_noop(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    first = await manager.connect("svc")
    second = await manager.connect("svc")
    assert first is second
    assert await manager.wait_until_connected("svc", timeout=2.0)

    assert len(fake_transport.attempts) == 1
    await manager.close_all()


@pytest.mark.asyncio
async def test_dropped_connection_reconnects_to_next_endpoint(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)
    first_socket = fake_transport.sockets[0]

    first_socket.drop(code=1006)
    await wait_until(lambda: event_log.count("connected") == 2)

    record = manager.get("svc")
    assert event_log.names == ["connected", "disconnected", "connected"]
    assert record.current_endpoint_index == 1
    assert record.retry_count == 0
    assert fake_transport.attempts == ["A", "B"]
    assert first_socket.close_calls == 1

    await manager.close_all()


@pytest.mark.asyncio
async def test_live_error_takes_same_path_as_close(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    fake_transport.sockets[0].fail(ConnectionResetError("reset"))
    await wait_until(lambda: event_log.count("connected") == 2)

    # One error, one disconnect, one reconnect - no duplicate retry
    assert event_log.names == ["connected", "error", "disconnected", "connected"]
    assert len(fake_transport.attempts) == 2

    await manager.close_all()


@pytest.mark.asyncio
async def test_previous_handle_released_before_next_attempt(event_log):
    transport = FakeTransport()
    manager = make_manager(transport, event_log)

    await manager.connect("svc")
    for expected in range(1, 4):
        await wait_until(lambda: len(transport.sockets) == expected)
        await wait_until(lambda: manager.state("svc") is ConnectionState.CONNECTED)
        transport.sockets[-1].drop()

    await wait_until(lambda: len(transport.sockets) == 4)
    open_handles = [ws for ws in transport.sockets if not ws.closed]
    assert len(open_handles) <= 1
    assert all(ws.close_calls == 1 for ws in transport.sockets[:3])

    await manager.close_all()


@pytest.mark.asyncio
async def test_close_cancels_pending_reconnect(event_log):
    transport = FakeTransport(default=OSError("down"))
    manager = make_manager(
        transport,
        event_log,
        backoff=BackoffPolicy(base_delay=60.0, max_delay=60.0),
    )

    await manager.connect("svc")
    await wait_until(lambda: len(transport.attempts) == 1)
    await asyncio.sleep(0.01)

    await asyncio.wait_for(manager.close("svc"), 1.0)

    assert "svc" not in manager.service_ids
    assert manager.state("svc") is ConnectionState.DISCONNECTED
    assert len(transport.attempts) == 1
    assert event_log.count("give_up") == 0


@pytest.mark.asyncio
async def test_close_cancels_in_flight_attempt(event_log):
    transport = FakeTransport(["hang"])
    manager = make_manager(transport, event_log, open_timeout=60.0)

    await manager.connect("svc")
    await wait_until(lambda: len(transport.attempts) == 1)

    await asyncio.wait_for(manager.close("svc"), 1.0)

    assert manager.get("svc") is None
    assert event_log.events == []


@pytest.mark.asyncio
async def test_close_connected_service_emits_disconnected(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)
    await manager.close("svc")

    assert event_log.names == ["connected", "disconnected"]
    assert event_log.events[-1][2] == "closed by application"
    assert fake_transport.sockets[0].close_calls == 1


@pytest.mark.asyncio
async def test_close_unknown_service_is_noop(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.close("nope")

    assert event_log.events == []


@pytest.mark.asyncio
async def test_send_delegates_to_active_session(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    assert await manager.send("svc", '{"command": "ping"}') is True
    assert await manager.send("svc", {"command": "subscribe"}) is True
    assert fake_transport.sockets[0].sent == ['{"command": "ping"}', {"command": "subscribe"}]

    await manager.close_all()


@pytest.mark.asyncio
async def test_send_without_connection_returns_false(event_log):
    transport = FakeTransport(["hang"])
    manager = make_manager(transport, event_log, open_timeout=60.0)

    assert await manager.send("unknown", "x") is False

    await manager.connect("svc")
    await wait_until(lambda: len(transport.attempts) == 1)
    assert await manager.send("svc", "x") is False

    await manager.close_all()


@pytest.mark.asyncio
async def test_messages_reach_application(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)
    fake_transport.sockets[0].feed("payload")
    await wait_until(lambda: event_log.count("message") == 1)

    assert event_log.events[-1] == ("message", "svc", "payload")
    await manager.close_all()


@pytest.mark.asyncio
async def test_services_are_independent(event_log):
    transport = FakeTransport()
    manager = make_manager(transport, event_log)

    await manager.connect("alerts")
    await manager.connect("prices", endpoints=["X", "Y"])
    assert await manager.wait_until_connected("alerts", timeout=2.0)
    assert await manager.wait_until_connected("prices", timeout=2.0)

    assert manager.get("alerts").endpoint == "A"
    assert manager.get("prices").endpoint == "X"

    await manager.close("alerts")
    assert manager.state("prices") is ConnectionState.CONNECTED

    await manager.close_all()
    assert manager.service_ids == []
    assert transport.closed is True


@pytest.mark.asyncio
async def test_per_service_empty_endpoints_rejected(event_log, fake_transport):
    manager = make_manager(fake_transport, event_log)

    with pytest.raises(ConfigurationError):
        await manager.connect("svc", endpoints=[])


@pytest.mark.asyncio
async def test_wait_until_connected_returns_false_on_give_up(event_log):
    transport = FakeTransport(default=OSError("down"))
    manager = make_manager(transport, event_log, max_retries=1)

    await manager.connect("svc")

    assert await manager.wait_until_connected("svc", timeout=2.0) is False
    assert event_log.count("give_up") == 1
    await manager.close_all()


@pytest.mark.asyncio
async def test_wait_until_connected_times_out(event_log):
    transport = FakeTransport(["hang"])
    manager = make_manager(transport, event_log, open_timeout=60.0)

    await manager.connect("svc")

    assert await manager.wait_until_connected("svc", timeout=0.05) is False
    assert await manager.wait_until_connected("missing", timeout=0.05) is False
    await manager.close_all()


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_cycle(fake_transport):
    def explode(service_id):
        raise RuntimeError("application bug")

    manager = ConnectionManager(
        ["A"],
        transport=fake_transport,
        backoff=FAST_BACKOFF,
        callbacks=ConnectionCallbacks(on_connected=explode),
    )

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)
    assert await manager.send("svc", "still works") is True

    await manager.close_all()


@pytest.mark.asyncio
async def test_status_snapshot(event_log):
    transport = FakeTransport([OSError("refused")])
    manager = make_manager(transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    status = manager.status()
    service = status["services"]["svc"]
    assert service["state"] == "connected"
    assert service["endpoint"] == "B"
    assert service["retry_count"] == 0
    assert service["connected_since"] is not None
    assert status["error_count"] == 1
    assert status["recent_errors"][0]["endpoint"] == "A"

    await manager.close_all()


@pytest.mark.asyncio
async def test_status_lists_newest_errors_first(event_log):
    transport = FakeTransport([OSError("A down"), OSError("B down")])
    manager = make_manager(transport, event_log)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    errors = manager.status()["recent_errors"]
    assert [e["endpoint"] for e in errors] == ["B", "A"]

    await manager.close_all()


@pytest.mark.asyncio
async def test_status_keeps_five_most_recent_errors(event_log):
    transport = FakeTransport([OSError(f"down {i}") for i in range(7)])
    manager = make_manager(transport, event_log, max_retries=10)

    await manager.connect("svc")
    assert await manager.wait_until_connected("svc", timeout=2.0)

    status = manager.status()
    assert status["error_count"] == 7
    assert [e["message"] for e in status["recent_errors"]] == [
        f"OSError: down {i}" for i in (6, 5, 4, 3, 2)
    ]

    await manager.close_all()
