"""
Unit tests for the stream manager: SSE framing, close policy, epochs and
restart handling. The backend is a FakeWorkflowServer behind MockTransport.
"""
import asyncio

import httpx
import pytest
import pytest_asyncio

from conftest import wait_until
from review_board.models import StatusSnapshot
from review_board.stream import (
    CLOSE_CLIENT,
    CLOSE_COMPLETE,
    CLOSE_CONNECTION_ERROR,
    CLOSE_DISCONNECTED,
    CLOSE_SUPERSEDED,
    CLOSE_UNEXPECTED_HALT,
    CONNECTION_FAILED,
    CONNECTION_LOST,
    MALFORMED_PAYLOAD,
    RESTART_LIMIT_REACHED,
    SSEDecoder,
    StreamManager,
    close_reason_for,
)


class RecordingListener:
    def __init__(self):
        self.opened = []
        self.snapshots = []
        self.parse_errors = []
        self.connection_errors = []
        self.closed = []

    def on_stream_opening(self, handle):
        self.opened.append(handle)

    def on_snapshot(self, handle, snapshot):
        self.snapshots.append((handle.epoch, snapshot))

    def on_parse_error(self, handle, message):
        self.parse_errors.append(message)

    def on_connection_error(self, handle, message):
        self.connection_errors.append(message)

    def on_stream_closed(self, handle, reason):
        self.closed.append((handle.epoch, reason))


@pytest.fixture
def listener():
    return RecordingListener()


@pytest_asyncio.fixture
async def manager(http_client, listener):
    stream_manager = StreamManager(http_client, listener, max_restarts=2)
    yield stream_manager
    await stream_manager.aclose()


def _snap(**fields) -> StatusSnapshot:
    return StatusSnapshot.model_validate({"thread_id": "T1", "status": "running", **fields})


# ─────────────────────────────────────────────
# Close policy
# ─────────────────────────────────────────────

class TestClosePolicy:
    def test_complete_and_dead_closes(self):
        assert close_reason_for(_snap(status="complete", thread_alive=False)) == CLOSE_COMPLETE

    def test_complete_but_alive_stays_open(self):
        assert close_reason_for(_snap(status="complete", thread_alive=True)) is None

    def test_halted_dead_outside_checkpoint_is_unexpected(self):
        snap = _snap(status="halted", active_node="Critic", thread_alive=False)
        assert close_reason_for(snap) == CLOSE_UNEXPECTED_HALT

    def test_halted_dead_at_checkpoint_stays_open(self):
        assert close_reason_for(_snap(status="halted", active_node="HIL_Node", thread_alive=False)) is None

    def test_halted_alive_stays_open(self):
        assert close_reason_for(_snap(status="halted", active_node="Critic", thread_alive=True)) is None

    def test_running_dead_stays_open(self):
        assert close_reason_for(_snap(status="running", thread_alive=False)) is None

    def test_custom_checkpoint_name(self):
        snap = _snap(status="halted", active_node="Review", thread_alive=False)
        assert close_reason_for(snap, hil_node="Review") is None


# ─────────────────────────────────────────────
# SSE framing
# ─────────────────────────────────────────────

class TestSSEDecoder:
    def _feed(self, decoder, text):
        events = []
        for line in text.split("\n"):
            event = decoder.feed(line)
            if event is not None:
                events.append(event)
        return events

    def test_single_event(self):
        events = self._feed(SSEDecoder(), 'data: {"a": 1}\n\n')
        assert len(events) == 1
        assert events[0].data == '{"a": 1}'
        assert events[0].event == "message"

    def test_multiline_data_joined(self):
        events = self._feed(SSEDecoder(), "data: one\ndata: two\n\n")
        assert events[0].data == "one\ntwo"

    def test_comments_and_blank_keepalives_ignored(self):
        events = self._feed(SSEDecoder(), ": keepalive\n\n\ndata: x\n\n")
        assert [e.data for e in events] == ["x"]

    def test_named_event_and_id(self):
        events = self._feed(SSEDecoder(), "id: 7\nevent: ping\ndata: hi\n\n")
        assert events[0].event == "ping"
        assert events[0].id == "7"

    def test_crlf_lines(self):
        decoder = SSEDecoder()
        assert decoder.feed("data: x\r\n") is None
        event = decoder.feed("\r\n")
        assert event.data == "x"


# ─────────────────────────────────────────────
# Connection lifecycle
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_open_issues_get_with_thread_id(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    assert fake_server.connections[0].thread_id == "T1"
    assert handle.epoch == 1
    assert listener.opened == [handle]


@pytest.mark.asyncio
async def test_snapshots_delivered_in_arrival_order(manager, fake_server, listener):
    manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    for node in ("Drafting", "Critic", "Drafting"):
        conn.send(status="running", active_node=node, thread_alive=True)
    await wait_until(lambda: len(listener.snapshots) == 3)
    assert [s.active_node for _, s in listener.snapshots] == ["Drafting", "Critic", "Drafting"]
    assert manager.handle is not None


@pytest.mark.asyncio
async def test_complete_and_dead_closes_and_never_reopens(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    fake_server.connections[0].send(status="complete", final_cbt_plan="F1", thread_alive=False)
    await wait_until(lambda: handle.closed)

    assert handle.close_reason == CLOSE_COMPLETE
    assert manager.handle is None
    await asyncio.sleep(0.05)
    assert len(fake_server.connections) == 1
    assert listener.connection_errors == []


@pytest.mark.asyncio
async def test_unexpected_halt_closes_without_retry(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    fake_server.connections[0].send(status="halted", active_node="Critic", thread_alive=False)
    await wait_until(lambda: handle.closed)

    assert handle.close_reason == CLOSE_UNEXPECTED_HALT
    await asyncio.sleep(0.05)
    assert len(fake_server.connections) == 1


@pytest.mark.asyncio
async def test_halted_at_checkpoint_keeps_connection_open(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    fake_server.connections[0].send(status="halted", active_node="HIL_Node", thread_alive=False)
    await wait_until(lambda: len(listener.snapshots) == 1)
    await asyncio.sleep(0.02)
    assert not handle.closed


@pytest.mark.asyncio
async def test_malformed_payload_keeps_connection_open(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    conn.send_raw("data: {not json\n\n")
    conn.send_raw('data: {"thread_id": "T1", "status": "exploded"}\n\n')
    conn.send(status="running", active_node="Drafting", thread_alive=True)

    await wait_until(lambda: len(listener.snapshots) == 1)
    assert listener.parse_errors == [MALFORMED_PAYLOAD, MALFORMED_PAYLOAD]
    assert not handle.closed


@pytest.mark.asyncio
async def test_snapshot_for_other_thread_is_rejected(manager, fake_server, listener):
    manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    fake_server.connections[0].send_raw('data: {"thread_id": "T9", "status": "running"}\n\n')
    await wait_until(lambda: len(listener.parse_errors) == 1)
    assert listener.snapshots == []


@pytest.mark.asyncio
async def test_named_events_are_ignored(manager, fake_server, listener):
    manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    conn.send_raw("event: heartbeat\ndata: {}\n\n")
    conn.send(status="running", thread_alive=True)
    await wait_until(lambda: len(listener.snapshots) == 1)
    assert listener.parse_errors == []


@pytest.mark.asyncio
async def test_transport_failure_surfaces_connection_error(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    conn.send(status="running", thread_alive=True)
    conn.fail()
    await wait_until(lambda: handle.closed)

    assert handle.close_reason == CLOSE_CONNECTION_ERROR
    assert listener.connection_errors == [CONNECTION_LOST]
    await asyncio.sleep(0.05)
    assert len(fake_server.connections) == 1


@pytest.mark.asyncio
async def test_server_ending_stream_early_is_a_connection_error(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    conn.send(status="running", thread_alive=True)
    conn.finish()
    await wait_until(lambda: handle.closed)
    assert listener.connection_errors == [CONNECTION_LOST]


@pytest.mark.asyncio
async def test_disconnect_after_complete_is_silent(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    conn = fake_server.connections[0]
    # Complete but still alive: the policy keeps the connection open.
    conn.send(status="complete", final_cbt_plan="F1", thread_alive=True)
    conn.fail()
    await wait_until(lambda: handle.closed)

    assert handle.close_reason == CLOSE_DISCONNECTED
    assert listener.connection_errors == []


@pytest.mark.asyncio
async def test_http_error_on_open(manager, fake_server, listener):
    fake_server.stream_status = 503
    handle = manager.open("T1")
    await wait_until(lambda: handle.closed)
    assert handle.close_reason == CLOSE_CONNECTION_ERROR
    assert listener.connection_errors == [f"{CONNECTION_FAILED} (HTTP 503)"]


@pytest.mark.asyncio
async def test_unreachable_server(listener):
    def refuse(request):
        raise httpx.ConnectError("connection refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://backend.test") as client:
        manager = StreamManager(client, listener)
        handle = manager.open("T1")
        await wait_until(lambda: handle.closed)
        assert listener.connection_errors == [CONNECTION_FAILED]
        await manager.aclose()


# ─────────────────────────────────────────────
# Epochs and restarts
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_restart_bumps_epoch_and_drops_stale_events(manager, fake_server, listener):
    first = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    old_conn = fake_server.connections[0]

    second = manager.restart()
    await wait_until(lambda: len(fake_server.connections) == 2)

    assert second.epoch > first.epoch
    assert first.closed and first.close_reason == CLOSE_SUPERSEDED
    assert manager.handle is second
    assert manager.restarts == 1

    old_conn.send(status="running", active_node="Stale", thread_alive=True)
    fake_server.connections[1].send(status="revising", active_node="Drafting", thread_alive=True)
    await wait_until(lambda: len(listener.snapshots) == 1)
    await asyncio.sleep(0.02)
    assert listener.snapshots == [(second.epoch, listener.snapshots[0][1])]
    assert listener.snapshots[0][1].active_node == "Drafting"


@pytest.mark.asyncio
async def test_restart_after_policy_close_reopens(manager, fake_server, listener):
    first = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    fake_server.connections[0].send(status="halted", active_node="Critic", current_draft="D1", thread_alive=False)
    await wait_until(lambda: first.closed)

    second = manager.restart()
    assert second is not None
    assert second.epoch == first.epoch + 1
    await wait_until(lambda: len(fake_server.connections) == 2)


@pytest.mark.asyncio
async def test_restart_without_thread_is_noop(manager, fake_server, listener):
    assert manager.restart() is None
    assert manager.epoch == 0
    assert listener.opened == []


@pytest.mark.asyncio
async def test_restart_limit(manager, fake_server, listener):
    manager.open("T1")
    assert manager.restart() is not None
    assert manager.restart() is not None
    assert manager.restart() is None
    assert listener.connection_errors == [RESTART_LIMIT_REACHED]
    assert manager.epoch == 3


@pytest.mark.asyncio
async def test_new_thread_resets_restart_count(manager, fake_server, listener):
    manager.open("T1")
    manager.restart()
    manager.restart()
    handle = manager.open("T2")
    assert manager.restarts == 0
    assert manager.thread_id == "T2"
    assert handle.epoch == 4
    assert manager.restart() is not None


@pytest.mark.asyncio
async def test_close_and_reset(manager, fake_server, listener):
    handle = manager.open("T1")
    await wait_until(lambda: len(fake_server.connections) == 1)
    manager.close()
    assert handle.closed and handle.close_reason == CLOSE_CLIENT
    assert manager.thread_id == "T1"

    manager.reset()
    assert manager.thread_id is None
    assert manager.restart() is None
    assert (handle.epoch, CLOSE_CLIENT) in listener.closed
