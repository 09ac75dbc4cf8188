"""
Push-stream connection management for the active drafting thread.

One StreamHandle exists per (thread id, connection epoch). Every open bumps the
epoch, and every event is checked against the current handle before it is
delivered, so events still in flight on a torn-down connection are dropped.

The manager never reconnects on its own. A connection closes when the close
policy says the server is done, when the transport fails, or when the caller
closes or restarts it. Only `restart()` opens a new connection for the same
thread, and restarts are bounded per thread by MAX_STREAM_RESTARTS.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from review_board.config import HIL_NODE, MAX_STREAM_RESTARTS, STREAM_PATH
from review_board.models import StatusSnapshot

logger = logging.getLogger(__name__)

# Close reasons
CLOSE_COMPLETE = "complete"
CLOSE_UNEXPECTED_HALT = "unexpected_halt"
CLOSE_DISCONNECTED = "disconnected"          # transport ended after the session completed
CLOSE_CONNECTION_ERROR = "connection_error"
CLOSE_SUPERSEDED = "superseded"              # replaced by a newer handle
CLOSE_CLIENT = "closed"                      # closed by the caller

CONNECTION_FAILED = "Cannot establish connection to the streaming server."
CONNECTION_LOST = "Connection to the session stream was lost."
MALFORMED_PAYLOAD = "Received malformed data from the server stream."
RESTART_LIMIT_REACHED = "Stream restart limit reached; start a new session to continue."


class StreamListener(Protocol):
    def on_stream_opening(self, handle: "StreamHandle") -> None: ...

    def on_snapshot(self, handle: "StreamHandle", snapshot: StatusSnapshot) -> None: ...

    def on_parse_error(self, handle: "StreamHandle", message: str) -> None: ...

    def on_connection_error(self, handle: Optional["StreamHandle"], message: str) -> None: ...

    def on_stream_closed(self, handle: "StreamHandle", reason: str) -> None: ...


@dataclass
class StreamHandle:
    thread_id: str
    epoch: int
    closed: bool = False
    close_reason: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)


def close_reason_for(snapshot: StatusSnapshot, hil_node: str = HIL_NODE) -> Optional[str]:
    """Return why the connection should close after this snapshot, or None to keep it open."""
    if snapshot.thread_alive:
        return None
    if snapshot.status == "complete":
        return CLOSE_COMPLETE
    if snapshot.status == "halted" and snapshot.active_node != hil_node:
        return CLOSE_UNEXPECTED_HALT
    return None


# ─────────────────────────────────────────────
# Server-sent event framing
# ─────────────────────────────────────────────

@dataclass
class ServerSentEvent:
    data: str
    event: str = "message"
    id: Optional[str] = None


class SSEDecoder:
    """Line-oriented decoder for the text/event-stream format."""

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event: Optional[str] = None
        self._id: Optional[str] = None

    def feed(self, line: str) -> Optional[ServerSentEvent]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        data, event, event_id = self._data, self._event, self._id
        self._data, self._event = [], None
        if not data:
            return None
        return ServerSentEvent(data="\n".join(data), event=event or "message", id=event_id)


# ─────────────────────────────────────────────
# Stream manager
# ─────────────────────────────────────────────

def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class StreamManager:
    def __init__(
        self,
        client: httpx.AsyncClient,
        listener: StreamListener,
        *,
        stream_path: str = STREAM_PATH,
        hil_node: str = HIL_NODE,
        max_restarts: int = MAX_STREAM_RESTARTS,
    ) -> None:
        self._client = client
        self._listener = listener
        self._stream_path = stream_path
        self._hil_node = hil_node
        self._max_restarts = max_restarts
        self._epoch = 0
        self._handle: Optional[StreamHandle] = None
        self._thread_id: Optional[str] = None
        self._restarts = 0
        self._last_status: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def handle(self) -> Optional[StreamHandle]:
        return self._handle

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def thread_id(self) -> Optional[str]:
        return self._thread_id

    @property
    def restarts(self) -> int:
        return self._restarts

    def open(self, thread_id: str) -> StreamHandle:
        """Open a connection for `thread_id`, tearing down the current one first."""
        if self._handle is not None:
            self._close(self._handle, CLOSE_SUPERSEDED)
        if thread_id != self._thread_id:
            self._thread_id = thread_id
            self._restarts = 0
            self._last_status = None
        return self._open()

    def restart(self) -> Optional[StreamHandle]:
        """Replace the current connection with a fresh one for the same thread."""
        if self._thread_id is None:
            return None
        if self._max_restarts and self._restarts >= self._max_restarts:
            logger.error(
                f"Not restarting stream for thread {self._thread_id}: "
                f"{self._restarts} restarts already made (limit {self._max_restarts})"
            )
            self._listener.on_connection_error(self._handle, RESTART_LIMIT_REACHED)
            return None
        self._restarts += 1
        logger.info(f"Restarting stream for thread {self._thread_id} (restart {self._restarts})")
        if self._handle is not None:
            self._close(self._handle, CLOSE_SUPERSEDED)
        return self._open()

    def close(self, handle: Optional[StreamHandle] = None) -> None:
        handle = handle or self._handle
        if handle is not None:
            self._close(handle, CLOSE_CLIENT)

    def reset(self) -> None:
        """Close the current connection and forget the active thread."""
        self.close()
        self._thread_id = None
        self._restarts = 0
        self._last_status = None

    async def aclose(self) -> None:
        self.reset()
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ─────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────

    def _open(self) -> StreamHandle:
        self._epoch += 1
        handle = StreamHandle(thread_id=self._thread_id, epoch=self._epoch)
        self._handle = handle
        logger.info(f"Opening stream for thread {handle.thread_id} (epoch {handle.epoch})")
        self._listener.on_stream_opening(handle)
        task = asyncio.get_running_loop().create_task(
            self._run(handle), name=f"stream-{handle.thread_id}-{handle.epoch}"
        )
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    def _is_current(self, handle: StreamHandle) -> bool:
        return handle is self._handle and not handle.closed

    def _close(self, handle: StreamHandle, reason: str) -> None:
        if handle.closed:
            return
        handle.closed = True
        handle.close_reason = reason
        if self._handle is handle:
            self._handle = None
        task = handle.task
        if task is not None and task is not _current_task() and not task.done():
            task.cancel()
        logger.info(f"Stream closed for thread {handle.thread_id} (epoch {handle.epoch}): {reason}")
        self._listener.on_stream_closed(handle, reason)

    def _fail(self, handle: StreamHandle, message: str) -> None:
        if self._last_status == "complete":
            # Expected tail-end disconnect once the session has finished.
            self._close(handle, CLOSE_DISCONNECTED)
            return
        logger.warning(f"Stream error for thread {handle.thread_id} (epoch {handle.epoch}): {message}")
        self._close(handle, CLOSE_CONNECTION_ERROR)
        self._listener.on_connection_error(handle, message)

    async def _run(self, handle: StreamHandle) -> None:
        connected = False
        try:
            async with self._client.stream(
                "GET", self._stream_path, params={"thread_id": handle.thread_id}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    if self._is_current(handle):
                        self._fail(handle, f"{CONNECTION_FAILED} (HTTP {response.status_code})")
                    return
                connected = True
                logger.debug(f"Stream connected for thread {handle.thread_id} (epoch {handle.epoch})")
                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    event = decoder.feed(line)
                    if event is None:
                        continue
                    if not self._is_current(handle):
                        logger.debug(f"Discarding event from stale stream (epoch {handle.epoch})")
                        return
                    self._dispatch(handle, event)
                    if handle.closed:
                        return
        except httpx.HTTPError as e:
            if self._is_current(handle):
                logger.debug(f"Stream transport error: {type(e).__name__}: {e}")
                self._fail(handle, CONNECTION_LOST if connected else CONNECTION_FAILED)
            return
        if self._is_current(handle):
            # The server ended the stream while the close policy still expected events.
            self._fail(handle, CONNECTION_LOST)

    def _dispatch(self, handle: StreamHandle, event: ServerSentEvent) -> None:
        if event.event != "message":
            logger.debug(f"Ignoring '{event.event}' event on stream for thread {handle.thread_id}")
            return
        try:
            snapshot = StatusSnapshot.model_validate_json(event.data)
        except ValidationError as e:
            logger.warning(f"Malformed stream payload for thread {handle.thread_id}: {e.error_count()} error(s)")
            self._listener.on_parse_error(handle, MALFORMED_PAYLOAD)
            return
        if snapshot.thread_id != handle.thread_id:
            logger.warning(f"Stream for thread {handle.thread_id} sent a snapshot for {snapshot.thread_id}")
            self._listener.on_parse_error(handle, MALFORMED_PAYLOAD)
            return

        self._last_status = snapshot.status
        self._listener.on_snapshot(handle, snapshot)

        reason = close_reason_for(snapshot, self._hil_node)
        if reason is not None and self._is_current(handle):
            self._close(handle, reason)
