"""
Shared fixtures for the review board tests.

FakeWorkflowServer stands in for the workflow backend behind an
httpx.MockTransport. Every stream request gets its own StreamConnection whose
body is fed event by event from the test, so tests control exactly what
arrives on which connection and when.
"""
import asyncio
import json
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio

from review_board.board import ReviewBoard

BASE_URL = "http://backend.test"


def snapshot_payload(thread_id: str = "T1", **fields: Any) -> dict:
    payload = {"thread_id": thread_id, "status": "running"}
    payload.update(fields)
    return payload


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(0.01)


class StreamConnection:
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        self._queue: asyncio.Queue = asyncio.Queue()

    async def body(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def send(self, **fields: Any) -> None:
        payload = snapshot_payload(self.thread_id, **fields)
        self.send_raw(f"data: {json.dumps(payload)}\n\n")

    def send_raw(self, text: str) -> None:
        self._queue.put_nowait(text.encode("utf-8"))

    def finish(self) -> None:
        """Server ends the response normally."""
        self._queue.put_nowait(None)

    def fail(self, exc: Optional[Exception] = None) -> None:
        """Transport breaks mid-stream."""
        self._queue.put_nowait(exc or httpx.ReadError("connection reset by peer"))


class FakeWorkflowServer:
    def __init__(self) -> None:
        self.connections: list[StreamConnection] = []
        self.requests: list[tuple[str, dict]] = []
        self.stream_status = 200
        self.start_response: tuple[int, Any] = (200, snapshot_payload("T1", status="initializing", thread_alive=True))
        self.resume_response: tuple[int, Any] = (200, snapshot_payload("T1", status="running", thread_alive=True))
        self.start_gate: Optional[asyncio.Event] = None
        self.resume_gate: Optional[asyncio.Event] = None

    def posts(self, path: str) -> list[dict]:
        return [body for p, body in self.requests if p == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/stream_session_info":
            conn = StreamConnection(request.url.params["thread_id"])
            self.connections.append(conn)
            if self.stream_status != 200:
                return httpx.Response(self.stream_status)
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=conn.body())

        self.requests.append((path, json.loads(request.content)))
        if path == "/start_session":
            if self.start_gate is not None:
                await self.start_gate.wait()
            status, payload = self.start_response
        elif path == "/resume_session":
            if self.resume_gate is not None:
                await self.resume_gate.wait()
            status, payload = self.resume_response
        else:
            return httpx.Response(404, json={"detail": "Not Found"})
        if isinstance(payload, Exception):
            raise payload
        return httpx.Response(status, json=payload)


@pytest.fixture
def fake_server() -> FakeWorkflowServer:
    return FakeWorkflowServer()


@pytest_asyncio.fixture
async def http_client(fake_server: FakeWorkflowServer):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_server.handler), base_url=BASE_URL) as client:
        yield client


@pytest_asyncio.fixture
async def board(http_client: httpx.AsyncClient):
    review_board = ReviewBoard(client=http_client, max_restarts=5)
    yield review_board
    await review_board.aclose()
