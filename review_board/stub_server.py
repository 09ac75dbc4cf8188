"""
Development stub of the CBT drafting workflow backend.

Starts a FastAPI HTTP server that:
  1. Accepts new sessions at POST /start_session
  2. Accepts human decisions at POST /resume_session
  3. Pushes status snapshots over SSE at GET /stream_session_info

Sessions live in memory and walk a fixed script: Drafting, Critic, halt for
human review; Approve runs Finalize to completion, Reject drafts again with the
revision instructions.
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from review_board.config import (
    CLIENT_VERSION,
    DRAFTING_NODE,
    FINALIZE_NODE,
    INTERRUPT_MARKER,
    REVIEW_NODE,
    STUB_HOST,
    STUB_PORT,
    STUB_STEP_DELAY,
)
from review_board.models import ResumeRequest, StartRequest

logger = logging.getLogger(__name__)

STREAM_POLL_INTERVAL = 0.1


@dataclass
class StubSession:
    thread_id: str
    prompt: str
    model_choice: str
    status: str = "initializing"
    current_draft: Optional[str] = None
    final_cbt_plan: Optional[str] = None
    safety_metric: Optional[float] = None
    empathy_metric: Optional[float] = None
    active_node: Optional[str] = None
    active_node_label: Optional[str] = None
    thread_alive: bool = True
    error: Optional[str] = None
    revision: int = 0
    version: int = 0

    def update(self, **fields) -> None:
        for name, value in fields.items():
            setattr(self, name, value)
        self.version += 1

    def snapshot(self) -> dict:
        return {
            "thread_id": self.thread_id,
            "is_complete": self.status == "complete",
            "status": self.status,
            "current_draft": self.current_draft,
            "final_cbt_plan": self.final_cbt_plan,
            "safety_metric": self.safety_metric,
            "empathy_metric": self.empathy_metric,
            "model_choice": self.model_choice,
            "active_node": self.active_node,
            "active_node_label": self.active_node_label,
            "thread_alive": self.thread_alive,
            "error": self.error,
        }


_sessions: dict[str, StubSession] = {}
_tasks: set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Stub workflow backend running at http://{STUB_HOST}:{STUB_PORT}")
    yield
    for task in list(_tasks):
        task.cancel()
    if _tasks:
        await asyncio.gather(*_tasks, return_exceptions=True)


app = FastAPI(
    title="CBT Review Board stub backend",
    description="In-memory stand-in for the CBT drafting workflow, for local development.",
    version=CLIENT_VERSION,
    lifespan=lifespan,
)
app.state.step_delay = STUB_STEP_DELAY


def _spawn(coro) -> None:
    task = asyncio.get_running_loop().create_task(coro)
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)


def _get_session(thread_id: str) -> StubSession:
    session = _sessions.get(thread_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown thread_id '{thread_id}'.")
    return session


# ─────────────────────────────────────────────
# Scripted workflow
# ─────────────────────────────────────────────

async def _run_drafting(session: StubSession, instructions: Optional[str] = None) -> None:
    delay = app.state.step_delay
    session.revision += 1
    session.update(
        status="revising" if instructions else "running",
        active_node=DRAFTING_NODE,
        active_node_label="Drafting Agent",
        error=None,
    )
    await asyncio.sleep(delay)

    draft = f"# CBT Exercise (draft {session.revision})\n\nPrompt: {session.prompt}\n"
    if instructions:
        draft += f"\nRevised per reviewer: {instructions}\n"
    session.update(current_draft=draft, active_node=REVIEW_NODE, active_node_label="Clinical Critic")
    await asyncio.sleep(delay)

    session.update(safety_metric=0.92, empathy_metric=min(1.0, 0.7 + 0.1 * session.revision))
    await asyncio.sleep(delay)

    session.update(status="halted", active_node_label="Human Review", error=INTERRUPT_MARKER)
    logger.info(f"Thread {session.thread_id} awaiting human review (draft {session.revision})")


async def _run_finalize(session: StubSession, approved_content: str) -> None:
    session.update(status="running", active_node=FINALIZE_NODE, active_node_label="Finalizer", error=None)
    await asyncio.sleep(app.state.step_delay)
    session.update(
        status="complete",
        final_cbt_plan=approved_content,
        active_node=None,
        active_node_label=None,
        thread_alive=False,
    )
    logger.info(f"Thread {session.thread_id} complete")


# ─────────────────────────────────────────────
# REST API
# ─────────────────────────────────────────────

@app.post("/start_session")
async def start_session(body: StartRequest):
    if not body.user_prompt.strip():
        raise HTTPException(status_code=422, detail="user_prompt must not be empty.")
    session = StubSession(
        thread_id=str(uuid.uuid4()),
        prompt=body.user_prompt.strip(),
        model_choice=body.model_choice or "openai",
    )
    _sessions[session.thread_id] = session
    _spawn(_run_drafting(session))
    logger.info(f"Session started: {session.thread_id}")
    return session.snapshot()


@app.post("/resume_session")
async def resume_session(body: ResumeRequest):
    session = _get_session(body.thread_id)
    if session.status != "halted":
        raise HTTPException(status_code=409, detail="Session is not awaiting review.")
    if body.human_decision == "Approve":
        session.update(status="running", active_node=FINALIZE_NODE, error=None)
        _spawn(_run_finalize(session, body.suggested_content))
    else:
        session.update(status="revising", active_node=DRAFTING_NODE, error=None)
        _spawn(_run_drafting(session, instructions=body.suggested_content))
    return session.snapshot()


@app.get("/session_info")
async def session_info(thread_id: str):
    return _get_session(thread_id).snapshot()


@app.get("/stream_session_info")
async def stream_session_info(thread_id: str):
    """SSE stream of full snapshots; ends after the terminal snapshot has been sent.

    Client disconnects cancel the generator through StreamingResponse itself.
    """
    session = _get_session(thread_id)

    async def event_generator():
        last_version = -1
        while True:
            if session.version != last_version:
                last_version = session.version
                yield f"data: {json.dumps(session.snapshot())}\n\n"
                if session.status == "complete" and not session.thread_alive:
                    break
            await asyncio.sleep(STREAM_POLL_INTERVAL)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "cbt-review-board-stub", "sessions": len(_sessions)}


if __name__ == "__main__":
    uvicorn.run("review_board.stub_server:app", host=STUB_HOST, port=STUB_PORT, reload=True)
