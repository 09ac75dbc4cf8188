"""
Session controller: the single held view of the active drafting session.

Snapshots from the stream and locally synthesized snapshots (optimistic
updates) are both written here, and the last write wins. Transport and parse
problems are recorded as observable error state instead of being raised.
"""
import logging
from enum import Enum
from typing import Callable, Optional, Union

from review_board.config import HIL_NODE, REVIEW_NODE
from review_board.models import StatusSnapshot
from review_board.stream import StreamHandle

logger = logging.getLogger(__name__)

StatusUpdate = Union[
    Optional[StatusSnapshot],
    Callable[[Optional[StatusSnapshot]], Optional[StatusSnapshot]],
]


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    PARSE = "parse"
    REQUEST = "request"


class SessionView(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETE = "complete"
    RECOVERED_COMPLETE = "recovered_complete"   # final artifact present but no terminal status seen
    UNEXPECTED_HALT = "unexpected_halt"

    @property
    def is_complete(self) -> bool:
        return self in (SessionView.COMPLETE, SessionView.RECOVERED_COMPLETE)


def classify(
    snapshot: Optional[StatusSnapshot],
    review_node: str = REVIEW_NODE,
    hil_node: str = HIL_NODE,
) -> SessionView:
    """Decide what the session looks like to the user.

    A dead thread that already produced the final artifact counts as complete
    whatever its status says: the disconnect can land after the artifact was
    written but before the terminal status event was delivered.
    """
    if snapshot is None:
        return SessionView.IDLE
    if snapshot.status == "complete" and snapshot.final_cbt_plan:
        return SessionView.COMPLETE
    if not snapshot.thread_alive and snapshot.final_cbt_plan:
        return SessionView.RECOVERED_COMPLETE
    if snapshot.status == "halted" and snapshot.active_node == review_node and snapshot.current_draft:
        return SessionView.AWAITING_REVIEW
    if snapshot.status == "halted" and snapshot.active_node != hil_node:
        return SessionView.UNEXPECTED_HALT
    return SessionView.IN_PROGRESS


def describe_status(snapshot: StatusSnapshot) -> str:
    labels = {
        "complete": "COMPLETE (Finalized)",
        "halted": "HALTED (Awaiting Review)",
        "running": "RUNNING",
        "revising": "REVISING...",
    }
    label = labels.get(snapshot.status, "Initializing...")
    if snapshot.thread_alive and snapshot.status != "complete":
        label = f"{label} (Active)"
    return label


class SessionController:
    """Holds the current snapshot, loading flag and last error for one client."""

    def __init__(self, review_node: str = REVIEW_NODE, hil_node: str = HIL_NODE) -> None:
        self._review_node = review_node
        self._hil_node = hil_node
        self._snapshot: Optional[StatusSnapshot] = None
        self._loading = False
        self._error: Optional[str] = None
        self._error_kind: Optional[ErrorKind] = None
        self._closed_reason: Optional[str] = None
        self._disposed = False
        self._subscribers: list[Callable[["SessionController"], None]] = []

    # ─────────────────────────────────────────────
    # Observable state
    # ─────────────────────────────────────────────

    @property
    def snapshot(self) -> Optional[StatusSnapshot]:
        return self._snapshot

    @property
    def thread_id(self) -> Optional[str]:
        return self._snapshot.thread_id if self._snapshot else None

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self._error_kind

    @property
    def closed_reason(self) -> Optional[str]:
        return self._closed_reason

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def view(self) -> SessionView:
        return classify(self._snapshot, self._review_node, self._hil_node)

    def subscribe(self, callback: Callable[["SessionController"], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ─────────────────────────────────────────────
    # Imperative writes
    # ─────────────────────────────────────────────

    def set_status(self, value: StatusUpdate) -> None:
        """Overwrite the held snapshot; accepts a snapshot, None, or a function of the previous one."""
        if self._disposed:
            logger.debug("Ignoring status write on a disposed session controller")
            return
        if callable(value):
            value = value(self._snapshot)
        self._snapshot = value
        self._notify()

    def record_error(self, kind: ErrorKind, message: str) -> None:
        if self._disposed:
            return
        self._error = message
        self._error_kind = kind
        self._notify()

    def reset(self) -> None:
        if self._disposed:
            return
        self._snapshot = None
        self._loading = False
        self._error = None
        self._error_kind = None
        self._closed_reason = None
        self._notify()

    def dispose(self) -> None:
        self._disposed = True
        self._subscribers.clear()

    # ─────────────────────────────────────────────
    # Stream listener
    # ─────────────────────────────────────────────

    def on_stream_opening(self, handle: StreamHandle) -> None:
        if self._disposed:
            return
        self._error = None
        self._error_kind = None
        self._closed_reason = None
        self._loading = True
        self._notify()

    def on_snapshot(self, handle: StreamHandle, snapshot: StatusSnapshot) -> None:
        if self._disposed:
            return
        self._loading = False
        if self._error_kind is ErrorKind.PARSE:
            self._error = None
            self._error_kind = None
        self._snapshot = snapshot
        self._notify()

    def on_parse_error(self, handle: StreamHandle, message: str) -> None:
        if self._disposed:
            return
        self._loading = False
        self._error = message
        self._error_kind = ErrorKind.PARSE
        self._notify()

    def on_connection_error(self, handle: Optional[StreamHandle], message: str) -> None:
        if self._disposed:
            return
        self._loading = False
        self._error = message
        self._error_kind = ErrorKind.CONNECTION
        self._notify()

    def on_stream_closed(self, handle: StreamHandle, reason: str) -> None:
        if self._disposed:
            return
        self._closed_reason = reason
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self)
