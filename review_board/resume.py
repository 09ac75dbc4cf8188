"""
Human-in-the-loop resume coordination.

    idle -> confirming -> submitting -> reconciled | rolled_back

Confirming writes an optimistic snapshot through the session controller,
then submits the decision. Success publishes the server's answer to the
shared ResumeResultStore (and restarts the stream after a Reject); failure
puts the reviewed draft back as halted so the human can try again. A result
that arrives after the user moved on to another session is ignored.
"""
import logging
from enum import Enum
from typing import Callable, Optional

from review_board.api import RequestError, WorkflowClient
from review_board.config import DRAFTING_NODE, FINALIZE_NODE
from review_board.models import Decision, ResumeDecision, StatusSnapshot
from review_board.session import ErrorKind, SessionController
from review_board.stream import StreamManager

logger = logging.getLogger(__name__)

DECISIONS = ("Approve", "Reject")
INTERRUPTED = "the request was interrupted."


class ResumePhase(str, Enum):
    IDLE = "idle"
    CONFIRMING = "confirming"
    SUBMITTING = "submitting"
    RECONCILED = "reconciled"
    ROLLED_BACK = "rolled_back"


class ResumeInProgressError(Exception):
    """Raised when a decision is made while another one is being submitted."""

    def __init__(self) -> None:
        super().__init__("A resume request is already in flight")


class InvalidResumeTransition(Exception):
    """Raised when an action is not valid in the coordinator's current phase."""

    def __init__(self, phase: ResumePhase, action: str) -> None:
        self.phase = phase
        self.action = action
        super().__init__(f"Cannot {action} (phase: {phase.value})")


class ResumeResultStore:
    """Shared slot holding the last successful resume response."""

    def __init__(self) -> None:
        self._value: Optional[StatusSnapshot] = None
        self._subscribers: list[Callable[[Optional[StatusSnapshot]], None]] = []

    @property
    def value(self) -> Optional[StatusSnapshot]:
        return self._value

    def set(self, value: Optional[StatusSnapshot]) -> None:
        self._value = value
        for callback in list(self._subscribers):
            callback(value)

    def clear(self) -> None:
        self.set(None)

    def subscribe(self, callback: Callable[[Optional[StatusSnapshot]], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe


class ResumeCoordinator:
    def __init__(
        self,
        api: WorkflowClient,
        controller: SessionController,
        stream: StreamManager,
        store: ResumeResultStore,
        *,
        finalize_node: str = FINALIZE_NODE,
        drafting_node: str = DRAFTING_NODE,
    ) -> None:
        self._api = api
        self._controller = controller
        self._stream = stream
        self._store = store
        self._finalize_node = finalize_node
        self._drafting_node = drafting_node
        self._phase = ResumePhase.IDLE
        self._decision: Optional[Decision] = None
        self._submit_error: Optional[str] = None
        self._submissions = 0
        self._generation = 0

    @property
    def phase(self) -> ResumePhase:
        return self._phase

    @property
    def pending_decision(self) -> Optional[Decision]:
        return self._decision

    @property
    def submit_error(self) -> Optional[str]:
        return self._submit_error

    @property
    def submissions(self) -> int:
        return self._submissions

    @property
    def controls_enabled(self) -> bool:
        return self._phase is not ResumePhase.SUBMITTING

    def select(self, decision: Decision) -> None:
        if decision not in DECISIONS:
            raise ValueError(f"Unknown decision '{decision}'. Must be one of {DECISIONS}")
        if self._phase is ResumePhase.SUBMITTING:
            raise ResumeInProgressError()
        self._decision = decision
        self._submit_error = None
        self._phase = ResumePhase.CONFIRMING

    def cancel(self) -> None:
        if self._phase is not ResumePhase.CONFIRMING:
            raise InvalidResumeTransition(self._phase, "cancel")
        self._decision = None
        self._phase = ResumePhase.IDLE

    def reset(self) -> None:
        if self._phase is ResumePhase.SUBMITTING:
            raise ResumeInProgressError()
        self._decision = None
        self._submit_error = None
        self._phase = ResumePhase.IDLE

    def discard(self) -> None:
        """Drop any pending or in-flight decision when the user moves on to a new session.

        A submission still in flight resolves as a no-op.
        """
        if self._phase is ResumePhase.SUBMITTING:
            logger.info("Discarding in-flight resume request")
        self._generation += 1
        self._decision = None
        self._submit_error = None
        self._phase = ResumePhase.IDLE

    async def confirm(self, content: str) -> Optional[StatusSnapshot]:
        """Submit the selected decision with `content` (the accepted draft or revision instructions).

        Returns the server's response, or None when the submission failed and
        was rolled back (see `submit_error`) or the session it was made for is
        no longer the active one.
        """
        if self._phase is ResumePhase.SUBMITTING:
            raise ResumeInProgressError()
        if self._phase is not ResumePhase.CONFIRMING:
            raise InvalidResumeTransition(self._phase, "confirm")
        reviewed = self._controller.snapshot
        if reviewed is None:
            raise InvalidResumeTransition(self._phase, "confirm without an active session")

        decision = ResumeDecision(thread_id=reviewed.thread_id, content=content, decision=self._decision)
        generation = self._generation
        self._phase = ResumePhase.SUBMITTING
        self._submissions += 1
        self._controller.set_status(lambda prev: self._optimistic(prev, decision.decision))
        logger.info(f"Submitting {decision.decision} for thread {decision.thread_id}")

        try:
            result = await self._api.resume_session(decision)
        except RequestError as e:
            if self._superseded(decision.thread_id, generation):
                return None
            return self._roll_back(reviewed, str(e))
        except BaseException:
            if not self._superseded(decision.thread_id, generation):
                self._roll_back(reviewed, INTERRUPTED)
            raise

        if self._superseded(decision.thread_id, generation):
            return None

        self._store.set(result)
        self._phase = ResumePhase.RECONCILED
        if decision.decision == "Reject":
            # The connection may already be closed by the halt that preceded review.
            self._stream.restart()
        return result

    def _superseded(self, thread_id: str, generation: int) -> bool:
        """True when the session a submission was made for is no longer the active one."""
        if generation != self._generation:
            logger.debug(f"Resume for thread {thread_id} was discarded; ignoring its result")
            return True
        if (
            self._controller.disposed
            or self._controller.thread_id != thread_id
            or self._stream.thread_id != thread_id
        ):
            logger.debug(f"Resume for thread {thread_id} finished after the session ended; ignoring")
            self._decision = None
            self._phase = ResumePhase.IDLE
            return True
        return False

    def _optimistic(self, prev: Optional[StatusSnapshot], decision: Decision) -> Optional[StatusSnapshot]:
        if prev is None:
            return None
        if decision == "Approve":
            return prev.with_changes(status="running", active_node=self._finalize_node, thread_alive=True)
        return prev.with_changes(status="revising", active_node=self._drafting_node, thread_alive=True)

    def _restore(self, prev: Optional[StatusSnapshot], reviewed: StatusSnapshot) -> Optional[StatusSnapshot]:
        # Keeps whatever the stream delivered meanwhile, a final artifact included.
        if prev is None:
            return None
        return prev.with_changes(
            status="halted",
            thread_alive=False,
            current_draft=reviewed.current_draft,
            active_node=reviewed.active_node,
            active_node_label=reviewed.active_node_label,
        )

    def _roll_back(self, reviewed: StatusSnapshot, detail: str) -> None:
        self._phase = ResumePhase.ROLLED_BACK
        self._submit_error = f"Failed to resume session: {detail}"
        logger.error(f"Resume failed for thread {reviewed.thread_id}: {detail}")
        self._controller.set_status(lambda prev: self._restore(prev, reviewed))
        self._controller.record_error(ErrorKind.REQUEST, self._submit_error)
        return None
