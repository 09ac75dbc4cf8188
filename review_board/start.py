"""
Starting a new drafting session.

Everything belonging to the previous session (thread, stream connection,
snapshot, last resume result) is discarded before the start request goes out.
"""
import logging
from typing import Optional

from review_board.api import RequestError, WorkflowClient
from review_board.models import StartRequest, StatusSnapshot
from review_board.resume import ResumeResultStore
from review_board.session import ErrorKind, SessionController
from review_board.stream import StreamManager

logger = logging.getLogger(__name__)


class StartInProgressError(Exception):
    """Raised when a session start is requested while another is pending."""

    def __init__(self) -> None:
        super().__init__("A session start request is already in flight")


class StartCoordinator:
    def __init__(
        self,
        api: WorkflowClient,
        controller: SessionController,
        stream: StreamManager,
        store: ResumeResultStore,
    ) -> None:
        self._api = api
        self._controller = controller
        self._stream = stream
        self._store = store
        self._starting = False

    @property
    def starting(self) -> bool:
        return self._starting

    async def start(self, prompt: str, model_choice: Optional[str] = None) -> StatusSnapshot:
        if self._starting:
            raise StartInProgressError()
        self._starting = True
        try:
            self._stream.reset()
            self._controller.reset()
            self._store.clear()

            try:
                snapshot = await self._api.start_session(StartRequest(user_prompt=prompt, model_choice=model_choice))
            except RequestError as e:
                logger.error(f"Failed to start session: {e}")
                self._controller.record_error(ErrorKind.REQUEST, str(e))
                raise

            if self._controller.disposed:
                logger.debug(f"Session {snapshot.thread_id} started after teardown; not adopting it")
                return snapshot

            logger.info(f"Session started: {snapshot.thread_id}")
            self._stream.open(snapshot.thread_id)
            self._controller.set_status(snapshot)
            return snapshot
        finally:
            self._starting = False
