"""
ReviewBoard wires one client instance together: HTTP client, session
controller, stream manager, shared resume result store and both coordinators.
"""
import logging
from typing import Optional

import httpx

from review_board import config
from review_board.api import WorkflowClient
from review_board.models import StatusSnapshot
from review_board.resume import ResumeCoordinator, ResumeResultStore
from review_board.session import SessionController
from review_board.start import StartCoordinator
from review_board.stream import StreamManager

logger = logging.getLogger(__name__)


class ReviewBoard:
    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        *,
        client: Optional[httpx.AsyncClient] = None,
        store: Optional[ResumeResultStore] = None,
        max_restarts: int = config.MAX_STREAM_RESTARTS,
    ) -> None:
        self._owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(base_url=base_url, timeout=config.REQUEST_TIMEOUT or None)
        self.client = client
        self.api = WorkflowClient(client)
        self.store = store if store is not None else ResumeResultStore()
        self.controller = SessionController(review_node=config.REVIEW_NODE, hil_node=config.HIL_NODE)
        self.stream = StreamManager(
            client,
            self.controller,
            stream_path=config.STREAM_PATH,
            hil_node=config.HIL_NODE,
            max_restarts=max_restarts,
        )
        self.resume = ResumeCoordinator(
            self.api,
            self.controller,
            self.stream,
            self.store,
            finalize_node=config.FINALIZE_NODE,
            drafting_node=config.DRAFTING_NODE,
        )
        self.starter = StartCoordinator(self.api, self.controller, self.stream, self.store)

    async def start(self, prompt: str, model_choice: Optional[str] = None) -> StatusSnapshot:
        self.resume.discard()
        return await self.starter.start(prompt, model_choice)

    async def aclose(self) -> None:
        self.controller.dispose()
        await self.stream.aclose()
        if self._owns_client:
            await self.client.aclose()
        logger.debug("Review board closed")

    async def __aenter__(self) -> "ReviewBoard":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
