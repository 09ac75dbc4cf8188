"""
HTTP client for the workflow backend's start and resume endpoints.

Both calls raise RequestError on failure. The message is the server-provided
`detail` when present, otherwise a generic message that tells apart "the server
answered with an error" from "the server could not be reached".
"""
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from review_board.models import ResumeDecision, StartRequest, StatusSnapshot

logger = logging.getLogger(__name__)

START_PATH = "/start_session"
RESUME_PATH = "/resume_session"


class RequestError(Exception):
    """Raised when a start or resume request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


def _extract_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    detail = body.get("detail")
    if not detail:
        return None
    if isinstance(detail, str):
        return detail
    # FastAPI validation errors: [{"loc": [...], "msg": "...", ...}, ...]
    if isinstance(detail, list):
        msgs = [item.get("msg") for item in detail if isinstance(item, dict) and item.get("msg")]
        if msgs:
            return "; ".join(msgs)
    return str(detail)


class WorkflowClient:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def start_session(self, request: StartRequest) -> StatusSnapshot:
        return await self._post(
            START_PATH,
            request.model_dump(exclude_none=True),
            failure="Failed to start session.",
            network_failure="Network error during session start.",
        )

    async def resume_session(self, decision: ResumeDecision) -> StatusSnapshot:
        return await self._post(
            RESUME_PATH,
            decision.to_request().model_dump(),
            failure="Failed to resume session.",
            network_failure="Network error during session resume.",
        )

    async def _post(self, path: str, payload: dict[str, Any], failure: str, network_failure: str) -> StatusSnapshot:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"POST {path} failed: {type(e).__name__}: {e}")
            raise RequestError(network_failure) from e

        if response.is_error:
            detail = _extract_detail(response)
            logger.error(f"POST {path} returned {response.status_code}: {detail or response.text[:200]}")
            raise RequestError(detail or failure, status_code=response.status_code, detail=detail)

        try:
            return StatusSnapshot.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"POST {path} returned a malformed session status: {e}")
            raise RequestError(f"{failure} Malformed response from server.", status_code=response.status_code) from e
