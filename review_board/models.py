"""
Data models for the CBT Review Board client.

Wire shapes (what the workflow backend sends and accepts) are pydantic models so
malformed payloads are rejected at the boundary. Client-side objects are plain
dataclasses.
"""
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from review_board.config import INTERRUPT_MARKER

SessionStatusLiteral = Literal["initializing", "running", "revising", "halted", "complete"]
Decision = Literal["Approve", "Reject"]

METRIC_SUFFIX = "_metric"


class StatusSnapshot(BaseModel):
    """
    Full state of a drafting session as last observed.

    A snapshot always replaces the previous one wholesale; nothing merges two
    snapshots field by field. Extra `*_metric` fields sent by the server are
    kept and validated like the known ones.
    """
    model_config = ConfigDict(extra="allow", frozen=True)

    thread_id: str
    status: SessionStatusLiteral
    is_complete: bool = False
    current_draft: Optional[str] = None
    final_cbt_plan: Optional[str] = None
    safety_metric: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    empathy_metric: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model_choice: Optional[str] = None
    active_node: Optional[str] = None
    active_node_label: Optional[str] = None
    # Client-side fields
    thread_alive: bool = False
    error: Optional[str] = None

    @field_validator("thread_alive", mode="before")
    @classmethod
    def _missing_liveness_is_dead(cls, value: Any) -> Any:
        return False if value is None else value

    @model_validator(mode="after")
    def _check_extra_metrics(self) -> "StatusSnapshot":
        for name, value in (self.model_extra or {}).items():
            if not name.endswith(METRIC_SUFFIX) or value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, got {value!r}")
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        return self

    @property
    def metrics(self) -> dict[str, Optional[float]]:
        values = {"safety_metric": self.safety_metric, "empathy_metric": self.empathy_metric}
        for name, value in (self.model_extra or {}).items():
            if name.endswith(METRIC_SUFFIX):
                values[name] = value
        return values

    @property
    def graph_error(self) -> Optional[str]:
        """The backend error, ignoring the marker it sends when pausing for review."""
        if not self.error or self.error == INTERRUPT_MARKER:
            return None
        return self.error

    def with_changes(self, **fields: Any) -> "StatusSnapshot":
        """Locally synthesized copy; only used for optimistic updates and rollbacks."""
        return self.model_copy(update=fields)


class StartRequest(BaseModel):
    user_prompt: str
    model_choice: Optional[str] = None


class ResumeRequest(BaseModel):
    thread_id: str
    suggested_content: str
    human_decision: Decision


@dataclass(frozen=True)
class ResumeDecision:
    thread_id: str
    content: str         # accepted draft (Approve) or revision instructions (Reject)
    decision: Decision

    def to_request(self) -> ResumeRequest:
        return ResumeRequest(
            thread_id=self.thread_id,
            suggested_content=self.content,
            human_decision=self.decision,
        )
