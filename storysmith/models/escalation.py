"""Escalation and decision models.

An ``Escalation`` is a question handed to a human; it is persisted as one
JSON file per id and never deleted. A ``Decision`` is the decision engine's
recommendation and only lives inside the escalation context and the
review-gate checkpoint.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from storysmith.enums import DecisionSource, EscalationStatus


def _now() -> datetime:
    return datetime.now(UTC)


class Escalation(BaseModel):
    """A question waiting for (or answered by) a human."""

    id: str
    workflow_id: str = Field(..., min_length=1)
    step: str
    question: str = Field(..., min_length=1)
    ai_reasoning: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    context: dict[str, Any] = Field(default_factory=dict)
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    response: str | None = None
    resolved_at: datetime | None = None
    resolution_time_ms: int | None = None

    @field_validator("workflow_id", "question")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @property
    def is_resolved(self) -> bool:
        return self.status == EscalationStatus.RESOLVED


class EscalationMetrics(BaseModel):
    """Aggregate numbers over the whole queue."""

    total: int = 0
    pending: int = 0
    resolved: int = 0
    average_resolution_time_ms: float = 0.0
    by_workflow: dict[str, int] = Field(default_factory=dict)


class Decision(BaseModel):
    """A recommendation produced by the decision engine."""

    question: str
    decision: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    source: DecisionSource
    context: dict[str, Any] = Field(default_factory=dict)
    alternatives: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)
