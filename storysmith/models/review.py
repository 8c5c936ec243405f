"""Review report models.

The implementer's self-review and the reviewer's independent review are
parsed from model output, so they are Pydantic models: validation rejects
out-of-range confidences and unknown decisions before the review gate ever
sees them.

Example:
    >>> report = SelfReviewReport(confidence=0.92, critical_issues=[], summary="Looks good")
    >>> report.has_critical_issues
    False
"""

from typing import Literal

from pydantic import BaseModel, Field


class ReviewFinding(BaseModel):
    """One issue raised by a reviewer."""

    severity: Literal["critical", "major", "minor", "info"] = "minor"
    description: str
    file_path: str | None = None
    line_number: int | None = None


class SelfReviewReport(BaseModel):
    """The implementing agent's assessment of its own work."""

    confidence: float = Field(..., ge=0.0, le=1.0, description="Self-assessed confidence")
    critical_issues: list[str] = Field(default_factory=list)
    fixable_issues: list[str] = Field(default_factory=list)
    summary: str = ""

    @property
    def has_critical_issues(self) -> bool:
        return bool(self.critical_issues)


class IndependentReviewReport(BaseModel):
    """A second agent's verdict on the change.

    ``degraded`` is set when the reviewer was unavailable and the report was
    synthesised from the self-review instead.
    """

    decision: Literal["pass", "fail"]
    confidence: float = Field(..., ge=0.0, le=1.0)
    overall_score: float = Field(default=0.0, ge=0.0, le=10.0)
    findings: list[ReviewFinding] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    summary: str = ""
    degraded: bool = False

    @classmethod
    def from_self_review(cls, self_review: SelfReviewReport) -> "IndependentReviewReport":
        """Build a stand-in report when no independent reviewer is available."""
        return cls(
            decision="fail" if self_review.has_critical_issues else "pass",
            confidence=self_review.confidence,
            overall_score=round(self_review.confidence * 10, 1),
            recommendations=["Independent review unavailable; decision based on self-review only"],
            summary=self_review.summary,
            degraded=True,
        )


class ReviewGateResult(BaseModel):
    """Outcome of the escalation policy applied to both reviews."""

    escalate: bool
    reasons: list[str] = Field(default_factory=list)
    self_review_confidence: float = Field(..., ge=0.0, le=1.0)
    threshold: float = Field(..., ge=0.0, le=1.0)
