"""Domain, review and escalation models."""

from storysmith.models.domain import (
    CIResult,
    CodeImplementation,
    Coverage,
    FileChange,
    PullRequestResult,
    StoryContext,
    TestResults,
    TestSuite,
    Worktree,
)
from storysmith.models.escalation import Decision, Escalation, EscalationMetrics
from storysmith.models.review import (
    IndependentReviewReport,
    ReviewFinding,
    ReviewGateResult,
    SelfReviewReport,
)

__all__ = [
    "CIResult",
    "CodeImplementation",
    "Coverage",
    "Decision",
    "Escalation",
    "EscalationMetrics",
    "FileChange",
    "IndependentReviewReport",
    "PullRequestResult",
    "ReviewFinding",
    "ReviewGateResult",
    "SelfReviewReport",
    "StoryContext",
    "TestResults",
    "TestSuite",
    "Worktree",
]
