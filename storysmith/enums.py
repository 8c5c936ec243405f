"""Enumerations shared across the storysmith engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle status of a story workflow.

    Allowed transitions::

        pending -> in_progress
        in_progress -> paused | escalated | completed | failed
        paused | escalated | failed -> in_progress

    ``completed`` is terminal and nothing ever returns to ``pending``.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    def can_transition_to(self, target: "WorkflowStatus") -> bool:
        """Check whether moving from this status to ``target`` is allowed."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.PENDING: frozenset({WorkflowStatus.IN_PROGRESS}),
    WorkflowStatus.IN_PROGRESS: frozenset(
        {
            WorkflowStatus.PAUSED,
            WorkflowStatus.ESCALATED,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
        }
    ),
    WorkflowStatus.PAUSED: frozenset({WorkflowStatus.IN_PROGRESS}),
    WorkflowStatus.ESCALATED: frozenset({WorkflowStatus.IN_PROGRESS}),
    WorkflowStatus.FAILED: frozenset({WorkflowStatus.IN_PROGRESS}),
    WorkflowStatus.COMPLETED: frozenset(),
}


class PipelineStep(str, Enum):
    """Ordered steps of the story pipeline.

    Definition order is execution order; ``PipelineStep.ordered()`` returns
    them as a list.
    """

    LOAD_CONTEXT = "load-context"
    CREATE_WORKTREE = "create-worktree"
    IMPLEMENT = "implement"
    GENERATE_TESTS = "generate-tests"
    RUN_TESTS = "run-tests"
    SELF_REVIEW = "self-review"
    INDEPENDENT_REVIEW = "independent-review"
    DECIDE = "decide"
    CREATE_PR = "create-pr"
    MONITOR_CI_AND_MERGE = "monitor-ci-and-merge"
    CLEANUP = "cleanup"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def ordered(cls) -> list["PipelineStep"]:
        return list(cls)

    @property
    def index(self) -> int:
        return PipelineStep.ordered().index(self)


# Sentinel written to ``current_step`` once every step has run.
PIPELINE_DONE = "done"


class AgentActivityStatus(str, Enum):
    """Status of one agent action recorded in the workflow state."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class EscalationStatus(str, Enum):
    """Escalation lifecycle. Resolved escalations are immutable."""

    PENDING = "pending"
    RESOLVED = "resolved"

    def __str__(self) -> str:
        return self.value


class SprintStatus(str, Enum):
    """Story states written to the sprint tracker."""

    BACKLOG = "backlog"
    READY_FOR_DEV = "ready-for-dev"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"

    def __str__(self) -> str:
        return self.value


class DecisionSource(str, Enum):
    """Where an autonomous decision came from."""

    ONBOARDING = "onboarding"
    LLM = "llm"
    FALLBACK = "fallback"

    def __str__(self) -> str:
        return self.value


class ProviderType(str, Enum):
    """LLM backends an agent assignment can point at.

    Both are reached through the OpenAI chat-completions protocol; Ollama
    exposes it under ``/v1``.
    """

    OPENAI_COMPATIBLE = "openai-compatible"
    OLLAMA = "ollama"

    def __str__(self) -> str:
        return self.value
