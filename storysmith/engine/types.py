"""Type definitions for persisted story workflow state.

These TypedDicts describe the JSON checkpoint written after every pipeline
step to ``<state_dir>/story-workflow-<story_id>.json``.

Example:
    A checkpoint after the implement step::

        state: StoryWorkflowState = {
            "story_id": "1-2-user-login",
            "project_id": "webapp",
            "workflow": "dev-story",
            "current_step": "generate-tests",
            "status": "in_progress",
            "variables": {
                "load-context": {...},
                "create-worktree": {"path": "../wt/story-1-2-user-login", ...},
                "implement": {"files": [...], "commit_message": "..."},
            },
            "performance": {"steps": {...}, "total_duration_ms": 48210},
            "agent_activity": [...],
            "created_at": "2026-01-15T10:30:00+00:00",
            "updated_at": "2026-01-15T10:31:02+00:00",
        }

    A step is complete exactly when its name is a key of ``variables``.
"""

from typing import Any, NotRequired, TypedDict


class StepPerformance(TypedDict):
    """Timing for one executed step."""

    started_at: str
    """ISO 8601 timestamp when the step began."""

    duration_ms: int
    """Wall-clock duration in milliseconds."""


class PerformanceState(TypedDict):
    """Timing for the whole run."""

    steps: dict[str, StepPerformance]
    total_duration_ms: int


class AgentActivityRecord(TypedDict):
    """One agent action. The list in the state is append-only."""

    agent_id: str
    agent_name: str
    action: str
    status: str
    """One of "started", "completed", "failed"."""

    started_at: str
    duration_ms: NotRequired[int]
    error: NotRequired[str]


class StoryWorkflowState(TypedDict):
    """Complete persisted state of one story run."""

    story_id: str
    project_id: str
    workflow: str
    current_step: str
    """Name of the next step to run, or "done" once every step ran."""

    status: str
    """One of the ``WorkflowStatus`` values."""

    variables: dict[str, Any]
    performance: PerformanceState
    agent_activity: list[AgentActivityRecord]
    created_at: str
    updated_at: str

    worktree_path: NotRequired[str]
    branch_name: NotRequired[str]
    pr_url: NotRequired[str]
    ci_status: NotRequired[str]
    escalation_id: NotRequired[str]
    error: NotRequired[str]
    completed_at: NotRequired[str]


class ProjectPointer(TypedDict):
    """Which story a project's control surface is tracking."""

    project_id: str
    story_id: str
    workflow_path: NotRequired[str]
    yolo_mode: NotRequired[bool]
    updated_at: NotRequired[str]
