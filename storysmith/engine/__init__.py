"""Story workflow engine.

Key Components:
    - WorkflowOrchestrator: Runs one story through the pipeline
    - WorkflowController: Per-project start, pause, resume and status
    - StateManager: Atomic JSON checkpoints
    - EscalationQueue: File-backed questions for humans
    - DecisionEngine: Recommendations that brief the human on an escalation
    - review_gate: The rule that decides when a story must be escalated

Type Definitions:
    - StoryWorkflowState: TypedDict for a story's persisted checkpoint
    - AgentActivityRecord: TypedDict for one agent action
    - ProjectPointer: TypedDict linking a project to its current story

Example:
    >>> from storysmith.engine.orchestrator import WorkflowOrchestrator
    >>> pr = await orchestrator.execute_story_workflow("1-2-user-login")

    >>> from storysmith.engine.types import StoryWorkflowState
    >>> state: StoryWorkflowState = await state_manager.load_state("story-workflow-1-2-user-login")
"""

from storysmith.engine.types import (
    AgentActivityRecord,
    PerformanceState,
    ProjectPointer,
    StepPerformance,
    StoryWorkflowState,
)

__all__ = [
    "AgentActivityRecord",
    "PerformanceState",
    "ProjectPointer",
    "StepPerformance",
    "StoryWorkflowState",
]
