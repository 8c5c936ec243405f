"""Custom exception hierarchy for the storysmith workflow engine.

Every error raised by storysmith derives from ``StorySmithError`` so callers
(the CLI in particular) can catch the whole family with one clause and print
``error.message`` to the user.

Exception Hierarchy:
    StorySmithError (base)
    ├── ConfigurationError
    ├── CheckpointError
    ├── WorktreeError
    ├── ContextGenerationError
    ├── SprintTrackerError
    ├── WorkflowError
    │   ├── StepExecutionError
    │   ├── TestFixExhaustedError
    │   ├── WorkflowEscalatedError
    │   ├── WorkflowPausedError
    │   ├── InvalidTransitionError
    │   └── ConcurrencyError
    │       ├── WorkflowAlreadyRunningError
    │       ├── WorkflowNotRunningError
    │       └── WorkflowNotPausedError
    ├── EscalationError
    │   └── EscalationNotFoundError
    ├── AgentError
    │   ├── AgentPoolError
    │   └── AgentResponseError
    └── ExternalServiceError
        ├── PullRequestError
        └── CIError

Example Usage:
    >>> from storysmith.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""


class StorySmithError(Exception):
    """Base exception for all storysmith errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(StorySmithError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Unset environment variable referenced without a default
        - Values rejected by validation
    """

    pass


class CheckpointError(StorySmithError):
    """A workflow checkpoint could not be read or written.

    The orchestrator treats write failures as non-fatal (logged, run
    continues); read failures surface to the caller.
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        self.key = key
        super().__init__(message)


class WorktreeError(StorySmithError):
    """Creating or destroying an isolated worktree failed."""

    pass


class ContextGenerationError(StorySmithError):
    """Story context could not be assembled (missing story file, etc.)."""

    pass


class SprintTrackerError(StorySmithError):
    """Sprint status file could not be read or written.

    The orchestrator logs these and carries on.
    """

    pass


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(StorySmithError):
    """Workflow execution errors.

    Attributes:
        story_id: Story whose run raised the error, when known
    """

    def __init__(self, message: str, story_id: str | None = None) -> None:
        self.story_id = story_id
        super().__init__(message)


class StepExecutionError(WorkflowError):
    """A pipeline step failed for a reason that is not retryable.

    Attributes:
        step: Pipeline step name
    """

    def __init__(self, message: str, step: str, story_id: str | None = None) -> None:
        self.step = step
        super().__init__(message, story_id=story_id)


class TestFixExhaustedError(WorkflowError):
    """Tests still fail after the configured number of fix attempts.

    This is a tooling failure: the run is marked failed and no escalation
    is filed.
    """

    __test__ = False

    def __init__(self, message: str, attempts: int, failed: int, story_id: str | None = None) -> None:
        self.attempts = attempts
        self.failed = failed
        super().__init__(message, story_id=story_id)


class WorkflowEscalatedError(WorkflowError):
    """The review gate handed the story to a human.

    Attributes:
        escalation_id: Identifier of the filed escalation
    """

    def __init__(self, message: str, escalation_id: str, story_id: str | None = None) -> None:
        self.escalation_id = escalation_id
        super().__init__(message, story_id=story_id)


class WorkflowPausedError(WorkflowError):
    """A pause request was honoured at a checkpoint boundary.

    Attributes:
        step: Next step to run when the story is resumed
    """

    def __init__(self, message: str, step: str, story_id: str | None = None) -> None:
        self.step = step
        super().__init__(message, story_id=story_id)


class InvalidTransitionError(WorkflowError):
    """A status change outside the allowed transition graph was attempted."""

    def __init__(self, current: str, target: str, story_id: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition: {current} -> {target}", story_id=story_id)


class ConcurrencyError(WorkflowError):
    """Control-surface request conflicts with the project's current run."""

    def __init__(self, message: str, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(message)


class WorkflowAlreadyRunningError(ConcurrencyError):
    """``start`` or ``resume`` while a run is active for the project."""

    def __init__(self, project_id: str) -> None:
        super().__init__("Workflow is already running for this project", project_id)


class WorkflowNotRunningError(ConcurrencyError):
    """``pause`` with no active run for the project."""

    def __init__(self, project_id: str) -> None:
        super().__init__("No workflow is running for this project", project_id)


class WorkflowNotPausedError(ConcurrencyError):
    """``resume`` for a project whose persisted state is not paused."""

    def __init__(self, project_id: str, status: str | None) -> None:
        self.status = status
        if status is None:
            message = "No paused workflow found for this project"
        else:
            message = f"Cannot resume workflow with status: {status}"
        super().__init__(message, project_id)


# =============================================================================
# Escalation Errors
# =============================================================================


class EscalationError(StorySmithError):
    """Escalation queue errors."""

    pass


class EscalationNotFoundError(EscalationError):
    """No pending escalation with the given id.

    Raised for unknown ids and, on ``respond``, for ids that were already
    resolved.
    """

    def __init__(self, escalation_id: str, message: str | None = None) -> None:
        self.escalation_id = escalation_id
        super().__init__(message or f"Escalation not found: {escalation_id}")


# =============================================================================
# Agent Errors
# =============================================================================


class AgentError(StorySmithError):
    """Base exception for agent errors.

    Attributes:
        agent_name: Configured agent name, when known
    """

    def __init__(self, message: str, agent_name: str | None = None) -> None:
        self.agent_name = agent_name
        full_message = f"{message} (agent: {agent_name})" if agent_name else message
        super().__init__(full_message)
        self.message = message


class AgentPoolError(AgentError):
    """Agent pool rejected a create or destroy request.

    Attributes:
        code: Machine-readable reason, one of ``INVALID_AGENT_NAME``,
            ``AGENT_NOT_CONFIGURED``, ``AGENT_NOT_FOUND``, ``POOL_SHUTDOWN``
        agent_id: Handle id involved, for destroy failures
    """

    def __init__(
        self,
        message: str,
        code: str,
        agent_name: str | None = None,
        agent_id: str | None = None,
    ) -> None:
        self.code = code
        self.agent_id = agent_id
        super().__init__(message, agent_name=agent_name)


class AgentResponseError(AgentError):
    """The model answered, but the answer could not be used."""

    def __init__(self, message: str, agent_name: str | None = None, raw_output: str | None = None) -> None:
        self.raw_output = raw_output
        super().__init__(message, agent_name=agent_name)


# =============================================================================
# External Service Errors
# =============================================================================


class ExternalServiceError(StorySmithError):
    """External service communication errors.

    Attributes:
        status_code: HTTP status code (if applicable)
        response_text: Response body text (if applicable)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class PullRequestError(ExternalServiceError):
    """Pull request creation or merge failed."""

    pass


class CIError(ExternalServiceError):
    """CI checks could not be read, or did not finish in time."""

    pass
