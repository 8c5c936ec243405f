"""
Per-project control surface: start, pause, resume and status.

A project runs at most one story at a time. Every operation takes the
project's lock with ``async with`` so it is released on every exit path.
Runs are ``asyncio.Task`` objects; the caller of ``start`` does not wait,
and whatever the run ends with (result or error) is kept on its
``RunHandle`` for ``status`` to report.

The story a project is working on is remembered in a pointer document
(``project-<project_id>``) next to the checkpoints, so ``resume`` and
``status`` work after a restart.

Example:
    >>> controller = WorkflowController(StateManager(settings.state_dir), orchestrator_for)
    >>> await controller.start("webapp", StartRequest(story_id="1-2-user-login"))
    >>> (await controller.status("webapp")).progress
    18
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from storysmith.engine.orchestrator import WorkflowOrchestrator, state_key
from storysmith.engine.state_manager import StateManager
from storysmith.engine.types import ProjectPointer
from storysmith.enums import PIPELINE_DONE, PipelineStep, WorkflowStatus
from storysmith.exceptions import (
    WorkflowAlreadyRunningError,
    WorkflowNotPausedError,
    WorkflowNotRunningError,
    WorkflowPausedError,
)
from storysmith.models.domain import PullRequestResult

log = structlog.get_logger(__name__)

IDLE = "idle"


def pointer_key(project_id: str) -> str:
    return f"project-{project_id}"


@dataclass
class StartRequest:
    """Parameters for ``WorkflowController.start``.

    Attributes:
        story_id: Story to run.
        workflow_path: Story file to load instead of the default location.
        yolo_mode: File escalations without waiting for a human.
    """

    story_id: str
    workflow_path: str | None = None
    yolo_mode: bool = False


@dataclass
class RunHandle:
    """A background story run."""

    project_id: str
    story_id: str
    task: asyncio.Task[PullRequestResult]
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def done(self) -> bool:
        return self.task.done()

    @property
    def result(self) -> PullRequestResult | None:
        if not self.task.done() or self.task.cancelled() or self.task.exception() is not None:
            return None
        return self.task.result()

    @property
    def error(self) -> BaseException | None:
        if not self.task.done():
            return None
        if self.task.cancelled():
            return asyncio.CancelledError("Run was cancelled")
        return self.task.exception()


class OrchestratorStatus(BaseModel):
    """Snapshot returned by ``WorkflowController.status``."""

    status: str = IDLE
    current_step: str | None = None
    progress: int = Field(default=0, ge=0, le=100)
    agent_activity: list[dict[str, Any]] = Field(default_factory=list)
    story_id: str | None = None
    error: str | None = None


def progress_for(current_step: str | None) -> int:
    """Percentage of pipeline steps completed before ``current_step``."""
    if not current_step:
        return 0
    if current_step == PIPELINE_DONE:
        return 100
    steps = PipelineStep.ordered()
    try:
        completed = PipelineStep(current_step).index
    except ValueError:
        return 0
    return min(100, round(completed / len(steps) * 100))


class WorkflowController:
    """Serialises control requests per project.

    Args:
        state: Checkpoint store shared with the orchestrators.
        orchestrator_for: Builds the orchestrator (and so the agent pool)
            for a project. Called once per project.
    """

    def __init__(self, state: StateManager, orchestrator_for: Callable[[str], WorkflowOrchestrator]):
        self.state = state
        self._orchestrator_for = orchestrator_for
        self._orchestrators: dict[str, WorkflowOrchestrator] = {}
        self._runs: dict[str, RunHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._meta_lock = asyncio.Lock()

    async def _get_lock(self, project_id: str) -> asyncio.Lock:
        async with self._meta_lock:
            if project_id not in self._locks:
                self._locks[project_id] = asyncio.Lock()
            return self._locks[project_id]

    def _orchestrator(self, project_id: str) -> WorkflowOrchestrator:
        if project_id not in self._orchestrators:
            self._orchestrators[project_id] = self._orchestrator_for(project_id)
        return self._orchestrators[project_id]

    def _active_run(self, project_id: str) -> RunHandle | None:
        run = self._runs.get(project_id)
        return run if run is not None and not run.done else None

    def get_run(self, project_id: str) -> RunHandle | None:
        """Most recent run for the project, finished or not."""
        return self._runs.get(project_id)

    async def start(self, project_id: str, request: StartRequest) -> RunHandle:
        """Launch a story run in the background.

        Raises:
            WorkflowAlreadyRunningError: A run is already active for the project.
        """
        lock = await self._get_lock(project_id)
        async with lock:
            if self._active_run(project_id) is not None:
                raise WorkflowAlreadyRunningError(project_id)

            pointer: ProjectPointer = {
                "project_id": project_id,
                "story_id": request.story_id,
                "yolo_mode": request.yolo_mode,
                "updated_at": datetime.now(UTC).isoformat(),
            }
            if request.workflow_path:
                pointer["workflow_path"] = request.workflow_path
            await self.state.save_state(pointer_key(project_id), dict(pointer))

            run = self._launch(project_id, request.story_id, request.workflow_path, request.yolo_mode)
            log.info("workflow_start_requested", project_id=project_id, story_id=request.story_id)
            return run

    async def pause(self, project_id: str) -> None:
        """Ask the active run to stop at its next checkpoint.

        Raises:
            WorkflowNotRunningError: No run is active for the project.
        """
        lock = await self._get_lock(project_id)
        async with lock:
            run = self._active_run(project_id)
            if run is None:
                raise WorkflowNotRunningError(project_id)
            self._orchestrator(project_id).request_pause(run.story_id)

    async def resume(self, project_id: str) -> RunHandle:
        """Continue the project's paused story in the background.

        Raises:
            WorkflowAlreadyRunningError: A run is already active.
            WorkflowNotPausedError: There is no persisted paused story.
        """
        lock = await self._get_lock(project_id)
        async with lock:
            if self._active_run(project_id) is not None:
                raise WorkflowAlreadyRunningError(project_id)

            pointer = await self.state.load_state(pointer_key(project_id))
            if pointer is None:
                raise WorkflowNotPausedError(project_id, None)
            saved = await self.state.load_state(state_key(pointer["story_id"]))
            if saved is None:
                raise WorkflowNotPausedError(project_id, None)
            if saved["status"] != WorkflowStatus.PAUSED:
                raise WorkflowNotPausedError(project_id, saved["status"])

            run = self._launch(
                project_id,
                pointer["story_id"],
                pointer.get("workflow_path"),
                pointer.get("yolo_mode", False),
            )
            log.info("workflow_resume_requested", project_id=project_id, story_id=pointer["story_id"])
            return run

    async def status(self, project_id: str) -> OrchestratorStatus:
        """Report the project's current (or last) story run."""
        lock = await self._get_lock(project_id)
        async with lock:
            pointer = await self.state.load_state(pointer_key(project_id))
            if pointer is None:
                return OrchestratorStatus()

            story_id = pointer["story_id"]
            saved = await self.state.load_state(state_key(story_id))
            if saved is None:
                saved = await self.state.load_archived_state(state_key(story_id))
            if saved is None:
                return OrchestratorStatus(story_id=story_id)

            error = saved.get("error")
            run = self._runs.get(project_id)
            if run is not None and run.story_id == story_id and run.error is not None and error is None:
                error = str(run.error)

            return OrchestratorStatus(
                status=saved["status"],
                current_step=saved["current_step"],
                progress=progress_for(saved["current_step"]),
                agent_activity=list(saved.get("agent_activity", [])),
                story_id=story_id,
                error=error,
            )

    async def shutdown(self) -> None:
        """Cancel active runs and wait for them to release their resources."""
        tasks = [run.task for run in self._runs.values() if not run.done]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _launch(self, project_id: str, story_id: str, workflow_path: str | None, yolo_mode: bool) -> RunHandle:
        orchestrator = self._orchestrator(project_id)
        task = asyncio.create_task(
            orchestrator.execute_story_workflow(
                story_id, project_id=project_id, story_file=workflow_path, yolo_mode=yolo_mode
            ),
            name=f"story-{story_id}",
        )
        run = RunHandle(project_id=project_id, story_id=story_id, task=task)
        task.add_done_callback(lambda t: _log_outcome(run))
        self._runs[project_id] = run
        return run


def _log_outcome(run: RunHandle) -> None:
    error = run.error
    if error is None:
        log.info("workflow_run_finished", project_id=run.project_id, story_id=run.story_id)
    elif isinstance(error, WorkflowPausedError):
        log.info("workflow_run_paused", project_id=run.project_id, story_id=run.story_id)
    else:
        log.warning("workflow_run_ended", project_id=run.project_id, story_id=run.story_id, error=str(error))
