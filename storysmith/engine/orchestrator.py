"""
Story workflow orchestrator.

Drives one story through the fixed pipeline::

    load-context -> create-worktree -> implement -> generate-tests ->
    run-tests (fix loop) -> self-review -> independent-review -> decide ->
    create-pr -> monitor-ci-and-merge -> cleanup

A checkpoint is written after every step. A step whose name is already a key
of the checkpoint's ``variables`` is skipped, so re-running a story resumes
at the first incomplete step. A completed story is never run again: its
archived checkpoint is found and the recorded pull request returned.

Failure handling:
    - Transient failures (model calls, PR creation, CI polling) are retried
      with exponential backoff; the last error propagates unchanged.
    - Tooling failures (worktree, context, exhausted test fixes) mark the
      run failed. They are never escalated.
    - Judgment failures (the review gate) always escalate to a human.
    - Checkpoint and sprint tracker write failures are logged and ignored.

Resources:
    Every agent created during a run is destroyed exactly once, and the
    worktree is destroyed exactly once, either by the cleanup step or when
    the run ends in failure or escalation. A paused run keeps its worktree.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar, cast

import aiofiles
import httpx
import structlog

from storysmith.agents.pool import AgentHandle, AgentPool
from storysmith.config.settings import StorySmithSettings
from storysmith.engine import review_gate
from storysmith.engine.decision_engine import DecisionEngine
from storysmith.engine.escalation_queue import EscalationQueue
from storysmith.engine.reporting import render_pr_body
from storysmith.engine.state_manager import StateManager
from storysmith.engine.types import AgentActivityRecord, StoryWorkflowState
from storysmith.enums import PIPELINE_DONE, AgentActivityStatus, PipelineStep, SprintStatus, WorkflowStatus
from storysmith.exceptions import (
    CheckpointError,
    InvalidTransitionError,
    StepExecutionError,
    TestFixExhaustedError,
    WorkflowError,
    WorkflowEscalatedError,
    WorkflowPausedError,
)
from storysmith.models.domain import (
    CIResult,
    CodeImplementation,
    FileChange,
    PullRequestResult,
    StoryContext,
    TestResults,
    TestSuite,
    Worktree,
)
from storysmith.models.escalation import Decision
from storysmith.models.review import IndependentReviewReport, SelfReviewReport
from storysmith.providers.base import (
    ContextGenerator,
    PullRequestAutomator,
    SprintTracker,
    TestRunner,
    WorktreeManager,
)
from storysmith.utils.logging_config import bind_story_context, clear_story_context
from storysmith.utils.retry import retry_with_backoff

log = structlog.get_logger(__name__)

T = TypeVar("T")

WORKFLOW_NAME = "dev-story"

APPROVAL_WORDS = frozenset({"approve", "approved", "proceed", "yes", "lgtm"})

STATE_KEY_PREFIX = "story-workflow-"


def state_key(story_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{story_id}"


def is_approval(response: str | None) -> bool:
    """True if a human response approves continuing to the pull request."""
    if not response or not response.strip():
        return False
    first = response.strip().split()[0].strip(".,!:;").lower()
    return first in APPROVAL_WORDS


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class _StoryRun:
    """Per-run scratch data. Lives only as long as one execution attempt."""

    story_id: str
    state: StoryWorkflowState
    context: StoryContext | None = None
    worktree: Worktree | None = None
    worktree_live: bool = False
    agents: dict[str, AgentHandle] = field(default_factory=dict)
    story_file: str | None = None
    yolo_mode: bool = False

    @property
    def variables(self) -> dict[str, Any]:
        return self.state["variables"]


class WorkflowOrchestrator:
    """Runs the story pipeline with checkpoints, retries and escalation.

    All collaborators are injected; the orchestrator holds no global state
    beyond the set of stories with a pending pause request.

    Example:
        >>> orchestrator = WorkflowOrchestrator(
        ...     settings=settings,
        ...     state=StateManager(settings.state_dir),
        ...     agent_pool=pool,
        ...     escalations=EscalationQueue(settings.escalations_dir),
        ...     worktrees=GitWorktreeManager(settings.project.root),
        ...     context_generator=MarkdownContextGenerator(settings.project.root),
        ...     pr_automator=GitHubPullRequestAutomator.from_config(settings.github),
        ...     test_runner=CommandTestRunner(settings.workflow.test_command),
        ... )
        >>> pr = await orchestrator.execute_story_workflow("1-2-user-login")
    """

    def __init__(
        self,
        settings: StorySmithSettings,
        state: StateManager,
        agent_pool: AgentPool,
        escalations: EscalationQueue,
        worktrees: WorktreeManager,
        context_generator: ContextGenerator,
        pr_automator: PullRequestAutomator,
        test_runner: TestRunner,
        sprint_tracker: SprintTracker | None = None,
        decision_engine: DecisionEngine | None = None,
    ):
        self.settings = settings
        self.state = state
        self.agent_pool = agent_pool
        self.escalations = escalations
        self.worktrees = worktrees
        self.context_generator = context_generator
        self.pr_automator = pr_automator
        self.test_runner = test_runner
        self.sprint_tracker = sprint_tracker
        self.decision_engine = decision_engine
        self._pause_requested: set[str] = set()

        self._steps: dict[PipelineStep, Callable[[_StoryRun], Awaitable[dict[str, Any]]]] = {
            PipelineStep.LOAD_CONTEXT: self._step_load_context,
            PipelineStep.CREATE_WORKTREE: self._step_create_worktree,
            PipelineStep.IMPLEMENT: self._step_implement,
            PipelineStep.GENERATE_TESTS: self._step_generate_tests,
            PipelineStep.RUN_TESTS: self._step_run_tests,
            PipelineStep.SELF_REVIEW: self._step_self_review,
            PipelineStep.INDEPENDENT_REVIEW: self._step_independent_review,
            PipelineStep.DECIDE: self._step_decide,
            PipelineStep.CREATE_PR: self._step_create_pr,
            PipelineStep.MONITOR_CI_AND_MERGE: self._step_monitor_ci_and_merge,
            PipelineStep.CLEANUP: self._step_cleanup,
        }

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def execute_story_workflow(
        self,
        story_id: str,
        project_id: str | None = None,
        story_file: str | None = None,
        yolo_mode: bool = False,
    ) -> PullRequestResult:
        """Run (or continue) the pipeline for one story.

        Args:
            story_id: Story identifier; also the checkpoint key suffix.
            project_id: Owning project. Defaults to the configured project.
            story_file: Story markdown to load. Defaults to
                ``<stories_dir>/<story_id>.md``.
            yolo_mode: Do not wait for a human when the review gate
                escalates. The escalation is still filed and the run ends.

        Returns:
            The pull request opened for the story.

        Raises:
            WorkflowPausedError: A pause request was honoured.
            WorkflowEscalatedError: The review gate handed the story to a human.
            TestFixExhaustedError: Tests kept failing after every fix attempt.
            Exception: Any other step failure, unchanged, after the state
                was marked failed.
        """
        bind_story_context(story_id, project_id)
        try:
            return await self._execute(
                story_id, project_id or self.settings.project.project_id, story_file=story_file, yolo_mode=yolo_mode
            )
        finally:
            # A pause request only ever applies to the run it was made for.
            self._pause_requested.discard(story_id)
            clear_story_context()

    async def resume_story_workflow(self, story_id: str) -> PullRequestResult:
        """Continue a story from its checkpoint.

        Raises:
            WorkflowError: If the story has no checkpoint.
        """
        saved = await self.state.load_state(state_key(story_id))
        if saved is None:
            raise WorkflowError(f"No checkpoint found for story {story_id}", story_id=story_id)
        log.info("workflow_resuming", story_id=story_id, step=saved["current_step"], status=saved["status"])
        return await self.execute_story_workflow(story_id, project_id=saved.get("project_id"))

    def request_pause(self, story_id: str) -> None:
        """Ask a running story to stop at the next checkpoint boundary."""
        self._pause_requested.add(story_id)
        log.info("workflow_pause_requested", story_id=story_id)

    # -------------------------------------------------------------------------
    # Pipeline driver
    # -------------------------------------------------------------------------

    async def _execute(
        self, story_id: str, project_id: str, story_file: str | None, yolo_mode: bool
    ) -> PullRequestResult:
        state = await self._load_or_create_state(story_id, project_id)

        if state["status"] == WorkflowStatus.COMPLETED:
            log.info("workflow_already_completed", story_id=story_id)
            return PullRequestResult.from_dict(state["variables"][PipelineStep.CREATE_PR.value])

        if state["status"] != WorkflowStatus.IN_PROGRESS:
            self._transition(state, WorkflowStatus.IN_PROGRESS)
        state.pop("error", None)
        await self._checkpoint(state)

        run = _StoryRun(story_id=story_id, state=state, story_file=story_file, yolo_mode=yolo_mode)
        paused = False
        log.info("workflow_started", story_id=story_id, step=state["current_step"])
        await self._update_sprint(story_id, SprintStatus.IN_PROGRESS)

        try:
            for step in PipelineStep.ordered():
                if step.value in run.variables:
                    continue

                if story_id in self._pause_requested:
                    raise WorkflowPausedError(f"Workflow paused before {step.value}", step=step.value, story_id=story_id)

                await self._run_step(run, step)

            state["current_step"] = PIPELINE_DONE
            self._transition(state, WorkflowStatus.COMPLETED)
            state["completed_at"] = _now()
            await self._checkpoint(state)
            await self._archive(story_id)

            pr = PullRequestResult.from_dict(run.variables[PipelineStep.CREATE_PR.value])
            log.info(
                "workflow_completed",
                story_id=story_id,
                pr_url=pr.url,
                total_duration_ms=state["performance"]["total_duration_ms"],
            )
            return pr

        except WorkflowPausedError:
            paused = True
            self._transition(state, WorkflowStatus.PAUSED)
            await self._checkpoint(state)
            log.info("workflow_paused", story_id=story_id, step=state["current_step"])
            raise

        except WorkflowEscalatedError as e:
            self._transition(state, WorkflowStatus.ESCALATED)
            state["escalation_id"] = e.escalation_id
            await self._checkpoint(state)
            log.warning("workflow_escalated", story_id=story_id, escalation_id=e.escalation_id)
            raise

        except Exception as e:
            self._transition(state, WorkflowStatus.FAILED)
            state["error"] = str(e)
            await self._checkpoint(state)
            log.error("workflow_failed", story_id=story_id, step=state["current_step"], error=str(e), exc_info=True)
            raise

        finally:
            await self._release(run, keep_worktree=paused)

    async def _run_step(self, run: _StoryRun, step: PipelineStep) -> None:
        state = run.state
        state["current_step"] = step.value
        started_at = _now()
        started = time.monotonic()
        log.info("step_started", story_id=run.story_id, step=step.value)

        artifact = await self._steps[step](run)

        duration_ms = int((time.monotonic() - started) * 1000)
        run.variables[step.value] = artifact
        performance = state["performance"]
        performance["steps"][step.value] = {"started_at": started_at, "duration_ms": duration_ms}
        performance["total_duration_ms"] = sum(s["duration_ms"] for s in performance["steps"].values())

        following = step.index + 1
        ordered = PipelineStep.ordered()
        state["current_step"] = ordered[following].value if following < len(ordered) else PIPELINE_DONE

        if duration_ms > self.settings.workflow.step_warning_seconds * 1000:
            log.warning("step_slow", story_id=run.story_id, step=step.value, duration_ms=duration_ms)
        log.info("step_completed", story_id=run.story_id, step=step.value, duration_ms=duration_ms)
        await self._checkpoint(state)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _step_load_context(self, run: _StoryRun) -> dict[str, Any]:
        story_file = run.story_file or str(self.settings.stories_dir / f"{run.story_id}.md")
        context = await self.context_generator.generate_context(story_file)
        if context.total_tokens > self.settings.workflow.context_token_budget:
            log.warning(
                "context_over_budget",
                story_id=run.story_id,
                total_tokens=context.total_tokens,
                budget=self.settings.workflow.context_token_budget,
            )
        run.context = context
        return context.to_dict()

    async def _step_create_worktree(self, run: _StoryRun) -> dict[str, Any]:
        worktree = await self.worktrees.create_worktree(run.story_id)
        run.worktree = worktree
        run.worktree_live = True
        run.state["worktree_path"] = worktree.path
        run.state["branch_name"] = worktree.branch
        return worktree.to_dict()

    async def _step_implement(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        worktree = await self._ensure_worktree(run)
        agent = await self._agent(run, self.settings.agents.implementer)
        implementation: CodeImplementation = await self._agent_action(
            run, agent, "implement_story", lambda: agent.agent.implement_story(context)
        )
        await self._apply_changes(worktree, implementation.files)
        return implementation.to_dict()

    async def _step_generate_tests(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        worktree = await self._ensure_worktree(run)
        implementation = self._implementation(run)
        agent = await self._agent(run, self.settings.agents.implementer)
        suite: TestSuite = await self._agent_action(
            run, agent, "write_tests", lambda: agent.agent.write_tests(context, implementation)
        )
        await self._apply_changes(worktree, suite.files)
        return suite.to_dict()

    async def _step_run_tests(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        worktree = await self._ensure_worktree(run)
        max_attempts = self.settings.workflow.max_test_fix_attempts

        results = await self.test_runner.run_tests(worktree.path)
        implementation = self._implementation(run)
        fixes: list[dict[str, Any]] = []
        attempts = 0

        while results.failed > 0:
            if attempts >= max_attempts:
                raise TestFixExhaustedError(
                    f"{results.failed} test(s) still failing after {attempts} fix attempt(s)",
                    attempts=attempts,
                    failed=results.failed,
                    story_id=run.story_id,
                )
            attempts += 1
            log.info("test_fix_attempt", story_id=run.story_id, attempt=attempts, failed=results.failed)

            agent = await self._agent(run, self.settings.agents.implementer)
            current = implementation
            current_results = results
            fix: CodeImplementation = await self._agent_action(
                run, agent, "fix_tests", lambda: agent.agent.fix_tests(context, current, current_results)
            )
            await self._apply_changes(worktree, fix.files)
            fixes.append(fix.to_dict())
            implementation = _overlay(implementation, fix)
            results = await self.test_runner.run_tests(worktree.path)

        results.fix_attempts = attempts
        log.info(
            "tests_passed",
            story_id=run.story_id,
            passed=results.passed,
            fix_attempts=attempts,
            line_coverage=results.coverage.lines,
        )
        return {"results": results.to_dict(), "fixes": fixes}

    async def _step_self_review(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        implementation = self._implementation(run)
        results = self._test_results(run)
        agent = await self._agent(run, self.settings.agents.implementer)
        report: SelfReviewReport = await self._agent_action(
            run, agent, "review_code", lambda: agent.agent.review_code(context, implementation, results)
        )
        log.info(
            "self_review_complete",
            story_id=run.story_id,
            confidence=report.confidence,
            critical_issues=len(report.critical_issues),
        )
        return report.model_dump()

    async def _step_independent_review(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        implementation = self._implementation(run)
        results = self._test_results(run)
        self_review = self._self_review(run)
        workflow = self.settings.workflow
        reviewer_name = self.settings.agents.reviewer

        # The implementer is not needed again; free its slot for the reviewer.
        await self._release_agent(run, self.settings.agents.implementer)
        try:
            reviewer = await self._agent(run, reviewer_name)
            try:
                report: IndependentReviewReport = await self._agent_action(
                    run,
                    reviewer,
                    "review",
                    lambda: reviewer.agent.review(context, implementation, results, self_review),
                    max_attempts=workflow.reviewer_max_retry_attempts,
                    base_delay=workflow.base_retry_delay * 2,
                )
            finally:
                await self._release_agent(run, reviewer_name)
        except Exception as e:
            if not workflow.enable_graceful_degradation:
                raise
            log.warning("independent_review_degraded", story_id=run.story_id, error=str(e))
            self._record_activity(
                run,
                agent_id=f"{reviewer_name}-unavailable",
                agent_name=reviewer_name,
                action="review",
                status=AgentActivityStatus.FAILED,
                error=f"Independent review unavailable, using self-review: {e}",
            )
            report = IndependentReviewReport.from_self_review(self_review)

        return report.model_dump()

    async def _step_decide(self, run: _StoryRun) -> dict[str, Any]:
        self_review = self._self_review(run)
        independent = IndependentReviewReport.model_validate(run.variables[PipelineStep.INDEPENDENT_REVIEW.value])
        threshold = self.settings.workflow.min_confidence_threshold

        gate = review_gate.evaluate(self_review, independent, threshold)
        if not gate.escalate:
            log.info("review_gate_passed", story_id=run.story_id, confidence=self_review.confidence)
            return {"gate": gate.model_dump(), "escalated": False}

        log.warning("review_gate_failed", story_id=run.story_id, reasons=gate.reasons)
        escalation_id = run.state.get("escalation_id")
        if not escalation_id:
            escalation_id = await self._file_escalation(run, gate.reasons, self_review, independent)
            run.state["escalation_id"] = escalation_id
            await self._checkpoint(run.state)

        resolved = await self.escalations.wait_for_response(
            escalation_id, timeout=0.0 if run.yolo_mode else self.settings.workflow.escalation_wait_seconds
        )
        if resolved is None:
            raise WorkflowEscalatedError(
                "Story escalated to human review", escalation_id=escalation_id, story_id=run.story_id
            )
        if not is_approval(resolved.response):
            raise WorkflowEscalatedError(
                f"Escalation {escalation_id} was not approved: {resolved.response}",
                escalation_id=escalation_id,
                story_id=run.story_id,
            )

        log.info("escalation_approved", story_id=run.story_id, escalation_id=escalation_id)
        return {
            "gate": gate.model_dump(),
            "escalated": True,
            "escalation_id": escalation_id,
            "response": resolved.response,
        }

    async def _step_create_pr(self, run: _StoryRun) -> dict[str, Any]:
        context = self._context(run)
        worktree = await self._ensure_worktree(run)
        implementation = self._implementation(run)
        decision = run.variables[PipelineStep.DECIDE.value]

        await self.worktrees.commit_and_push(worktree, implementation.commit_message)
        body = render_pr_body(
            context=context,
            self_review=self._self_review(run),
            independent_review=IndependentReviewReport.model_validate(
                run.variables[PipelineStep.INDEPENDENT_REVIEW.value]
            ),
            test_results=self._test_results(run),
            total_duration_ms=run.state["performance"]["total_duration_ms"],
            escalation_response=decision.get("response"),
        )
        workflow = self.settings.workflow
        pr = await retry_with_backoff(
            lambda: self.pr_automator.create_pull_request(
                title=f"Story {run.story_id}: {context.title}",
                body=body,
                head_branch=worktree.branch,
                base_branch=worktree.base_branch,
            ),
            max_attempts=workflow.max_retry_attempts,
            base_delay=workflow.base_retry_delay,
            label="create_pull_request",
        )
        pr.auto_merge_enabled = workflow.auto_merge
        run.state["pr_url"] = pr.url
        log.info("pull_request_created", story_id=run.story_id, pr_url=pr.url, number=pr.number)
        await self._update_sprint(run.story_id, SprintStatus.REVIEW)
        return pr.to_dict()

    async def _step_monitor_ci_and_merge(self, run: _StoryRun) -> dict[str, Any]:
        workflow = self.settings.workflow
        pr_data = run.variables[PipelineStep.CREATE_PR.value]

        if not workflow.auto_merge:
            run.state["ci_status"] = "skipped"
            return CIResult(status="skipped").to_dict()

        ci = await retry_with_backoff(
            lambda: self.pr_automator.monitor_ci_and_merge(pr_data["number"], True),
            max_attempts=workflow.max_retry_attempts,
            base_delay=workflow.base_retry_delay,
            label="monitor_ci_and_merge",
            exceptions=(httpx.TransportError,),
        )
        run.state["ci_status"] = ci.status
        if ci.merged:
            pr_data["state"] = "merged"
            try:
                await self.pr_automator.delete_branch(pr_data["head_branch"])
            except Exception as e:
                log.warning("branch_delete_failed", story_id=run.story_id, branch=pr_data["head_branch"], error=str(e))
        return ci.to_dict()

    async def _step_cleanup(self, run: _StoryRun) -> dict[str, Any]:
        await self.worktrees.destroy_worktree(run.story_id)
        run.worktree_live = False
        ci = run.variables.get(PipelineStep.MONITOR_CI_AND_MERGE.value, {})
        if ci.get("merged"):
            await self._update_sprint(run.story_id, SprintStatus.DONE)
        return {"worktree_removed": True, "cleaned_at": _now()}

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load_or_create_state(self, story_id: str, project_id: str) -> StoryWorkflowState:
        saved = await self.state.load_state(state_key(story_id))
        if saved is None:
            # Completed runs are archived; they stay completed.
            saved = await self.state.load_archived_state(state_key(story_id))
        if saved is not None:
            return saved

        now = _now()
        state: StoryWorkflowState = {
            "story_id": story_id,
            "project_id": project_id,
            "workflow": WORKFLOW_NAME,
            "current_step": PipelineStep.LOAD_CONTEXT.value,
            "status": WorkflowStatus.PENDING.value,
            "variables": {},
            "performance": {"steps": {}, "total_duration_ms": 0},
            "agent_activity": [],
            "created_at": now,
            "updated_at": now,
        }
        return state

    def _transition(self, state: StoryWorkflowState, target: WorkflowStatus) -> None:
        current = WorkflowStatus(state["status"])
        if not current.can_transition_to(target):
            raise InvalidTransitionError(current.value, target.value, story_id=state["story_id"])
        state["status"] = target.value

    async def _checkpoint(self, state: StoryWorkflowState) -> None:
        try:
            await self.state.save_state(state_key(state["story_id"]), cast(dict[str, Any], state))
        except CheckpointError as e:
            log.warning("checkpoint_failed", story_id=state["story_id"], error=e.message)

    async def _archive(self, story_id: str) -> None:
        try:
            await self.state.archive_state(state_key(story_id))
        except CheckpointError as e:
            log.warning("checkpoint_archive_failed", story_id=story_id, error=e.message)

    async def _update_sprint(self, story_id: str, status: SprintStatus) -> None:
        if self.sprint_tracker is None:
            return
        try:
            await self.sprint_tracker.update_status(story_id, status)
        except Exception as e:
            log.warning("sprint_status_update_failed", story_id=story_id, status=str(status), error=str(e))

    def _context(self, run: _StoryRun) -> StoryContext:
        if run.context is None:
            run.context = StoryContext.from_dict(run.variables[PipelineStep.LOAD_CONTEXT.value])
        return run.context

    def _implementation(self, run: _StoryRun) -> CodeImplementation:
        """The implementation with every recorded test fix applied."""
        implementation = CodeImplementation.from_dict(run.variables[PipelineStep.IMPLEMENT.value])
        for fix in run.variables.get(PipelineStep.RUN_TESTS.value, {}).get("fixes", []):
            implementation = _overlay(implementation, CodeImplementation.from_dict(fix))
        return implementation

    def _test_results(self, run: _StoryRun) -> TestResults:
        return TestResults.from_dict(run.variables[PipelineStep.RUN_TESTS.value]["results"])

    def _self_review(self, run: _StoryRun) -> SelfReviewReport:
        return SelfReviewReport.model_validate(run.variables[PipelineStep.SELF_REVIEW.value])

    async def _ensure_worktree(self, run: _StoryRun) -> Worktree:
        """Return the run's worktree, rebuilding it when resuming from a checkpoint.

        A worktree removed after an escalation (or lost with its machine) is
        recreated on the story branch and every recorded file change is
        written again.
        """
        if run.worktree is not None and run.worktree_live:
            return run.worktree

        recorded = Worktree.from_dict(run.variables[PipelineStep.CREATE_WORKTREE.value])
        if not Path(recorded.path).exists():
            log.info("worktree_restoring", story_id=run.story_id, path=recorded.path)
            recorded = await self.worktrees.create_worktree(run.story_id)
        run.worktree = recorded
        run.worktree_live = True

        for step in (PipelineStep.IMPLEMENT, PipelineStep.GENERATE_TESTS):
            if step.value in run.variables:
                files = [FileChange(**f) for f in run.variables[step.value].get("files", [])]
                await self._apply_changes(recorded, files)
        for fix in run.variables.get(PipelineStep.RUN_TESTS.value, {}).get("fixes", []):
            await self._apply_changes(recorded, CodeImplementation.from_dict(fix).files)
        return recorded

    async def _apply_changes(self, worktree: Worktree, changes: list[FileChange]) -> None:
        root = Path(worktree.path).resolve()
        for change in changes:
            target = (root / change.path).resolve()
            if not target.is_relative_to(root):
                raise StepExecutionError(
                    f"Refusing to write outside the worktree: {change.path}",
                    step="apply-changes",
                    story_id=worktree.story_id,
                )
            if change.operation == "delete":
                target.unlink(missing_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "w", encoding="utf-8") as f:
                await f.write(change.content)

    async def _agent(self, run: _StoryRun, name: str) -> AgentHandle:
        if name not in run.agents:
            run.agents[name] = await self.agent_pool.create_agent(name, {"story_id": run.story_id})
        return run.agents[name]

    async def _release_agent(self, run: _StoryRun, name: str) -> None:
        handle = run.agents.pop(name, None)
        if handle is None:
            return
        try:
            await self.agent_pool.destroy_agent(handle)
        except Exception as e:
            log.warning("agent_release_failed", story_id=run.story_id, agent_id=handle.id, error=str(e))

    async def _release(self, run: _StoryRun, keep_worktree: bool) -> None:
        for name in list(run.agents):
            await self._release_agent(run, name)

        if run.worktree_live and not keep_worktree:
            try:
                await self.worktrees.destroy_worktree(run.story_id)
            except Exception as e:
                log.warning("worktree_release_failed", story_id=run.story_id, error=str(e))
            run.worktree_live = False

    async def _agent_action(
        self,
        run: _StoryRun,
        handle: AgentHandle,
        action: str,
        call: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        workflow = self.settings.workflow
        started = time.monotonic()
        self._record_activity(run, handle.id, handle.name, action, AgentActivityStatus.STARTED)
        try:
            result = await retry_with_backoff(
                call,
                max_attempts=max_attempts or workflow.max_retry_attempts,
                base_delay=workflow.base_retry_delay if base_delay is None else base_delay,
                label=f"{handle.name}.{action}",
            )
        except Exception as e:
            self._record_activity(
                run,
                handle.id,
                handle.name,
                action,
                AgentActivityStatus.FAILED,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=str(e),
            )
            raise
        self._record_activity(
            run,
            handle.id,
            handle.name,
            action,
            AgentActivityStatus.COMPLETED,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    def _record_activity(
        self,
        run: _StoryRun,
        agent_id: str,
        agent_name: str,
        action: str,
        status: AgentActivityStatus,
        duration_ms: int | None = None,
        error: str | None = None,
    ) -> None:
        record: AgentActivityRecord = {
            "agent_id": agent_id,
            "agent_name": agent_name,
            "action": action,
            "status": status.value,
            "started_at": _now(),
        }
        if duration_ms is not None:
            record["duration_ms"] = duration_ms
        if error is not None:
            record["error"] = error
        run.state["agent_activity"].append(record)

    async def _file_escalation(
        self,
        run: _StoryRun,
        reasons: list[str],
        self_review: SelfReviewReport,
        independent: IndependentReviewReport,
    ) -> str:
        question = (
            f"Story {run.story_id} did not pass the automated review gate. "
            "Approve opening the pull request anyway?"
        )
        recommendation = await self._consult_decision_engine(question, run, reasons)
        reasoning = "; ".join(reasons)
        if recommendation is not None:
            reasoning = f"{reasoning}. Recommendation: {recommendation.decision} ({recommendation.reasoning})"

        return await self.escalations.add(
            workflow_id=run.story_id,
            step=PipelineStep.DECIDE.value,
            question=question,
            ai_reasoning=reasoning,
            confidence=self_review.confidence,
            context={
                "reasons": reasons,
                "self_review": self_review.model_dump(),
                "independent_review": independent.model_dump(),
                "worktree_path": run.state.get("worktree_path"),
                "branch_name": run.state.get("branch_name"),
                "recommendation": recommendation.model_dump(mode="json") if recommendation else None,
            },
        )

    async def _consult_decision_engine(self, question: str, run: _StoryRun, reasons: list[str]) -> Decision | None:
        """Ask for a recommendation to brief the human. Never changes the gate outcome."""
        if self.decision_engine is None:
            return None
        try:
            return await self.decision_engine.attempt_autonomous_decision(
                question, {"story_id": run.story_id, "reasons": reasons}
            )
        except Exception as e:
            log.warning("decision_engine_failed", story_id=run.story_id, error=str(e))
            return None


def _overlay(base: CodeImplementation, fix: CodeImplementation) -> CodeImplementation:
    """Apply ``fix``'s file changes on top of ``base`` by path."""
    files = {f.path: f for f in base.files}
    for change in fix.files:
        if change.operation == "delete":
            files.pop(change.path, None)
        else:
            files[change.path] = change
    return CodeImplementation(
        files=list(files.values()),
        commit_message=base.commit_message,
        notes="\n".join(n for n in (base.notes, fix.notes) if n),
    )
