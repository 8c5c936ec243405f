"""Pytest configuration and shared fixtures."""

import shutil
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from storysmith.agents.pool import AgentPool
from storysmith.config.settings import StorySmithSettings
from storysmith.engine.escalation_queue import EscalationQueue
from storysmith.engine.orchestrator import WorkflowOrchestrator
from storysmith.engine.state_manager import StateManager
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
from storysmith.models.review import IndependentReviewReport, SelfReviewReport
from storysmith.providers.base import ContextGenerator, PullRequestAutomator, TestRunner, WorktreeManager
from storysmith.providers.sprint_status import YamlSprintTracker

STORY_ID = "1-2-user-login"


class FakeWorktreeManager(WorktreeManager):
    """Creates plain directories and records every call."""

    def __init__(self, root: Path):
        self.root = root
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.pushed: list[tuple[str, str]] = []
        self.pushed_files: dict[str, str] = {}

    def path_for(self, story_id: str) -> Path:
        return self.root / f"story-{story_id}"

    async def create_worktree(self, story_id: str) -> Worktree:
        path = self.path_for(story_id)
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(story_id)
        return Worktree(story_id=story_id, path=str(path), branch=f"story/{story_id}")

    async def destroy_worktree(self, story_id: str) -> None:
        shutil.rmtree(self.path_for(story_id), ignore_errors=True)
        self.destroyed.append(story_id)

    async def commit_and_push(self, worktree: Worktree, message: str) -> None:
        root = Path(worktree.path)
        self.pushed.append((worktree.branch, message))
        self.pushed_files = {
            str(p.relative_to(root)): p.read_text() for p in sorted(root.rglob("*")) if p.is_file()
        }


class ScriptedTestRunner(TestRunner):
    """Returns queued results in order; the last one repeats."""

    def __init__(self, *results: TestResults):
        self.results = list(results)
        self.calls: list[str] = []

    async def run_tests(self, worktree_path: str) -> TestResults:
        self.calls.append(worktree_path)
        if len(self.results) > 1:
            return self.results.pop(0)
        return TestResults.from_dict(self.results[0].to_dict())


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_manager(temp_state_dir: Path) -> StateManager:
    """StateManager instance with temp directory."""
    return StateManager(str(temp_state_dir))


@pytest.fixture
def escalation_queue(tmp_path: Path) -> EscalationQueue:
    return EscalationQueue(tmp_path / "escalations", poll_interval=0.01)


@pytest.fixture
def settings(tmp_path: Path) -> StorySmithSettings:
    """Settings rooted in a temp project with retries that do not sleep."""
    return StorySmithSettings(
        project={"project_id": "webapp", "root": str(tmp_path)},
        workflow={"base_retry_delay": 0.0},
    )


@pytest.fixture
def sample_context() -> StoryContext:
    return StoryContext(
        story_id=STORY_ID,
        title="User login",
        description="As a returning user I want to log in.",
        acceptance_criteria=["Valid credentials create a session", "Five failures lock the account"],
        total_tokens=1200,
    )


@pytest.fixture
def sample_implementation() -> CodeImplementation:
    return CodeImplementation(
        files=[FileChange(path="src/auth/session.py", content="def login():\n    return True\n")],
        commit_message="feat: user login",
    )


@pytest.fixture
def sample_test_suite() -> TestSuite:
    return TestSuite(
        files=[FileChange(path="tests/test_session.py", content="def test_login():\n    assert True\n")]
    )


@pytest.fixture
def passing_results() -> TestResults:
    return TestResults(passed=12, failed=0, duration_ms=800, coverage=Coverage(lines=91.0, branches=80.0))


@pytest.fixture
def failing_results() -> TestResults:
    return TestResults(passed=10, failed=2, duration_ms=800, output="2 failed, 10 passed")


@pytest.fixture
def confident_self_review() -> SelfReviewReport:
    return SelfReviewReport(confidence=0.92, summary="Implements both acceptance criteria")


@pytest.fixture
def passing_review() -> IndependentReviewReport:
    return IndependentReviewReport(
        decision="pass",
        confidence=0.9,
        overall_score=8.5,
        recommendations=["Consider rate limiting"],
        summary="Clean change",
    )


@pytest.fixture
def implementer_agent(
    sample_implementation: CodeImplementation,
    sample_test_suite: TestSuite,
    confident_self_review: SelfReviewReport,
) -> AsyncMock:
    agent = AsyncMock()
    agent.implement_story.return_value = sample_implementation
    agent.write_tests.return_value = sample_test_suite
    agent.fix_tests.return_value = CodeImplementation(
        files=[FileChange(path="src/auth/session.py", content="def login():\n    return 'fixed'\n", operation="modify")],
        commit_message="fix: tests",
    )
    agent.review_code.return_value = confident_self_review
    return agent


@pytest.fixture
def reviewer_agent(passing_review: IndependentReviewReport) -> AsyncMock:
    agent = AsyncMock()
    agent.review.return_value = passing_review
    return agent


@pytest.fixture
def agent_pool(implementer_agent: AsyncMock, reviewer_agent: AsyncMock) -> AgentPool:
    return AgentPool(
        {
            "implementer": lambda name, context: implementer_agent,
            "reviewer": lambda name, context: reviewer_agent,
        },
        max_concurrent_agents=3,
    )


@pytest.fixture
def worktrees(tmp_path: Path) -> FakeWorktreeManager:
    return FakeWorktreeManager(tmp_path / "wt")


@pytest.fixture
def context_generator(sample_context: StoryContext) -> AsyncMock:
    generator = AsyncMock(spec=ContextGenerator)
    generator.generate_context.return_value = sample_context
    return generator


@pytest.fixture
def pr_automator() -> AsyncMock:
    automator = AsyncMock(spec=PullRequestAutomator)
    automator.create_pull_request.return_value = PullRequestResult(
        url="https://github.com/acme/webapp/pull/7",
        number=7,
        title=f"Story {STORY_ID}: User login",
        head_branch=f"story/{STORY_ID}",
    )
    automator.monitor_ci_and_merge.return_value = CIResult(status="success", merged=True)
    return automator


@pytest.fixture
def scripted_runner() -> type[ScriptedTestRunner]:
    """The scripted runner class, for tests that queue their own results."""
    return ScriptedTestRunner


@pytest.fixture
def runner(passing_results: TestResults) -> ScriptedTestRunner:
    return ScriptedTestRunner(passing_results)


@pytest.fixture
def sprint_tracker(tmp_path: Path) -> YamlSprintTracker:
    return YamlSprintTracker(tmp_path / "sprint-status.yaml")


@pytest.fixture
def make_orchestrator(
    settings: StorySmithSettings,
    state_manager: StateManager,
    agent_pool: AgentPool,
    escalation_queue: EscalationQueue,
    worktrees: FakeWorktreeManager,
    context_generator: AsyncMock,
    pr_automator: AsyncMock,
    runner: ScriptedTestRunner,
    sprint_tracker: YamlSprintTracker,
):
    """Build an orchestrator from the shared fakes, with overrides."""

    def _make(**overrides) -> WorkflowOrchestrator:
        kwargs = {
            "settings": settings,
            "state": state_manager,
            "agent_pool": agent_pool,
            "escalations": escalation_queue,
            "worktrees": worktrees,
            "context_generator": context_generator,
            "pr_automator": pr_automator,
            "test_runner": runner,
            "sprint_tracker": sprint_tracker,
        }
        kwargs.update(overrides)
        return WorkflowOrchestrator(**kwargs)

    return _make
