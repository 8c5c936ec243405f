"""Tests for the file- and process-backed providers."""

import subprocess
from unittest.mock import AsyncMock, call, patch

import pytest
import yaml

from storysmith.enums import SprintStatus
from storysmith.exceptions import ContextGenerationError, SprintTrackerError, StepExecutionError, WorktreeError
from storysmith.models.domain import Worktree
from storysmith.providers.context import MarkdownContextGenerator, estimate_tokens
from storysmith.providers.git_worktree import GitWorktreeManager
from storysmith.providers.sprint_status import YamlSprintTracker
from storysmith.providers.test_runner import CommandTestRunner

STORY = """# Story 1.2: User login

As a returning user I want to log in
so that I can see my dashboard.

## Acceptance Criteria

1. Valid credentials create a session
2. Five failed attempts lock the account

## Files

- `src/auth/session.py`
- src/missing.py
- ../outside.py
"""


class TestYamlSprintTracker:
    @pytest.mark.asyncio
    async def test_missing_file_has_no_status(self, sprint_tracker):
        assert await sprint_tracker.get_status("1-2-user-login") is None

    @pytest.mark.asyncio
    async def test_update_preserves_other_stories(self, tmp_path):
        path = tmp_path / "docs" / "sprint-status.yaml"
        path.parent.mkdir()
        path.write_text("sprint: 4\ndevelopment_status:\n  1-1-project-setup: done\n  1-2-user-login: ready-for-dev\n")
        tracker = YamlSprintTracker(path)

        await tracker.update_status("1-2-user-login", SprintStatus.IN_PROGRESS)

        data = yaml.safe_load(path.read_text())
        assert data["sprint"] == 4
        assert data["development_status"] == {"1-1-project-setup": "done", "1-2-user-login": "in-progress"}
        assert await tracker.get_status("1-2-user-login") == "in-progress"
        assert not list(path.parent.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_creates_file(self, sprint_tracker):
        await sprint_tracker.update_status("1-2-user-login", SprintStatus.REVIEW)
        assert sprint_tracker.path.exists()
        assert await sprint_tracker.get_status("1-2-user-login") == "review"

    @pytest.mark.asyncio
    async def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "sprint-status.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(SprintTrackerError, match="YAML mapping"):
            await YamlSprintTracker(path).get_status("1-2")


class TestMarkdownContextGenerator:
    @pytest.fixture
    def project(self, tmp_path):
        root = tmp_path / "project"
        (root / "docs" / "stories").mkdir(parents=True)
        (root / "docs" / "onboarding").mkdir()
        (root / "src" / "auth").mkdir(parents=True)
        (root / "docs" / "stories" / "1-2-user-login.md").write_text(STORY)
        (root / "docs" / "architecture.md").write_text("Hexagonal; auth lives in src/auth.")
        (root / "docs" / "onboarding" / "testing.md").write_text("Use pytest.")
        (root / "src" / "auth" / "session.py").write_text("def login(): ...\n")
        (tmp_path / "outside.py").write_text("secret = 1\n")
        return root

    @pytest.mark.asyncio
    async def test_generate_context(self, project):
        generator = MarkdownContextGenerator(
            project,
            architecture_doc=project / "docs" / "architecture.md",
            onboarding_dir=project / "docs" / "onboarding",
        )

        context = await generator.generate_context("docs/stories/1-2-user-login.md")

        assert context.story_id == "1-2-user-login"
        assert context.title == "User login"
        assert context.description.startswith("As a returning user")
        assert context.acceptance_criteria == [
            "Valid credentials create a session",
            "Five failed attempts lock the account",
        ]
        assert context.existing_code == {"src/auth/session.py": "def login(): ...\n"}
        assert context.architecture.startswith("Hexagonal")
        assert context.onboarding == "Use pytest."
        assert context.total_tokens > 0

    @pytest.mark.asyncio
    async def test_missing_story_file(self, project):
        with pytest.raises(ContextGenerationError, match="Story file not found"):
            await MarkdownContextGenerator(project).generate_context("docs/stories/nope.md")

    @pytest.mark.asyncio
    async def test_story_without_sections(self, tmp_path):
        story = tmp_path / "9-9-misc.md"
        story.write_text("Just some prose.")

        context = await MarkdownContextGenerator(tmp_path).generate_context(str(story))

        assert context.title == "9-9-misc"
        assert context.description == "Just some prose."
        assert context.acceptance_criteria == []

    def test_estimate_tokens(self):
        assert estimate_tokens("x" * 400) == 100


class TestCommandTestRunner:
    @pytest.mark.asyncio
    async def test_parses_output_and_coverage_report(self, tmp_path):
        (tmp_path / "coverage.json").write_text('{"totals": {"percent_covered": 88.0}}')
        runner = CommandTestRunner(["pytest", "--cov"], timeout=60)

        with patch(
            "storysmith.providers.test_runner.run_command",
            new_callable=AsyncMock,
            return_value=("1 failed, 9 passed in 1.2s", "", 1),
        ) as run:
            results = await runner.run_tests(str(tmp_path))

        assert (results.passed, results.failed) == (9, 1)
        assert results.coverage.lines == 88.0
        assert "1 failed" in results.output
        run.assert_awaited_once_with("pytest", "--cov", cwd=str(tmp_path), check=False, timeout=60)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        runner = CommandTestRunner(["no-such-tool"])

        with patch("storysmith.providers.test_runner.run_command", new_callable=AsyncMock) as run:
            run.side_effect = FileNotFoundError("no-such-tool")
            with pytest.raises(StepExecutionError, match="Test command not found") as exc_info:
                await runner.run_tests(str(tmp_path))

        assert exc_info.value.step == "run-tests"

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        with patch("storysmith.providers.test_runner.run_command", new_callable=AsyncMock) as run:
            run.side_effect = TimeoutError()
            with pytest.raises(StepExecutionError, match="timed out"):
                await CommandTestRunner(["pytest"], timeout=5).run_tests(str(tmp_path))

    def test_empty_command(self):
        with pytest.raises(ValueError):
            CommandTestRunner([])


class TestGitWorktreeManager:
    @pytest.fixture
    def manager(self, tmp_path):
        return GitWorktreeManager(tmp_path / "repo", tmp_path / "wt", base_branch="develop")

    @pytest.mark.asyncio
    async def test_create_new_branch(self, manager, tmp_path):
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            run.side_effect = [("", "", 1), ("", "", 0)]
            worktree = await manager.create_worktree("1-2")

        path = str(tmp_path / "wt" / "story-1-2")
        assert worktree == Worktree(story_id="1-2", path=path, branch="story/1-2", base_branch="develop")
        assert run.await_args_list[1] == call(
            "git", "worktree", "add", "-b", "story/1-2", path, "develop", cwd=manager.repo_root
        )

    @pytest.mark.asyncio
    async def test_create_reuses_existing_branch(self, manager, tmp_path):
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            run.side_effect = [("", "", 0), ("", "", 0)]
            await manager.create_worktree("1-2")

        path = str(tmp_path / "wt" / "story-1-2")
        assert run.await_args_list[1] == call("git", "worktree", "add", path, "story/1-2", cwd=manager.repo_root)

    @pytest.mark.asyncio
    async def test_create_failure(self, manager):
        error = subprocess.CalledProcessError(128, ["git"], "", "fatal: invalid reference: develop\n")
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            run.side_effect = [("", "", 1), error]
            with pytest.raises(WorktreeError, match="invalid reference: develop"):
                await manager.create_worktree("1-2")

    @pytest.mark.asyncio
    async def test_destroy_missing_worktree_is_noop(self, manager):
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            await manager.destroy_worktree("1-2")
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commit_skipped_when_nothing_staged(self, manager, tmp_path):
        worktree = Worktree(story_id="1-2", path=str(tmp_path), branch="story/1-2")
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            run.side_effect = [("", "", 0), ("", "", 0), ("", "", 0)]
            await manager.commit_and_push(worktree, "feat: login")

        commands = [c.args[:2] for c in run.await_args_list]
        assert commands == [("git", "add"), ("git", "diff"), ("git", "push")]

    @pytest.mark.asyncio
    async def test_commit_and_push(self, manager, tmp_path):
        worktree = Worktree(story_id="1-2", path=str(tmp_path), branch="story/1-2")
        with patch("storysmith.providers.git_worktree.run_command", new_callable=AsyncMock) as run:
            run.side_effect = [("", "", 0), ("", "", 1), ("", "", 0), ("", "", 0)]
            await manager.commit_and_push(worktree, "feat: login")

        assert run.await_args_list[2] == call("git", "commit", "-m", "feat: login", cwd=str(tmp_path))
