"""
Abstract base classes for the orchestrator's collaborators.

The orchestrator owns the pipeline; everything that touches the outside world
(git, the model endpoint, the code host, the sprint board, the test command)
sits behind one of these interfaces so it can be swapped for a fake in tests
or for a different backend in production.
"""

from abc import ABC, abstractmethod

from storysmith.enums import SprintStatus
from storysmith.models.domain import CIResult, PullRequestResult, StoryContext, TestResults, Worktree


class LLMClient(ABC):
    """A chat-completion style model endpoint."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send one prompt and return the model's text reply.

        Raises:
            ExternalServiceError: If the endpoint rejected the request or
                returned no choices.
            httpx.TransportError: On connection failures (retryable).
        """
        pass

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None


class WorktreeManager(ABC):
    """Creates and removes the isolated working copy of a story."""

    @abstractmethod
    async def create_worktree(self, story_id: str) -> Worktree:
        """Create a worktree on a fresh branch for ``story_id``.

        Raises:
            WorktreeError: If git refused (branch exists, dirty repo, ...).
        """
        pass

    @abstractmethod
    async def destroy_worktree(self, story_id: str) -> None:
        """Remove the worktree for ``story_id``. Missing worktrees are ignored."""
        pass

    @abstractmethod
    async def commit_and_push(self, worktree: Worktree, message: str) -> None:
        """Commit all changes in the worktree and push its branch.

        Raises:
            WorktreeError: If the commit or push failed.
        """
        pass


class ContextGenerator(ABC):
    """Builds the ``StoryContext`` handed to agents."""

    @abstractmethod
    async def generate_context(self, story_file_path: str) -> StoryContext:
        """Assemble context for the story stored at ``story_file_path``.

        Raises:
            ContextGenerationError: If the story file cannot be read or parsed.
        """
        pass


class PullRequestAutomator(ABC):
    """Opens, watches and merges pull requests on the code host."""

    @abstractmethod
    async def create_pull_request(
        self,
        title: str,
        body: str,
        head_branch: str,
        base_branch: str,
        labels: list[str] | None = None,
    ) -> PullRequestResult:
        """Open a pull request from ``head_branch`` into ``base_branch``."""
        pass

    @abstractmethod
    async def monitor_ci_and_merge(self, pr_number: int, auto_merge: bool) -> CIResult:
        """Wait for CI checks on the PR; merge when they pass and ``auto_merge`` is set.

        Raises:
            CIError: If a check failed or CI did not finish in time.
        """
        pass

    @abstractmethod
    async def delete_branch(self, branch: str) -> None:
        """Delete the remote branch after a merge."""
        pass


class SprintTracker(ABC):
    """Reads and writes story status on the sprint board."""

    @abstractmethod
    async def get_status(self, story_id: str) -> str | None:
        pass

    @abstractmethod
    async def update_status(self, story_id: str, status: SprintStatus) -> None:
        pass


class TestRunner(ABC):
    """Runs the project's tests inside a worktree."""

    __test__ = False

    @abstractmethod
    async def run_tests(self, worktree_path: str) -> TestResults:
        """Run the test command and parse counts and coverage.

        A test failure is reported through ``TestResults.failed``; only an
        inability to run the command at all raises.
        """
        pass
