"""Git worktree manager backed by the git CLI."""

import subprocess
from pathlib import Path

import structlog

from storysmith.exceptions import WorktreeError
from storysmith.models.domain import Worktree
from storysmith.providers.base import WorktreeManager
from storysmith.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


class GitWorktreeManager(WorktreeManager):
    """Creates ``<worktrees_dir>/story-<id>`` on branch ``story/<id>``.

    Args:
        repo_root: Main checkout of the repository.
        worktrees_dir: Parent directory for worktrees; relative paths are
            resolved against ``repo_root``.
        base_branch: Branch new story branches start from.
    """

    def __init__(self, repo_root: str | Path, worktrees_dir: str | Path = "../wt", base_branch: str = "main"):
        self.repo_root = Path(repo_root).resolve()
        worktrees = Path(worktrees_dir)
        self.worktrees_dir = worktrees if worktrees.is_absolute() else (self.repo_root / worktrees).resolve()
        self.base_branch = base_branch

    def worktree_path(self, story_id: str) -> Path:
        return self.worktrees_dir / f"story-{story_id}"

    @staticmethod
    def branch_name(story_id: str) -> str:
        return f"story/{story_id}"

    async def create_worktree(self, story_id: str) -> Worktree:
        path = self.worktree_path(story_id)
        branch = self.branch_name(story_id)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)

        try:
            _, _, exists = await run_command(
                "git", "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=self.repo_root, check=False
            )
            if exists == 0:
                # Story branch left over from an earlier run
                await run_command("git", "worktree", "add", str(path), branch, cwd=self.repo_root)
            else:
                await run_command(
                    "git", "worktree", "add", "-b", branch, str(path), self.base_branch, cwd=self.repo_root
                )
        except subprocess.CalledProcessError as e:
            log.error("worktree_create_failed", story_id=story_id, stderr=e.stderr)
            raise WorktreeError(f"Cannot create worktree for story {story_id}: {(e.stderr or '').strip()}") from e
        except FileNotFoundError as e:
            raise WorktreeError("git executable not found") from e

        log.info("worktree_created", story_id=story_id, path=str(path), branch=branch)
        return Worktree(story_id=story_id, path=str(path), branch=branch, base_branch=self.base_branch)

    async def destroy_worktree(self, story_id: str) -> None:
        path = self.worktree_path(story_id)
        if not path.exists():
            log.debug("worktree_already_removed", story_id=story_id)
            return
        try:
            await run_command("git", "worktree", "remove", "--force", str(path), cwd=self.repo_root)
            await run_command("git", "worktree", "prune", cwd=self.repo_root, check=False)
        except subprocess.CalledProcessError as e:
            raise WorktreeError(f"Cannot remove worktree for story {story_id}: {(e.stderr or '').strip()}") from e
        log.info("worktree_destroyed", story_id=story_id)

    async def commit_and_push(self, worktree: Worktree, message: str) -> None:
        """Stage everything in the worktree, commit and push the story branch."""
        try:
            await run_command("git", "add", "-A", cwd=worktree.path)
            _, _, code = await run_command("git", "diff", "--cached", "--quiet", cwd=worktree.path, check=False)
            if code != 0:
                await run_command("git", "commit", "-m", message, cwd=worktree.path)
            await run_command("git", "push", "-u", "origin", worktree.branch, cwd=worktree.path)
        except subprocess.CalledProcessError as e:
            raise WorktreeError(f"Cannot push branch {worktree.branch}: {(e.stderr or '').strip()}") from e
        log.info("branch_pushed", branch=worktree.branch)
