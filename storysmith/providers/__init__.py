"""Collaborator interfaces and their default implementations."""

from storysmith.providers.base import (
    ContextGenerator,
    LLMClient,
    PullRequestAutomator,
    SprintTracker,
    TestRunner,
    WorktreeManager,
)

__all__ = [
    "ContextGenerator",
    "LLMClient",
    "PullRequestAutomator",
    "SprintTracker",
    "TestRunner",
    "WorktreeManager",
]
