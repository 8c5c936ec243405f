"""Configuration models and YAML loading."""

from storysmith.config.settings import (
    AgentAssignment,
    AgentsConfig,
    DecisionConfig,
    GitHubConfig,
    ProjectConfig,
    StorySmithSettings,
    WorkflowConfig,
)

__all__ = [
    "AgentAssignment",
    "AgentsConfig",
    "DecisionConfig",
    "GitHubConfig",
    "ProjectConfig",
    "StorySmithSettings",
    "WorkflowConfig",
]
