"""
Configuration system using Pydantic for type-safe settings management.

Settings are grouped into sections (project paths, workflow behaviour, agent
assignments, decision engine tuning and GitHub access) and combined in
``StorySmithSettings``, which can be loaded from a YAML file with environment
variable interpolation or built directly from keyword arguments.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storysmith.enums import ProviderType
from storysmith.exceptions import ConfigurationError

AGENT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ProjectConfig(BaseModel):
    """Filesystem layout of the project being worked on.

    Relative paths are resolved against ``root``.
    """

    project_id: str = Field(default="default", description="Identifier used by the control surface")
    root: str = Field(default=".", description="Project root directory")
    stories_dir: str = Field(default="docs/stories", description="Directory holding story markdown files")
    sprint_status_path: str = Field(default="docs/sprint-status.yaml", description="Sprint tracker YAML file")
    state_dir: str = Field(default=".storysmith/state", description="Checkpoint directory")
    escalations_dir: str = Field(default=".storysmith/escalations", description="Escalation queue directory")
    onboarding_dir: str = Field(default="docs/onboarding", description="Onboarding docs used for decisions")
    architecture_doc: str = Field(default="docs/architecture.md", description="Architecture reference document")
    worktrees_dir: str = Field(default="../wt", description="Parent directory for story worktrees")
    base_branch: str = Field(default="main", description="Branch pull requests target")

    def resolve(self, path: str) -> Path:
        """Resolve a configured path against the project root."""
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return Path(self.root) / candidate


class WorkflowConfig(BaseModel):
    """Pipeline behaviour: retries, thresholds and escalation policy."""

    auto_merge: bool = Field(default=False, description="Merge the PR once CI passes")
    max_test_fix_attempts: int = Field(default=3, ge=0, le=20, description="Fix iterations before giving up")
    max_retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for transient failures")
    base_retry_delay: float = Field(default=1.0, ge=0.0, description="Initial backoff delay in seconds")
    reviewer_max_retry_attempts: int = Field(default=2, ge=1, le=10, description="Attempts for the reviewer")
    enable_graceful_degradation: bool = Field(
        default=True, description="Fall back to the self-review when the reviewer is unavailable"
    )
    min_confidence_threshold: float = Field(
        default=0.85, ge=0.0, le=1.0, description="Minimum self-review confidence to skip escalation"
    )
    escalation_wait_seconds: float | None = Field(
        default=0.0,
        ge=0.0,
        description="How long a run waits for a human response. 0 returns immediately, null waits forever",
    )
    context_token_budget: int = Field(default=50_000, ge=1, description="Warn when story context exceeds this")
    step_warning_seconds: float = Field(default=1800.0, ge=0.0, description="Warn when a step runs longer")
    test_command: list[str] = Field(
        default_factory=lambda: ["pytest", "--cov", "-q"], description="Command run inside the worktree"
    )
    test_timeout: float = Field(default=900.0, ge=1.0, description="Test command timeout in seconds")


class AgentAssignment(BaseModel):
    """Model backing one named agent."""

    provider_type: ProviderType = Field(default=ProviderType.OPENAI_COMPATIBLE)
    model: str = Field(default="default", description="Model identifier")
    base_url: str = Field(default="http://localhost:8000/v1", description="Chat-completions base URL")
    api_key: SecretStr | None = Field(default=None, description="API key, if the endpoint requires one")
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, ge=1)
    timeout: float = Field(default=300.0, ge=1.0, description="Request timeout in seconds")


def _default_assignments() -> dict[str, AgentAssignment]:
    return {
        "implementer": AgentAssignment(),
        "reviewer": AgentAssignment(temperature=0.0),
    }


class AgentsConfig(BaseModel):
    """Agent pool configuration."""

    max_concurrent_agents: int = Field(default=3, ge=1, le=20, description="Live agents per pool")
    implementer: str = Field(default="implementer", description="Agent name used for implementation")
    reviewer: str = Field(default="reviewer", description="Agent name used for independent review")
    assignments: dict[str, AgentAssignment] = Field(default_factory=_default_assignments)

    @field_validator("assignments")
    @classmethod
    def validate_agent_names(cls, value: dict[str, AgentAssignment]) -> dict[str, AgentAssignment]:
        for name in value:
            if not AGENT_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid agent name {name!r}: only letters, digits, '-' and '_' are allowed")
        return value

    @model_validator(mode="after")
    def validate_roles_assigned(self) -> AgentsConfig:
        """The implementer and reviewer roles must point at configured agents."""
        for role in (self.implementer, self.reviewer):
            if role not in self.assignments:
                raise ValueError(f"Agent {role!r} has no entry in agents.assignments")
        return self


class DecisionConfig(BaseModel):
    """Decision engine tuning."""

    agent: str = Field(default="reviewer", description="Agent assignment used for LLM decisions")
    escalation_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    onboarding_confidence: float = Field(default=0.95, ge=0.0, le=1.0)
    min_llm_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    max_llm_confidence: float = Field(default=0.9, ge=0.0, le=1.0)


class GitHubConfig(BaseModel):
    """GitHub access for pull requests and CI status."""

    owner: str = Field(default="", description="Repository owner/organization")
    repo: str = Field(default="", description="Repository name")
    token: SecretStr | None = Field(default=None, description="API token")
    api_url: str = Field(default="https://api.github.com", description="REST API base URL")
    ci_poll_interval: float = Field(default=30.0, ge=0.0, description="Seconds between CI polls")
    ci_timeout: float = Field(default=1800.0, ge=0.0, description="Give up waiting for CI after this")
    merge_method: Literal["squash", "merge", "rebase"] = Field(default="squash")


class StorySmithSettings(BaseSettings):
    """Main storysmith settings.

    Combines all configuration sections and provides ``from_yaml`` for
    loading a YAML file with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORYSMITH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)

    @model_validator(mode="after")
    def validate_decision_agent(self) -> StorySmithSettings:
        if self.decision.agent not in self.agents.assignments:
            raise ValueError(f"Decision agent {self.decision.agent!r} has no entry in agents.assignments")
        return self

    @property
    def state_dir(self) -> Path:
        """Get checkpoint directory as Path object."""
        return self.project.resolve(self.project.state_dir)

    @property
    def escalations_dir(self) -> Path:
        """Get escalation queue directory as Path object."""
        return self.project.resolve(self.project.escalations_dir)

    @property
    def onboarding_dir(self) -> Path:
        return self.project.resolve(self.project.onboarding_dir)

    @property
    def stories_dir(self) -> Path:
        return self.project.resolve(self.project.stories_dir)

    @property
    def sprint_status_path(self) -> Path:
        return self.project.resolve(self.project.sprint_status_path)

    @classmethod
    def from_yaml(cls, config_path: str) -> StorySmithSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ``${VAR_NAME}`` and ``${VAR_NAME:-default}`` substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            StorySmithSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ``${VAR_NAME}`` placeholders with environment variables.

        Supports two syntaxes:
        - ``${VAR_NAME}`` - Required environment variable (raises if not set)
        - ``${VAR_NAME:-default}`` - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
