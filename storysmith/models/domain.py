"""
Domain models for the story pipeline.

Each pipeline step produces one of these artifacts. They are stored in the
checkpoint's ``variables`` mapping as plain dicts (``to_dict``) and rebuilt
with ``from_dict`` when a run resumes, so every field must be JSON friendly.

Example:
    Recording a test run::

        results = TestResults(
            passed=41,
            failed=0,
            skipped=2,
            duration_ms=5230,
            coverage=Coverage(lines=91.2, functions=88.0, branches=74.5, statements=90.8),
        )
        state["variables"]["run-tests"] = results.to_dict()
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


@dataclass
class StoryContext:
    """Everything an agent needs to know about one story.

    Assembled by a ``ContextGenerator`` from the story file, the
    architecture document, onboarding notes and a map of existing code.
    """

    story_id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    architecture: str = ""
    onboarding: str = ""
    existing_code: dict[str, str] = field(default_factory=dict)
    story_path: str = ""
    total_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoryContext":
        return cls(**data)


@dataclass
class Worktree:
    """An isolated working copy for one story."""

    story_id: str
    path: str
    branch: str
    base_branch: str = "main"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Worktree":
        return cls(**data)


@dataclass
class FileChange:
    """One file written, modified or deleted by an agent.

    ``path`` is relative to the worktree root.
    """

    path: str
    content: str = ""
    operation: Literal["create", "modify", "delete"] = "create"


@dataclass
class CodeImplementation:
    """Output of the implement (or fix) step."""

    files: list[FileChange] = field(default_factory=list)
    commit_message: str = ""
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CodeImplementation":
        files = [FileChange(**f) for f in data.get("files", [])]
        return cls(files=files, commit_message=data.get("commit_message", ""), notes=data.get("notes", ""))


@dataclass
class TestSuite:
    """Test files produced for a story."""

    __test__ = False

    files: list[FileChange] = field(default_factory=list)
    framework: str = "pytest"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestSuite":
        files = [FileChange(**f) for f in data.get("files", [])]
        return cls(files=files, framework=data.get("framework", "pytest"))


@dataclass
class Coverage:
    """Coverage percentages (0-100). All zero when coverage was not found."""

    lines: float = 0.0
    functions: float = 0.0
    branches: float = 0.0
    statements: float = 0.0


@dataclass
class TestResults:
    """Outcome of one test command run."""

    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    coverage: Coverage = field(default_factory=Coverage)
    output: str = ""
    fix_attempts: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestResults":
        values = dict(data)
        values["coverage"] = Coverage(**values.get("coverage", {}))
        return cls(**values)


@dataclass
class PullRequestResult:
    """A pull request opened for a story.

    ``state`` becomes ``merged`` once the CI monitor merged it; it stays
    ``open`` when auto-merge is disabled.
    """

    url: str
    number: int
    title: str
    body: str = ""
    base_branch: str = "main"
    head_branch: str = ""
    state: Literal["open", "merged", "closed"] = "open"
    auto_merge_enabled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PullRequestResult":
        return cls(**data)


@dataclass
class CIResult:
    """Final CI outcome for a pull request."""

    status: Literal["success", "failure", "skipped"]
    merged: bool = False
    failed_checks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CIResult":
        return cls(**data)
