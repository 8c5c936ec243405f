"""Implementer agent: writes code and tests for a story and reviews its own work."""

import json
from typing import Literal, TypeVar

import structlog
from pydantic import BaseModel, Field

from storysmith.agents.parsing import Malformed, Parsed, parse_model_output
from storysmith.exceptions import AgentResponseError
from storysmith.models.domain import CodeImplementation, FileChange, StoryContext, TestResults, TestSuite
from storysmith.models.review import SelfReviewReport
from storysmith.providers.base import LLMClient

log = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

SYSTEM_PROMPT = (
    "You are a senior software engineer implementing user stories. "
    "Follow the architecture notes and existing conventions. "
    "Always answer with a single JSON object in the requested format."
)

FILES_FORMAT = """{{
  "files": [
    {{"path": "relative/path.py", "operation": "create|modify|delete", "content": "full file content"}}
  ],
  "{extra}": "..."
}}"""


class FileChangePayload(BaseModel):
    path: str = Field(..., min_length=1)
    content: str = ""
    operation: Literal["create", "modify", "delete"] = "create"


class ImplementationPayload(BaseModel):
    files: list[FileChangePayload] = Field(default_factory=list)
    commit_message: str = ""
    notes: str = ""


class TestSuitePayload(BaseModel):
    __test__ = False

    files: list[FileChangePayload] = Field(default_factory=list)
    framework: str = "pytest"


def story_section(context: StoryContext) -> str:
    criteria = "\n".join(f"- {c}" for c in context.acceptance_criteria) or "- (none listed)"
    existing = "\n\n".join(f"### {path}\n```\n{content}\n```" for path, content in context.existing_code.items())
    return f"""# Story {context.story_id}: {context.title}

{context.description}

## Acceptance Criteria
{criteria}

## Architecture
{context.architecture or "(not provided)"}

## Onboarding Notes
{context.onboarding or "(not provided)"}

## Existing Code
{existing or "(none)"}
"""


def files_section(files: list[FileChange]) -> str:
    return "\n\n".join(f"### {f.path} ({f.operation})\n```\n{f.content}\n```" for f in files)


def _to_changes(files: list[FileChangePayload]) -> list[FileChange]:
    return [FileChange(path=f.path, content=f.content, operation=f.operation) for f in files]


class ImplementerAgent:
    """LLM-backed developer agent.

    Every method sends one prompt and validates the reply; a reply that
    cannot be parsed raises ``AgentResponseError`` so the orchestrator's
    retry policy can ask again.
    """

    def __init__(self, name: str, llm: LLMClient):
        self.name = name
        self.llm = llm

    async def implement_story(self, context: StoryContext) -> CodeImplementation:
        prompt = f"""{story_section(context)}

Implement this story. Return every file you create or change with its complete content.

Respond with JSON:
{FILES_FORMAT.format(extra="commit_message")}
Add a "notes" field for anything the reviewer should know.
"""
        payload = await self._ask(prompt, ImplementationPayload, "implement_story")
        log.info("story_implemented", story_id=context.story_id, files=len(payload.files))
        return CodeImplementation(
            files=_to_changes(payload.files),
            commit_message=payload.commit_message or f"feat: implement story {context.story_id}",
            notes=payload.notes,
        )

    async def write_tests(self, context: StoryContext, implementation: CodeImplementation) -> TestSuite:
        prompt = f"""{story_section(context)}

## Implementation
{files_section(implementation.files)}

Write automated tests covering every acceptance criterion and the important edge cases.

Respond with JSON:
{FILES_FORMAT.format(extra="framework")}
"""
        payload = await self._ask(prompt, TestSuitePayload, "write_tests")
        return TestSuite(files=_to_changes(payload.files), framework=payload.framework)

    async def fix_tests(
        self,
        context: StoryContext,
        implementation: CodeImplementation,
        test_results: TestResults,
    ) -> CodeImplementation:
        output_tail = test_results.output[-8000:]
        prompt = f"""{story_section(context)}

## Implementation
{files_section(implementation.files)}

## Test Run
{test_results.failed} failed, {test_results.passed} passed.

```
{output_tail}
```

Fix the code (or the tests, if they are wrong) so the suite passes. Return only the files you change.

Respond with JSON:
{FILES_FORMAT.format(extra="commit_message")}
"""
        payload = await self._ask(prompt, ImplementationPayload, "fix_tests")
        return CodeImplementation(
            files=_to_changes(payload.files),
            commit_message=payload.commit_message or f"fix: make tests pass for story {context.story_id}",
            notes=payload.notes,
        )

    async def review_code(
        self,
        context: StoryContext,
        implementation: CodeImplementation,
        test_results: TestResults,
    ) -> SelfReviewReport:
        coverage = json.dumps(
            {
                "lines": test_results.coverage.lines,
                "branches": test_results.coverage.branches,
                "functions": test_results.coverage.functions,
            }
        )
        prompt = f"""{story_section(context)}

## Implementation
{files_section(implementation.files)}

## Tests
{test_results.passed} passed, {test_results.failed} failed, {test_results.skipped} skipped. Coverage: {coverage}

Review your own work honestly. List anything that would break production or violate an
acceptance criterion as a critical issue.

Respond with JSON:
{{"confidence": 0.0-1.0, "critical_issues": ["..."], "fixable_issues": ["..."], "summary": "..."}}
"""
        return await self._ask(prompt, SelfReviewReport, "review_code")

    async def close(self) -> None:
        await self.llm.close()

    async def _ask(self, prompt: str, schema: type[M], action: str) -> M:
        raw = await self.llm.complete(prompt, system_prompt=SYSTEM_PROMPT)
        match parse_model_output(raw, schema):
            case Parsed(value=value):
                return value
            case Malformed(error=error):
                log.warning("agent_output_malformed", agent=self.name, action=action, error=error)
                raise AgentResponseError(f"{action}: {error}", agent_name=self.name, raw_output=raw)
        raise AssertionError("unreachable")
