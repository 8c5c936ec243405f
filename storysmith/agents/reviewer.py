"""Reviewer agent: an independent second opinion on a story's change."""

import structlog

from storysmith.agents.implementer import files_section, story_section
from storysmith.agents.parsing import Malformed, Parsed, parse_model_output
from storysmith.exceptions import AgentResponseError
from storysmith.models.domain import CodeImplementation, StoryContext, TestResults
from storysmith.models.review import IndependentReviewReport, SelfReviewReport
from storysmith.providers.base import LLMClient

log = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a meticulous code reviewer who did not write this code. "
    "Judge correctness, security and maintainability against the story. "
    "Always answer with a single JSON object in the requested format."
)


class ReviewerAgent:
    def __init__(self, name: str, llm: LLMClient):
        self.name = name
        self.llm = llm

    async def review(
        self,
        context: StoryContext,
        implementation: CodeImplementation,
        test_results: TestResults,
        self_review: SelfReviewReport,
    ) -> IndependentReviewReport:
        """Review the change and return a pass/fail verdict.

        The implementer's self-review is shown for reference only; the
        verdict must stand on its own.
        """
        self_issues = "\n".join(f"- {i}" for i in self_review.critical_issues + self_review.fixable_issues)
        prompt = f"""{story_section(context)}

## Change Under Review
{files_section(implementation.files)}

## Test Results
{test_results.passed} passed, {test_results.failed} failed, line coverage {test_results.coverage.lines}%.

## Author's Self-Review (confidence {self_review.confidence})
{self_review.summary}
{self_issues or "- no issues reported"}

Respond with JSON:
{{
  "decision": "pass|fail",
  "confidence": 0.0-1.0,
  "overall_score": 0-10,
  "findings": [{{"severity": "critical|major|minor|info", "description": "...", "file_path": "...", "line_number": 1}}],
  "recommendations": ["..."],
  "summary": "..."
}}
"""
        raw = await self.llm.complete(prompt, system_prompt=SYSTEM_PROMPT)
        match parse_model_output(raw, IndependentReviewReport):
            case Parsed(value=report):
                log.info(
                    "independent_review_complete",
                    story_id=context.story_id,
                    decision=report.decision,
                    confidence=report.confidence,
                )
                return report
            case Malformed(error=error):
                log.warning("agent_output_malformed", agent=self.name, action="review", error=error)
                raise AgentResponseError(f"review: {error}", agent_name=self.name, raw_output=raw)
        raise AssertionError("unreachable")

    async def close(self) -> None:
        await self.llm.close()
