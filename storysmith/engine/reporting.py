"""Helpers that turn raw tool output into artifacts, and artifacts into text.

- ``extract_coverage``: coverage percentages from a JSON summary or from
  the text report of istanbul or pytest-cov
- ``parse_test_counts``: passed/failed/skipped counts from test output
- ``render_pr_body``: the pull request description
"""

import json
import re
from typing import Any

from storysmith.models.domain import Coverage, StoryContext, TestResults
from storysmith.models.review import IndependentReviewReport, SelfReviewReport
from storysmith.rendering.engine import SecureTemplateEngine

# istanbul text-summary table: All files | % Stmts | % Branch | % Funcs | % Lines
_ISTANBUL_TABLE = re.compile(r"All files\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)\s*\|\s*([\d.]+)")
# pytest-cov terminal report: TOTAL  stmts  miss  [branch  brpart]  cover%
_PYTEST_COV_TOTAL = re.compile(r"^TOTAL\s+\d+\s+\d+(?:\s+(\d+)\s+(\d+))?\s+([\d.]+)%", re.MULTILINE)

_COUNT_PATTERNS = {
    "passed": re.compile(r"(\d+)\s+(?:passed|passing)\b"),
    "failed": re.compile(r"(\d+)\s+(?:failed|failing)\b"),
    "skipped": re.compile(r"(\d+)\s+(?:skipped|pending)\b"),
}
_ERRORS = re.compile(r"(\d+)\s+errors?\b")


def _coverage_from_json(data: Any) -> Coverage | None:
    if not isinstance(data, dict):
        return None

    total = data.get("total")
    if isinstance(total, dict):
        def pct(key: str) -> float:
            section = total.get(key, {})
            return float(section.get("pct", 0) or 0) if isinstance(section, dict) else 0.0

        return Coverage(
            lines=pct("lines"),
            functions=pct("functions"),
            branches=pct("branches"),
            statements=pct("statements"),
        )

    totals = data.get("totals")
    if isinstance(totals, dict) and "percent_covered" in totals:
        covered = float(totals["percent_covered"])
        branches = 0.0
        if totals.get("num_branches"):
            branches = 100.0 * totals.get("covered_branches", 0) / totals["num_branches"]
        return Coverage(lines=covered, functions=0.0, branches=round(branches, 2), statements=covered)

    return None


def extract_coverage(output: str, json_summary: str | None = None) -> Coverage:
    """Extract coverage percentages.

    Args:
        output: Test command output.
        json_summary: Contents of a coverage JSON report (istanbul
            ``coverage-summary.json`` or coverage.py ``coverage.json``), if
            one was produced. Takes precedence over ``output``.

    Returns:
        Coverage with every field zero when nothing matched.
    """
    if json_summary:
        try:
            coverage = _coverage_from_json(json.loads(json_summary))
        except (json.JSONDecodeError, TypeError, ValueError):
            coverage = None
        if coverage is not None:
            return coverage

    match = _ISTANBUL_TABLE.search(output)
    if match:
        statements, branches, functions, lines = (float(g) for g in match.groups())
        return Coverage(lines=lines, functions=functions, branches=branches, statements=statements)

    match = _PYTEST_COV_TOTAL.search(output)
    if match:
        branch_total, branch_partial, percent = match.groups()
        cover = float(percent)
        branches = 0.0
        if branch_total and int(branch_total):
            branches = round(100.0 * (int(branch_total) - int(branch_partial)) / int(branch_total), 2)
        return Coverage(lines=cover, functions=0.0, branches=branches, statements=cover)

    return Coverage()


def parse_test_counts(output: str, exit_code: int) -> tuple[int, int, int]:
    """Return (passed, failed, skipped) parsed from test output.

    Collection errors count as failures. A non-zero exit code with no
    failure reported still counts as one failure, so a crashed test command
    is never mistaken for a green run.
    """
    counts = {}
    for key, pattern in _COUNT_PATTERNS.items():
        matches = pattern.findall(output)
        counts[key] = int(matches[-1]) if matches else 0

    errors = _ERRORS.findall(output)
    failed = counts["failed"] + (int(errors[-1]) if errors else 0)
    if exit_code != 0 and failed == 0:
        failed = 1
    return counts["passed"], failed, counts["skipped"]


def render_pr_body(
    context: StoryContext,
    self_review: SelfReviewReport,
    independent_review: IndependentReviewReport,
    test_results: TestResults,
    total_duration_ms: int,
    escalation_response: str | None = None,
    engine: SecureTemplateEngine | None = None,
) -> str:
    """Render the pull request description.

    Output depends only on the arguments, so re-running a step produces an
    identical body.
    """
    engine = engine or SecureTemplateEngine()
    return engine.render(
        "pull_request.md.j2",
        {
            "story_id": context.story_id,
            "title": context.title,
            "description": context.description,
            "self_review": self_review.model_dump(),
            "independent_review": independent_review.model_dump(),
            "tests": test_results.to_dict(),
            "escalation_response": escalation_response,
            "duration_minutes": round(total_duration_ms / 60000),
        },
    )
