"""Tests for test-output parsing and pull request rendering."""

import json

import pytest
from jinja2 import TemplateNotFound

from storysmith.engine.reporting import extract_coverage, parse_test_counts, render_pr_body
from storysmith.models.domain import Coverage
from storysmith.models.review import IndependentReviewReport, SelfReviewReport
from storysmith.rendering.engine import SecureTemplateEngine

ISTANBUL_OUTPUT = """
----------|---------|----------|---------|---------|
File      | % Stmts | % Branch | % Funcs | % Lines |
----------|---------|----------|---------|---------|
All files |   92.31 |    78.5  |   88.0  |   91.67 |
"""

PYTEST_COV_OUTPUT = """
Name                  Stmts   Miss  Cover
-----------------------------------------
src/auth/session.py      40      4    90%
-----------------------------------------
TOTAL                    40      4    90%
12 passed, 1 skipped in 0.84s
"""

PYTEST_COV_BRANCH_OUTPUT = """
Name       Stmts   Miss Branch BrPart  Cover
--------------------------------------------
TOTAL        100     10     20      5    87%
"""


class TestExtractCoverage:
    def test_istanbul_table(self):
        coverage = extract_coverage(ISTANBUL_OUTPUT)
        assert coverage == Coverage(lines=91.67, functions=88.0, branches=78.5, statements=92.31)

    def test_pytest_cov_total(self):
        coverage = extract_coverage(PYTEST_COV_OUTPUT)
        assert coverage.lines == 90.0
        assert coverage.statements == 90.0
        assert coverage.branches == 0.0

    def test_pytest_cov_with_branches(self):
        coverage = extract_coverage(PYTEST_COV_BRANCH_OUTPUT)
        assert coverage.lines == 87.0
        assert coverage.branches == 75.0

    def test_istanbul_json_summary_wins(self):
        summary = json.dumps(
            {
                "total": {
                    "lines": {"pct": 80},
                    "functions": {"pct": 70},
                    "branches": {"pct": 60},
                    "statements": {"pct": 81},
                }
            }
        )
        coverage = extract_coverage(PYTEST_COV_OUTPUT, json_summary=summary)
        assert coverage == Coverage(lines=80.0, functions=70.0, branches=60.0, statements=81.0)

    def test_coverage_py_json(self):
        summary = json.dumps({"totals": {"percent_covered": 93.5, "num_branches": 8, "covered_branches": 6}})
        coverage = extract_coverage("", json_summary=summary)
        assert coverage.lines == 93.5
        assert coverage.branches == 75.0

    def test_bad_json_falls_back_to_output(self):
        assert extract_coverage(PYTEST_COV_OUTPUT, json_summary="{oops").lines == 90.0

    def test_nothing_found(self):
        assert extract_coverage("no coverage here") == Coverage()


class TestParseTestCounts:
    def test_pytest_summary(self):
        assert parse_test_counts("3 failed, 12 passed, 1 skipped in 2.1s", exit_code=1) == (12, 3, 1)

    def test_mocha_summary(self):
        assert parse_test_counts("  14 passing (2s)\n  2 pending\n  1 failing", exit_code=1) == (14, 1, 2)

    def test_collection_errors_count_as_failures(self):
        assert parse_test_counts("5 passed, 2 errors in 1.0s", exit_code=1) == (5, 2, 0)

    def test_crash_is_never_green(self):
        assert parse_test_counts("Traceback (most recent call last):", exit_code=2) == (0, 1, 0)

    def test_clean_run(self):
        assert parse_test_counts("12 passed in 0.5s", exit_code=0) == (12, 0, 0)


class TestRenderPrBody:
    def test_body_sections(self, sample_context, passing_results, confident_self_review, passing_review):
        body = render_pr_body(sample_context, confident_self_review, passing_review, passing_results, 150_000)

        assert body.startswith("## Story 1-2-user-login: User login")
        assert "- Confidence: 92%" in body
        assert "- Decision: PASS" in body
        assert "- Consider rate limiting" in body
        assert "- Passed: 12, failed: 0, skipped: 0" in body
        assert "Total Duration: 2 minutes" in body
        assert "Human Review" not in body

    def test_escalation_response_and_degraded_note(self, sample_context, passing_results, confident_self_review):
        degraded = IndependentReviewReport.from_self_review(confident_self_review)

        body = render_pr_body(
            sample_context,
            confident_self_review,
            degraded,
            passing_results,
            0,
            escalation_response="approve, known flake",
        )

        assert "independent reviewer unavailable" in body
        assert "Approved after escalation: approve, known flake" in body

    def test_rendering_is_deterministic(self, sample_context, passing_results, passing_review):
        review = SelfReviewReport(confidence=0.9)
        first = render_pr_body(sample_context, review, passing_review, passing_results, 60_000)
        second = render_pr_body(sample_context, review, passing_review, passing_results, 60_000)
        assert first == second


class TestSecureTemplateEngine:
    def test_rejects_escaping_paths(self):
        with pytest.raises(ValueError, match="escapes template directory"):
            SecureTemplateEngine().render("../engine.py", {})

    def test_missing_template(self):
        with pytest.raises(TemplateNotFound):
            SecureTemplateEngine().render("missing.j2", {})

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            SecureTemplateEngine(tmp_path / "nope")

    def test_sandbox_blocks_unsafe_attributes(self, tmp_path):
        from jinja2.exceptions import SecurityError

        (tmp_path / "evil.j2").write_text("{{ story.__class__ }}")
        engine = SecureTemplateEngine(tmp_path)

        with pytest.raises(SecurityError):
            engine.render("evil.j2", {"story": "x"})
