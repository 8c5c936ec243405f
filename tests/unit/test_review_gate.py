"""Tests for the review gate."""

import pytest

from storysmith.engine import review_gate
from storysmith.models.review import IndependentReviewReport, SelfReviewReport


def _self(confidence=0.9, critical=None):
    return SelfReviewReport(confidence=confidence, critical_issues=critical or [])


def _independent(decision="pass", confidence=0.9):
    return IndependentReviewReport(decision=decision, confidence=confidence)


def test_passes_when_everything_is_confident():
    result = review_gate.evaluate(_self(), _independent(), threshold=0.85)

    assert not result.escalate
    assert result.reasons == []
    assert result.self_review_confidence == 0.9
    assert result.threshold == 0.85


def test_threshold_is_inclusive():
    assert not review_gate.evaluate(_self(0.85), _independent(), threshold=0.85).escalate


def test_independent_confidence_does_not_gate():
    assert not review_gate.evaluate(_self(), _independent(confidence=0.4), threshold=0.85).escalate


@pytest.mark.parametrize(
    ("self_review", "independent", "reason"),
    [
        (_self(0.84), _independent(), "self-review confidence 0.84 below threshold 0.85"),
        (_self(critical=["SQL injection"]), _independent(), "1 critical issue(s) reported by self-review"),
        (_self(), _independent(decision="fail"), "independent review decision: fail"),
    ],
)
def test_each_condition_escalates(self_review, independent, reason):
    result = review_gate.evaluate(self_review, independent, threshold=0.85)

    assert result.escalate
    assert result.reasons == [reason]


def test_reasons_accumulate():
    result = review_gate.evaluate(_self(0.4, ["crash"]), _independent("fail", 0.3), threshold=0.85)
    assert len(result.reasons) == 3


def test_degraded_report_follows_self_review():
    degraded = IndependentReviewReport.from_self_review(_self(0.9, ["crash"]))

    assert degraded.degraded
    assert degraded.decision == "fail"
    assert degraded.overall_score == 9.0
    assert review_gate.evaluate(_self(0.9, ["crash"]), degraded, threshold=0.85).escalate
