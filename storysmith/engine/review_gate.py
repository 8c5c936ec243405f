"""Escalation policy applied after both reviews.

The gate is a pure function so it can be tested exhaustively and so nothing
else in the pipeline can quietly bypass it. A story escalates when ANY of:

- the self-review confidence is below the threshold
- the self-review lists critical issues
- the independent review decided ``fail``

The independent review's own confidence is reported but does not gate.
"""

from storysmith.models.review import IndependentReviewReport, ReviewGateResult, SelfReviewReport


def evaluate(
    self_review: SelfReviewReport,
    independent_review: IndependentReviewReport,
    threshold: float,
) -> ReviewGateResult:
    reasons: list[str] = []

    if self_review.confidence < threshold:
        reasons.append(f"self-review confidence {self_review.confidence:.2f} below threshold {threshold:.2f}")
    if self_review.critical_issues:
        reasons.append(f"{len(self_review.critical_issues)} critical issue(s) reported by self-review")
    if independent_review.decision == "fail":
        reasons.append("independent review decision: fail")

    return ReviewGateResult(
        escalate=bool(reasons),
        reasons=reasons,
        self_review_confidence=self_review.confidence,
        threshold=threshold,
    )
