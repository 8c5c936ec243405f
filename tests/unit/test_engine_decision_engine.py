"""Tests for the decision engine."""

import json
from unittest.mock import AsyncMock

import pytest

from storysmith.config.settings import DecisionConfig
from storysmith.engine.decision_engine import (
    DecisionEngine,
    confidence_from_text,
    extract_keywords,
    match_score,
)
from storysmith.enums import DecisionSource
from storysmith.providers.base import LLMClient

DEPLOY_DOC = """# Deployments

We deploy every weekday morning.

Database migrations must run before deploying the application server.
Rollbacks use the previous container image tag.
"""


@pytest.fixture
def onboarding_dir(tmp_path):
    docs = tmp_path / "onboarding"
    docs.mkdir()
    (docs / "deployments.md").write_text(DEPLOY_DOC)
    return docs


def _llm(reply: str) -> AsyncMock:
    llm = AsyncMock(spec=LLMClient)
    llm.complete.return_value = reply
    return llm


def test_extract_keywords_drops_stop_words():
    assert extract_keywords("Should the database migrations run before deploying?") == [
        "database",
        "migrations",
        "run",
        "before",
        "deploying",
    ]


def test_match_score():
    assert match_score("Database migrations", ["database", "migrations", "cache"]) == pytest.approx(2 / 3)
    assert match_score("anything", []) == 0.0


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Definitely ship it", 0.7),
        ("Probably fine", 0.6),
        ("Maybe", 0.4),
        ("I am unsure", 0.3),
        ("Ship it", 0.5),
        ("", 0.5),
    ],
)
def test_confidence_from_text(text, expected):
    assert confidence_from_text(text) == expected


class TestOnboardingTier:
    @pytest.mark.asyncio
    async def test_answer_from_docs(self, onboarding_dir):
        llm = _llm("unused")
        engine = DecisionEngine(onboarding_dir, llm=llm)

        decision = await engine.attempt_autonomous_decision(
            "Should database migrations run before deploying?", {"story_id": "1-2"}
        )

        assert decision.source == DecisionSource.ONBOARDING
        assert decision.confidence == 0.95
        assert decision.decision.startswith("Database migrations must run before deploying")
        assert "deployments.md" in decision.reasoning
        assert decision.context == {"story_id": "1-2"}
        llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unrelated_question_skips_docs(self, onboarding_dir):
        engine = DecisionEngine(onboarding_dir)

        decision = await engine.attempt_autonomous_decision("Which logging library for the frontend?")

        assert decision.source == DecisionSource.FALLBACK
        assert decision.decision == "escalate"
        assert engine.should_escalate(decision)

    @pytest.mark.asyncio
    async def test_missing_onboarding_dir(self, tmp_path):
        engine = DecisionEngine(tmp_path / "nope")
        decision = await engine.attempt_autonomous_decision("Anything at all?")
        assert decision.source == DecisionSource.FALLBACK


class TestLLMTier:
    @pytest.mark.asyncio
    async def test_structured_reply(self, tmp_path):
        reply = json.dumps(
            {
                "decision": "Open the pull request",
                "confidence": 0.8,
                "reasoning": "The failing check is a known flaky test unrelated to the change and clearly safe.",
                "alternatives": ["Wait for a human"],
            }
        )
        llm = _llm(reply)
        engine = DecisionEngine(tmp_path, llm=llm, config=DecisionConfig(temperature=0.1))

        decision = await engine.attempt_autonomous_decision("Proceed with the PR?", {"reasons": ["flaky"]})

        assert decision.source == DecisionSource.LLM
        assert decision.decision == "Open the pull request"
        # +0.1 for "clearly", capped at the configured maximum
        assert decision.confidence == 0.9
        assert decision.alternatives == ["Wait for a human"]
        assert llm.complete.await_args.kwargs["temperature"] == 0.1
        assert "flaky" in llm.complete.await_args.args[0]

    @pytest.mark.asyncio
    async def test_hedging_lowers_confidence(self, tmp_path):
        reply = json.dumps({"decision": "Maybe proceed", "confidence": 0.8, "reasoning": "short"})
        engine = DecisionEngine(tmp_path, llm=_llm(reply))

        decision = await engine.attempt_autonomous_decision("Proceed?")

        # 0.8 - 0.2 (hedging) - 0.05 (short reasoning)
        assert decision.confidence == pytest.approx(0.55)
        assert engine.should_escalate(decision)

    @pytest.mark.asyncio
    async def test_confidence_floor(self, tmp_path):
        reply = json.dumps({"decision": "unclear", "confidence": 0.1, "reasoning": "missing context"})
        decision = await DecisionEngine(tmp_path, llm=_llm(reply)).attempt_autonomous_decision("Proceed?")
        assert decision.confidence == 0.3

    @pytest.mark.asyncio
    async def test_free_text_reply(self, tmp_path):
        engine = DecisionEngine(tmp_path, llm=_llm("Probably safe to merge."))

        decision = await engine.attempt_autonomous_decision("Proceed?")

        assert decision.decision == "Probably safe to merge."
        assert decision.confidence == 0.6
        assert decision.source == DecisionSource.LLM

    @pytest.mark.asyncio
    async def test_model_errors_propagate(self, tmp_path):
        llm = AsyncMock(spec=LLMClient)
        llm.complete.side_effect = ConnectionError("down")

        with pytest.raises(ConnectionError):
            await DecisionEngine(tmp_path, llm=llm).attempt_autonomous_decision("Proceed?")
