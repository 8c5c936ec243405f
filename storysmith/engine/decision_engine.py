"""
Autonomous decisions with a confidence score.

Decision tiers:
    1. Onboarding documentation. If a markdown file in the onboarding
       directory covers more than half of the question's keywords, its most
       relevant paragraph is the answer, with fixed high confidence.
    2. LLM reasoning at low temperature. The model states a decision and a
       confidence; the confidence is then adjusted for hedging or certainty
       in the wording and clamped to a conservative range.
    3. When the model reply is not valid JSON, the whole reply is the
       decision and confidence is estimated from its wording alone.

The engine only recommends. Whether a confidence is high enough to act on
is the caller's policy; ``escalation_threshold`` is exposed for that.
"""

import re
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import BaseModel, Field, field_validator

from storysmith.agents.parsing import Malformed, Parsed, parse_model_output
from storysmith.config.settings import DecisionConfig
from storysmith.enums import DecisionSource
from storysmith.models.escalation import Decision
from storysmith.providers.base import LLMClient

log = structlog.get_logger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were",
        "what", "how", "when", "where", "who", "why",
        "should", "could", "would", "will", "can",
        "do", "does", "did", "have", "has", "had",
        "be", "been", "being", "am", "to", "from",
        "in", "on", "at", "by", "for", "with", "about",
        "as", "of", "or", "and", "but", "if", "then",
    }
)  # fmt: skip

HIGH_CERTAINTY = ("definitely", "clearly", "certain", "confident", "sure")
LOW_CERTAINTY = ("maybe", "perhaps", "might", "possibly", "unsure", "unclear")
MISSING_CONTEXT = ("missing", "insufficient", "need more")

SYSTEM_PROMPT = (
    "You are an autonomous decision-making assistant. Provide clear decisions with confidence assessments."
)


class LLMDecisionPayload(BaseModel):
    decision: str
    reasoning: str = ""
    confidence: float = 0.5
    alternatives: list[str] = Field(default_factory=list)

    @field_validator("decision", mode="before")
    @classmethod
    def stringify(cls, value: Any) -> str:
        return value if isinstance(value, str) else str(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp(cls, value: Any) -> float:
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.5


def extract_keywords(question: str) -> list[str]:
    """Lower-cased words longer than two characters, minus stop words."""
    return [w for w in re.split(r"\W+", question.lower()) if len(w) > 2 and w not in STOP_WORDS]


def match_score(content: str, keywords: list[str]) -> float:
    """Fraction of ``keywords`` that occur in ``content``."""
    if not keywords:
        return 0.0
    lower = content.lower()
    return sum(1 for k in keywords if k in lower) / len(keywords)


def confidence_from_text(text: str) -> float:
    """Estimate confidence from wording when no structured answer exists."""
    if not text:
        return 0.5
    lower = text.lower()
    if "definitely" in lower or "clearly" in lower:
        return 0.7
    if "probably" in lower or "likely" in lower:
        return 0.6
    if "maybe" in lower or "perhaps" in lower:
        return 0.4
    if "unsure" in lower or "unclear" in lower:
        return 0.3
    return 0.5


class DecisionEngine:
    """Answer operational questions from onboarding docs or an LLM.

    Attributes:
        onboarding_dir: Directory of markdown onboarding documents.
        escalation_threshold: Confidence below which callers should escalate.
    """

    def __init__(
        self,
        onboarding_dir: str | Path,
        llm: LLMClient | None = None,
        config: DecisionConfig | None = None,
    ) -> None:
        self.onboarding_dir = Path(onboarding_dir)
        self.llm = llm
        self.config = config or DecisionConfig()

    @property
    def escalation_threshold(self) -> float:
        return self.config.escalation_threshold

    def should_escalate(self, decision: Decision) -> bool:
        return decision.confidence < self.escalation_threshold

    async def attempt_autonomous_decision(self, question: str, context: dict[str, Any] | None = None) -> Decision:
        """Produce a recommendation for ``question``.

        Args:
            question: The question to decide.
            context: JSON-serialisable details passed to the model and kept
                on the returned decision.

        Returns:
            A Decision whose ``source`` tells which tier answered.
        """
        context = context or {}

        onboarding = await self._check_onboarding_docs(question)
        if onboarding is not None:
            answer, source_file = onboarding
            decision = Decision(
                question=question,
                decision=answer,
                confidence=self.config.onboarding_confidence,
                reasoning=f"Found explicit answer in onboarding documentation: {source_file}",
                source=DecisionSource.ONBOARDING,
                context=context,
            )
            log.info("decision_made", source=decision.source, confidence=decision.confidence, doc=source_file)
            return decision

        if self.llm is None:
            decision = Decision(
                question=question,
                decision="escalate",
                confidence=self.config.min_llm_confidence,
                reasoning="No onboarding answer found and no model configured",
                source=DecisionSource.FALLBACK,
                context=context,
            )
            log.info("decision_made", source=decision.source, confidence=decision.confidence)
            return decision

        decision = await self._use_llm_reasoning(self.llm, question, context)
        log.info(
            "decision_made",
            source=decision.source,
            confidence=decision.confidence,
            escalate=self.should_escalate(decision),
        )
        return decision

    async def _check_onboarding_docs(self, question: str) -> tuple[str, str] | None:
        """Return (answer, file name) from the first doc covering the question."""
        if not self.onboarding_dir.is_dir():
            return None

        keywords = extract_keywords(question)
        for path in sorted(self.onboarding_dir.glob("*.md")):
            try:
                async with aiofiles.open(path, encoding="utf-8") as f:
                    content = await f.read()
            except OSError as e:
                log.warning("onboarding_doc_unreadable", path=str(path), error=str(e))
                continue

            if match_score(content, keywords) > 0.5:
                return self._best_paragraph(content, keywords), path.name
        return None

    @staticmethod
    def _best_paragraph(content: str, keywords: list[str]) -> str:
        paragraphs = [p.strip() for p in re.split(r"\n\s*\n", content) if p.strip()]
        if not paragraphs:
            return content.strip()
        return max(paragraphs, key=lambda p: match_score(p, keywords))

    async def _use_llm_reasoning(self, llm: LLMClient, question: str, context: dict[str, Any]) -> Decision:
        prompt = f"""Question: {question}

Context:
{context}

Provide:
1. Your decision/answer
2. Your confidence level (0.0-1.0)
3. Your reasoning

Respond with JSON:
{{
  "decision": "your decision",
  "confidence": 0.8,
  "reasoning": "why you made this decision",
  "alternatives": ["other options you considered"]
}}
"""
        raw = await llm.complete(
            prompt,
            system_prompt=SYSTEM_PROMPT,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )

        match parse_model_output(raw, LLMDecisionPayload):
            case Parsed(value=payload):
                return Decision(
                    question=question,
                    decision=payload.decision,
                    confidence=self._adjust_confidence(payload.decision, payload.reasoning, payload.confidence),
                    reasoning=payload.reasoning,
                    source=DecisionSource.LLM,
                    context=context,
                    alternatives=payload.alternatives,
                )
            case Malformed(error=error):
                log.warning("decision_output_malformed", error=error)
                return Decision(
                    question=question,
                    decision=raw.strip(),
                    confidence=confidence_from_text(raw),
                    reasoning=raw.strip(),
                    source=DecisionSource.LLM,
                    context=context,
                )
        raise AssertionError("unreachable")

    def _adjust_confidence(self, decision: str, reasoning: str, base: float) -> float:
        text = f"{decision} {reasoning}".lower()
        adjustment = 0.0
        if any(word in text for word in HIGH_CERTAINTY):
            adjustment += 0.1
        if any(word in text for word in LOW_CERTAINTY):
            adjustment -= 0.2
        if any(phrase in text for phrase in MISSING_CONTEXT):
            adjustment -= 0.15
        if len(reasoning) < 50:
            adjustment -= 0.05
        return max(self.config.min_llm_confidence, min(self.config.max_llm_confidence, base + adjustment))
