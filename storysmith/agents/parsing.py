"""Structured parsing of model output.

Model replies are free text that is supposed to contain one JSON object.
``parse_model_output`` turns a reply into a tagged result instead of a
half-populated dict:

- ``Parsed``: the JSON was found and validated against a Pydantic schema
- ``Malformed``: it was not; ``error`` says why and ``raw`` keeps the text

Extraction order is: the whole reply as JSON, the first fenced ```json
block, then the span from the first ``{`` to the last ``}``.

Example:
    >>> result = parse_model_output(reply, SelfReviewReport)
    >>> match result:
    ...     case Parsed(value=report):
    ...         use(report)
    ...     case Malformed(error=error):
    ...         log.warning("self_review_malformed", error=error)
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass(frozen=True)
class Parsed(Generic[M]):
    value: M
    raw: str


@dataclass(frozen=True)
class Malformed:
    error: str
    raw: str


ParseResult = Parsed[M] | Malformed


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Find the first JSON object in ``text``, or None."""
    candidates: list[str] = [text.strip()]
    candidates.extend(m.group(1) for m in _FENCED_JSON.finditer(text))
    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        candidates.append(text[start:end])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_model_output(raw: str, schema: type[M]) -> Parsed[M] | Malformed:
    """Extract a JSON object from ``raw`` and validate it against ``schema``."""
    data = extract_json_object(raw)
    if data is None:
        return Malformed(error="no JSON object found in model output", raw=raw)
    try:
        return Parsed(value=schema.model_validate(data), raw=raw)
    except ValidationError as e:
        return Malformed(error=f"model output failed validation: {e}", raw=raw)
