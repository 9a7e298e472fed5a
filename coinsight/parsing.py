"""Parsing model output into structured objects.

``parse_model_output()`` tries named strategies in order and returns either a
``ParsedOutput`` (which strategy worked, plus the validated object) or a
``ParseFailure`` (why each strategy gave up). It never raises for bad input.

Strategies
──────────
1. ``strict_json``          the whole text, minus code fences, is one JSON object
2. ``last_balanced_object`` scan for balanced ``{...}`` spans (ignoring braces
                            inside strings) and keep the last one that parses

The strict "JSON only" re-ask is not a parser strategy: it needs another model
call and lives in ``coinsight.analyst``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ModelAnalysis(BaseModel):
    """The JSON object the analysis prompt asks the model for."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    summary: str = ""
    data_table: list[dict[str, Any]] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    market_trends: str = ""

    @field_validator("summary", "market_trends", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    @field_validator("sources", "insights", "risk_factors", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item not in (None, "")]

    @field_validator("data_table", mode="before")
    @classmethod
    def _rows(cls, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [row for row in value if isinstance(row, dict)]

    def is_empty(self) -> bool:
        return not self.summary.strip() and not self.data_table


# ── Outcomes ───────────────────────────────────────────────────────────────────


@dataclass
class ParsedOutput(Generic[M]):
    value: M
    strategy: str


@dataclass
class ParseFailure:
    reason: str
    attempts: list[str] = field(default_factory=list)


ParseResult = Union[ParsedOutput, ParseFailure]


# ── Strategies ─────────────────────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def strict_json(text: str) -> Optional[dict[str, Any]]:
    """Parse *text* as one JSON object, or return ``None``.

    Examples:
        >>> strict_json('{"summary": "ok"}')
        {'summary': 'ok'}
        >>> strict_json('Here you go: {"summary": "ok"}') is None
        True
    """
    body = strip_code_fences(text)
    if not (body.startswith("{") and body.endswith("}")):
        return None
    try:
        value = json.loads(body)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def balanced_objects(text: str) -> list[str]:
    """Return every top-level balanced ``{...}`` span in *text*, in order.

    Braces inside JSON string literals (including escaped quotes) do not
    count towards nesting.
    """
    spans: list[str] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            # Quotes only open a string inside an object.
            if depth > 0:
                in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append(text[start:index + 1])
    return spans


def last_balanced_object(text: str) -> Optional[dict[str, Any]]:
    """Return the last balanced span in *text* that parses as a JSON object."""
    for span in reversed(balanced_objects(strip_code_fences(text))):
        try:
            value = json.loads(span)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


STRATEGIES: list[tuple[str, Callable[[str], Optional[dict[str, Any]]]]] = [
    ("strict_json", strict_json),
    ("last_balanced_object", last_balanced_object),
]


def parse_model_output(text: str, schema: type[M] = ModelAnalysis) -> ParseResult:  # type: ignore[assignment]
    """Parse raw model text into *schema* using each strategy in turn.

    Args:
        text: Raw text returned by the model.
        schema: Pydantic model the JSON object must validate against.

    Returns:
        ``ParsedOutput`` on the first strategy that yields a valid object,
        otherwise ``ParseFailure`` listing the attempts.
    """
    if not text or not text.strip():
        return ParseFailure(reason="empty response")

    attempts: list[str] = []
    for name, strategy in STRATEGIES:
        candidate = strategy(text)
        if candidate is None:
            attempts.append(f"{name}: no JSON object")
            continue
        try:
            value = schema.model_validate(candidate)
        except ValidationError as exc:
            attempts.append(f"{name}: {exc.error_count()} validation error(s)")
            continue
        if isinstance(value, ModelAnalysis) and value.is_empty():
            attempts.append(f"{name}: object has no summary or table")
            continue
        if name != "strict_json":
            logger.info("Recovered model output with %s", name)
        return ParsedOutput(value=value, strategy=name)

    logger.warning("Could not parse model output: %s", "; ".join(attempts))
    return ParseFailure(reason="no parseable JSON object", attempts=attempts)
