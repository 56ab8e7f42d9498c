"""Parsing and validation of raw generator text.

``parse_generator_output`` turns whatever the generator returned into one of
``Structured``, ``PlainText`` or ``Empty``. ``validate_response`` picks the
reply to show the patient from that result. Neither function raises.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from intake.config import REPLY_MAX_LENGTH
from intake.models.agents import AgentRole

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I apologize, but I'm having trouble processing your message. Please try again."

PRIMARY_REPLY_FIELD = "reply"
ALTERNATE_REPLY_FIELDS = ("message", "text", "content", "response", "answer", "output")

_FENCED_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_BRACED_RE = re.compile(r"\{[\s\S]*\}")
_SENTENCE_RE = re.compile(r"[A-Z][^.!?]*[.!?]")
_MIN_PLAIN_TEXT = 10
_MAX_SENTENCES = 3


@dataclass(frozen=True)
class Structured:
    fields: dict[str, Any]


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class Empty:
    pass


ParsedOutput = Structured | PlainText | Empty


@dataclass(frozen=True)
class ValidationDetails:
    has_valid_reply: bool = False
    has_valid_updated_data: bool = False
    has_valid_active_agent: bool = False


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reply: str
    was_recovered: bool = False
    payload: dict[str, Any] | None = None
    error: str | None = None
    details: ValidationDetails = field(default_factory=ValidationDetails)


def _decode_object(candidate: str) -> dict[str, Any] | None:
    try:
        value = json.loads(candidate)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def parse_generator_output(text: object) -> ParsedOutput:
    if not isinstance(text, str) or not text.strip():
        return Empty()

    for match in _FENCED_RE.finditer(text):
        decoded = _decode_object(match.group(1))
        if decoded is not None:
            return Structured(decoded)

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        decoded = _decode_object(text[start:end + 1])
        if decoded is not None:
            return Structured(decoded)

    return PlainText(text)


def _non_empty_text(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _recover_from_fields(fields: dict[str, Any]) -> str | None:
    for name in ALTERNATE_REPLY_FIELDS:
        hit = _non_empty_text(fields.get(name))
        if hit:
            return hit
    thought = fields.get("thought")
    if isinstance(thought, dict):
        return _non_empty_text(thought.get("nextMove")) or _non_empty_text(thought.get("next_move"))
    return None


def extract_plain_text(text: str, max_length: int = REPLY_MAX_LENGTH) -> str | None:
    """Salvage readable prose from text with broken or no JSON."""
    cleaned = _CODE_BLOCK_RE.sub("", text)
    cleaned = _BRACED_RE.sub("", cleaned).strip()
    if len(cleaned) > _MIN_PLAIN_TEXT:
        if len(cleaned) > max_length:
            return cleaned[:max_length] + "..."
        return cleaned

    sentences = _SENTENCE_RE.findall(text)
    if sentences:
        return " ".join(s.strip() for s in sentences[:_MAX_SENTENCES])
    return None


def _details(fields: dict[str, Any], has_reply: bool) -> ValidationDetails:
    agent = fields.get("activeAgent")
    return ValidationDetails(
        has_valid_reply=has_reply,
        has_valid_updated_data=isinstance(fields.get("updatedData"), dict),
        has_valid_active_agent=isinstance(agent, str) and agent in {r.value for r in AgentRole},
    )


def validate_response(text: object) -> ValidationResult:
    parsed = parse_generator_output(text)

    if isinstance(parsed, Structured):
        fields = parsed.fields
        reply = _non_empty_text(fields.get(PRIMARY_REPLY_FIELD))
        if reply is not None:
            return ValidationResult(
                is_valid=True, reply=reply, payload=fields, details=_details(fields, True)
            )
        recovered = _recover_from_fields(fields) or extract_plain_text(text)
        if recovered is not None:
            logger.info("Recovered reply from structured response without a reply field")
            return ValidationResult(
                is_valid=True,
                reply=recovered,
                was_recovered=True,
                payload=fields,
                details=_details(fields, False),
            )
        return ValidationResult(
            is_valid=False,
            reply=FALLBACK_REPLY,
            payload=fields,
            error="Structured response has no reply text",
            details=_details(fields, False),
        )

    if isinstance(parsed, PlainText):
        salvaged = extract_plain_text(parsed.text)
        if salvaged is not None:
            logger.info("Using plain-text fallback for unstructured response")
            return ValidationResult(is_valid=True, reply=salvaged, was_recovered=True)
        return ValidationResult(is_valid=False, reply=FALLBACK_REPLY, error="No usable text in response")

    return ValidationResult(is_valid=False, reply=FALLBACK_REPLY, error="Empty response from generator")
