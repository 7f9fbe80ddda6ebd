# =============================================================================
# ISSUE TRIAGE SYSTEM - RESPONSE VALIDATOR
# =============================================================================
"""
Response Validator

Turns raw provider output into a TriageResult, treating the text as
untrusted: the model read attacker-controlled issue content and may have
been steered by it.

Pipeline:
    1. Strict json.loads
    2. On failure, exactly one extraction attempt (```json fence, else the
       span from the first "{" to the last "}")
    3. Schema check (summary string, three string lists)
    4. Sanitize: drop labels outside the allowed vocabulary, cap list sizes

Any failure in 1-3 raises InvalidAIResponseError. The caller must not
retry the same provider with the same input.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from triage_engine.engine.errors import InvalidAIResponseError


logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

LIST_FIELDS = ("suggested_labels", "clarifying_questions", "potential_duplicates")


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class TriageResult:
    """Validated triage analysis."""
    summary: str
    suggested_labels: List[str] = field(default_factory=list)
    clarifying_questions: List[str] = field(default_factory=list)
    potential_duplicates: List[str] = field(default_factory=list)
    dropped_labels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Wire schema only (no validator bookkeeping)."""
        data = asdict(self)
        data.pop("dropped_labels")
        return data


# =============================================================================
# PARSING
# =============================================================================

def _extract_json_object(text: str) -> Optional[str]:
    """First JSON object embedded in surrounding prose, or None."""
    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()

    start = text.find("{")
    end = text.rfind("}")
    if 0 <= start < end:
        return text[start:end + 1]
    return None


def parse_json_object(raw: str) -> Dict[str, Any]:
    """
    Parse provider output into a dict.

    Raises:
        InvalidAIResponseError: Neither strict parsing nor extraction yields an object
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidAIResponseError("Empty response from AI provider", raw=raw or "")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        candidate = _extract_json_object(raw)
        if candidate is None:
            raise InvalidAIResponseError("No JSON object in AI response", raw=raw) from None
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise InvalidAIResponseError(f"Malformed JSON in AI response: {e.msg}", raw=raw) from e
        logger.debug("Recovered JSON object from surrounding text")

    if not isinstance(data, dict):
        raise InvalidAIResponseError(
            f"AI response must be a JSON object, got {type(data).__name__}", raw=raw
        )
    return data


# =============================================================================
# VALIDATOR
# =============================================================================

class ResponseValidator:
    """
    Schema check and sanitization of triage output.

    Attributes:
        allowed_labels: Canonical label vocabulary
        max_questions: Cap on clarifying_questions
        max_duplicates: Cap on potential_duplicates
    """

    def __init__(
        self,
        allowed_labels: Iterable[str],
        max_questions: int = 5,
        max_duplicates: int = 5,
        max_summary_length: int = 2000,
    ):
        self.allowed_labels = list(allowed_labels)
        self._canonical = {label.strip().lower(): label for label in self.allowed_labels}
        self.max_questions = max_questions
        self.max_duplicates = max_duplicates
        self.max_summary_length = max_summary_length

    @classmethod
    def from_config(cls, config) -> "ResponseValidator":
        """Create from a TriageConfig."""
        return cls(
            allowed_labels=config.allowed_labels,
            max_questions=config.max_clarifying_questions,
            max_duplicates=config.max_potential_duplicates,
            max_summary_length=config.max_summary_length,
        )

    def validate(self, raw: str) -> TriageResult:
        """
        Parse and sanitize one provider response.

        Raises:
            InvalidAIResponseError: Unparseable or schema-violating output
        """
        data = parse_json_object(raw)

        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise InvalidAIResponseError("AI response is missing a summary", raw=raw)

        if "suggested_labels" not in data:
            raise InvalidAIResponseError("'suggested_labels' is required", raw=raw)

        lists: Dict[str, List[str]] = {}
        for name in LIST_FIELDS:
            value = data.get(name, [])
            if value is None and name != "suggested_labels":
                value = []
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise InvalidAIResponseError(f"'{name}' must be a list of strings", raw=raw)
            lists[name] = [v.strip() for v in value if v.strip()]

        labels, dropped = self._filter_labels(lists["suggested_labels"])
        if dropped:
            logger.info(f"Dropped labels outside the allowed vocabulary: {dropped}")

        return TriageResult(
            summary=summary.strip()[:self.max_summary_length],
            suggested_labels=labels,
            clarifying_questions=lists["clarifying_questions"][:self.max_questions],
            potential_duplicates=lists["potential_duplicates"][:self.max_duplicates],
            dropped_labels=dropped,
        )

    def _filter_labels(self, labels: List[str]):
        kept: List[str] = []
        dropped: List[str] = []
        for label in labels:
            canonical = self._canonical.get(label.lower())
            if canonical is None:
                dropped.append(label)
            elif canonical not in kept:
                kept.append(canonical)
        return kept, dropped


__all__ = [
    "TriageResult",
    "ResponseValidator",
    "parse_json_object",
    "LIST_FIELDS",
]
