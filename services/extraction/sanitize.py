# services/extraction/sanitize.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from services.batch.errors import ParseError
from services.extraction.canonical import (
    MedicineAttributes,
    is_known_container_type,
    is_known_dosage_form,
    normalize_attributes,
)

logger = logging.getLogger(__name__)

EMPTY_EXTRACTION_REASON = "no useful information extracted"


class SanitizeStatus(str, Enum):
    OK = "ok"
    PARSE_ERROR = "parse_error"
    UNIDENTIFIED = "unidentified"
    EMPTY = "empty"


@dataclass(frozen=True)
class SanitizeResult:
    status: SanitizeStatus
    attributes: MedicineAttributes = field(default_factory=dict)  # type: ignore[assignment]
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SanitizeStatus.OK


def _balanced_objects(text: str) -> Iterator[str]:
    """
    Yield every balanced {...} substring, outermost first, in order of its opening brace.
    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    yield text[start : i + 1]
                    break
        start = text.find("{", start + 1)


def parse_object(raw: str) -> Dict[str, Any]:
    """
    Parse the AI text as one JSON object, falling back to the first balanced
    object embedded in prose. Raises ParseError.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError("AI response was empty")

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
        for candidate in _balanced_objects(raw):
            try:
                parsed = json.loads(candidate)
                break
            except json.JSONDecodeError:
                continue
        if parsed is None:
            raise ParseError("AI response did not contain a JSON object")

    if not isinstance(parsed, dict):
        raise ParseError(f"AI response was JSON {type(parsed).__name__}, expected an object")
    return parsed


def sanitize_analysis(raw: str) -> SanitizeResult:
    try:
        data = parse_object(raw)
    except ParseError as e:
        return SanitizeResult(status=SanitizeStatus.PARSE_ERROR, reason=str(e))

    err = data.get("error")
    if err:
        return SanitizeResult(status=SanitizeStatus.UNIDENTIFIED, reason=str(err).strip())

    attrs = normalize_attributes(data)
    if not attrs:
        return SanitizeResult(status=SanitizeStatus.EMPTY, reason=EMPTY_EXTRACTION_REASON)

    # Out-of-vocabulary values pass through; persistence decides.
    if "dosage_form" in attrs and not is_known_dosage_form(attrs["dosage_form"]):
        logger.info("Unrecognized dosage_form passed through: %r", attrs["dosage_form"])
    if "container_type" in attrs and not is_known_container_type(attrs["container_type"]):
        logger.info("Unrecognized container_type passed through: %r", attrs["container_type"])

    dropped = sorted(set(data) - set(attrs))
    if dropped:
        logger.debug("Sanitizer dropped keys: %s", dropped)

    return SanitizeResult(status=SanitizeStatus.OK, attributes=attrs)
