"""Turn model replies into AnalysisResults and errors into user messages."""

import json
import logging
import math
import re

from ..errors import ExtractionError, ImageDecodeError, SchemaViolation
from ..models import AnalysisResult, Reading

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def _coerce_value(raw, field_name: str) -> float:
    """Coerce a reading value to float. Accepts numbers and numeric strings."""
    if isinstance(raw, bool):
        raise SchemaViolation(f"{field_name}.value is not numeric: {raw!r}")
    if isinstance(raw, str):
        raw = raw.replace(",", "").strip()
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise SchemaViolation(f"{field_name}.value is not numeric: {raw!r}")
    if not math.isfinite(value):
        raise SchemaViolation(f"{field_name}.value is not finite: {raw!r}")
    return value


def _reading(data: dict, field_name: str) -> Reading:
    reading = data.get(field_name)
    if not isinstance(reading, dict) or "value" not in reading:
        raise SchemaViolation(f"Missing {field_name} in response")
    date = reading.get("date")
    return Reading(
        date="" if date is None else str(date),
        value=_coerce_value(reading["value"], field_name),
    )


def parse_result(text: str) -> AnalysisResult:
    """Parse the model's JSON reply into an AnalysisResult.

    Raises SchemaViolation if the text is not JSON or lacks either reading.
    """
    if not text or not text.strip():
        raise SchemaViolation("No response from the model")

    cleaned = _FENCE.sub("", text)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse JSON: %s", text[:500])
        raise SchemaViolation(f"AI response was not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise SchemaViolation(f"Expected a JSON object, got {type(data).__name__}")

    return AnalysisResult(
        start_reading=_reading(data, "startReading"),
        end_reading=_reading(data, "endReading"),
    )


def describe_error(error: Exception) -> str:
    """User-facing message for any failure while analyzing a photo."""
    if isinstance(error, (ExtractionError, ImageDecodeError)):
        return error.user_message
    return "Analysis failed"
