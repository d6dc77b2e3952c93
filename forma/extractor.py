from __future__ import annotations

import itertools
import json
import logging
import re
from typing import Any, Iterable

from forma.errors import ExtractionError
from forma.models import EVENT_FIELDS, EventRecord
from forma.validation import normalize_date, normalize_time


logger = logging.getLogger(__name__)

JSON_FENCE_PATTERN = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
SCHEMA_ENVELOPE_KEY = "events"
EXCERPT_LENGTH = 300

# Keys the model may use for each field, first match wins.
FIELD_ALIASES = {
    "subject": ("subject", "summary", "title"),
    "start_date": ("start_date", "startDate"),
    "start_time": ("start_time", "startTime"),
    "end_date": ("end_date", "endDate"),
    "end_time": ("end_time", "endTime"),
    "location": ("location",),
    "description": ("description",),
}


def _excerpt(text: str) -> str:
    text = text.strip()
    if len(text) <= EXCERPT_LENGTH:
        return text
    return text[:EXCERPT_LENGTH] + "..."


def find_balanced_span(text: str) -> tuple[int, int] | None:
    """Locate the first balanced ``[...]`` or ``{...}`` in ``text``.

    Returns ``(start, end)`` with ``end`` exclusive, or ``None`` when there is
    no opener or the opener is never closed. Brackets inside string literals
    do not count.
    """
    first_bracket = text.find("[")
    first_curly = text.find("{")
    candidates = [index for index in (first_bracket, first_curly) if index >= 0]
    if not candidates:
        return None
    start = min(candidates)
    opener = text[start]
    closer = "]" if opener == "[" else "}"

    balance = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            balance += 1
        elif char == closer:
            balance -= 1
            if balance == 0:
                return start, index + 1
    return None


def _candidate_text(text: str) -> str:
    fence = JSON_FENCE_PATTERN.search(text)
    if fence:
        return fence.group(1)
    span = find_balanced_span(text)
    if span is not None:
        return text[span[0] : span[1]]
    logger.warning("No balanced JSON structure in model response, trying a direct decode")
    return text


def extract(raw_text: str | None, strict_schema_requested: bool) -> list[Any]:
    text = (raw_text or "").strip()
    if not text:
        raise ExtractionError("Model response is empty.")

    if strict_schema_requested:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"Schema-constrained response is not valid JSON: {exc}", _excerpt(text)) from exc
        if isinstance(payload, dict) and isinstance(payload.get(SCHEMA_ENVELOPE_KEY), list):
            payload = payload[SCHEMA_ENVELOPE_KEY]
    else:
        candidate = _candidate_text(text)
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            raise ExtractionError(f"No decodable JSON found in model response: {exc}", _excerpt(text)) from exc

    if not isinstance(payload, list):
        raise ExtractionError(
            f"Model response must be a JSON array of events, got {type(payload).__name__}.",
            _excerpt(text),
        )
    logger.debug("Extracted %d raw event(s) from model response", len(payload))
    return payload


class IdAllocator:
    """Hands out local event ids; an id is never handed out twice."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def next_id(self) -> int:
        return next(self._counter)


def _field_value(item: dict[str, Any], field_name: str) -> str:
    for alias in FIELD_ALIASES[field_name]:
        value = item.get(alias)
        if value is not None:
            return str(value).strip() if field_name != "description" else str(value)
    return ""


def record_from_item(item: dict[str, Any], record_id: int) -> EventRecord:
    values = {name: _field_value(item, name) for name in EVENT_FIELDS}
    values["start_date"] = normalize_date(values["start_date"])
    values["end_date"] = normalize_date(values["end_date"])
    values["start_time"] = normalize_time(values["start_time"])
    values["end_time"] = normalize_time(values["end_time"])
    return EventRecord(id=record_id, **values)


def records_from_payload(items: Iterable[Any], allocator: IdAllocator) -> list[EventRecord]:
    records: list[EventRecord] = []
    skipped = 0
    for item in items:
        if not isinstance(item, dict):
            skipped += 1
            continue
        records.append(record_from_item(item, allocator.next_id()))
    if skipped:
        logger.warning("Skipped %d non-object item(s) in extracted payload", skipped)
    return records
