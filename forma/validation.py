from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable

from forma.models import BULK_EDITABLE_FIELDS, EventRecord, ValidatedEventRecord


YEAR_FIRST_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
DAY_FIRST_PATTERN = re.compile(r"^(\d{1,2})([-/.])(\d{1,2})\2(\d{4})$")
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")

SUBJECT_REQUIRED = "subject required"
END_BEFORE_START = "must be after start"

_FIELD_LABELS = {
    "start_date": "start date",
    "end_date": "end date",
    "start_time": "start time",
    "end_time": "end time",
}


def parse_date(value: str | None) -> date | None:
    """Parse ``YYYY-MM-DD`` or ``DD-MM-YYYY`` (``-``, ``/`` or ``.``).

    The two conventions are told apart by where the four-digit year sits,
    so a string is never read both ways.
    """
    text = str(value or "").strip()
    if not text:
        return None
    match = YEAR_FIRST_PATTERN.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
    else:
        match = DAY_FIRST_PATTERN.match(text)
        if not match:
            return None
        day, month, year = int(match.group(1)), int(match.group(3)), int(match.group(4))
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_time(value: str | None) -> time | None:
    text = str(value or "").strip()
    match = TIME_PATTERN.match(text)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return time(hours, minutes)


def normalize_date(value: str | None) -> str:
    parsed = parse_date(value)
    if parsed is None:
        return "" if value is None else str(value)
    return parsed.isoformat()


def normalize_time(value: str | None) -> str:
    parsed = parse_time(value)
    if parsed is None:
        return "" if value is None else str(value)
    return parsed.strftime("%H:%M")


def combine(date_text: str, time_text: str) -> datetime | None:
    parsed_date = parse_date(date_text)
    parsed_time = parse_time(time_text)
    if parsed_date is None or parsed_time is None:
        return None
    return datetime.combine(parsed_date, parsed_time)


def normalize_record(record: EventRecord) -> EventRecord:
    return record.with_updates(
        subject=record.subject.strip(),
        start_date=normalize_date(record.start_date),
        start_time=normalize_time(record.start_time),
        end_date=normalize_date(record.end_date),
        end_time=normalize_time(record.end_time),
    )


def validate(record: EventRecord | ValidatedEventRecord) -> ValidatedEventRecord:
    if isinstance(record, ValidatedEventRecord):
        record = record.record
    normalized = normalize_record(record)
    errors: dict[str, str] = {}

    if not normalized.subject:
        errors["subject"] = SUBJECT_REQUIRED

    start_date = parse_date(normalized.start_date)
    end_date = parse_date(normalized.end_date)
    start_time = parse_time(normalized.start_time)
    end_time = parse_time(normalized.end_time)

    for field_name, parsed in (("start_date", start_date), ("end_date", end_date)):
        if parsed is None:
            errors[field_name] = f"{_FIELD_LABELS[field_name]} is not a valid date (use DD-MM-YYYY or YYYY-MM-DD)"
    for field_name, parsed in (("start_time", start_time), ("end_time", end_time)):
        if parsed is None:
            errors[field_name] = f"{_FIELD_LABELS[field_name]} is not a valid time (use HH:MM, 24-hour)"

    if start_date and end_date and start_time and end_time:
        start = datetime.combine(start_date, start_time)
        end = datetime.combine(end_date, end_time)
        if end <= start:
            if end_date < start_date:
                errors["end_date"] = END_BEFORE_START
            else:
                errors["end_time"] = END_BEFORE_START

    return ValidatedEventRecord(record=normalized, errors=errors)


def validate_all(records: Iterable[EventRecord | ValidatedEventRecord]) -> list[ValidatedEventRecord]:
    return [validate(record) for record in records]


def apply_field_updates(
    record: EventRecord | ValidatedEventRecord,
    updates: dict[str, Any],
    allowed_fields: Iterable[str] = BULK_EDITABLE_FIELDS,
) -> ValidatedEventRecord:
    if isinstance(record, ValidatedEventRecord):
        record = record.record
    allowed = set(allowed_fields)
    changes = {
        key: str(value)
        for key, value in updates.items()
        if key in allowed and value is not None and str(value).strip()
    }
    return validate(record.with_updates(**changes))


def apply_duration(record: EventRecord | ValidatedEventRecord, minutes: int) -> ValidatedEventRecord:
    """Move the end so the event lasts ``minutes``; unparseable starts are left alone."""
    if minutes <= 0:
        raise ValueError("duration must be a positive number of minutes")
    if isinstance(record, ValidatedEventRecord):
        record = record.record
    start = combine(record.start_date, record.start_time)
    if start is None:
        return validate(record)
    end = start + timedelta(minutes=minutes)
    return validate(
        record.with_updates(
            end_date=end.date().isoformat(),
            end_time=end.strftime("%H:%M"),
        )
    )
