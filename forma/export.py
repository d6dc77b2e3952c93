from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from typing import Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from forma.models import ValidatedEventRecord
from forma.validation import combine, parse_date


# English headers match the Google Calendar CSV import format.
CSV_HEADERS = ["Subject", "Start Date", "Start Time", "End Date", "End Time", "Description", "Location"]
ICS_PRODID = "-//Forma//Event Exporter v1.0//EN"
UID_DOMAIN = "forma"


def _us_date(value: str) -> str:
    parsed = parse_date(value)
    if parsed is None:
        return value
    return parsed.strftime("%m/%d/%Y")


def _exportable(events: Iterable[ValidatedEventRecord]) -> list[ValidatedEventRecord]:
    return [event for event in events if event.is_valid]


def generate_csv(events: Iterable[ValidatedEventRecord]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for event in _exportable(events):
        writer.writerow(
            [
                event.subject,
                _us_date(event.start_date),
                event.start_time,
                _us_date(event.end_date),
                event.end_time,
                event.description,
                event.location,
            ]
        )
    return buffer.getvalue()


def generate_ics(events: Iterable[ValidatedEventRecord], now: datetime | None = None) -> str:
    """Build a VCALENDAR with one VEVENT per valid record.

    Start and end are written without a UTC offset (floating time) so that
    the importing calendar places them in the user's own zone. DTSTAMP is
    UTC.
    """
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(microsecond=0)
    stamp_text = stamp.strftime("%Y%m%dT%H%M%SZ")

    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", ICS_PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add("CALSCALE", "GREGORIAN")
    for event in _exportable(events):
        vevent = ICEvent()
        vevent.add("UID", f"{stamp_text}-{event.id}@{UID_DOMAIN}")
        vevent.add("DTSTAMP", stamp)
        vevent.add("DTSTART", combine(event.start_date, event.start_time))
        vevent.add("DTEND", combine(event.end_date, event.end_time))
        vevent.add("SUMMARY", event.subject)
        if event.description:
            vevent.add("DESCRIPTION", event.description)
        if event.location:
            vevent.add("LOCATION", event.location)
        calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")


# Same keys the extraction schema uses, so an exported file can be fed back in.
JSON_FIELD_NAMES = {
    "subject": "subject",
    "start_date": "startDate",
    "start_time": "startTime",
    "end_date": "endDate",
    "end_time": "endTime",
    "description": "description",
    "location": "location",
}


def generate_json(events: Iterable[ValidatedEventRecord]) -> str:
    """Dump every event's fields, valid or not, without local ids or validation state."""
    payload = [
        {json_name: getattr(event, field_name) for field_name, json_name in JSON_FIELD_NAMES.items()}
        for event in events
    ]
    return json.dumps(payload, indent=2, ensure_ascii=False)
