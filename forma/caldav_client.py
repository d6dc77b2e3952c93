from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from forma.errors import AuthenticationError, RemoteOperationError
from forma.models import CalDAVConfig, CalendarInfo, EventPatch, RemoteEvent, ValidatedEventRecord
from forma.validation import combine


logger = logging.getLogger(__name__)

PRODID = "-//Forma//Event Importer//EN"


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _is_auth_failure(exc: BaseException) -> bool:
    if isinstance(exc, caldav_error.AuthorizationError):
        return True
    reason = str(getattr(exc, "reason", "") or exc)
    return "401" in reason or "Unauthorized" in reason


def _remote_failure(action: str, exc: Exception) -> Exception:
    if _is_auth_failure(exc):
        return AuthenticationError(f"Calendar server rejected credentials while trying to {action}.")
    return RemoteOperationError(f"Failed to {action}: {exc}")


class CalDAVService:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_configured():
            raise RemoteOperationError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        try:
            self._principal = self._client.principal()
        except Exception as exc:
            self._client = None
            raise _remote_failure("connect", exc) from exc

    def reset(self, config: CalDAVConfig | None = None) -> None:
        if config is not None:
            self.config = config
        self._client = None
        self._principal = None
        self._calendar_cache = {}

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        cache: dict[str, Any] = {}
        calendars: list[CalendarInfo] = []
        try:
            remote_calendars = self._principal.calendars()
        except Exception as exc:
            raise _remote_failure("list calendars", exc) from exc
        for calendar in remote_calendars:
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            cache[calendar_id] = calendar
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        # Replaced in one assignment; readers in worker threads only see a complete dict.
        self._calendar_cache = cache
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        calendar = self._calendar_cache.get(calendar_id)
        if calendar is not None:
            return calendar
        self.list_calendars()
        calendar = self._calendar_cache.get(calendar_id)
        if calendar is None:
            raise RemoteOperationError(f"Calendar not found: {calendar_id}")
        return calendar

    def _find_resource(self, calendar: Any, event_id: str) -> Any:
        try:
            resource = calendar.event_by_uid(event_id)
        except caldav_error.NotFoundError:
            return None
        except Exception as exc:
            raise _remote_failure(f"look up event {event_id}", exc) from exc
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        return resource

    def _parse_resource(self, calendar_id: str, resource: Any) -> RemoteEvent:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise RemoteOperationError("VEVENT missing in calendar resource.")

        start = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
        end = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
        if end is None and start is not None:
            if isinstance(start, datetime):
                end = start + timedelta(hours=1)
            else:
                end = start + timedelta(days=1)
        return RemoteEvent(
            event_id=str(vevent.get("UID", "")).strip(),
            calendar_id=calendar_id,
            summary=str(vevent.get("SUMMARY", "")).strip(),
            start=start,
            end=end,
            location=str(vevent.get("LOCATION", "")).strip(),
            description=str(vevent.get("DESCRIPTION", "")).strip(),
            html_link=str(getattr(resource, "url", "") or ""),
        )

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[RemoteEvent]:
        calendar = self._get_calendar(calendar_id)
        try:
            resources = calendar.search(start=start, end=end, event=True, expand=True)
        except Exception as exc:
            raise _remote_failure(f"list events of {calendar_id}", exc) from exc
        events: list[RemoteEvent] = []
        for resource in resources:
            event = self._parse_resource(calendar_id, resource)
            if event.event_id:
                events.append(event)
        events.sort(key=lambda item: item.start.isoformat() if item.start is not None else "")
        logger.debug("Fetched %d event(s) from %s", len(events), calendar_id)
        return events

    def _build_ical(self, record: ValidatedEventRecord, uid: str) -> str:
        start = combine(record.start_date, record.start_time)
        end = combine(record.end_date, record.end_time)
        if start is None or end is None:
            raise RemoteOperationError(f"Event {record.id} has no valid start/end and cannot be inserted.")
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("SUMMARY", record.subject)
        if record.description:
            vevent.add("DESCRIPTION", record.description)
        if record.location:
            vevent.add("LOCATION", record.location)
        # Naive datetimes are written as floating local time.
        vevent.add("DTSTART", start)
        vevent.add("DTEND", end)
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def insert_event(self, calendar_id: str, record: ValidatedEventRecord) -> RemoteEvent:
        if not record.is_valid:
            raise RemoteOperationError(f"Event {record.id} is not valid and cannot be inserted.")
        calendar = self._get_calendar(calendar_id)
        uid = f"{uuid.uuid4()}@forma"
        raw_ical = self._build_ical(record, uid)
        try:
            resource = calendar.save_event(raw_ical)
        except Exception as exc:
            raise _remote_failure(f"insert event {record.id}", exc) from exc
        created = self._parse_resource(calendar_id, resource)
        logger.info("Inserted event %s into %s", created.event_id, calendar_id)
        return created

    def patch_event(self, calendar_id: str, event_id: str, patch: EventPatch) -> RemoteEvent:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, event_id)
        if resource is None:
            raise RemoteOperationError(f"Event not found: {event_id}")
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(resource.data))
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise RemoteOperationError("VEVENT missing in calendar resource.")

        for name, value in (("SUMMARY", patch.summary), ("LOCATION", patch.location), ("DESCRIPTION", patch.description)):
            if value is None:
                continue
            if name in vevent:
                del vevent[name]
            vevent.add(name, value)

        if patch.duration_minutes is not None:
            start = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
            if start is None:
                raise RemoteOperationError(f"Event {event_id} has no start; duration cannot be applied.")
            if isinstance(start, datetime):
                new_end = patch.new_end(start)
            else:
                # All-day events stay date-valued; round up to whole days.
                days = max(1, -(-patch.duration_minutes // (24 * 60)))
                new_end = start + timedelta(days=days)
            for name in ("DTEND", "DURATION"):
                if name in vevent:
                    del vevent[name]
            vevent.add("DTEND", new_end)

        resource.data = calendar_obj.to_ical().decode("utf-8")
        try:
            resource.save()
        except Exception as exc:
            raise _remote_failure(f"update event {event_id}", exc) from exc
        return self._parse_resource(calendar_id, resource)

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource(calendar, event_id)
        if resource is None:
            raise RemoteOperationError(f"Event not found: {event_id}")
        try:
            resource.delete()
        except Exception as exc:
            raise _remote_failure(f"delete event {event_id}", exc) from exc
        logger.info("Deleted event %s from %s", event_id, calendar_id)
