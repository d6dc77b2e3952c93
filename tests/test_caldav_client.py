import unittest
from datetime import date, datetime, timedelta
from unittest import mock

from caldav.lib import error as caldav_error

from forma.caldav_client import CalDAVService
from forma.errors import AuthenticationError, RemoteOperationError
from forma.models import CalDAVConfig, EventPatch, EventRecord
from forma.validation import validate


def _ics(uid: str, start: str, end: str | None = None, summary: str = "Yoga") -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Test//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "DTSTAMP:20240501T000000Z",
        f"DTSTART{start}",
    ]
    if end is not None:
        lines.append(f"DTEND{end}")
    lines += [f"SUMMARY:{summary}", "LOCATION:Gym", "END:VEVENT", "END:VCALENDAR", ""]
    return "\r\n".join(lines)


def _resource(data: str, url: str = "https://dav.example.com/cal-1/x.ics") -> mock.Mock:
    resource = mock.Mock()
    resource.data = data
    resource.url = url
    return resource


class CalDAVServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = CalDAVService(
            CalDAVConfig(base_url="https://dav.example.com", username="u", password="p")
        )
        self.calendar = mock.Mock()
        self.service._principal = mock.Mock()
        self.service._calendar_cache = {"cal-1": self.calendar}

    def test_list_events_parses_and_sorts(self) -> None:
        self.calendar.search.return_value = [
            _resource(_ics("late", ":20240510T150000", ":20240510T160000")),
            _resource(_ics("early", ":20240510T080000")),
            _resource(_ics("holiday", ";VALUE=DATE:20240511")),
        ]

        events = self.service.list_events("cal-1", datetime(2024, 5, 1), datetime(2024, 5, 31))

        self.assertEqual([event.event_id for event in events], ["early", "late", "holiday"])
        self.assertEqual(events[0].end, datetime(2024, 5, 10, 9, 0))
        self.assertEqual(events[0].location, "Gym")
        self.assertTrue(events[2].all_day)
        self.assertEqual(events[2].end, date(2024, 5, 12))
        kwargs = self.calendar.search.call_args.kwargs
        self.assertTrue(kwargs["event"])
        self.assertTrue(kwargs["expand"])

    def test_insert_writes_floating_times(self) -> None:
        self.calendar.save_event.side_effect = lambda raw: _resource(raw)
        record = validate(
            EventRecord(
                id=7,
                subject="Dentist",
                start_date="2024-05-10",
                start_time="14:00",
                end_date="2024-05-10",
                end_time="14:45",
                location="Via Roma 1",
            )
        )

        created = self.service.insert_event("cal-1", record)

        raw = self.calendar.save_event.call_args.args[0]
        self.assertIn("DTSTART:20240510T140000", raw)
        self.assertIn("DTEND:20240510T144500", raw)
        self.assertNotIn("DESCRIPTION", raw)
        self.assertTrue(created.event_id.endswith("@forma"))
        self.assertEqual(created.summary, "Dentist")
        self.assertEqual(created.start, datetime(2024, 5, 10, 14, 0))

    def test_insert_rejects_invalid_record(self) -> None:
        with self.assertRaises(RemoteOperationError):
            self.service.insert_event("cal-1", validate(EventRecord(id=1, subject="x")))
        self.calendar.save_event.assert_not_called()

    def test_patch_duration_uses_stored_start(self) -> None:
        resource = _resource(_ics("uid-1", ":20240510T090000", ":20240510T100000"))
        self.calendar.event_by_uid.return_value = resource

        updated = self.service.patch_event("cal-1", "uid-1", EventPatch(summary="Pilates", duration_minutes=90))

        resource.save.assert_called_once()
        self.assertEqual(updated.summary, "Pilates")
        self.assertEqual(updated.location, "Gym")
        self.assertEqual(updated.end - updated.start, timedelta(minutes=90))

    def test_patch_all_day_rounds_up_to_days(self) -> None:
        resource = _resource(_ics("uid-2", ";VALUE=DATE:20240510", ";VALUE=DATE:20240511"))
        self.calendar.event_by_uid.return_value = resource

        updated = self.service.patch_event("cal-1", "uid-2", EventPatch(duration_minutes=25 * 60))

        self.assertEqual(updated.start, date(2024, 5, 10))
        self.assertEqual(updated.end, date(2024, 5, 12))

    def test_delete_missing_event(self) -> None:
        self.calendar.event_by_uid.side_effect = caldav_error.NotFoundError()
        with self.assertRaises(RemoteOperationError):
            self.service.delete_event("cal-1", "missing")

    def test_authorization_failure_is_typed(self) -> None:
        resource = _resource(_ics("uid-3", ":20240510T090000"))
        resource.delete.side_effect = caldav_error.AuthorizationError(reason="Unauthorized")
        self.calendar.event_by_uid.return_value = resource
        with self.assertRaises(AuthenticationError):
            self.service.delete_event("cal-1", "uid-3")

    def test_unknown_calendar(self) -> None:
        self.service._principal.calendars.return_value = []
        with self.assertRaises(RemoteOperationError):
            self.service.delete_event("cal-9", "uid")

    def test_calendar_refresh_replaces_cache_without_mutating_it(self) -> None:
        self.calendar.url = "cal-1"
        work = mock.Mock()
        work.url = "cal-2"
        work.name = "Work"
        self.service._principal.calendars.return_value = [self.calendar, work]
        previous = self.service._calendar_cache

        self.assertIs(self.service._get_calendar("cal-2"), work)

        self.assertEqual(previous, {"cal-1": self.calendar})
        self.assertIsNot(self.service._calendar_cache, previous)
        self.assertIs(self.service._get_calendar("cal-1"), self.calendar)
        self.service._principal.calendars.assert_called_once_with()

    def test_incomplete_config(self) -> None:
        service = CalDAVService(CalDAVConfig())
        with self.assertRaises(RemoteOperationError):
            service.list_calendars()


if __name__ == "__main__":
    unittest.main()
