import unittest
from datetime import date, datetime, timedelta, timezone

from forma.filters import dedupe, filter_events, matches, search_window
from forma.models import FilterCriteria, RemoteEvent


def _event(event_id: str, calendar_id: str = "cal-1", **kwargs) -> RemoteEvent:
    return RemoteEvent(event_id=event_id, calendar_id=calendar_id, **kwargs)


class SearchWindowTests(unittest.TestCase):
    def test_defaults_to_configured_lookaround(self) -> None:
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        start, end = search_window(FilterCriteria(), now=now, lookback_days=10, lookahead_days=20)
        self.assertEqual(start, now - timedelta(days=10))
        self.assertEqual(end, now + timedelta(days=20))

    def test_explicit_bounds_cover_whole_days(self) -> None:
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        start, end = search_window(FilterCriteria(start_date="2024-06-03", end_date="03/06/2024"), now=now)
        self.assertEqual(start, datetime(2024, 6, 3, 0, 0, tzinfo=timezone.utc))
        self.assertEqual(end.date(), date(2024, 6, 3))
        self.assertEqual((end.hour, end.minute), (23, 59))

    def test_reversed_window_raises(self) -> None:
        with self.assertRaises(ValueError):
            search_window(FilterCriteria(start_date="2024-06-05", end_date="2024-06-01"))


class MatchTests(unittest.TestCase):
    def test_text_matches_summary_or_description(self) -> None:
        event = _event("1", summary="Team sync", description="Quarterly PLANNING")
        self.assertTrue(matches(event, FilterCriteria(text="planning")))
        self.assertTrue(matches(event, FilterCriteria(text="SYNC")))
        self.assertFalse(matches(event, FilterCriteria(text="retro")))

    def test_location_and_time(self) -> None:
        event = _event("1", summary="x", location="Milano HQ", start=datetime(2024, 6, 1, 9, 30))
        self.assertTrue(matches(event, FilterCriteria(location="milano", time="09:30")))
        self.assertFalse(matches(event, FilterCriteria(time="10:00")))

    def test_all_day_events_never_match_a_time(self) -> None:
        event = _event("1", summary="Holiday", start=date(2024, 6, 1))
        self.assertFalse(matches(event, FilterCriteria(time="00:00")))

    def test_dedupe_and_filter(self) -> None:
        events = [
            _event("a", summary="Yoga"),
            _event("a", summary="Yoga duplicate"),
            _event("a", calendar_id="cal-2", summary="Yoga elsewhere"),
            _event("b", summary="Dentist"),
        ]
        self.assertEqual(len(dedupe(events)), 3)
        found = filter_events(events, FilterCriteria(text="yoga"))
        self.assertEqual([event.key for event in found], [("cal-1", "a"), ("cal-2", "a")])


if __name__ == "__main__":
    unittest.main()
