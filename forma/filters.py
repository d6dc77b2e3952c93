from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Iterable

from forma.models import FilterCriteria, RemoteEvent
from forma.validation import parse_date


def search_window(
    criteria: FilterCriteria,
    now: datetime | None = None,
    lookback_days: int = 365,
    lookahead_days: int = 365,
) -> tuple[datetime, datetime]:
    """Turn the date bounds of ``criteria`` into an aware ``[start, end]`` window.

    Missing bounds fall back to ``now`` minus/plus the configured number of
    days. The lower bound starts at midnight, the upper bound ends at the last
    instant of its day.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start_day = parse_date(criteria.start_date)
    end_day = parse_date(criteria.end_date)
    if start_day is not None:
        window_start = datetime.combine(start_day, time.min, tzinfo=now.tzinfo)
    else:
        window_start = now - timedelta(days=lookback_days)
    if end_day is not None:
        window_end = datetime.combine(end_day, time.max, tzinfo=now.tzinfo)
    else:
        window_end = now + timedelta(days=lookahead_days)
    if window_end < window_start:
        raise ValueError("end date must not be before start date")
    return window_start, window_end


def _start_time_text(event: RemoteEvent) -> str:
    if isinstance(event.start, datetime):
        return event.start.strftime("%H:%M")
    return ""


def matches(event: RemoteEvent, criteria: FilterCriteria) -> bool:
    text = criteria.text.lower()
    if text:
        haystacks = ((event.summary or "").lower(), (event.description or "").lower())
        if not any(text in haystack for haystack in haystacks):
            return False
    location = criteria.location.lower()
    if location and location not in (event.location or "").lower():
        return False
    if criteria.time and criteria.time not in _start_time_text(event):
        return False
    return True


def dedupe(events: Iterable[RemoteEvent]) -> list[RemoteEvent]:
    seen: dict[tuple[str, str], RemoteEvent] = {}
    for event in events:
        seen.setdefault(event.key, event)
    return list(seen.values())


def filter_events(events: Iterable[RemoteEvent], criteria: FilterCriteria) -> list[RemoteEvent]:
    return [event for event in dedupe(events) if matches(event, criteria)]
