from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from forma.ai_client import Attachment, OpenAICompatibleClient
from forma.batch import CancellationToken, ProgressCallback, SleepFunc, run_batched
from forma.caldav_client import CalDAVService
from forma.errors import AuthenticationError, RemoteOperationError, TransientServiceError
from forma.extractor import IdAllocator, records_from_payload
from forma.filters import filter_events, search_window
from forma.models import (
    EVENT_FIELDS,
    BatchConfig,
    BatchOutcome,
    CalDAVConfig,
    CalendarInfo,
    EventPatch,
    EventRecord,
    FilterCriteria,
    RemoteEvent,
    RetryConfig,
    SearchConfig,
    ValidatedEventRecord,
)
from forma.validation import apply_duration, apply_field_updates, validate


logger = logging.getLogger(__name__)

R = TypeVar("R")


class ImportSession:
    """The local working set of extracted or hand-entered events.

    Records are only ever replaced by the result of a fresh ``validate``
    pass; nothing patches an ``errors`` mapping in place.
    """

    def __init__(self, allocator: IdAllocator | None = None) -> None:
        self._allocator = allocator or IdAllocator()
        self._events: dict[int, ValidatedEventRecord] = {}
        self.selected: set[int] = set()

    @property
    def events(self) -> list[ValidatedEventRecord]:
        return list(self._events.values())

    def __len__(self) -> int:
        return len(self._events)

    def get(self, event_id: int) -> ValidatedEventRecord:
        try:
            return self._events[event_id]
        except KeyError:
            raise KeyError(f"Unknown event id: {event_id}") from None

    def ingest(self, items: Iterable[Any]) -> list[ValidatedEventRecord]:
        validated = [validate(record) for record in records_from_payload(items, self._allocator)]
        for record in validated:
            self._events[record.id] = record
        logger.info(
            "Ingested %d event(s), %d valid",
            len(validated),
            sum(1 for record in validated if record.is_valid),
        )
        return validated

    def add_manual(self, **values: str) -> ValidatedEventRecord:
        unknown = set(values) - set(EVENT_FIELDS)
        if unknown:
            raise KeyError(f"Unknown event field(s): {', '.join(sorted(unknown))}")
        record = validate(EventRecord(id=self._allocator.next_id(), **values))
        self._events[record.id] = record
        return record

    def replace(self, record: EventRecord | ValidatedEventRecord) -> ValidatedEventRecord:
        self.get(record.id)
        fresh = validate(record)
        self._events[fresh.id] = fresh
        return fresh

    def update_field(self, event_id: int, field_name: str, value: str) -> ValidatedEventRecord:
        if field_name not in EVENT_FIELDS:
            raise KeyError(f"Unknown event field: {field_name}")
        current = self.get(event_id)
        return self.replace(current.record.with_updates(**{field_name: value}))

    def bulk_update(self, event_ids: Iterable[int], updates: dict[str, Any]) -> list[ValidatedEventRecord]:
        changed = []
        for event_id in event_ids:
            record = apply_field_updates(self.get(event_id), updates)
            self._events[event_id] = record
            changed.append(record)
        return changed

    def bulk_apply_duration(self, event_ids: Iterable[int], minutes: int) -> list[ValidatedEventRecord]:
        if minutes <= 0:
            raise ValueError("duration must be a positive number of minutes")
        changed = []
        for event_id in event_ids:
            record = apply_duration(self.get(event_id), minutes)
            self._events[event_id] = record
            changed.append(record)
        return changed

    def remove(self, event_ids: Iterable[int]) -> int:
        removed = 0
        for event_id in list(event_ids):
            if self._events.pop(event_id, None) is not None:
                removed += 1
            self.selected.discard(event_id)
        return removed

    def valid_records(self, event_ids: Iterable[int] | None = None) -> list[ValidatedEventRecord]:
        if event_ids is None:
            candidates = self.events
        else:
            candidates = [self.get(event_id) for event_id in event_ids]
        return [record for record in candidates if record.is_valid]

    def select(self, event_ids: Iterable[int]) -> None:
        for event_id in event_ids:
            self.get(event_id)
            self.selected.add(event_id)

    def toggle_select_all(self) -> None:
        if self._events and self.selected == set(self._events):
            self.selected = set()
        else:
            self.selected = set(self._events)

    def clear_selection(self) -> None:
        self.selected = set()


async def call_with_retry(
    func: Callable[..., R],
    *args: Any,
    retry: RetryConfig | None = None,
    sleep: SleepFunc = asyncio.sleep,
    **kwargs: Any,
) -> R:
    """Run blocking ``func`` off the loop, retrying transient failures with a fixed delay."""
    retry = retry or RetryConfig()
    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except TransientServiceError as exc:
            if attempt >= retry.max_retries:
                logger.error("Giving up after %d retries: %s", attempt, exc)
                raise
            attempt += 1
            logger.warning(
                "Service overloaded, retrying in %.1fs (attempt %d of %d)",
                retry.delay_seconds,
                attempt,
                retry.max_retries,
            )
            await sleep(retry.delay_seconds)


async def extract_into_session(
    session: ImportSession,
    client: OpenAICompatibleClient,
    *,
    text: str | None = None,
    attachments: Iterable[Attachment] = (),
    retry: RetryConfig | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> list[ValidatedEventRecord]:
    items: list[Any] = []
    if text and text.strip():
        items.extend(await call_with_retry(client.extract_events, text=text, retry=retry, sleep=sleep))
    for attachment in attachments:
        items.extend(await call_with_retry(client.extract_events, attachment=attachment, retry=retry, sleep=sleep))
    return session.ingest(items)


async def suggest_correction(
    session: ImportSession,
    client: OpenAICompatibleClient,
    event_id: int,
    field_name: str,
    retry: RetryConfig | None = None,
) -> ValidatedEventRecord:
    if field_name not in EVENT_FIELDS:
        raise ValueError(f"Unknown event field: {field_name}")
    record = session.get(event_id)
    suggestion = await call_with_retry(client.suggest_correction, record.record, field_name, retry=retry)
    if suggestion is None:
        return record
    return session.update_field(event_id, field_name, suggestion)


def summarize(outcome: BatchOutcome) -> str:
    if outcome.total == 0:
        return "Nothing to do."
    parts = []
    if outcome.failed:
        parts.append(f"{len(outcome.failed)} of {outcome.total} items did not complete.")
    else:
        parts.append(f"{len(outcome.succeeded)} of {outcome.total} items completed.")
    if outcome.cancelled:
        parts.append(f"Cancelled after {outcome.attempted} items.")
    return " ".join(parts)


@dataclass
class DeleteResult:
    outcome: BatchOutcome
    remaining: list[RemoteEvent]
    selected: set[tuple[str, str]] = field(default_factory=set)


@dataclass
class PatchResult:
    outcome: BatchOutcome
    refreshed: list[RemoteEvent] | None
    selected: set[tuple[str, str]] = field(default_factory=set)


class RemoteSession:
    """Remote calendar access for one user session.

    An authentication failure locks the session: every later remote call
    raises ``AuthenticationError`` until ``reauthenticate`` succeeds.
    """

    def __init__(
        self,
        service: CalDAVService,
        batch: BatchConfig | None = None,
        search_config: SearchConfig | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.service = service
        self.batch = batch or BatchConfig()
        self.search_config = search_config or SearchConfig()
        self.sleep = sleep
        self.requires_reauth = False

    def _ensure_authenticated(self) -> None:
        if self.requires_reauth:
            raise AuthenticationError("Calendar access expired. Sign in again before continuing.")

    async def _call(self, func: Callable[..., R], *args: Any) -> R:
        self._ensure_authenticated()
        try:
            return await asyncio.to_thread(func, *args)
        except AuthenticationError:
            logger.warning("Calendar authentication failed, re-authentication required")
            self.requires_reauth = True
            raise

    async def _run(
        self,
        targets: list[Any],
        operation: Callable[[Any], Awaitable[Any]],
        key: Callable[[Any], Any],
        on_progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> BatchOutcome:
        self._ensure_authenticated()
        if targets:
            # Resolve calendars up front so worker threads only read the cache.
            await self._call(self.service.list_calendars)
        return await run_batched(
            targets,
            operation,
            self.batch.batch_size,
            self.batch.inter_batch_delay_ms,
            on_progress,
            key=key,
            cancel_token=cancel_token,
            sleep=self.sleep,
        )

    async def reauthenticate(self, config: CalDAVConfig | None = None) -> list[CalendarInfo]:
        self.service.reset(config)
        self.requires_reauth = False
        return await self.list_calendars()

    async def list_calendars(self) -> list[CalendarInfo]:
        return await self._call(self.service.list_calendars)

    async def search(
        self,
        calendar_ids: Iterable[str],
        criteria: FilterCriteria,
        now: datetime | None = None,
    ) -> list[RemoteEvent]:
        window_start, window_end = search_window(
            criteria,
            now=now,
            lookback_days=self.search_config.default_lookback_days,
            lookahead_days=self.search_config.default_lookahead_days,
        )
        fetched: list[RemoteEvent] = []
        for calendar_id in calendar_ids:
            fetched.extend(await self._call(self.service.list_events, calendar_id, window_start, window_end))
        matched = filter_events(fetched, criteria)
        logger.info("Search matched %d of %d fetched event(s)", len(matched), len(fetched))
        return matched

    async def import_records(
        self,
        session: ImportSession,
        calendar_id: str = "",
        event_ids: Iterable[int] | None = None,
        calendar_mapping: dict[int, str] | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BatchOutcome:
        """Insert valid working-set records; inserted ones leave the working set."""
        mapping = calendar_mapping or {}
        records = session.valid_records(event_ids)

        async def _insert(record: ValidatedEventRecord) -> RemoteEvent:
            self._ensure_authenticated()
            target_calendar = mapping.get(record.id) or calendar_id
            if not target_calendar:
                raise RemoteOperationError("No calendar selected for this event.")
            return await self._call(self.service.insert_event, target_calendar, record)

        outcome = await self._run(records, _insert, lambda record: record.id, on_progress, cancel_token)
        # Inserted ids leave the selection with their records; failed ones stay selected.
        session.remove(outcome.succeeded)
        session.selected |= {failure.target.id for failure in outcome.failed}
        logger.info(summarize(outcome))
        return outcome

    async def delete_events(
        self,
        events: list[RemoteEvent],
        selected: Iterable[tuple[str, str]] | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeleteResult:
        selected_keys = {event.key for event in events} if selected is None else set(selected)
        targets = [event for event in events if event.key in selected_keys]

        async def _delete(event: RemoteEvent) -> None:
            self._ensure_authenticated()
            await self._call(self.service.delete_event, event.calendar_id, event.event_id)

        outcome = await self._run(targets, _delete, lambda event: event.key, on_progress, cancel_token)
        remaining = [event for event in events if event.key not in outcome.succeeded]
        still_selected = {event.key for event in targets} - outcome.succeeded
        logger.info(summarize(outcome))
        return DeleteResult(outcome=outcome, remaining=remaining, selected=still_selected)

    async def patch_events(
        self,
        events: list[RemoteEvent],
        patch: EventPatch,
        requery: tuple[Iterable[str], FilterCriteria] | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PatchResult:
        """Apply ``patch`` to every event, then re-run the search when ``requery`` is given.

        Local copies are not updated in place: a duration change derives the
        end from the server's stored start, so the re-query is the source of
        truth afterwards.
        """
        if patch.is_empty():
            raise ValueError("Enter at least one change to apply.")

        async def _patch(event: RemoteEvent) -> RemoteEvent:
            self._ensure_authenticated()
            return await self._call(self.service.patch_event, event.calendar_id, event.event_id, patch)

        outcome = await self._run(list(events), _patch, lambda event: event.key, on_progress, cancel_token)
        logger.info(summarize(outcome))
        refreshed = None
        if requery is not None and not self.requires_reauth:
            calendar_ids, criteria = requery
            refreshed = await self.search(calendar_ids, criteria)
        still_selected = {event.key for event in events} - outcome.succeeded
        return PatchResult(outcome=outcome, refreshed=refreshed, selected=still_selected)
