from __future__ import annotations

import base64
import binascii
import logging
import os
from datetime import date, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from forma.ai_client import Attachment, OpenAICompatibleClient
from forma.caldav_client import CalDAVService
from forma.config_manager import ConfigManager
from forma.errors import (
    AIServiceError,
    AuthenticationError,
    BatchConfigError,
    ExtractionError,
    RemoteOperationError,
    TransientServiceError,
    UnsupportedInputError,
)
from forma.export import generate_csv, generate_ics, generate_json
from forma.models import EventPatch, FilterCriteria, RemoteEvent, ValidatedEventRecord
from forma.pipeline import (
    ImportSession,
    RemoteSession,
    call_with_retry,
    extract_into_session,
    suggest_correction,
    summarize,
)


logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ExtractTextRequest(BaseModel):
    text: str = Field(min_length=1)


class AttachmentRequest(BaseModel):
    mime_type: str = Field(min_length=1)
    data_base64: str = Field(min_length=1)
    name: str = ""


class ManualEventRequest(BaseModel):
    subject: str = ""
    start_date: str = ""
    start_time: str = ""
    end_date: str = ""
    end_time: str = ""
    location: str = ""
    description: str = ""


class FieldUpdateRequest(BaseModel):
    field: str
    value: str


class BulkUpdateRequest(BaseModel):
    ids: list[int]
    updates: dict[str, str] = Field(default_factory=dict)


class DurationRequest(BaseModel):
    ids: list[int]
    minutes: int = Field(gt=0)


class SuggestRequest(BaseModel):
    field: str


class FilterRequest(BaseModel):
    start_date: str = ""
    end_date: str = ""
    text: str = ""
    location: str = ""
    time: str = ""


class SearchRequest(BaseModel):
    calendar_ids: list[str] = Field(min_length=1)
    filters: FilterRequest = Field(default_factory=FilterRequest)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)


class ImportRequest(BaseModel):
    calendar_id: str = ""
    ids: list[int] | None = None
    calendar_mapping: dict[int, str] = Field(default_factory=dict)


class RemoteKey(BaseModel):
    calendar_id: str
    event_id: str


class RemoteDeleteRequest(BaseModel):
    keys: list[RemoteKey] = Field(min_length=1)


class RemotePatchRequest(BaseModel):
    keys: list[RemoteKey] = Field(min_length=1)
    patch: dict[str, Any] = Field(default_factory=dict)
    requery: SearchRequest | None = None


class ReauthRequest(BaseModel):
    username: str | None = None
    password: str | None = None


ERROR_STATUS = {
    ExtractionError: 422,
    UnsupportedInputError: 415,
    TransientServiceError: 503,
    AIServiceError: 502,
    AuthenticationError: 401,
    RemoteOperationError: 502,
    BatchConfigError: 400,
}


class AppContext:
    def __init__(self, config_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.import_session = ImportSession()
        self.remote = RemoteSession(CalDAVService(config.caldav), config.batch, config.search)
        self.remote_events: dict[tuple[str, str], RemoteEvent] = {}

    def ai_client(self) -> OpenAICompatibleClient:
        return OpenAICompatibleClient(self.config_manager.load().ai)

    def refresh_remote_settings(self) -> None:
        config = self.config_manager.load()
        self.remote.batch = config.batch
        self.remote.search_config = config.search
        self.remote.service.reset(config.caldav)

    def remember(self, events: list[RemoteEvent]) -> None:
        self.remote_events = {event.key: event for event in events}

    def lookup(self, keys: list[RemoteKey]) -> list[RemoteEvent]:
        found = []
        for item in keys:
            event = self.remote_events.get((item.calendar_id, item.event_id))
            if event is None:
                raise HTTPException(status_code=404, detail=f"Unknown remote event: {item.event_id}")
            found.append(event)
        return found


def _label(target: Any) -> str:
    if isinstance(target, RemoteEvent):
        return f"{target.calendar_id}/{target.event_id}"
    if isinstance(target, tuple):
        return "/".join(str(part) for part in target)
    if isinstance(target, ValidatedEventRecord):
        return str(target.id)
    return str(target)


def _filters(request: FilterRequest) -> FilterCriteria:
    return FilterCriteria.from_dict(request.model_dump())


def create_app() -> FastAPI:
    config_path = os.getenv("FORMA_CONFIG_PATH", "config.yaml")
    context = AppContext(config_path=config_path)

    app = FastAPI(title="Forma", version="0.1.0")
    app.state.context = context

    for error_type, status_code in ERROR_STATUS.items():

        def _handler(request: Request, exc: Exception, status_code: int = status_code) -> JSONResponse:
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
            content: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
            if isinstance(exc, ExtractionError):
                content["excerpt"] = exc.excerpt
            content["retryable"] = isinstance(exc, (TransientServiceError, ExtractionError))
            return JSONResponse(status_code=status_code, content=content)

        app.add_exception_handler(error_type, _handler)

    def ctx() -> AppContext:
        return app.state.context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return ctx().config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        ctx().config_manager.update(request.payload)
        ctx().refresh_remote_settings()
        return {"message": "config updated", "config": ctx().config_manager.masked()}

    @app.post("/api/ai/test")
    def test_ai() -> dict[str, Any]:
        ok, message = ctx().ai_client().test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        session = ctx().import_session
        return {
            "events": [record.to_dict() for record in session.events],
            "selected": sorted(session.selected),
        }

    @app.post("/api/events/extract")
    async def extract_text(request: ExtractTextRequest) -> dict[str, Any]:
        config = ctx().config_manager.load()
        added = await extract_into_session(ctx().import_session, ctx().ai_client(), text=request.text, retry=config.retry)
        return {"added": [record.to_dict() for record in added]}

    @app.post("/api/events/extract/file")
    async def extract_file(request: AttachmentRequest) -> dict[str, Any]:
        config = ctx().config_manager.load()
        try:
            data = base64.b64decode(request.data_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail="data_base64 is not valid base64") from exc
        attachment = Attachment(mime_type=request.mime_type, data=data, name=request.name)
        added = await extract_into_session(
            ctx().import_session, ctx().ai_client(), attachments=[attachment], retry=config.retry
        )
        return {"added": [record.to_dict() for record in added]}

    @app.post("/api/events")
    def add_event(request: ManualEventRequest) -> dict[str, Any]:
        return ctx().import_session.add_manual(**request.model_dump()).to_dict()

    @app.patch("/api/events/{event_id}")
    def update_event(event_id: int, request: FieldUpdateRequest) -> dict[str, Any]:
        try:
            return ctx().import_session.update_field(event_id, request.field, request.value).to_dict()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc

    @app.post("/api/events/bulk-update")
    def bulk_update(request: BulkUpdateRequest) -> dict[str, Any]:
        try:
            changed = ctx().import_session.bulk_update(request.ids, request.updates)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        ctx().import_session.clear_selection()
        return {"events": [record.to_dict() for record in changed]}

    @app.post("/api/events/duration")
    def apply_duration(request: DurationRequest) -> dict[str, Any]:
        try:
            changed = ctx().import_session.bulk_apply_duration(request.ids, request.minutes)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        ctx().import_session.clear_selection()
        return {"events": [record.to_dict() for record in changed]}

    @app.post("/api/events/{event_id}/suggest")
    async def suggest(event_id: int, request: SuggestRequest) -> dict[str, Any]:
        config = ctx().config_manager.load()
        try:
            record = await suggest_correction(
                ctx().import_session, ctx().ai_client(), event_id, request.field, retry=config.retry
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return record.to_dict()

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: int) -> dict[str, Any]:
        removed = ctx().import_session.remove([event_id])
        if not removed:
            raise HTTPException(status_code=404, detail=f"Unknown event id: {event_id}")
        return {"removed": removed}

    @app.get("/api/export/csv", response_class=PlainTextResponse)
    def export_csv() -> PlainTextResponse:
        content = generate_csv(ctx().import_session.events)
        return PlainTextResponse(
            content,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="events-{date.today().isoformat()}.csv"'},
        )

    @app.get("/api/export/ics", response_class=PlainTextResponse)
    def export_ics() -> PlainTextResponse:
        content = generate_ics(ctx().import_session.events, now=datetime.now().astimezone())
        return PlainTextResponse(
            content,
            media_type="text/calendar",
            headers={"Content-Disposition": f'attachment; filename="events-{date.today().isoformat()}.ics"'},
        )

    @app.get("/api/export/json")
    def export_json() -> Response:
        content = generate_json(ctx().import_session.events)
        return Response(
            content,
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="events.json"'},
        )

    @app.get("/api/calendars")
    async def list_calendars() -> dict[str, Any]:
        calendars = await ctx().remote.list_calendars()
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/auth/reauthenticate")
    async def reauthenticate(request: ReauthRequest) -> dict[str, Any]:
        updates = {key: value for key, value in request.model_dump().items() if value is not None}
        if updates:
            ctx().config_manager.update({"caldav": updates})
        calendars = await ctx().remote.reauthenticate(ctx().config_manager.load().caldav)
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/remote/search")
    async def search(request: SearchRequest) -> dict[str, Any]:
        try:
            criteria = _filters(request.filters)
            events = await ctx().remote.search(request.calendar_ids, criteria)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        ctx().remember(events)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/remote/filters/interpret")
    async def interpret_query(request: QueryRequest) -> dict[str, Any]:
        config = ctx().config_manager.load()
        criteria = await call_with_retry(ctx().ai_client().parse_filter_query, request.query, retry=config.retry)
        return {"filters": criteria.to_dict()}

    @app.post("/api/remote/import")
    async def import_events(request: ImportRequest) -> dict[str, Any]:
        try:
            outcome = await ctx().remote.import_records(
                ctx().import_session,
                calendar_id=request.calendar_id,
                event_ids=request.ids,
                calendar_mapping=request.calendar_mapping,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return {"outcome": outcome.to_dict(_label), "summary": summarize(outcome)}

    @app.post("/api/remote/delete")
    async def delete_remote(request: RemoteDeleteRequest) -> dict[str, Any]:
        events = list(ctx().remote_events.values())
        targets = {event.key for event in ctx().lookup(request.keys)}
        result = await ctx().remote.delete_events(events, selected=targets)
        ctx().remember(result.remaining)
        return {
            "outcome": result.outcome.to_dict(_label),
            "summary": summarize(result.outcome),
            "remaining": [event.to_dict() for event in result.remaining],
            "selected": [{"calendar_id": cid, "event_id": eid} for cid, eid in sorted(result.selected)],
        }

    @app.post("/api/remote/patch")
    async def patch_remote(request: RemotePatchRequest) -> dict[str, Any]:
        try:
            patch = EventPatch.from_dict(request.patch)
            requery = None
            if request.requery is not None:
                requery = (request.requery.calendar_ids, _filters(request.requery.filters))
            result = await ctx().remote.patch_events(ctx().lookup(request.keys), patch, requery=requery)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if result.refreshed is not None:
            ctx().remember(result.refreshed)
        return {
            "outcome": result.outcome.to_dict(_label),
            "summary": summarize(result.outcome),
            "events": [event.to_dict() for event in (result.refreshed or [])],
            "selected": [{"calendar_id": cid, "event_id": eid} for cid, eid in sorted(result.selected)],
        }

    return app

