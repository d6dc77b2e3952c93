from __future__ import annotations

import base64
import csv
import io
import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any

import openpyxl
import requests
from openpyxl.utils.exceptions import InvalidFileException

from forma.errors import AIServiceError, TransientServiceError, UnsupportedInputError
from forma.extractor import extract
from forma.models import EVENT_FIELDS, AIConfig, EventRecord, FilterCriteria


logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {500, 502, 503, 504}
TRANSIENT_MESSAGE_MARKERS = ("overloaded", "unavailable", "internal server error")
TEXT_MIME_TYPES = {"text/plain", "text/csv"}
SPREADSHEET_MIME_TYPES = {
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel.sheet.macroenabled.12",
}

EVENT_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "subject": {"type": "string", "description": "Title of the event. Required."},
        "startDate": {"type": "string", "description": "Start date, YYYY-MM-DD."},
        "startTime": {"type": "string", "description": "Start time, HH:mm 24-hour."},
        "endDate": {"type": "string", "description": "End date, YYYY-MM-DD. Same as startDate if unknown."},
        "endTime": {"type": "string", "description": "End time, HH:mm 24-hour. Start plus one hour if unknown."},
        "description": {"type": "string"},
        "location": {"type": "string"},
    },
    "required": ["subject", "startDate", "startTime", "endDate", "endTime", "description", "location"],
    "additionalProperties": False,
}

EVENTS_SCHEMA: dict[str, Any] = {
    "name": "events",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {"events": {"type": "array", "items": EVENT_ITEM_SCHEMA}},
        "required": ["events"],
        "additionalProperties": False,
    },
}

FILTER_SCHEMA: dict[str, Any] = {
    "name": "filter",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "start_date": {"type": "string", "description": "YYYY-MM-DD or empty."},
            "end_date": {"type": "string", "description": "YYYY-MM-DD or empty."},
            "text": {"type": "string", "description": "Text in summary or description, or empty."},
            "location": {"type": "string", "description": "Location text, or empty."},
            "time": {"type": "string", "description": "Start time HH:mm, or empty."},
        },
        "required": ["start_date", "end_date", "text", "location", "time"],
        "additionalProperties": False,
    },
}


def extraction_prompt(today: date | None = None) -> str:
    today = today or date.today()
    return (
        "You extract calendar events from the content provided.\n"
        "Return only a JSON array of event objects, no prose and no markdown.\n"
        "Fields: subject, startDate, startTime, endDate, endTime, description, location.\n"
        "Accept any input date or time format and any language.\n"
        f"Normalize dates to YYYY-MM-DD; if the year is missing assume {today.year}.\n"
        "Normalize times to HH:mm (24-hour); if no time is given use 09:00; "
        "if only a start time is given the event lasts one hour.\n"
        "If the end date is missing it equals the start date.\n"
        "If there are no events return [].\n"
        "Content:\n"
    )


@dataclass
class Attachment:
    mime_type: str
    data: bytes
    name: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_text(self) -> bool:
        return self.mime_type in TEXT_MIME_TYPES

    @property
    def is_spreadsheet(self) -> bool:
        return self.mime_type.lower() in SPREADSHEET_MIME_TYPES

    def as_text(self) -> str:
        if self.is_spreadsheet:
            return spreadsheet_to_csv(self.data)
        return self.data.decode("utf-8", errors="replace")

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time.min:
            return value.date().isoformat()
        return value.isoformat(sep=" ", timespec="minutes")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def spreadsheet_to_csv(data: bytes) -> str:
    """Render the first sheet of an .xlsx workbook as CSV text."""
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise UnsupportedInputError(f"Could not read spreadsheet: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        for row in sheet.iter_rows(values_only=True):
            writer.writerow([_cell_text(value) for value in row])
    finally:
        workbook.close()
    logger.debug("Converted spreadsheet to %d characters of CSV", buffer.tell())
    return buffer.getvalue()


def _is_transient_message(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in TRANSIENT_MESSAGE_MARKERS)


class OpenAICompatibleClient:
    def __init__(self, config: AIConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    def _chat_endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    def _post_chat(self, payload: dict[str, Any]) -> str:
        if not self.is_configured():
            raise AIServiceError("AI config incomplete: base_url/api_key/model required.")
        try:
            response = self.session.post(
                self._chat_endpoint(),
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientServiceError(f"AI service unreachable: {exc}") from exc

        if not response.ok:
            body = response.text[:300]
            logger.error("AI service returned HTTP %s: %s", response.status_code, body)
            if response.status_code in TRANSIENT_STATUS_CODES or _is_transient_message(body):
                raise TransientServiceError(
                    "The AI service is currently overloaded or unavailable. Try again in a few moments."
                )
            if response.status_code in {401, 403}:
                raise AIServiceError("AI service rejected the API key.")
            raise AIServiceError(f"HTTP {response.status_code}: {body}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AIServiceError("AI response has no message content.") from exc
        return str(content or "")

    def extract_events(self, text: str | None = None, attachment: Attachment | None = None) -> list[Any]:
        """Ask the model for events in ``text`` and/or ``attachment``.

        Text-only requests carry a strict JSON schema. Images are sent inline
        to the vision model, which cannot honour a schema, so its answer goes
        through the tolerant extraction path instead.
        """
        prompt = extraction_prompt()
        body = text or ""
        if attachment is not None and not attachment.is_image:
            if not (attachment.is_text or attachment.is_spreadsheet):
                raise UnsupportedInputError(f"Unsupported file type for AI processing: {attachment.mime_type}")
            body = f"{body}\n{attachment.as_text()}".strip()
            attachment = None

        if attachment is None:
            if not body.strip():
                raise UnsupportedInputError("Nothing to extract: the input is empty.")
            payload: dict[str, Any] = {
                "model": self.config.model,
                "messages": [{"role": "user", "content": prompt + body}],
                "temperature": 0.1,
                "response_format": {"type": "json_schema", "json_schema": EVENTS_SCHEMA},
            }
            strict = True
        else:
            content: list[dict[str, Any]] = [{"type": "text", "text": prompt + body}]
            content.append({"type": "image_url", "image_url": {"url": attachment.data_url()}})
            payload = {
                "model": self.config.vision_model,
                "messages": [{"role": "user", "content": content}],
                "temperature": 0.1,
            }
            strict = False

        logger.info("Requesting event extraction (strict_schema=%s)", strict)
        raw = self._post_chat(payload)
        return extract(raw, strict_schema_requested=strict)

    def suggest_correction(self, record: EventRecord, field_name: str) -> str | None:
        if field_name not in EVENT_FIELDS:
            raise ValueError(f"Unknown event field: {field_name}")
        current = getattr(record, field_name)
        prompt = (
            "An event has these details:\n"
            f"Subject: {record.subject}\n"
            f"Start date: {record.start_date}\n"
            f"Start time: {record.start_time}\n"
            f"End date: {record.end_date}\n"
            f"End time: {record.end_time}\n"
            f"Location: {record.location}\n"
            f"Description: {record.description}\n\n"
            f'The field "{field_name}" is invalid or badly formatted. Current value: "{current}".\n'
            "Suggest a corrected value based on the rest of the event. "
            "Dates as YYYY-MM-DD, times as HH:mm. Reply with the value only."
        )
        raw = self._post_chat(
            {
                "model": self.config.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0,
            }
        )
        suggestion = raw.strip().strip('"').strip()
        return suggestion or None

    def parse_filter_query(self, query: str, today: date | None = None) -> FilterCriteria:
        today = today or date.today()
        prompt = (
            "Extract calendar search filters from the query below.\n"
            f"Dates as YYYY-MM-DD; if the year is missing assume {today.year}.\n"
            "Leave any filter not mentioned as an empty string.\n\n"
            f'Query: "{query}"'
        )
        raw = self._post_chat(
            {
                "model": self.config.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0,
                "response_format": {"type": "json_schema", "json_schema": FILTER_SCHEMA},
            }
        )
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise AIServiceError("AI response for the filter query is not valid JSON.") from exc
        try:
            return FilterCriteria.from_dict(parsed)
        except ValueError as exc:
            raise AIServiceError(f"AI filter response has the wrong shape: {exc}") from exc

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "AI config incomplete: base_url/api_key/model required."
        try:
            content = self._post_chat(
                {
                    "model": self.config.model,
                    "messages": [{"role": "user", "content": "Reply with: OK"}],
                    "temperature": 0,
                    "max_tokens": 8,
                }
            )
        except (AIServiceError, TransientServiceError) as exc:
            return False, f"{type(exc).__name__}: {exc}"
        content_text = content.strip().replace("\n", " ")
        return True, f"Connected. Model response: {content_text[:120]}"
