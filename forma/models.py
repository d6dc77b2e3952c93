from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable


EVENT_FIELDS = ("subject", "start_date", "start_time", "end_date", "end_time", "location", "description")
BULK_EDITABLE_FIELDS = ("start_date", "start_time", "end_date", "end_time", "location", "description")


def serialize_datetime(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )

    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o-mini"
    timeout_seconds: int = 90

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        model = str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini"
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip() or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=model,
            vision_model=str(data.get("vision_model", model)).strip() or model,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 90))),
        )


@dataclass
class BatchConfig:
    batch_size: int = 5
    inter_batch_delay_ms: int = 500

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BatchConfig":
        data = data or {}
        return cls(
            batch_size=max(1, int(data.get("batch_size", 5))),
            inter_batch_delay_ms=max(0, int(data.get("inter_batch_delay_ms", 500))),
        )


@dataclass
class RetryConfig:
    max_retries: int = 3
    delay_seconds: float = 7.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryConfig":
        data = data or {}
        return cls(
            max_retries=max(0, int(data.get("max_retries", 3))),
            delay_seconds=max(0.0, float(data.get("delay_seconds", 7.0))),
        )


@dataclass
class SearchConfig:
    default_lookback_days: int = 365
    default_lookahead_days: int = 365

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SearchConfig":
        data = data or {}
        return cls(
            default_lookback_days=max(1, int(data.get("default_lookback_days", 365))),
            default_lookahead_days=max(1, int(data.get("default_lookahead_days", 365))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            ai=AIConfig.from_dict(data.get("ai")),
            batch=BatchConfig.from_dict(data.get("batch")),
            retry=RetryConfig.from_dict(data.get("retry")),
            search=SearchConfig.from_dict(data.get("search")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventRecord:
    id: int
    subject: str = ""
    start_date: str = ""
    start_time: str = ""
    end_date: str = ""
    end_time: str = ""
    location: str = ""
    description: str = ""

    def fields(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in EVENT_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, **self.fields()}

    def raw(self) -> "EventRecord":
        return EventRecord(id=self.id, **self.fields())

    def with_updates(self, **kwargs: Any) -> "EventRecord":
        values = self.fields()
        for key, value in kwargs.items():
            if key not in values:
                raise KeyError(f"Unknown event field: {key}")
            values[key] = "" if value is None else str(value)
        return EventRecord(id=self.id, **values)


@dataclass(frozen=True)
class ValidatedEventRecord:
    """An EventRecord together with the verdict of one full validation pass.

    Instances are immutable. Editing any field means building a new raw
    record and validating it again; ``is_valid`` is derived from ``errors``
    and cannot drift from it.
    """

    record: EventRecord
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def __getattr__(self, name: str) -> Any:
        if name in EVENT_FIELDS:
            return getattr(self.record, name)
        raise AttributeError(name)

    def to_dict(self) -> dict[str, Any]:
        payload = self.record.to_dict()
        payload["errors"] = dict(self.errors)
        payload["is_valid"] = self.is_valid
        return payload


@dataclass
class RemoteEvent:
    event_id: str
    calendar_id: str
    summary: str = ""
    start: datetime | date | None = None
    end: datetime | date | None = None
    location: str = ""
    description: str = ""
    html_link: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.calendar_id, self.event_id)

    @property
    def all_day(self) -> bool:
        return isinstance(self.start, date) and not isinstance(self.start, datetime)

    def start_datetime(self) -> datetime | None:
        if self.start is None:
            return None
        if isinstance(self.start, datetime):
            return self.start
        return datetime(self.start.year, self.start.month, self.start.day)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["all_day"] = self.all_day
        return payload


@dataclass
class EventPatch:
    summary: str | None = None
    location: str | None = None
    description: str | None = None
    duration_minutes: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EventPatch":
        data = data or {}
        unknown = set(data) - {"summary", "location", "description", "duration_minutes"}
        if unknown:
            raise ValueError(f"Unsupported patch fields: {', '.join(sorted(unknown))}")

        def _text(name: str) -> str | None:
            value = data.get(name)
            if value is None:
                return None
            text = str(value)
            return text if text.strip() else None

        duration = data.get("duration_minutes")
        if duration in (None, ""):
            duration_minutes = None
        else:
            duration_minutes = int(duration)
            if duration_minutes <= 0:
                raise ValueError("duration_minutes must be a positive integer")
        return cls(
            summary=_text("summary"),
            location=_text("location"),
            description=_text("description"),
            duration_minutes=duration_minutes,
        )

    def is_empty(self) -> bool:
        return (
            self.summary is None
            and self.location is None
            and self.description is None
            and self.duration_minutes is None
        )

    def new_end(self, start: datetime | date | None) -> datetime | None:
        if self.duration_minutes is None or start is None:
            return None
        if not isinstance(start, datetime):
            start = datetime(start.year, start.month, start.day)
        return start + timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class FilterCriteria:
    start_date: str = ""
    end_date: str = ""
    text: str = ""
    location: str = ""
    time: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FilterCriteria":
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("filter criteria must be an object")
        values: dict[str, str] = {}
        for name in ("start_date", "end_date", "text", "location", "time"):
            value = data.get(name)
            if value is None:
                values[name] = ""
            elif isinstance(value, str):
                values[name] = value.strip()
            else:
                raise ValueError(f"filter field '{name}' must be a string")
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class BatchFailure:
    target: Any
    message: str
    exception: BaseException | None = None


@dataclass
class BatchOutcome:
    total: int = 0
    attempted: int = 0
    succeeded: set[Any] = field(default_factory=set)
    failed: list[BatchFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failed_targets(self) -> list[Any]:
        return [failure.target for failure in self.failed]

    def to_dict(self, label: Callable[[Any], str] = str) -> dict[str, Any]:
        return {
            "total": self.total,
            "attempted": self.attempted,
            "succeeded": sorted(label(item) for item in self.succeeded),
            "failed": [{"target": label(item.target), "message": item.message} for item in self.failed],
            "cancelled": self.cancelled,
        }
