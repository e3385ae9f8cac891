from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


SOURCE_MANUAL = "manual"
SOURCE_TODDLE = "toddle"

UNTITLED_TASK = "Untitled Task"
DEFAULT_SUBJECT = "Other"
SUBJECT_OPTIONS = [
    "Drama",
    "Swedish",
    "English",
    "Art",
    "Maths",
    "I+S",
    "Science",
    "Design",
    "PE",
    "Spanish",
]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    """Date-only values map to UTC midnight of that calendar day."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_midnight(value: datetime) -> datetime:
    value_utc = _ensure_tz(value).astimezone(timezone.utc)
    return datetime.combine(value_utc.date(), time.min, tzinfo=timezone.utc)


def local_midnight(now: datetime | None = None) -> datetime:
    current = _ensure_tz(now) if now is not None else datetime.now().astimezone()
    return datetime.combine(current.date(), time.min, tzinfo=current.tzinfo)


def local_today(now: datetime | None = None) -> date:
    return local_midnight(now).date()


def parse_due_date(value: str) -> date:
    return date.fromisoformat(str(value).strip())


@dataclass
class FeedConfig:
    timeout_seconds: int = 20
    user_agent: str = "homework-hub/0.1 (+ical sync)"
    parse_endpoint: str = ""
    max_span_days: int = 365

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 20))),
            user_agent=str(data.get("user_agent", "homework-hub/0.1 (+ical sync)")).strip()
            or "homework-hub/0.1 (+ical sync)",
            parse_endpoint=str(data.get("parse_endpoint", "") or "").strip(),
            max_span_days=max(1, int(data.get("max_span_days", 365))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 3600
    background_enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(60, int(data.get("interval_seconds", 3600))),
            background_enabled=bool(data.get("background_enabled", True)),
        )


@dataclass
class StoreConfig:
    path: str = "data/homework.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreConfig":
        data = data or {}
        return cls(path=str(data.get("path", "data/homework.db")).strip() or "data/homework.db")


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
            json=bool(data.get("json", True)),
        )


@dataclass
class AppConfig:
    feed: FeedConfig = field(default_factory=FeedConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            feed=FeedConfig.from_dict(data.get("feed")),
            sync=SyncConfig.from_dict(data.get("sync")),
            store=StoreConfig.from_dict(data.get("store")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarEvent:
    title: str = UNTITLED_TASK
    start: datetime | None = None
    end: datetime | None = None
    description: str = ""
    location: str = ""
    categories: list[str] = field(default_factory=list)
    external_id: str = ""
    kind: str = "VEVENT"


@dataclass
class TaskCandidate:
    task_name: str
    due_date: str
    description: str = ""
    location: str = ""
    categories: list[str] = field(default_factory=list)
    external_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskName": self.task_name,
            "dueDate": self.due_date,
            "description": self.description,
            "location": self.location,
            "categories": list(self.categories),
            "uid": self.external_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskCandidate":
        categories = data.get("categories") or []
        if isinstance(categories, str):
            categories = [categories]
        return cls(
            task_name=str(data.get("taskName") or UNTITLED_TASK),
            due_date=str(data.get("dueDate", "")).strip(),
            description=str(data.get("description") or ""),
            location=str(data.get("location") or ""),
            categories=[str(item) for item in categories],
            external_id=str(data.get("uid") or ""),
        )


@dataclass
class Task:
    id: str
    task_name: str
    subject: str
    due_date: str
    description: str = ""
    completed: bool = False
    source: str = SOURCE_MANUAL
    created_at: datetime = field(default_factory=utc_now)
    external_id: str = ""

    @property
    def is_synced(self) -> bool:
        return self.source == SOURCE_TODDLE

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "taskName": self.task_name,
            "subject": self.subject,
            "dueDate": self.due_date,
            "description": self.description,
            "completed": self.completed,
            "source": self.source,
            "createdAt": serialize_datetime(self.created_at),
        }
        if self.external_id:
            payload["externalId"] = self.external_id
        return payload

    def with_updates(self, **kwargs: Any) -> "Task":
        payload = asdict(self)
        payload.update(kwargs)
        return Task(**payload)


@dataclass
class SyncSettings:
    ical_url: str = ""
    last_sync_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "icalUrl": self.ical_url or None,
            "lastSyncTime": serialize_datetime(self.last_sync_time),
        }


@dataclass
class SyncResult:
    status: str
    message: str
    trigger: str
    synced_count: int = 0
    last_sync_time: datetime | None = None
    error: str = ""
    alert: bool = False
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "trigger": self.trigger,
            "synced_count": self.synced_count,
            "last_sync_time": serialize_datetime(self.last_sync_time),
            "error": self.error,
            "alert": self.alert,
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


def week_end(today: date) -> date:
    return today + timedelta(days=7)
