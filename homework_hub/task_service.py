from __future__ import annotations

from datetime import date
from typing import Any

from homework_hub.errors import InvalidTask, ReadOnlyTaskError
from homework_hub.models import (
    DEFAULT_SUBJECT,
    SOURCE_MANUAL,
    SUBJECT_OPTIONS,
    Task,
    local_today,
    parse_due_date,
    utc_now,
    week_end,
)
from homework_hub.task_store import TaskStore


EDITABLE_FIELDS = {
    "taskName": "task_name",
    "subject": "subject",
    "dueDate": "due_date",
    "description": "description",
    "completed": "completed",
}
VIEWS = {"all", "upcoming"}
UPCOMING_FILTERS = {"overdue", "today", "week"}


def _clean_subject(value: Any) -> str:
    subject = str(value or "").strip()
    if subject not in SUBJECT_OPTIONS and subject != DEFAULT_SUBJECT:
        raise InvalidTask(f"Unknown subject: {subject or '(empty)'}")
    return subject


def _clean_due_date(value: Any) -> str:
    text = str(value or "").strip()
    try:
        return parse_due_date(text).isoformat()
    except ValueError as exc:
        raise InvalidTask(f"Invalid dueDate: {text or '(empty)'}") from exc


def _clean_task_name(value: Any) -> str:
    name = str(value or "").strip()
    if not name:
        raise InvalidTask("taskName is required")
    return name


class TaskService:
    """User-facing task operations. Synced tasks are read-only apart from completion."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def add_task(self, user_id: str, payload: dict[str, Any]) -> Task:
        task = Task(
            id="",
            task_name=_clean_task_name(payload.get("taskName")),
            subject=_clean_subject(payload.get("subject", SUBJECT_OPTIONS[0])),
            due_date=_clean_due_date(payload.get("dueDate")),
            description=str(payload.get("description") or "").strip(),
            completed=bool(payload.get("completed", False)),
            source=SOURCE_MANUAL,
            created_at=utc_now(),
        )
        return self.store.add_task(user_id, task)

    def update_task(self, user_id: str, task_id: str, payload: dict[str, Any]) -> Task:
        current = self.store.get_task(user_id, task_id)
        if current.is_synced:
            raise ReadOnlyTaskError("Synced tasks cannot be edited.")
        fields: dict[str, Any] = {}
        for key, value in payload.items():
            column = EDITABLE_FIELDS.get(key)
            if column is None:
                continue
            if column == "task_name":
                value = _clean_task_name(value)
            elif column == "subject":
                value = _clean_subject(value)
            elif column == "due_date":
                value = _clean_due_date(value)
            elif column == "description":
                value = str(value or "").strip()
            else:
                value = bool(value)
            fields[column] = value
        return self.store.update_task(user_id, task_id, fields)

    def delete_task(self, user_id: str, task_id: str) -> None:
        current = self.store.get_task(user_id, task_id)
        if current.is_synced:
            raise ReadOnlyTaskError("Synced tasks are removed by the next sync, not by hand.")
        self.store.delete_task(user_id, task_id)

    def toggle_complete(self, user_id: str, task_id: str) -> Task:
        current = self.store.get_task(user_id, task_id)
        return self.store.update_task(user_id, task_id, {"completed": not current.completed})

    def list_tasks(
        self,
        user_id: str,
        *,
        view: str = "all",
        upcoming_filter: str | None = None,
        today: date | None = None,
    ) -> list[Task]:
        if view not in VIEWS:
            raise InvalidTask(f"Unknown view: {view}")
        if upcoming_filter is not None and upcoming_filter not in UPCOMING_FILTERS:
            raise InvalidTask(f"Unknown filter: {upcoming_filter}")
        today = today or local_today()
        today_iso = today.isoformat()
        tasks = self.store.list_tasks(user_id)
        if view == "upcoming":
            tasks = [task for task in tasks if not task.completed]
            if upcoming_filter == "overdue":
                tasks = [task for task in tasks if task.due_date < today_iso]
            elif upcoming_filter == "today":
                tasks = [task for task in tasks if task.due_date == today_iso]
            elif upcoming_filter == "week":
                week_iso = week_end(today).isoformat()
                tasks = [task for task in tasks if today_iso <= task.due_date <= week_iso]
        return sorted(tasks, key=lambda task: task.due_date)

    def dashboard(self, user_id: str, today: date | None = None) -> dict[str, int]:
        today = today or local_today()
        today_iso = today.isoformat()
        week_iso = week_end(today).isoformat()
        incomplete = [task for task in self.store.list_tasks(user_id) if not task.completed]
        return {
            "tasksDueToday": sum(1 for task in incomplete if task.due_date == today_iso),
            "tasksDueThisWeek": sum(1 for task in incomplete if today_iso <= task.due_date <= week_iso),
            "tasksOverdue": sum(1 for task in incomplete if task.due_date < today_iso),
        }
