from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from homework_hub.errors import StorePermissionError, TaskNotFound
from homework_hub.models import (
    SyncSettings,
    Task,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

TaskListener = Callable[[list[Task]], None]

_UNSET: Any = object()

TASK_COLUMNS = {
    "task_name": "task_name",
    "subject": "subject",
    "due_date": "due_date",
    "description": "description",
    "completed": "completed",
}


def _utc_now_text() -> str:
    return utc_now().isoformat()


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=str(row["id"]),
        task_name=str(row["task_name"]),
        subject=str(row["subject"]),
        due_date=str(row["due_date"]),
        description=str(row["description"] or ""),
        completed=bool(row["completed"]),
        source=str(row["source"]),
        created_at=parse_iso_datetime(row["created_at"]) or utc_now(),
        external_id=str(row["external_id"] or ""),
    )


@contextmanager
def _permission_guard() -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        if "readonly" in str(exc).lower():
            raise StorePermissionError(str(exc)) from exc
        raise


@dataclass
class _BatchOp:
    kind: str
    task_id: str = ""
    task: Task | None = None
    settings: dict[str, Any] = field(default_factory=dict)


class WriteBatch:
    """Queued writes for one user, applied in a single transaction on commit."""

    def __init__(self, store: "TaskStore", user_id: str) -> None:
        self._store = store
        self.user_id = user_id
        self._ops: list[_BatchOp] = []
        self._committed = False

    def delete(self, task_id: str) -> "WriteBatch":
        self._ops.append(_BatchOp(kind="delete", task_id=str(task_id)))
        return self

    def set_task(self, task: Task) -> "WriteBatch":
        if not task.id:
            task = task.with_updates(id=self._store.new_task_id())
        self._ops.append(_BatchOp(kind="set", task_id=task.id, task=task))
        return self

    def merge_settings(
        self,
        *,
        ical_url: Any = _UNSET,
        last_sync_time: Any = _UNSET,
    ) -> "WriteBatch":
        updates: dict[str, Any] = {}
        if ical_url is not _UNSET:
            updates["ical_url"] = ical_url
        if last_sync_time is not _UNSET:
            updates["last_sync_time"] = last_sync_time
        self._ops.append(_BatchOp(kind="settings", settings=updates))
        return self

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("WriteBatch already committed.")
        self._store._commit_batch(self.user_id, self._ops)
        self._committed = True


class TaskStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._listeners: dict[str, list[TaskListener]] = {}
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            task_name TEXT NOT NULL,
            subject TEXT NOT NULL,
            due_date TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            completed INTEGER NOT NULL DEFAULT 0,
            source TEXT NOT NULL,
            created_at TEXT NOT NULL,
            external_id TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_tasks_user_source ON tasks(user_id, source);

        CREATE TABLE IF NOT EXISTS sync_settings (
            user_id TEXT PRIMARY KEY,
            ical_url TEXT,
            last_sync_time TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            synced_count INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    @staticmethod
    def new_task_id() -> str:
        return uuid.uuid4().hex

    # -- tasks -----------------------------------------------------------

    def list_tasks(self, user_id: str, source: str | None = None) -> list[Task]:
        with self._lock:
            with self._connect() as conn:
                if source is None:
                    rows = conn.execute(
                        """
                        SELECT * FROM tasks
                        WHERE user_id = ?
                        ORDER BY due_date, created_at, rowid
                        """,
                        (str(user_id),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM tasks
                        WHERE user_id = ? AND source = ?
                        ORDER BY due_date, created_at, rowid
                        """,
                        (str(user_id), str(source)),
                    ).fetchall()
        return [_row_to_task(row) for row in rows]

    def _owned_row(self, conn: sqlite3.Connection, user_id: str, task_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (str(task_id),)).fetchone()
        if row is None:
            raise TaskNotFound(f"Task not found: {task_id}")
        if str(row["user_id"]) != str(user_id):
            raise StorePermissionError(f"Task {task_id} does not belong to user {user_id}")
        return row

    def get_task(self, user_id: str, task_id: str) -> Task:
        with self._lock:
            with self._connect() as conn:
                row = self._owned_row(conn, user_id, task_id)
        return _row_to_task(row)

    def add_task(self, user_id: str, task: Task) -> Task:
        if not task.id:
            task = task.with_updates(id=self.new_task_id())
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                self._insert_task(conn, user_id, task)
                conn.commit()
        self._notify(user_id)
        return task

    def update_task(self, user_id: str, task_id: str, fields: dict[str, Any]) -> Task:
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            column = TASK_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Field is not updatable: {key}")
            assignments.append(f"{column} = ?")
            values.append(int(bool(value)) if column == "completed" else str(value))
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                self._owned_row(conn, user_id, task_id)
                if assignments:
                    conn.execute(
                        f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",  # nosec B608
                        (*values, str(task_id)),
                    )
                    conn.commit()
                row = self._owned_row(conn, user_id, task_id)
        self._notify(user_id)
        return _row_to_task(row)

    def delete_task(self, user_id: str, task_id: str) -> None:
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                self._owned_row(conn, user_id, task_id)
                conn.execute("DELETE FROM tasks WHERE id = ?", (str(task_id),))
                conn.commit()
        self._notify(user_id)

    def _insert_task(self, conn: sqlite3.Connection, user_id: str, task: Task) -> None:
        conn.execute(
            """
            INSERT INTO tasks(id, user_id, task_name, subject, due_date, description,
                              completed, source, created_at, external_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                str(user_id),
                task.task_name,
                task.subject,
                task.due_date,
                task.description,
                int(bool(task.completed)),
                task.source,
                serialize_datetime(task.created_at),
                task.external_id or None,
            ),
        )

    # -- settings --------------------------------------------------------

    def get_sync_settings(self, user_id: str) -> SyncSettings:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT ical_url, last_sync_time FROM sync_settings WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        if row is None:
            return SyncSettings()
        return SyncSettings(
            ical_url=str(row["ical_url"] or ""),
            last_sync_time=parse_iso_datetime(row["last_sync_time"]),
        )

    def merge_sync_settings(
        self,
        user_id: str,
        *,
        ical_url: Any = _UNSET,
        last_sync_time: Any = _UNSET,
    ) -> SyncSettings:
        updates: dict[str, Any] = {}
        if ical_url is not _UNSET:
            updates["ical_url"] = ical_url
        if last_sync_time is not _UNSET:
            updates["last_sync_time"] = last_sync_time
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                self._merge_settings(conn, user_id, updates)
                conn.commit()
        return self.get_sync_settings(user_id)

    def _merge_settings(self, conn: sqlite3.Connection, user_id: str, updates: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO sync_settings(user_id, ical_url, last_sync_time, updated_at)
            VALUES (?, NULL, NULL, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (str(user_id), _utc_now_text()),
        )
        if "ical_url" in updates:
            url = str(updates["ical_url"] or "").strip()
            conn.execute(
                "UPDATE sync_settings SET ical_url = ?, updated_at = ? WHERE user_id = ?",
                (url or None, _utc_now_text(), str(user_id)),
            )
        if "last_sync_time" in updates:
            value = updates["last_sync_time"]
            text = serialize_datetime(value) if isinstance(value, datetime) else value
            conn.execute(
                "UPDATE sync_settings SET last_sync_time = ?, updated_at = ? WHERE user_id = ?",
                (text, _utc_now_text(), str(user_id)),
            )

    def users_with_feed(self) -> list[tuple[str, str]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id, ical_url FROM sync_settings
                    WHERE ical_url IS NOT NULL AND ical_url != ''
                    ORDER BY user_id
                    """
                ).fetchall()
        return [(str(row["user_id"]), str(row["ical_url"])) for row in rows]

    # -- batches ---------------------------------------------------------

    def batch(self, user_id: str) -> WriteBatch:
        return WriteBatch(self, user_id)

    def _apply_op(self, conn: sqlite3.Connection, user_id: str, op: _BatchOp) -> None:
        if op.kind == "delete":
            conn.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (op.task_id, str(user_id)))
        elif op.kind == "set":
            assert op.task is not None
            conn.execute("DELETE FROM tasks WHERE id = ? AND user_id = ?", (op.task_id, str(user_id)))
            self._insert_task(conn, user_id, op.task)
        elif op.kind == "settings":
            self._merge_settings(conn, user_id, op.settings)
        else:
            raise ValueError(f"Unknown batch operation: {op.kind}")

    def _commit_batch(self, user_id: str, ops: list[_BatchOp]) -> None:
        with self._lock:
            conn = self._connect()
            try:
                with _permission_guard():
                    for op in ops:
                        self._apply_op(conn, user_id, op)
                    conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        self._notify(user_id)

    # -- subscriptions ---------------------------------------------------

    def subscribe_tasks(self, user_id: str, listener: TaskListener) -> Callable[[], None]:
        """Call ``listener`` with the user's tasks now and after every change.

        Returns a function that removes the listener; calling it twice is fine.
        """
        key = str(user_id)
        with self._lock:
            self._listeners.setdefault(key, []).append(listener)
        self._deliver(listener, self.list_tasks(key))

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(key, None)

        return unsubscribe

    @contextmanager
    def subscription(self, user_id: str, listener: TaskListener) -> Iterator[None]:
        unsubscribe = self.subscribe_tasks(user_id, listener)
        try:
            yield
        finally:
            unsubscribe()

    def _notify(self, user_id: str) -> None:
        key = str(user_id)
        with self._lock:
            listeners = list(self._listeners.get(key, []))
        if not listeners:
            return
        tasks = self.list_tasks(key)
        for listener in listeners:
            self._deliver(listener, tasks)

    @staticmethod
    def _deliver(listener: TaskListener, tasks: list[Task]) -> None:
        try:
            listener(list(tasks))
        except Exception:
            logger.exception("Task listener failed")

    # -- sync run log ----------------------------------------------------

    def start_sync_run(self, *, user_id: str, trigger: str, message: str = "running") -> int:
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(user_id, run_at, trigger, status, message, duration_ms, synced_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (str(user_id), _utc_now_text(), trigger, "running", message, 0, 0),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        synced_count: int,
    ) -> None:
        with self._lock:
            with _permission_guard(), self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, synced_count = ?
                    WHERE id = ?
                    """,
                    (str(status), str(message), int(duration_ms), int(synced_count), int(run_id)),
                )
                conn.commit()

    def recent_sync_runs(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, run_at, trigger, status, message, duration_ms, synced_count
                    FROM sync_runs
                    WHERE user_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (str(user_id), max(1, limit)),
                ).fetchall()
        return [dict(row) for row in rows]
