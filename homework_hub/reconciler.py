from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from typing import Protocol

from homework_hub.classifier import classify
from homework_hub.errors import (
    FeedFetchError,
    HomeworkHubError,
    MissingParameter,
    StorePermissionError,
    SyncCommitError,
)
from homework_hub.expander import filter_from
from homework_hub.models import (
    SOURCE_TODDLE,
    SyncResult,
    Task,
    TaskCandidate,
    local_today,
    utc_now,
)
from homework_hub.task_store import TaskStore

logger = logging.getLogger(__name__)

BACKGROUND_TRIGGERS = {"background", "startup", "scheduled"}


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EXPANDING = "expanding"
    WRITING = "writing"


class CandidateSource(Protocol):
    def fetch_candidates(self, url: str, *, now: datetime | None = None) -> list[TaskCandidate]:
        ...


def build_synced_task(candidate: TaskCandidate, created_at: datetime) -> Task:
    subject = classify(f"{candidate.task_name} {candidate.description or ''}")
    return Task(
        id="",
        task_name=candidate.task_name,
        subject=subject,
        due_date=candidate.due_date,
        description=candidate.description or "",
        completed=False,
        source=SOURCE_TODDLE,
        created_at=created_at,
        external_id=candidate.external_id,
    )


class SyncReconciler:
    """Replaces a user's synced tasks with the current contents of their feed."""

    def __init__(self, store: TaskStore, feed_source: CandidateSource) -> None:
        self.store = store
        self.feed_source = feed_source
        self._guard = threading.Lock()
        self._in_progress: set[str] = set()
        self._states: dict[str, SyncState] = {}

    def state(self, user_id: str) -> SyncState:
        return self._states.get(str(user_id), SyncState.IDLE)

    def is_syncing(self, user_id: str) -> bool:
        return str(user_id) in self._in_progress

    def _claim(self, user_id: str) -> bool:
        with self._guard:
            if user_id in self._in_progress:
                return False
            self._in_progress.add(user_id)
            return True

    def _release(self, user_id: str) -> None:
        with self._guard:
            self._in_progress.discard(user_id)
            self._states[user_id] = SyncState.IDLE

    def _enter(self, user_id: str, state: SyncState) -> None:
        with self._guard:
            self._states[user_id] = state
        logger.debug("Sync for %s entered %s", user_id, state.value)

    def save_feed_url(self, user_id: str, url: str, *, now: datetime | None = None) -> SyncResult:
        try:
            self.store.merge_sync_settings(user_id, ical_url=url)
        except StorePermissionError as exc:
            logger.error("Could not save feed URL for %s: %s", user_id, exc)
            return SyncResult(
                status="failed",
                message=str(exc),
                trigger="manual",
                error=type(exc).__name__,
                alert=True,
            )
        return self.reconcile(user_id, url, trigger="manual", now=now)

    def reconcile(
        self,
        user_id: str,
        feed_url: str | None,
        *,
        trigger: str = "manual",
        now: datetime | None = None,
    ) -> SyncResult:
        user_id = str(user_id)
        if not self._claim(user_id):
            logger.info("Sync already running for %s; %s request ignored", user_id, trigger)
            result = SyncResult(status="skipped", message="Sync already in progress.", trigger=trigger)
            self._record(user_id, result)
            return result
        try:
            return self._attempt(user_id, feed_url, trigger=trigger, now=now)
        finally:
            self._release(user_id)

    def _record(self, user_id: str, result: SyncResult) -> None:
        # Best effort: the run log lives in the same database as the tasks.
        try:
            run_id = self.store.start_sync_run(user_id=user_id, trigger=result.trigger)
            self.store.finish_sync_run(
                run_id=run_id,
                status=result.status,
                message=result.message,
                duration_ms=result.duration_ms,
                synced_count=result.synced_count,
            )
        except (HomeworkHubError, sqlite3.Error) as exc:
            logger.warning("Could not record %s sync run for %s: %s", result.status, user_id, exc)

    def _attempt(
        self,
        user_id: str,
        feed_url: str | None,
        *,
        trigger: str,
        now: datetime | None,
    ) -> SyncResult:
        background = trigger in BACKGROUND_TRIGGERS
        started_at = utc_now()
        try:
            last_sync_time, synced_count = self._run(user_id, feed_url, now=now)
            result = SyncResult(
                status="success",
                message=f"Synced {synced_count} tasks.",
                trigger=trigger,
                synced_count=synced_count,
                last_sync_time=last_sync_time,
            )
            logger.info("Synced %d tasks for %s (%s)", synced_count, user_id, trigger)
        except HomeworkHubError as exc:
            result = SyncResult(
                status="failed",
                message=str(exc) or "Failed to sync calendar.",
                trigger=trigger,
                error=type(exc).__name__,
                alert=not background,
            )
            if background:
                logger.warning("Background sync failed for %s: %s", user_id, exc)
            else:
                logger.error("Sync failed for %s: %s", user_id, exc)

        result.duration_ms = int((utc_now() - started_at).total_seconds() * 1000)
        self._record(user_id, result)
        return result

    def _run(self, user_id: str, feed_url: str | None, *, now: datetime | None) -> tuple[datetime, int]:
        url = str(feed_url or "").strip()
        if not url:
            raise MissingParameter()

        self._enter(user_id, SyncState.FETCHING)
        try:
            candidates = self.feed_source.fetch_candidates(url, now=now)
        except HomeworkHubError:
            raise
        except Exception as exc:
            raise FeedFetchError(str(exc)) from exc

        self._enter(user_id, SyncState.EXPANDING)
        candidates = filter_from(candidates, local_today(now))
        synced_at = utc_now()
        new_tasks = [build_synced_task(candidate, synced_at) for candidate in candidates]

        self._enter(user_id, SyncState.WRITING)
        try:
            batch = self.store.batch(user_id)
            for existing in self.store.list_tasks(user_id, source=SOURCE_TODDLE):
                batch.delete(existing.id)
            for task in new_tasks:
                batch.set_task(task)
            batch.merge_settings(last_sync_time=synced_at)
            batch.commit()
        except StorePermissionError:
            raise
        except Exception as exc:
            raise SyncCommitError(f"Failed to save synced tasks: {exc}") from exc

        return synced_at, len(new_tasks)
