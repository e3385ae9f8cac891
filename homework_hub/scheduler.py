from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Optional

from homework_hub.config_manager import ConfigManager
from homework_hub.reconciler import SyncReconciler

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, reconciler: SyncReconciler, config_manager: ConfigManager) -> None:
        self.reconciler = reconciler
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="homework-hub-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_all(self, trigger: str) -> int:
        """Sync every user with a configured feed; returns the number of successes."""
        try:
            users = self.reconciler.store.users_with_feed()
        except sqlite3.Error:
            logger.exception("Could not list users with a feed")
            return 0
        succeeded = 0
        for user_id, url in users:
            if self._stop_event.is_set():
                break
            try:
                result = self.reconciler.reconcile(user_id, url, trigger=trigger)
            except Exception:
                logger.exception("Scheduled sync crashed for %s", user_id)
                continue
            if result.ok:
                succeeded += 1
        return succeeded

    def _loop(self) -> None:
        # Sync once at startup so feeds are fresh as soon as the service is up.
        self.run_all(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            logger.info("Running %s sync for all configured feeds", "manual" if manual else "scheduled")
            self.run_all(trigger="background" if manual else "scheduled")
