import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from homework_hub.config_manager import ConfigManager
from homework_hub.models import SyncResult
from homework_hub.scheduler import SyncScheduler


def _result(status: str, trigger: str) -> SyncResult:
    return SyncResult(status=status, message=status, trigger=trigger)


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_manager = ConfigManager(str(Path(self.temp_dir.name) / "config.yaml"))
        self.reconciler = mock.Mock()
        self.reconciler.store.users_with_feed.return_value = [
            ("alice", "https://feeds.example.com/a.ics"),
            ("bob", "https://feeds.example.com/b.ics"),
        ]

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_run_all_counts_successes(self) -> None:
        self.reconciler.reconcile.side_effect = lambda user_id, url, trigger: _result(
            "success" if user_id == "alice" else "failed", trigger
        )
        scheduler = SyncScheduler(self.reconciler, self.config_manager)
        self.assertEqual(scheduler.run_all(trigger="scheduled"), 1)
        self.reconciler.reconcile.assert_any_call("alice", "https://feeds.example.com/a.ics", trigger="scheduled")
        self.reconciler.reconcile.assert_any_call("bob", "https://feeds.example.com/b.ics", trigger="scheduled")

    def test_run_all_continues_after_a_user_fails(self) -> None:
        def reconcile(user_id, url, trigger):
            if user_id == "alice":
                raise sqlite3.OperationalError("disk I/O error")
            return _result("success", trigger)

        self.reconciler.reconcile.side_effect = reconcile
        scheduler = SyncScheduler(self.reconciler, self.config_manager)
        with self.assertLogs("homework_hub.scheduler", level="ERROR"):
            self.assertEqual(scheduler.run_all(trigger="scheduled"), 1)
        self.assertEqual(self.reconciler.reconcile.call_count, 2)

    def test_run_all_survives_unreadable_store(self) -> None:
        self.reconciler.store.users_with_feed.side_effect = sqlite3.OperationalError("unable to open database file")
        scheduler = SyncScheduler(self.reconciler, self.config_manager)
        with self.assertLogs("homework_hub.scheduler", level="ERROR"):
            self.assertEqual(scheduler.run_all(trigger="startup"), 0)
        self.reconciler.reconcile.assert_not_called()

    def test_loop_syncs_at_startup_and_on_manual_trigger(self) -> None:
        scheduler = SyncScheduler(self.reconciler, self.config_manager)
        triggers = []

        def reconcile(user_id, url, trigger):
            triggers.append(trigger)
            if trigger == "startup" and user_id == "bob":
                scheduler.trigger_manual()
            if trigger == "background" and user_id == "bob":
                scheduler._stop_event.set()
            return _result("success", trigger)

        self.reconciler.reconcile.side_effect = reconcile
        scheduler._loop()
        self.assertEqual(triggers, ["startup", "startup", "background", "background"])

    def test_stop_interrupts_run_all(self) -> None:
        scheduler = SyncScheduler(self.reconciler, self.config_manager)

        def reconcile(user_id, url, trigger):
            scheduler._stop_event.set()
            return _result("success", trigger)

        self.reconciler.reconcile.side_effect = reconcile
        self.assertEqual(scheduler.run_all(trigger="background"), 1)
        self.assertEqual(self.reconciler.reconcile.call_count, 1)


if __name__ == "__main__":
    unittest.main()
