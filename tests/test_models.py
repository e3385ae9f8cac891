import unittest
from datetime import date, datetime, timedelta, timezone

from homework_hub.models import (
    AppConfig,
    SyncResult,
    SyncSettings,
    Task,
    TaskCandidate,
    local_midnight,
    parse_iso_datetime,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_defaults_and_clamping(self) -> None:
        cfg = AppConfig.from_dict(
            {
                "feed": {"timeout_seconds": 0, "user_agent": "  ", "max_span_days": -3},
                "sync": {"interval_seconds": 5, "background_enabled": 0},
                "logging": {"level": "debug"},
            }
        )
        self.assertEqual(cfg.feed.timeout_seconds, 1)
        self.assertEqual(cfg.feed.user_agent, "homework-hub/0.1 (+ical sync)")
        self.assertEqual(cfg.feed.max_span_days, 1)
        self.assertEqual(cfg.sync.interval_seconds, 60)
        self.assertFalse(cfg.sync.background_enabled)
        self.assertEqual(cfg.logging.level, "DEBUG")
        self.assertTrue(cfg.logging.json)
        self.assertEqual(AppConfig.from_dict(cfg.to_dict()), cfg)

    def test_task_candidate_wire_shape(self) -> None:
        candidate = TaskCandidate.from_dict(
            {"taskName": "", "dueDate": " 2025-03-10 ", "categories": "Homework", "uid": "u-1"}
        )
        self.assertEqual(candidate.task_name, "Untitled Task")
        self.assertEqual(candidate.due_date, "2025-03-10")
        self.assertEqual(
            candidate.to_dict(),
            {
                "taskName": "Untitled Task",
                "dueDate": "2025-03-10",
                "description": "",
                "location": "",
                "categories": ["Homework"],
                "uid": "u-1",
            },
        )

    def test_task_to_dict_only_includes_external_id_when_synced(self) -> None:
        created = datetime(2025, 3, 1, tzinfo=timezone.utc)
        manual = Task(id="t1", task_name="Worksheet", subject="Maths", due_date="2025-03-11", created_at=created)
        payload = manual.to_dict()
        self.assertNotIn("externalId", payload)
        self.assertEqual(payload["createdAt"], "2025-03-01T00:00:00+00:00")
        self.assertFalse(manual.is_synced)

        synced = manual.with_updates(source="toddle", external_id="uid-9")
        self.assertTrue(synced.is_synced)
        self.assertEqual(synced.to_dict()["externalId"], "uid-9")
        self.assertEqual(manual.source, "manual")

    def test_settings_and_result_serialization(self) -> None:
        self.assertEqual(SyncSettings().to_dict(), {"icalUrl": None, "lastSyncTime": None})
        result = SyncResult(status="success", message="ok", trigger="manual", synced_count=2)
        self.assertTrue(result.ok)
        self.assertEqual(result.to_dict()["synced_count"], 2)
        self.assertFalse(SyncResult(status="skipped", message="", trigger="manual").ok)

    def test_datetime_helpers(self) -> None:
        self.assertEqual(parse_iso_datetime("2025-03-01T12:00:00Z"), datetime(2025, 3, 1, 12, tzinfo=timezone.utc))
        self.assertIsNone(parse_iso_datetime("  "))
        tz = timezone(timedelta(hours=-5))
        midnight = local_midnight(datetime(2025, 3, 1, 23, 30, tzinfo=tz))
        self.assertEqual(midnight, datetime(2025, 3, 1, tzinfo=tz))
        self.assertEqual(midnight.date(), date(2025, 3, 1))


if __name__ == "__main__":
    unittest.main()
