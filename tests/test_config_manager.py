import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from homework_hub.config_manager import ConfigManager
from homework_hub.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            config = ConfigManager(str(config_path), env={}).load()
            self.assertTrue(config_path.exists())
            self.assertEqual(config.feed.timeout_seconds, 20)
            self.assertEqual(config.sync.interval_seconds, 3600)
            self.assertEqual(config.store.path, "data/homework.db")

    def test_store_path_env_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("store:\n  path: from-file.db\nsync:\n  interval_seconds: 10\n", encoding="utf-8")
            env = {"HOMEWORK_HUB_CONFIG_PATH": str(config_path)}
            self.assertEqual(ConfigManager.from_env(env).load().store.path, "from-file.db")

            env["HOMEWORK_HUB_STORE_PATH"] = "/srv/homework.db"
            config = ConfigManager.from_env(env).load()
            self.assertEqual(config.store.path, "/srv/homework.db")
            self.assertEqual(config.sync.interval_seconds, 60)

    def test_rejects_non_mapping_document(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("- feed\n- sync\n", encoding="utf-8")
            with self.assertRaises(ValueError):
                ConfigManager(str(config_path), env={}).load()

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "feed": {"parse_endpoint": "https://parser.example.com/api/parse-ical"},
                    "store": {"path": "/var/lib/homework/tasks.db"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["feed"]["parse_endpoint"], "https://parser.example.com/api/parse-ical")
            self.assertEqual(data["store"]["path"], "/var/lib/homework/tasks.db")


if __name__ == "__main__":
    unittest.main()
