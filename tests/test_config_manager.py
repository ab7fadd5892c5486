import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from almanac.config_manager import ConfigManager
from almanac.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_is_created_with_defaults(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertTrue(self.config_path.exists())
        config = manager.load()
        self.assertEqual(config.sync.debounce_seconds, 1.5)
        self.assertTrue(config.sync.auto_sync)
        self.assertEqual(config.google.scope, "https://www.googleapis.com/auth/calendar.events")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = AppConfig.from_dict(
            {
                "google": {"client_id": "client-1", "client_secret": "secret-1"},
                "sync": {"debounce_seconds": 3, "timezone": "Europe/Berlin"},
            }
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            manager.save(config)

        self.assertTrue(self.config_path.exists())
        self.assertFalse(Path(str(self.config_path) + ".tmp").exists())
        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["google"]["client_id"], "client-1")
        self.assertEqual(data["sync"]["timezone"], "Europe/Berlin")

    def test_update_merges_nested_sections(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"google": {"client_id": "client-1", "client_secret": "secret-1"}})
        config = manager.update({"sync": {"auto_sync": False}})
        self.assertEqual(config.google.client_id, "client-1")
        self.assertFalse(config.sync.auto_sync)

    def test_env_overrides_are_not_written_back(self) -> None:
        manager = ConfigManager(str(self.config_path))
        with mock.patch.dict(os.environ, {"ALMANAC_GOOGLE_CLIENT_ID": "env-client"}):
            self.assertEqual(manager.load().google.client_id, "env-client")
            manager.update({"sync": {"debounce_seconds": 2}})
        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["google"]["client_id"], "")

    def test_masked_hides_client_secret(self) -> None:
        manager = ConfigManager(str(self.config_path))
        manager.update({"google": {"client_id": "client-1", "client_secret": "secret-1"}})
        masked = manager.masked()
        self.assertEqual(masked["google"]["client_secret"], "***")
        self.assertEqual(masked["google"]["client_id"], "client-1")
        self.assertEqual(manager.load().google.client_secret, "secret-1")


if __name__ == "__main__":
    unittest.main()
