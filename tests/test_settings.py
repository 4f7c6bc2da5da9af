import os
import sys
import tempfile
import unittest
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig, load_settings
from settings_schema import SettingsSchema, validate_settings


class SettingsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "settings.yaml")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_missing_file_gives_defaults(self) -> None:
        settings = load_settings(self.path)
        self.assertEqual(settings, SettingsSchema())
        self.assertEqual(settings.counter_debounce_ms, 300)
        self.assertEqual(settings.counter_settle_ms, 100)
        self.assertEqual(settings.default_rest_seconds, 90)

    def test_save_and_load(self) -> None:
        cfg = YamlConfig(self.path)
        cfg.save({"weight_unit": "lb", "counter_sync_timeout": None})
        self.assertEqual(cfg.load()["weight_unit"], "lb")
        settings = load_settings(self.path)
        self.assertEqual(settings.weight_unit, "lb")
        self.assertIsNone(settings.counter_sync_timeout)

    def test_invalid_values_rejected(self) -> None:
        with self.assertRaises(ValueError):
            validate_settings({"weight_unit": "stone"})
        with self.assertRaises(ValueError):
            validate_settings({"counter_debounce_ms": -1})
        with self.assertRaises(ValueError):
            validate_settings({"finish_timeout": 0})

    def test_non_mapping_file_rejected(self) -> None:
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("- just\n- a list\n")
        with self.assertRaises(ValueError):
            load_settings(self.path)


if __name__ == "__main__":
    unittest.main()
