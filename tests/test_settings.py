import tempfile
import unittest
from pathlib import Path

from constants import SETTINGS_MIGRATION_KEY, SETTINGS_MIGRATION_VERSION
from core.settings import SettingsManager
from db import MemoryStorage, SettingsDatabase
from state import StateStore


class SettingsManagerTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.store = StateStore()
        self.settings = SettingsManager(self.storage, self.store)

    def test_defaults_when_nothing_is_stored(self):
        self.assertEqual(self.settings.get_setting("theme"), "dark")
        self.assertIs(self.settings.get_setting("mapTheme"), True)
        self.assertEqual(self.settings.get_setting("units")["distance"], "metric")

    def test_scalar_round_trip(self):
        self.assertTrue(self.settings.set_setting("theme", "light"))
        self.assertEqual(self.storage.get_item("ffv-theme"), "light")
        self.assertEqual(self.settings.get_setting("theme"), "light")

    def test_boolean_round_trip(self):
        self.assertTrue(self.settings.set_setting("mapTheme", False))
        self.assertEqual(self.storage.get_item("ffv-map-theme-inverted"), "false")
        self.assertIs(self.settings.get_setting("mapTheme"), False)

    def test_invalid_values_are_rejected(self):
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertFalse(self.settings.set_setting("theme", "neon"))
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertFalse(self.settings.set_setting("mapTheme", "yes"))
        self.assertIsNone(self.storage.get_item("ffv-theme"))

    def test_unknown_category(self):
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertIsNone(self.settings.get_setting("nope"))

    def test_object_fields_are_stored_per_key_and_merged_over_defaults(self):
        self.settings.set_setting("units", "imperial", key="distance")
        self.assertEqual(self.storage.get_item("units_distance"), "imperial")
        units = self.settings.get_setting("units")
        self.assertEqual(units["distance"], "imperial")
        self.assertEqual(units["temperature"], "celsius")
        self.assertEqual(self.settings.get_setting("units", "distance"), "imperial")

    def test_json_like_strings_keep_their_type(self):
        self.settings.set_setting("export", "10", key="dpi")
        self.settings.set_setting("export", "true", key="label")
        self.assertEqual(self.storage.get_item("export_dpi"), '"10"')
        self.assertEqual(self.settings.get_setting("export", "dpi"), "10")
        self.assertEqual(self.settings.get_setting("export")["label"], "true")

        self.settings.set_setting("export", 10, key="dpi")
        self.assertEqual(self.settings.get_setting("export", "dpi"), 10)
        self.settings.set_setting("export", "svg", key="format")
        self.assertEqual(self.storage.get_item("export_format"), "svg")

    def test_whole_object_write_removes_stale_fields(self):
        self.settings.set_setting("ui", True, key="legacyFlag")
        self.settings.set_setting("ui", {"compactMode": True})
        self.assertNotIn("ui_legacyFlag", self.storage)
        self.assertEqual(self.storage.get_item("ui_compactMode"), "true")
        self.assertIs(self.settings.get_setting("ui")["compactMode"], True)

    def test_writes_are_mirrored_into_state(self):
        seen = []
        self.store.subscribe("settings.theme", seen.append)
        self.settings.set_setting("theme", "auto")
        self.assertEqual(seen, ["auto"])
        self.assertIsNotNone(self.store.get("settings.lastModified"))

    def test_reset_category_restores_default(self):
        self.settings.set_setting("export", "svg", key="format")
        self.assertTrue(self.settings.reset_settings("export"))
        self.assertEqual(self.settings.get_setting("export")["format"], "png")
        self.assertEqual(self.storage.keys("export_"), [])

    def test_export_import_round_trip(self):
        self.settings.set_setting("theme", "light")
        self.settings.set_setting("units", {"distance": "imperial", "temperature": "fahrenheit", "time": "12h"})
        exported = self.settings.export_settings()

        other = SettingsManager(MemoryStorage())
        self.assertTrue(other.import_settings(exported))
        self.assertEqual(other.get_setting("theme"), "light")
        self.assertEqual(other.get_setting("units"), exported["settings"]["units"])

    def test_import_skips_unknown_categories(self):
        payload = {"settings": {"theme": "light", "futureThing": {"x": 1}}}
        self.assertTrue(self.settings.import_settings(payload))
        self.assertEqual(self.settings.get_setting("theme"), "light")

    def test_import_rejects_malformed_payload(self):
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertFalse(self.settings.import_settings(["not", "a", "dict"]))

    def test_initialize_migrates_legacy_theme_and_publishes_snapshot(self):
        self.storage.set_item("theme", "light")
        self.settings.initialize()

        self.assertEqual(self.storage.get_item("ffv-theme"), "light")
        self.assertIsNone(self.storage.get_item("theme"))
        self.assertEqual(self.storage.get_item(SETTINGS_MIGRATION_KEY), SETTINGS_MIGRATION_VERSION)
        snapshot = self.store.get("settings")
        self.assertEqual(snapshot["theme"], "light")
        self.assertEqual(snapshot["migrationVersion"], SETTINGS_MIGRATION_VERSION)
        self.assertEqual(snapshot["chart"], {"fieldVisibility": {}})

    def test_initialize_is_idempotent(self):
        self.settings.initialize()
        self.store.set("settings.theme", "sentinel")
        self.settings.initialize()
        self.assertEqual(self.store.get("settings.theme"), "sentinel")

    def test_invalid_stored_theme_falls_back_to_default(self):
        self.storage.set_item("ffv-theme", "purple")
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertEqual(self.settings.get_setting("theme"), "dark")


class ChartFieldVisibilityTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.settings = SettingsManager(self.storage)

    def test_default_visibility(self):
        self.assertEqual(self.settings.get_chart_field_visibility("heart_rate"), "visible")
        self.assertEqual(self.settings.get_chart_field_visibility("heart_rate", default="hidden"), "hidden")

    def test_set_and_get(self):
        self.assertTrue(self.settings.set_chart_field_visibility("speed", "hidden"))
        self.assertEqual(self.settings.get_chart_field_visibility("speed"), "hidden")
        self.assertEqual(self.settings.get_chart_settings()["fieldVisibility"], {"speed": "hidden"})

    def test_invalid_visibility_is_rejected(self):
        with self.assertLogs("core.settings", level="WARNING"):
            self.assertFalse(self.settings.set_chart_field_visibility("speed", "maybe"))

    def test_legacy_key_is_migrated_on_read(self):
        self.storage.set_item("chartjs_field_cadence", "hidden")
        self.assertEqual(self.settings.get_chart_field_visibility("cadence"), "hidden")
        self.assertIsNone(self.storage.get_item("chartjs_field_cadence"))
        self.assertEqual(self.settings.get_chart_settings()["fieldVisibility"], {"cadence": "hidden"})


class SettingsOnSqliteTests(unittest.TestCase):
    def test_settings_survive_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = str(Path(temp_dir) / "settings.db")
            SettingsManager(SettingsDatabase(db_path)).set_setting("units", "imperial", key="distance")

            reopened = SettingsManager(SettingsDatabase(db_path))
            self.assertEqual(reopened.get_setting("units")["distance"], "imperial")


if __name__ == "__main__":
    unittest.main()
