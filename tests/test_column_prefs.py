import json
import tempfile
import unittest
from pathlib import Path

from core.column_prefs import (
    SettingsResolver,
    diff,
    is_numbered_key,
    normalize_keys,
    order_named_first,
    same_selection,
)
from db import MemoryStorage, SettingsDatabase

UNIVERSE = ["total_distance", "avg_speed", "0", "max_hr", "1"]


class ColumnHelperTests(unittest.TestCase):
    def test_numbered_keys(self):
        self.assertTrue(is_numbered_key("12"))
        self.assertFalse(is_numbered_key("field_12"))

    def test_named_first_ordering_is_stable(self):
        self.assertEqual(
            order_named_first(["2", "speed", "0", "distance"]),
            ["speed", "distance", "2", "0"],
        )

    def test_normalize_filters_dedupes_and_orders(self):
        self.assertEqual(
            normalize_keys(["1", "gone", "avg_speed", "avg_speed", "max_hr"], UNIVERSE),
            ["avg_speed", "max_hr", "1"],
        )
        self.assertEqual(normalize_keys(None, UNIVERSE), [])
        self.assertEqual(normalize_keys([], UNIVERSE), [])

    def test_diff_counts_membership_only(self):
        self.assertEqual(diff(["A", "B", "C"], ["B", "C", "D"]), {"added": 1, "removed": 1})
        self.assertEqual(diff(["A", "B"], ["B", "C"]), {"added": 1, "removed": 1})
        self.assertEqual(diff(["A", "B"], ["B", "A"]), {"added": 0, "removed": 0})
        self.assertEqual(diff(None, ["A"]), {"added": 1, "removed": 0})

    def test_same_selection_respects_order(self):
        self.assertTrue(same_selection(["max_hr", "gone"], ["max_hr"], UNIVERSE))
        self.assertFalse(same_selection(["avg_speed", "max_hr"], ["max_hr", "avg_speed"], UNIVERSE))


class SettingsResolverTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.resolver = SettingsResolver(self.storage)

    def test_storage_keys(self):
        self.assertEqual(
            self.resolver.storage_key("summary", "/runs/a b.fit"),
            "summaryColSel_%2Fruns%2Fa%20b.fit",
        )
        self.assertEqual(self.resolver.storage_key("summary", None), "summaryColSel_default")
        self.assertEqual(self.resolver.global_key("summary"), "summaryColSel_global_default")

    def test_save_then_load_round_trips_order(self):
        self.resolver.save("summary", "doc1", ["B", "A"])
        self.assertEqual(self.resolver.load_override("summary", "doc1"), ["B", "A"])
        self.assertEqual(self.resolver.resolve("summary", "doc1", ["A", "B", "C"]), ["B", "A"])

    def test_save_matching_global_default_clears_override(self):
        self.resolver.set_global_default("summary", ["A", "B"])
        self.resolver.save("summary", "doc1", ["B", "A"])
        self.resolver.save("summary", "doc1", ["A", "B"])
        self.assertNotIn(self.resolver.storage_key("summary", "doc1"), self.storage)
        self.assertEqual(self.resolver.resolve("summary", "doc1", ["A", "B", "C"]), ["A", "B"])
        self.assertFalse(self.resolver.has_override("summary", "doc1"))

    def test_save_matching_baseline_clears_override(self):
        self.resolver.save("summary", "doc1", ["avg_speed"], UNIVERSE)
        self.assertTrue(self.resolver.has_override("summary", "doc1"))

        stored = self.resolver.save("summary", "doc1", list(UNIVERSE), UNIVERSE)

        self.assertFalse(stored)
        self.assertFalse(self.resolver.has_override("summary", "doc1"))

    def test_resolution_prefers_override_then_global_then_baseline(self):
        self.assertEqual(
            self.resolver.resolve("summary", "doc1", UNIVERSE),
            ["total_distance", "avg_speed", "max_hr", "0", "1"],
        )
        self.resolver.set_global_default("summary", ["max_hr", "avg_speed"])
        self.assertEqual(self.resolver.resolve("summary", "doc1", UNIVERSE), ["max_hr", "avg_speed"])
        self.resolver.save("summary", "doc1", ["0", "total_distance"], UNIVERSE)
        self.assertEqual(self.resolver.resolve("summary", "doc1", UNIVERSE), ["total_distance", "0"])
        self.assertEqual(self.resolver.resolve("summary", "doc2", UNIVERSE), ["max_hr", "avg_speed"])

    def test_stale_keys_are_dropped_at_resolution(self):
        self.storage.set_item(
            self.resolver.storage_key("summary", "doc1"),
            json.dumps(["removed_field", "max_hr"]),
        )
        self.assertEqual(self.resolver.resolve("summary", "doc1", UNIVERSE), ["max_hr"])

    def test_override_with_no_known_keys_falls_through(self):
        self.storage.set_item(self.resolver.storage_key("summary", "doc1"), json.dumps(["gone"]))
        self.assertEqual(self.resolver.resolve("summary", "doc1", UNIVERSE), self.resolver.baseline(UNIVERSE))

    def test_corrupt_override_falls_through_to_global_default(self):
        self.resolver.set_global_default("summary", ["avg_speed"])
        self.storage.set_item(self.resolver.storage_key("summary", "doc1"), "{not json")
        with self.assertLogs("core.column_prefs", level="WARNING"):
            resolved = self.resolver.resolve("summary", "doc1", UNIVERSE)
        self.assertEqual(resolved, ["avg_speed"])

    def test_non_list_payload_is_ignored(self):
        self.storage.set_item(self.resolver.global_key("summary"), json.dumps({"cols": ["max_hr"]}))
        with self.assertLogs("core.column_prefs", level="WARNING"):
            self.assertIsNone(self.resolver.load_global_default("summary"))

    def test_clearing_global_default_keeps_overrides(self):
        self.resolver.set_global_default("summary", ["avg_speed"])
        self.resolver.save("summary", "doc1", ["max_hr"], UNIVERSE)
        self.resolver.clear_global_default("summary")
        self.assertFalse(self.resolver.has_global_default("summary"))
        self.assertEqual(self.resolver.load_override("summary", "doc1"), ["max_hr"])

    def test_storage_errors_count_as_absent(self):
        class BrokenStorage:
            def get_item(self, key):
                raise OSError("disk gone")

            def set_item(self, key, value):
                raise OSError("disk gone")

            def remove_item(self, key):
                raise OSError("disk gone")

        resolver = SettingsResolver(BrokenStorage())
        with self.assertLogs("core.column_prefs", level="WARNING"):
            self.assertEqual(resolver.resolve("summary", "doc1", UNIVERSE), resolver.baseline(UNIVERSE))
        with self.assertLogs("core.column_prefs", level="WARNING"):
            self.assertFalse(resolver.set_global_default("summary", ["max_hr"]))


class PreferenceStatusTests(unittest.TestCase):
    def setUp(self):
        self.resolver = SettingsResolver(MemoryStorage())
        self.baseline = SettingsResolver.baseline(UNIVERSE)

    def test_default_without_global(self):
        status = self.resolver.describe("summary", "doc1", UNIVERSE, self.baseline)
        self.assertEqual(status.mode, "default")
        self.assertEqual(status.text, "This file is using: Default")
        self.assertEqual(status.hint, "")

    def test_default_with_global(self):
        self.resolver.set_global_default("summary", ["avg_speed", "max_hr"])
        status = self.resolver.describe("summary", "doc1", UNIVERSE, ["avg_speed", "max_hr"])
        self.assertEqual(status.mode, "global")
        self.assertEqual(status.text, "This file is using: Default (Global)")
        self.assertTrue(status.has_global_default)

    def test_saved_selection_with_global_diff_hint(self):
        self.resolver.set_global_default("summary", ["avg_speed", "max_hr"])
        self.resolver.save("summary", "doc1", ["max_hr", "total_distance"], UNIVERSE)
        current = self.resolver.resolve("summary", "doc1", UNIVERSE)

        status = self.resolver.describe("summary", "doc1", UNIVERSE, current)

        self.assertEqual(status.mode, "saved")
        self.assertEqual(status.text, "This file is using: Saved selection")
        self.assertEqual(status.hint, "vs global default: +1 -1")
        self.assertTrue(status.has_override)

    def test_custom_selection(self):
        status = self.resolver.describe("summary", "doc1", UNIVERSE, ["max_hr"])
        self.assertEqual(status.mode, "custom")
        self.assertEqual(status.text, "This file is using: Custom selection")


class SettingsDatabaseStorageTests(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db = SettingsDatabase(str(Path(self.temp_dir.name) / "settings.db"))

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_resolver_round_trip_on_sqlite(self):
        resolver = SettingsResolver(self.db)
        resolver.save("summary", "/runs/morning.fit", ["B", "A"])
        self.assertEqual(resolver.load_override("summary", "/runs/morning.fit"), ["B", "A"])
        self.assertEqual(self.db.keys("summaryColSel_"), ["summaryColSel_%2Fruns%2Fmorning.fit"])
        self.assertIsNotNone(self.db.get_updated_at("summaryColSel_%2Fruns%2Fmorning.fit"))

    def test_prefix_scan_treats_underscore_literally(self):
        self.db.set_item("ui_compactMode", "true")
        self.db.set_item("uiXcompactMode", "false")
        self.assertEqual(self.db.keys("ui_"), ["ui_compactMode"])

    def test_non_string_values_are_rejected(self):
        with self.assertRaises(TypeError):
            self.db.set_item("k", 1)

    def test_remove_item(self):
        self.db.set_item("k", "v")
        self.db.remove_item("k")
        self.assertIsNone(self.db.get_item("k"))
        self.assertEqual(self.db.get_count(), 0)


if __name__ == "__main__":
    unittest.main()
