import unittest

from core.operations import OperationTracker, clamp_progress, describe_error
from core.result import ErrorKind
from state import StateStore


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ClampProgressTests(unittest.TestCase):
    def test_values_are_clamped_to_percent_range(self):
        self.assertEqual(clamp_progress(150), 100.0)
        self.assertEqual(clamp_progress(-5), 0.0)
        self.assertEqual(clamp_progress("42.5"), 42.5)

    def test_non_numeric_and_non_finite_become_zero(self):
        self.assertEqual(clamp_progress("abc"), 0.0)
        self.assertEqual(clamp_progress(None), 0.0)
        self.assertEqual(clamp_progress(float("nan")), 0.0)
        self.assertEqual(clamp_progress(float("inf")), 0.0)


class OperationTrackerTests(unittest.TestCase):
    def setUp(self):
        self.store = StateStore()
        self.clock = FakeClock()
        self.tracker = OperationTracker(self.store, clock=self.clock)

    def test_start_creates_running_entry(self):
        result = self.tracker.start_operation("export", message="Exporting")
        self.assertTrue(result.ok)
        entry = self.store.get("operations.export")
        self.assertEqual(entry["status"], "running")
        self.assertEqual(entry["progress"], 0.0)
        self.assertEqual(entry["message"], "Exporting")
        self.assertEqual(entry["start_perf"], 100.0)

    def test_start_is_idempotent_while_running(self):
        self.tracker.start_operation("export")
        self.tracker.update_operation("export", progress=40)
        first = self.store.get("operations.export")

        result = self.tracker.start_operation("export", message="again")

        self.assertTrue(result.ok)
        self.assertTrue(result.note)
        self.assertEqual(self.store.get("operations.export"), first)

    def test_progress_is_clamped(self):
        self.tracker.start_operation("export")
        self.tracker.update_operation("export", progress=150)
        self.assertEqual(self.tracker.get_operation("export")["progress"], 100.0)
        self.tracker.update_operation("export", progress=-5)
        self.assertEqual(self.tracker.get_operation("export")["progress"], 0.0)

    def test_update_merges_metadata(self):
        self.tracker.start_operation("export", metadata={"format": "csv"})
        self.tracker.update_operation("export", metadata={"rows": 10}, message="Half way")
        entry = self.tracker.get_operation("export")
        self.assertEqual(entry["metadata"], {"format": "csv", "rows": 10})
        self.assertEqual(entry["message"], "Half way")

    def test_unknown_operation_is_tolerated(self):
        with self.assertLogs("core.operations", level="WARNING"):
            result = self.tracker.update_operation("ghost", progress=10)
        self.assertFalse(result.ok)
        self.assertEqual(result.kind, ErrorKind.CALLER_MISUSE)
        self.assertIsNone(self.store.get("operations.ghost"))

    def test_invalid_ids_are_rejected(self):
        for bad_id in ("", "a.b", None, 7):
            with self.assertLogs("core.operations", level="WARNING"):
                result = self.tracker.start_operation(bad_id)
            self.assertEqual(result.kind, ErrorKind.CALLER_MISUSE)
        self.assertEqual(self.tracker.get_operations(), {})

    def test_terminal_status_via_update_is_rejected(self):
        self.tracker.start_operation("export")
        with self.assertLogs("core.operations", level="WARNING"):
            result = self.tracker.update_operation("export", status="completed")
        self.assertFalse(result.ok)
        self.assertEqual(self.tracker.get_operation("export")["status"], "running")

    def test_complete_records_duration(self):
        self.tracker.start_operation("export")
        self.clock.advance(1.5)
        result = self.tracker.complete_operation("export", metadata={"rows": 3}, result={"path": "/tmp/x.csv"})

        self.assertTrue(result.ok)
        entry = self.tracker.get_operation("export")
        self.assertEqual(entry["status"], "completed")
        self.assertEqual(entry["progress"], 100.0)
        self.assertAlmostEqual(entry["duration_ms"], 1500.0)
        self.assertEqual(entry["result"], {"path": "/tmp/x.csv"})
        self.assertTrue(self.tracker.is_terminal("export"))

    def test_fail_records_error_summary(self):
        self.tracker.start_operation("decode")
        self.tracker.fail_operation("decode", ValueError("bad header"))
        entry = self.tracker.get_operation("decode")
        self.assertEqual(entry["status"], "failed")
        self.assertEqual(entry["error"], {"message": "bad header", "name": "ValueError"})
        self.assertIn("duration_ms", entry)

    def test_completing_failed_operation_does_not_reopen_it(self):
        self.tracker.start_operation("decode")
        self.tracker.fail_operation("decode", "boom")
        result = self.tracker.complete_operation("decode")
        self.assertTrue(result.ok)
        self.assertEqual(self.tracker.get_operation("decode")["status"], "failed")

    def test_updates_after_completion_are_ignored(self):
        self.tracker.start_operation("decode")
        self.tracker.complete_operation("decode")
        self.tracker.update_operation("decode", progress=10, message="late")
        entry = self.tracker.get_operation("decode")
        self.assertEqual(entry["progress"], 100.0)
        self.assertNotEqual(entry["message"], "late")

    def test_start_after_terminal_begins_fresh_run(self):
        self.tracker.start_operation("decode")
        self.tracker.fail_operation("decode", "boom")
        self.clock.advance(5)
        self.tracker.start_operation("decode")
        entry = self.tracker.get_operation("decode")
        self.assertEqual(entry["status"], "running")
        self.assertNotIn("error", entry)
        self.assertEqual(entry["start_perf"], 105.0)

    def test_active_operations_and_pruning(self):
        self.tracker.start_operation("a")
        self.tracker.start_operation("b")
        self.tracker.complete_operation("b")
        self.assertEqual(list(self.tracker.get_active_operations()), ["a"])

        self.clock.advance(10)
        self.assertEqual(self.tracker.prune_finished(max_age_seconds=30), 0)
        self.clock.advance(30)
        self.assertEqual(self.tracker.prune_finished(max_age_seconds=30), 1)
        self.assertEqual(list(self.tracker.get_operations()), ["a"])

    def test_store_fault_becomes_internal_result(self):
        class BrokenStore:
            def get(self, path, default=None):
                raise RuntimeError("store offline")

        tracker = OperationTracker(BrokenStore())
        with self.assertLogs("core.operations", level="WARNING"):
            result = tracker.start_operation("export")
        self.assertFalse(result.ok)
        self.assertEqual(result.kind, ErrorKind.INTERNAL)

    def test_operation_path_subscribers_see_progress(self):
        seen = []
        self.store.subscribe("operations.export", lambda entry: seen.append(entry["progress"]))
        self.tracker.start_operation("export")
        self.tracker.update_operation("export", progress=50)
        self.tracker.complete_operation("export")
        self.assertEqual(seen, [0.0, 50.0, 100.0])


class DescribeErrorTests(unittest.TestCase):
    def test_shapes(self):
        self.assertEqual(describe_error(KeyError("x")), {"message": "'x'", "name": "KeyError"})
        self.assertEqual(describe_error({"message": "m", "name": "N"}), {"message": "m", "name": "N"})
        self.assertEqual(describe_error("plain"), {"message": "plain", "name": "Error"})


if __name__ == "__main__":
    unittest.main()
