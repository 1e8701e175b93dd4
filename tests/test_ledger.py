import os
import pathlib
import sys
import tempfile
import unittest
from unittest import mock

ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from session_watchdog import ledger as ledger_module  # noqa: E402
from session_watchdog.errors import LedgerIOError  # noqa: E402
from session_watchdog.ledger import LedgerStore, RestartLedger, state_lock  # noqa: E402


class RestartLedgerTests(unittest.TestCase):
    def test_prune_is_idempotent(self):
        ledger = RestartLedger((10, 500, 900, 1200))
        once = ledger.prune(1300, 600)
        twice = once.prune(1300, 600)
        self.assertEqual(once, twice)
        self.assertEqual(once.records, (900, 1200))

    def test_record_exactly_on_cutoff_is_retained(self):
        ledger = RestartLedger((399, 400, 401))
        pruned = ledger.prune(1000, 600)
        self.assertEqual(pruned.records, (400, 401))

    def test_rate_limit_window(self):
        ledger = RestartLedger((0, 100, 200))
        self.assertFalse(ledger.can_restart(300, 600, 3))
        self.assertTrue(ledger.can_restart(601, 600, 3))
        self.assertEqual(ledger.count_in_window(601, 600), 2)

    def test_record_appends_without_dedup(self):
        ledger = RestartLedger().record(50).record(50)
        self.assertEqual(ledger.records, (50, 50))
        self.assertEqual(len(ledger), 2)

    def test_operations_do_not_mutate_original(self):
        ledger = RestartLedger((1, 2))
        ledger.prune(1000, 10)
        ledger.record(3)
        self.assertEqual(ledger.records, (1, 2))


class LedgerStoreTests(unittest.TestCase):
    def test_missing_file_loads_empty(self):
        with tempfile.TemporaryDirectory() as td:
            store = LedgerStore(pathlib.Path(td) / "state" / "restarts.log")
            self.assertEqual(store.load(), RestartLedger())

    def test_malformed_lines_are_skipped(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "restarts.log"
            path.write_text("100\n\ngarbage\ninf\n1e999\nnan\n200.0\n", encoding="utf-8")
            self.assertEqual(LedgerStore(path).load().records, (100, 200))

    def test_unreadable_file_fails_open(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "restarts.log"
            path.write_text("100\n", encoding="utf-8")
            store = LedgerStore(path)
            with mock.patch.object(pathlib.Path, "read_text", side_effect=PermissionError("denied")):
                self.assertEqual(store.load(), RestartLedger())

    def test_save_writes_one_timestamp_per_line(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "state" / "restarts.log"
            store = LedgerStore(path)
            store.save(RestartLedger((5, 7)))
            self.assertEqual(path.read_text(encoding="utf-8"), "5\n7\n")
            self.assertEqual(sorted(os.listdir(path.parent)), ["restarts.log"])
            store.clear()
            self.assertEqual(path.read_text(encoding="utf-8"), "")

    def test_save_failure_raises_ledger_io_error(self):
        with tempfile.TemporaryDirectory() as td:
            store = LedgerStore(pathlib.Path(td) / "restarts.log")
            with mock.patch.object(ledger_module.os, "replace", side_effect=OSError("read-only")):
                with self.assertRaises(LedgerIOError):
                    store.save(RestartLedger((1,)))
            self.assertFalse((pathlib.Path(td) / "restarts.log").exists())
            self.assertEqual(os.listdir(td), [])


class StateLockTests(unittest.TestCase):
    def test_second_holder_is_refused(self):
        with tempfile.TemporaryDirectory() as td:
            lock_path = pathlib.Path(td) / "state" / "watchdog.lock"
            with state_lock(lock_path) as first:
                self.assertTrue(first)
                with state_lock(lock_path) as second:
                    self.assertFalse(second)
            with state_lock(lock_path) as again:
                self.assertTrue(again)


if __name__ == "__main__":
    unittest.main()
