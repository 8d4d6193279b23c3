import tempfile
import unittest
from pathlib import Path

from mdr_registry.diagnostics import REQUIRED_OPERATIONS, run_diagnostics


class TestDiagnostics(unittest.TestCase):
    def test_run_diagnostics(self):
        res = run_diagnostics()
        self.assertTrue(res.ok, res.lines)
        self.assertTrue(len(res.lines) >= 2)

    def test_run_diagnostics_against_fresh_db(self):
        with tempfile.TemporaryDirectory() as td:
            db = str(Path(td) / "fresh.sqlite")
            res = run_diagnostics(db)
        self.assertTrue(res.ok, res.lines)
        self.assertTrue(any(db in line for line in res.lines))

    def test_required_operations_listed(self):
        self.assertIn("request_transition", REQUIRED_OPERATIONS)


if __name__ == "__main__":
    unittest.main()
