import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from support import NOW, add_loan, add_tool, make_session_factory

from scripts.db_overview import main, run_integrity_checks


class IntegrityCheckTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _failing(self):
        return {row.name for row in run_integrity_checks(self.engine) if not row.ok}

    def test_clean_database_passes(self):
        tool = add_tool(self.db, is_available=False)
        add_loan(self.db, tool_id=tool.id, status="active", approved_at=NOW)
        self.assertEqual(self._failing(), set())

    def test_inconsistent_rows_are_reported(self):
        tool = add_tool(self.db)
        add_loan(self.db, tool_id=tool.id, status="overdue", approved_at=NOW)
        add_loan(self.db, status="returned")

        self.assertEqual(
            self._failing(),
            {
                "loans:item_reference_not_exactly_one",
                "loans:returned_at_mismatch",
                "loans:approved_at_missing",
                "loans:stored_overdue",
                "tools:available_while_on_loan",
            },
        )

    def test_missing_database_url_exits_with_usage_code(self):
        self.assertEqual(main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
