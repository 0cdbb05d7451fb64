import sys
import tempfile
import unittest
from datetime import date, timedelta
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

from support import NOW, add_loan, add_sample, add_tool, make_session_factory

from sqlalchemy import update

import services.catalog_service as catalog_service
from models.library_models import HardwareSample, Loan, Tool
from services.catalog_service import browse_catalog, set_item_availability, set_tool_condition
from services.loan_lifecycle import ConflictingUpdateError, ForbiddenError, NotFoundError, apply_transition
from services.maintenance_service import maintenance_overview, record_inspection


class CatalogTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()
        self.drill = add_tool(self.db)
        self.level = add_tool(
            self.db,
            name="Laser Level",
            brand="Bosch",
            description="Self-levelling cross line",
            category="measurement",
            is_available=False,
        )
        self.hinge = add_sample(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_browse_returns_everything_by_default(self):
        catalog = browse_catalog(self.db)
        self.assertEqual([tool["name"] for tool in catalog["tools"]], ["Cordless Drill", "Laser Level"])
        self.assertEqual([sample["name"] for sample in catalog["hardwareSamples"]], ["Smart Hinge Prototype"])

    def test_search_matches_name_brand_or_description(self):
        self.assertEqual([t["id"] for t in browse_catalog(self.db, search="bosch")["tools"]], [self.level.id])
        self.assertEqual([t["id"] for t in browse_catalog(self.db, search="DRIVER")["tools"]], [self.drill.id])
        self.assertEqual(browse_catalog(self.db, search="blum")["hardwareSamples"][0]["id"], self.hinge.id)

    def test_category_and_availability_filters(self):
        measurement = browse_catalog(self.db, category="measurement")
        self.assertEqual([t["id"] for t in measurement["tools"]], [self.level.id])
        self.assertEqual(measurement["hardwareSamples"], [])

        hardware = browse_catalog(self.db, category="hardware")
        self.assertEqual(hardware["tools"], [])
        self.assertEqual(len(hardware["hardwareSamples"]), 1)

        available = browse_catalog(self.db, available_only=True)
        self.assertEqual([t["id"] for t in available["tools"]], [self.drill.id])

        with self.assertRaises(ValueError):
            browse_catalog(self.db, category="furniture")

    def test_availability_toggle_is_admin_only(self):
        with self.assertRaises(ForbiddenError):
            set_item_availability(self.db, "tools", self.drill.id, False, acting_role="tool_doctor")

        set_item_availability(self.db, "tools", self.drill.id, False, acting_role="admin")
        self.assertFalse(self.db.get(Tool, self.drill.id).is_available)

        set_item_availability(self.db, "hardware_samples", self.hinge.id, False, acting_role="admin")
        self.assertFalse(self.db.get(HardwareSample, self.hinge.id).is_available)

    def test_item_on_loan_cannot_be_marked_available(self):
        add_loan(self.db, tool_id=self.level.id, status="active", approved_at=NOW)
        with self.assertRaises(ConflictingUpdateError):
            set_item_availability(self.db, "tools", self.level.id, True, acting_role="admin")
        self.assertFalse(self.db.get(Tool, self.level.id).is_available)

    def test_unknown_table_or_item(self):
        with self.assertRaises(ValueError):
            set_item_availability(self.db, "profiles", self.drill.id, True, acting_role="admin")
        with self.assertRaises(NotFoundError):
            set_item_availability(self.db, "tools", "missing", True, acting_role="admin")

    def test_condition_update(self):
        tool = set_tool_condition(self.db, self.drill.id, "needs_repair", acting_role="admin")
        self.assertEqual(tool.condition, "needs_repair")
        with self.assertRaises(ValueError):
            set_tool_condition(self.db, self.drill.id, "broken", acting_role="admin")

    def test_stored_overdue_loan_still_holds_the_item(self):
        add_loan(self.db, tool_id=self.level.id, status="overdue", approved_at=NOW)
        with self.assertRaises(ConflictingUpdateError):
            set_item_availability(self.db, "tools", self.level.id, True, acting_role="admin")


class AvailabilityRaceTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        db_path = Path(self.tmp.name) / "library.db"
        self.engine, self.Session = make_session_factory(f"sqlite+pysqlite:///{db_path}")
        with self.Session() as db:
            self.tool_id = add_tool(db, is_available=False).id
            self.loan_id = add_loan(db, tool_id=self.tool_id).id

    def tearDown(self):
        self.engine.dispose()
        self.tmp.cleanup()

    def test_approval_between_check_and_write_keeps_item_unavailable(self):
        original_check = catalog_service._holding_loan_exists

        def check_then_approve(db, model, item_id):
            found = original_check(db, model, item_id)
            with self.Session() as other:
                other.execute(update(Tool).where(Tool.id == self.tool_id).values(is_available=True))
                other.commit()
                apply_transition(other, self.loan_id, "approved", "admin", now=NOW)
            return found

        admin_db = self.Session()
        try:
            with mock.patch.object(catalog_service, "_holding_loan_exists", side_effect=check_then_approve):
                with self.assertRaises(ConflictingUpdateError):
                    set_item_availability(admin_db, "tools", self.tool_id, True, acting_role="admin")
        finally:
            admin_db.close()

        with self.Session() as db:
            self.assertEqual(db.get(Loan, self.loan_id).status, "approved")
            self.assertFalse(db.get(Tool, self.tool_id).is_available)


class MaintenanceTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()
        self.tool = add_tool(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_inspection_records_previous_condition_and_updates_tool(self):
        record = record_inspection(
            self.db,
            acting_role="tool_doctor",
            inspector_id="doctor-1",
            tool_id=self.tool.id,
            new_condition="needs_repair",
            notes=" chuck slips ",
            repair_cost=12.5,
            now=NOW,
        )
        self.assertEqual(record.previous_condition, "good")
        self.assertEqual(record.new_condition, "needs_repair")
        self.assertEqual(record.notes, "chuck slips")
        self.assertEqual(self.db.get(Tool, self.tool.id).condition, "needs_repair")

    def test_members_cannot_record_inspections(self):
        with self.assertRaises(ForbiddenError):
            record_inspection(
                self.db,
                acting_role="community_member",
                inspector_id="member-1",
                tool_id=self.tool.id,
                new_condition="good",
            )

    def test_loan_reference_must_belong_to_tool(self):
        other = add_tool(self.db, name="Jigsaw")
        loan = add_loan(self.db, tool_id=other.id)
        with self.assertRaises(ValueError):
            record_inspection(
                self.db,
                acting_role="admin",
                inspector_id="admin-1",
                tool_id=self.tool.id,
                new_condition="good",
                loan_id=loan.id,
            )

    def test_overview_lists_repairs_and_upcoming_service(self):
        record_inspection(
            self.db,
            acting_role="tool_doctor",
            inspector_id="doctor-1",
            tool_id=self.tool.id,
            new_condition="needs_repair",
            next_service_date=NOW.date() + timedelta(days=3),
            now=NOW,
        )
        record_inspection(
            self.db,
            acting_role="tool_doctor",
            inspector_id="doctor-1",
            tool_id=add_tool(self.db, name="Jigsaw").id,
            new_condition="excellent",
            next_service_date=date(2026, 6, 1),
            now=NOW,
        )

        overview = maintenance_overview(self.db, acting_role="tool_doctor", now=NOW)
        self.assertEqual(overview["toolsNeedingRepair"], 1)
        self.assertEqual(len(overview["recentRecords"]), 2)
        self.assertEqual([r["toolName"] for r in overview["upcomingService"]], ["Cordless Drill"])

        with self.assertRaises(ForbiddenError):
            maintenance_overview(self.db, acting_role="architect")


if __name__ == "__main__":
    unittest.main()
