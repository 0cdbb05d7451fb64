from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.library_models import Loan, MaintenanceRecord, Tool
from services.catalog_service import ToolCondition, parse_condition
from services.loan_lifecycle import ForbiddenError, NotFoundError, Role, parse_role, with_store_retry


LOGGER = logging.getLogger("tool_library.maintenance")

MAINTENANCE_ROLES = frozenset({Role.TOOL_DOCTOR, Role.ADMIN})
RECENT_RECORD_LIMIT = 20
UPCOMING_SERVICE_DAYS = 7


def record_inspection(
    db: Session,
    *,
    acting_role: str | Role,
    inspector_id: str | None,
    tool_id: str,
    new_condition: str | ToolCondition,
    loan_id: str | None = None,
    notes: str | None = None,
    repair_cost: float | None = None,
    next_service_date: date | None = None,
    now: datetime | None = None,
) -> MaintenanceRecord:
    if parse_role(acting_role) not in MAINTENANCE_ROLES:
        raise ForbiddenError("Only tool doctors and admins can record inspections.")
    condition = parse_condition(new_condition)
    if repair_cost is not None and repair_cost < 0:
        raise ValueError("Repair cost cannot be negative.")
    created_at = now or datetime.now()

    def _store() -> MaintenanceRecord:
        try:
            tool = db.get(Tool, tool_id)
            if not tool:
                raise NotFoundError(f"Tool {tool_id} not found.")
            if loan_id:
                loan = db.get(Loan, loan_id)
                if not loan or loan.tool_id != tool_id:
                    raise ValueError("loanID does not reference a loan of this tool.")
            record = MaintenanceRecord(
                tool_id=tool_id,
                loan_id=loan_id or None,
                inspected_by=inspector_id,
                previous_condition=tool.condition,
                new_condition=condition.value,
                notes=(notes or "").strip() or None,
                repair_cost=Decimal(str(repair_cost)) if repair_cost is not None else None,
                next_service_date=next_service_date,
                created_at=created_at,
            )
            tool.condition = condition.value
            tool.updated_at = created_at
            db.add(record)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return record

    record = with_store_retry(db, _store)
    LOGGER.info(
        "Inspection recorded tool_id=%s from=%s to=%s inspector=%s",
        tool_id,
        record.previous_condition,
        record.new_condition,
        inspector_id,
    )
    return record


def maintenance_overview(db: Session, *, acting_role: str | Role, now: datetime | None = None) -> dict:
    if parse_role(acting_role) not in MAINTENANCE_ROLES:
        raise ForbiddenError("Maintenance dashboard requires the tool_doctor or admin role.")
    today = (now or datetime.now()).date()
    horizon = today + timedelta(days=UPCOMING_SERVICE_DAYS)

    def _load() -> tuple[list[MaintenanceRecord], int]:
        records = db.execute(
            select(MaintenanceRecord)
            .options(selectinload(MaintenanceRecord.Tool))
            .order_by(MaintenanceRecord.created_at.desc())
            .limit(RECENT_RECORD_LIMIT)
        ).scalars().all()
        needing_repair = db.execute(
            select(func.count(Tool.id)).where(Tool.condition == ToolCondition.NEEDS_REPAIR.value)
        ).scalar_one()
        return list(records), int(needing_repair or 0)

    records, needing_repair = with_store_retry(db, _load)
    upcoming = [
        record
        for record in records
        if record.next_service_date is not None and today <= record.next_service_date <= horizon
    ]
    return {
        "toolsNeedingRepair": needing_repair,
        "recentRecords": [serialize_record(record) for record in records],
        "upcomingService": [serialize_record(record) for record in upcoming],
    }


def serialize_record(record: MaintenanceRecord) -> dict:
    return {
        "id": record.id,
        "toolID": record.tool_id,
        "toolName": record.Tool.name if record.Tool else None,
        "loanID": record.loan_id,
        "inspectedBy": record.inspected_by,
        "previousCondition": record.previous_condition,
        "newCondition": record.new_condition,
        "notes": record.notes,
        "repairCost": float(record.repair_cost) if record.repair_cost is not None else None,
        "nextServiceDate": record.next_service_date,
        "createdAt": record.created_at,
    }
