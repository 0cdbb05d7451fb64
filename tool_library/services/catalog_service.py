from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session

from models.library_models import HardwareSample, Loan, Tool
from services.loan_lifecycle import (
    HOLDING_STATUSES,
    ConflictingUpdateError,
    ForbiddenError,
    LoanStatus,
    NotFoundError,
    Role,
    parse_role,
    stored_state,
    with_store_retry,
)


LOGGER = logging.getLogger("tool_library.catalog")


class ToolCategory(str, Enum):
    POWER_TOOL = "power_tool"
    HAND_TOOL = "hand_tool"
    HARDWARE_SAMPLE = "hardware_sample"
    MEASUREMENT = "measurement"
    SAFETY_EQUIPMENT = "safety_equipment"


class ToolCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    NEEDS_REPAIR = "needs_repair"
    UNDER_MAINTENANCE = "under_maintenance"
    RETIRED = "retired"


CATEGORY_ALL = "all"
CATEGORY_HARDWARE = "hardware"

ITEM_TABLES = {
    "tools": Tool,
    "hardware_samples": HardwareSample,
}


def parse_condition(raw: str | ToolCondition | None) -> ToolCondition:
    if isinstance(raw, ToolCondition):
        return raw
    value = (raw or "").strip().lower()
    try:
        return ToolCondition(value)
    except ValueError as exc:
        raise ValueError(f"Unknown tool condition: {raw!r}") from exc


def _normalize_category(raw: str | None) -> str:
    value = (raw or CATEGORY_ALL).strip().lower()
    if value in {CATEGORY_ALL, CATEGORY_HARDWARE}:
        return value
    try:
        return ToolCategory(value).value
    except ValueError as exc:
        raise ValueError(f"Unknown category filter: {raw!r}") from exc


def _matches(needle: str, *haystack: str | None) -> bool:
    if not needle:
        return True
    return any(needle in (value or "").lower() for value in haystack)


def browse_catalog(
    db: Session,
    *,
    search: str | None = None,
    category: str | None = None,
    available_only: bool = False,
) -> dict:
    needle = (search or "").strip().lower()
    selected = _normalize_category(category)

    def _load() -> tuple[list[Tool], list[HardwareSample]]:
        tools = db.execute(select(Tool).order_by(Tool.name)).scalars().all()
        samples = db.execute(select(HardwareSample).order_by(HardwareSample.name)).scalars().all()
        return list(tools), list(samples)

    tools, samples = with_store_retry(db, _load)

    filtered_tools: list[Tool] = []
    if selected != CATEGORY_HARDWARE:
        for tool in tools:
            if not _matches(needle, tool.name, tool.brand, tool.description):
                continue
            if selected != CATEGORY_ALL and tool.category != selected:
                continue
            if available_only and not tool.is_available:
                continue
            filtered_tools.append(tool)

    filtered_samples: list[HardwareSample] = []
    if selected in {CATEGORY_ALL, CATEGORY_HARDWARE}:
        for sample in samples:
            if not _matches(needle, sample.name, sample.brand, sample.sample_type):
                continue
            if available_only and not sample.is_available:
                continue
            filtered_samples.append(sample)

    return {
        "tools": [serialize_tool(tool) for tool in filtered_tools],
        "hardwareSamples": [serialize_hardware_sample(sample) for sample in filtered_samples],
    }


def _require_admin(acting_role: str | Role) -> None:
    if parse_role(acting_role) is not Role.ADMIN:
        raise ForbiddenError("Admin role required.")


# Stored values that hold an item; a legacy stored "overdue" is still active.
HOLDING_STORED_VALUES = [status.value for status in LoanStatus if stored_state(status) in HOLDING_STATUSES]


def _holding_loan_clause(model: type, item_id: str):
    column = Loan.tool_id if model is Tool else Loan.hardware_sample_id
    return exists(select(Loan.id).where(column == item_id, Loan.status.in_(HOLDING_STORED_VALUES)))


def _holding_loan_exists(db: Session, model: type, item_id: str) -> bool:
    return bool(db.execute(select(_holding_loan_clause(model, item_id))).scalar())


def set_item_availability(
    db: Session,
    table: str,
    item_id: str,
    is_available: bool,
    *,
    acting_role: str | Role,
) -> Tool | HardwareSample:
    _require_admin(acting_role)
    model = ITEM_TABLES.get((table or "").strip())
    if model is None:
        raise ValueError(f"Unknown item table: {table!r}")

    def _store() -> Tool | HardwareSample:
        try:
            item = db.get(model, item_id)
            if not item:
                raise NotFoundError(f"Item {item_id} not found in {table}.")
            on_loan = ConflictingUpdateError(f"{item.name} is on loan and cannot be marked available.")
            if is_available and _holding_loan_exists(db, model, item_id):
                raise on_loan
            stmt = update(model).where(model.id == item_id)
            if is_available:
                # The read above may be stale; the write re-checks holding loans.
                stmt = stmt.where(~_holding_loan_clause(model, item_id))
            result = db.execute(
                stmt.values(is_available=bool(is_available), updated_at=datetime.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if is_available:
                    raise on_loan
                raise NotFoundError(f"Item {item_id} not found in {table}.")
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.expire(item)
        return item

    item = with_store_retry(db, _store)
    LOGGER.info("Item availability set table=%s item_id=%s is_available=%s", table, item_id, bool(is_available))
    return item


def set_tool_condition(db: Session, tool_id: str, condition: str | ToolCondition, *, acting_role: str | Role) -> Tool:
    _require_admin(acting_role)
    target = parse_condition(condition)

    def _store() -> Tool:
        try:
            tool = db.get(Tool, tool_id)
            if not tool:
                raise NotFoundError(f"Tool {tool_id} not found.")
            tool.condition = target.value
            tool.updated_at = datetime.now()
            db.commit()
        except Exception:
            db.rollback()
            raise
        return tool

    tool = with_store_retry(db, _store)
    LOGGER.info("Tool condition set tool_id=%s condition=%s", tool_id, target.value)
    return tool


def serialize_tool(tool: Tool) -> dict:
    return {
        "id": tool.id,
        "name": tool.name,
        "brand": tool.brand,
        "model": tool.model,
        "description": tool.description,
        "category": tool.category,
        "condition": tool.condition,
        "dailyRate": float(tool.daily_rate) if tool.daily_rate is not None else None,
        "replacementValue": float(tool.replacement_value) if tool.replacement_value is not None else None,
        "co2PerUse": float(tool.co2_per_use) if tool.co2_per_use is not None else None,
        "totalLoans": int(tool.total_loans or 0),
        "isAvailable": bool(tool.is_available),
        "imageUrl": tool.image_url,
        "specifications": tool.specifications,
    }


def serialize_hardware_sample(sample: HardwareSample) -> dict:
    return {
        "id": sample.id,
        "name": sample.name,
        "brand": sample.brand,
        "model": sample.model,
        "description": sample.description,
        "sampleType": sample.sample_type,
        "maxLoanHours": sample.max_loan_hours,
        "isAvailable": bool(sample.is_available),
        "imageUrl": sample.image_url,
        "specifications": sample.specifications,
    }
