from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from models.library_models import HardwareSample, ImpactMetric, Loan, Tool
from services.loan_lifecycle import (
    ConflictingUpdateError,
    ForbiddenError,
    InvalidTransitionError,
    LoanStatus,
    NotFoundError,
    Role,
    apply_transition,
    display_status,
    parse_role,
    parse_status,
    status_display,
    stored_state,
    summarize,
    with_store_retry,
)


LOGGER = logging.getLogger("tool_library.loans")

TOOL_LOAN_DAYS = int(os.environ.get("TOOL_LOAN_DAYS") or "7")
HARDWARE_DEFAULT_LOAN_HOURS = int(os.environ.get("HARDWARE_DEFAULT_LOAN_HOURS") or "72")
TOOL_DEFAULT_PURPOSE = "General borrowing"
HARDWARE_DEFAULT_PURPOSE = "B2B Trial"
HARDWARE_ROLES = frozenset({Role.ARCHITECT, Role.ADMIN})


def _loan_query():
    return select(Loan).options(selectinload(Loan.Tool), selectinload(Loan.HardwareSample))


def request_loan(
    db: Session,
    *,
    user_id: str,
    acting_role: str | Role,
    tool_id: str | None = None,
    hardware_sample_id: str | None = None,
    purpose: str | None = None,
    now: datetime | None = None,
) -> Loan:
    role = parse_role(acting_role)
    tool_id = (tool_id or "").strip() or None
    hardware_sample_id = (hardware_sample_id or "").strip() or None
    if bool(tool_id) == bool(hardware_sample_id):
        raise ValueError("Provide exactly one of toolID or hardwareSampleID.")
    if hardware_sample_id and role not in HARDWARE_ROLES:
        raise ForbiddenError("Hardware sample trials are limited to architects and admins.")

    requested_at = now or datetime.now()

    def _create() -> Loan:
        if tool_id:
            item = db.get(Tool, tool_id)
            if not item:
                raise NotFoundError(f"Tool {tool_id} not found.")
            due_date = requested_at + timedelta(days=TOOL_LOAN_DAYS)
            default_purpose = TOOL_DEFAULT_PURPOSE
        else:
            item = db.get(HardwareSample, hardware_sample_id)
            if not item:
                raise NotFoundError(f"Hardware sample {hardware_sample_id} not found.")
            due_date = requested_at + timedelta(hours=item.max_loan_hours or HARDWARE_DEFAULT_LOAN_HOURS)
            default_purpose = HARDWARE_DEFAULT_PURPOSE
        if not item.is_available:
            raise ConflictingUpdateError(f"{item.name} is currently not available.")

        loan = Loan(
            user_id=user_id,
            tool_id=tool_id,
            hardware_sample_id=hardware_sample_id,
            status=LoanStatus.PENDING.value,
            purpose=(purpose or "").strip() or default_purpose,
            requested_at=requested_at,
            due_date=due_date,
            updated_at=requested_at,
        )
        try:
            db.add(loan)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return loan

    loan = with_store_retry(db, _create)
    LOGGER.info(
        "Loan requested loan_id=%s user_id=%s tool_id=%s hardware_sample_id=%s",
        loan.id,
        user_id,
        tool_id,
        hardware_sample_id,
    )
    return loan


def get_loan(db: Session, loan_id: str) -> Loan:
    loan = with_store_retry(db, lambda: db.execute(_loan_query().where(Loan.id == loan_id)).scalars().first())
    if not loan:
        raise NotFoundError(f"Loan {loan_id} not found.")
    return loan


def list_loans(
    db: Session,
    *,
    user_id: str | None = None,
    status: str | LoanStatus | None = None,
    now: datetime | None = None,
) -> list[Loan]:
    """Loans newest first, optionally for one borrower and/or one display status.

    Status filtering uses the derived view, so ``overdue`` matches active loans
    past their due date and ``active`` excludes them.
    """
    current_time = now or datetime.now()
    stmt = _loan_query().order_by(Loan.requested_at.desc())
    if user_id:
        stmt = stmt.where(Loan.user_id == user_id)
    if status is not None:
        wanted = parse_status(status)
        running = Loan.status.in_([LoanStatus.ACTIVE.value, LoanStatus.OVERDUE.value])
        late = and_(Loan.due_date.is_not(None), Loan.due_date < current_time)
        if wanted is LoanStatus.OVERDUE:
            stmt = stmt.where(running, late)
        elif wanted is LoanStatus.ACTIVE:
            stmt = stmt.where(running, or_(Loan.due_date.is_(None), Loan.due_date >= current_time))
        else:
            stmt = stmt.where(Loan.status == wanted.value)
    return list(with_store_retry(db, lambda: db.execute(stmt).scalars().all()))


def confirm_pickup(db: Session, loan_id: str, *, user_id: str, acting_role: str | Role, now: datetime | None = None) -> Loan:
    loan = get_loan(db, loan_id)
    if loan.user_id != user_id:
        raise ForbiddenError("Only the borrower can confirm pickup.")
    if stored_state(loan.status) is not LoanStatus.APPROVED:
        raise InvalidTransitionError("Only approved loans can be picked up.")
    return apply_transition(
        db,
        loan_id,
        LoanStatus.ACTIVE,
        acting_role,
        actor_id=user_id,
        expected_status=LoanStatus.APPROVED,
        automatic=True,
        now=now,
    )


def submit_feedback(db: Session, loan_id: str, *, user_id: str, rating: int, feedback: str | None = None) -> Loan:
    if not isinstance(rating, int) or rating < 1 or rating > 5:
        raise ValueError("Rating must be between 1 and 5.")
    loan = get_loan(db, loan_id)
    if loan.user_id != user_id:
        raise ForbiddenError("Only the borrower can leave feedback.")
    if parse_status(loan.status) is not LoanStatus.RETURNED:
        raise InvalidTransitionError("Feedback can only be left after the item was returned.")
    if loan.rating is not None:
        raise ConflictingUpdateError("Feedback was already submitted for this loan.")

    def _store() -> Loan:
        try:
            result = db.execute(
                update(Loan)
                .where(Loan.id == loan_id)
                .where(Loan.user_id == user_id)
                .where(Loan.status == LoanStatus.RETURNED.value)
                .where(Loan.rating.is_(None))
                .values(rating=rating, feedback=(feedback or "").strip() or None, updated_at=datetime.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictingUpdateError("Feedback was already submitted for this loan.")
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.expire(loan)
        return loan

    return with_store_retry(db, _store)


def serialize_loan(loan: Loan, now: datetime | None = None) -> dict:
    current_time = now or datetime.now()
    status = display_status(loan, current_time)
    item: dict[str, Any] | None = None
    if loan.Tool:
        item = {"kind": "tool", "id": loan.Tool.id, "name": loan.Tool.name, "category": loan.Tool.category}
    elif loan.HardwareSample:
        item = {
            "kind": "hardware_sample",
            "id": loan.HardwareSample.id,
            "name": loan.HardwareSample.name,
            "sampleType": loan.HardwareSample.sample_type,
        }
    return {
        "id": loan.id,
        "userID": loan.user_id,
        "toolID": loan.tool_id,
        "hardwareSampleID": loan.hardware_sample_id,
        "status": loan.status,
        "displayStatus": status.value,
        "statusDisplay": status_display(status),
        "purpose": loan.purpose,
        "requestedAt": loan.requested_at,
        "approvedAt": loan.approved_at,
        "approvedBy": loan.approved_by,
        "dueDate": loan.due_date,
        "returnedAt": loan.returned_at,
        "fineAmount": float(loan.fine_amount) if loan.fine_amount is not None else None,
        "rating": loan.rating,
        "feedback": loan.feedback,
        "item": item,
    }


def serialize_impact(metrics: ImpactMetric | None) -> dict:
    if not metrics:
        return {"totalLoans": 0, "co2Reduced": 0.0, "moneySaved": 0.0, "communityScore": 0}
    return {
        "totalLoans": int(metrics.total_loans or 0),
        "co2Reduced": float(metrics.co2_reduced or 0),
        "moneySaved": float(metrics.money_saved or 0),
        "communityScore": int(metrics.community_score or 0),
    }


def member_dashboard(db: Session, user_id: str, now: datetime | None = None) -> dict:
    current_time = now or datetime.now()
    loans = list_loans(db, user_id=user_id, now=current_time)
    metrics = with_store_retry(
        db,
        lambda: db.execute(select(ImpactMetric).where(ImpactMetric.user_id == user_id)).scalars().first(),
    )
    today = current_time.date()
    due_today = [
        loan
        for loan in loans
        if display_status(loan, current_time) is LoanStatus.ACTIVE
        and loan.due_date is not None
        and loan.due_date.date() == today
    ]
    return {
        "summary": summarize(loans, current_time),
        "dueToday": [serialize_loan(loan, current_time) for loan in due_today],
        "impact": serialize_impact(metrics),
        "loans": [serialize_loan(loan, current_time) for loan in loans],
    }


def b2b_dashboard(db: Session, user_id: str, now: datetime | None = None) -> dict:
    current_time = now or datetime.now()
    trials = [loan for loan in list_loans(db, user_id=user_id, now=current_time) if loan.hardware_sample_id]
    active = [loan for loan in trials if display_status(loan, current_time) in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)]
    pending = [loan for loan in trials if display_status(loan, current_time) is LoanStatus.PENDING]
    return {
        "summary": summarize(trials, current_time),
        "activeTrials": [serialize_loan(loan, current_time) for loan in active],
        "pendingTrials": [serialize_loan(loan, current_time) for loan in pending],
        "trials": [serialize_loan(loan, current_time) for loan in trials],
    }


def admin_dashboard(db: Session, now: datetime | None = None) -> dict:
    current_time = now or datetime.now()

    def _load() -> tuple[int, int, list[Any]]:
        tool_count = db.execute(select(func.count(Tool.id))).scalar_one()
        hardware_count = db.execute(select(func.count(HardwareSample.id))).scalar_one()
        rows = db.execute(select(Loan.status, Loan.due_date)).all()
        return tool_count, hardware_count, rows

    tool_count, hardware_count, rows = with_store_retry(db, _load)
    return {
        "toolCount": tool_count,
        "hardwareCount": hardware_count,
        **summarize(rows, current_time),
    }
