from __future__ import annotations

import logging
import math
import os
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, TypeVar

from sqlalchemy import func, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from models.library_models import HardwareSample, ImpactMetric, Loan, Tool


LOGGER = logging.getLogger("tool_library.loans")
STORE_LOGGER = logging.getLogger("tool_library.store")

STORE_RETRIES = int(os.environ.get("TOOL_LIBRARY_STORE_RETRIES") or "3")
STORE_BACKOFF_SECONDS = float(os.environ.get("TOOL_LIBRARY_STORE_BACKOFF_SECONDS") or "0.2")

SECONDS_PER_DAY = 24 * 60 * 60
CENTS = Decimal("0.01")

T = TypeVar("T")


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class Role(str, Enum):
    COMMUNITY_MEMBER = "community_member"
    ARCHITECT = "architect"
    ADMIN = "admin"
    TOOL_DOCTOR = "tool_doctor"


class LoanLifecycleError(RuntimeError):
    pass


class NotFoundError(LoanLifecycleError):
    pass


class ForbiddenError(LoanLifecycleError):
    pass


class InvalidTransitionError(LoanLifecycleError):
    pass


class StoreUnavailableError(LoanLifecycleError):
    pass


class ConflictingUpdateError(LoanLifecycleError):
    pass


HOLDING_STATUSES = frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({LoanStatus.RETURNED, LoanStatus.REJECTED})

TRANSITION_ROLES: dict[tuple[LoanStatus, LoanStatus], frozenset[Role]] = {
    (LoanStatus.PENDING, LoanStatus.APPROVED): frozenset({Role.ADMIN}),
    (LoanStatus.PENDING, LoanStatus.ACTIVE): frozenset({Role.ADMIN}),
    (LoanStatus.PENDING, LoanStatus.REJECTED): frozenset({Role.ADMIN}),
    (LoanStatus.APPROVED, LoanStatus.ACTIVE): frozenset({Role.ADMIN}),
    (LoanStatus.ACTIVE, LoanStatus.RETURNED): frozenset({Role.ADMIN, Role.TOOL_DOCTOR}),
}
# Edges the system may take on behalf of the borrower (pickup confirmation).
AUTOMATIC_EDGES = frozenset({(LoanStatus.APPROVED, LoanStatus.ACTIVE)})

STATUS_DISPLAY: dict[LoanStatus, dict[str, str]] = {
    LoanStatus.PENDING: {"label": "Pending approval", "tone": "warning"},
    LoanStatus.APPROVED: {"label": "Approved, awaiting pickup", "tone": "info"},
    LoanStatus.REJECTED: {"label": "Rejected", "tone": "destructive"},
    LoanStatus.ACTIVE: {"label": "On loan", "tone": "success"},
    LoanStatus.RETURNED: {"label": "Returned", "tone": "muted"},
    LoanStatus.OVERDUE: {"label": "Overdue", "tone": "destructive"},
}

_UNMAPPED = [status.value for status in LoanStatus if status not in STATUS_DISPLAY]
if _UNMAPPED:
    raise RuntimeError(f"Loan statuses without a display mapping: {', '.join(_UNMAPPED)}")


def parse_status(raw: str | LoanStatus | None) -> LoanStatus:
    if isinstance(raw, LoanStatus):
        return raw
    value = (raw or "").strip().lower()
    try:
        return LoanStatus(value)
    except ValueError as exc:
        raise ValueError(f"Unknown loan status: {raw!r}") from exc


def parse_role(raw: str | Role | None) -> Role:
    if isinstance(raw, Role):
        return raw
    value = (raw or "").strip().lower()
    try:
        return Role(value)
    except ValueError as exc:
        raise ValueError(f"Unknown role: {raw!r}") from exc


def stored_state(raw: str | LoanStatus | None) -> LoanStatus:
    """State-machine position of a stored status.

    ``overdue`` is derived at read time; a legacy stored ``overdue`` row is
    still an active loan as far as transitions are concerned.
    """
    status = parse_status(raw)
    if status is LoanStatus.OVERDUE:
        return LoanStatus.ACTIVE
    return status


def is_overdue(loan: Any, now: datetime | None = None) -> bool:
    current = stored_state(loan.status)
    if current is not LoanStatus.ACTIVE or loan.due_date is None:
        return False
    return loan.due_date < (now or datetime.now())


def display_status(loan: Any, now: datetime | None = None) -> LoanStatus:
    if is_overdue(loan, now):
        return LoanStatus.OVERDUE
    return stored_state(loan.status)


def status_display(status: LoanStatus) -> dict[str, str]:
    return dict(STATUS_DISPLAY[status])


def summarize(loans: Iterable[Any], now: datetime | None = None) -> dict[str, int]:
    current_time = now or datetime.now()
    counts = {"activeCount": 0, "pendingCount": 0, "overdueCount": 0}
    for loan in loans:
        status = display_status(loan, current_time)
        if status is LoanStatus.ACTIVE:
            counts["activeCount"] += 1
        elif status is LoanStatus.PENDING:
            counts["pendingCount"] += 1
        elif status is LoanStatus.OVERDUE:
            counts["overdueCount"] += 1
    return counts


def compute_fine(daily_rate: Any, due_date: datetime | None, returned_at: datetime) -> Decimal | None:
    """Late fee charged on return: ``daily_rate * ceil(overdue_days)``.

    Returns ``None`` for on-time returns. Items without a daily rate are
    fined ``0.00`` when late so the row still records that it was late.
    """
    if due_date is None or returned_at <= due_date:
        return None
    overdue_days = math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)
    rate = Decimal(str(daily_rate)) if daily_rate is not None else Decimal("0")
    return (rate * overdue_days).quantize(CENTS)


def check_transition(
    current: LoanStatus,
    target: LoanStatus,
    acting_role: Role,
    *,
    automatic: bool = False,
) -> None:
    edge = (current, target)
    allowed_roles = TRANSITION_ROLES.get(edge)
    if allowed_roles is None:
        raise InvalidTransitionError(f"Invalid loan transition: {current.value} -> {target.value}")
    if automatic and edge in AUTOMATIC_EDGES:
        return
    if acting_role not in allowed_roles:
        raise ForbiddenError(
            f"Role {acting_role.value} may not move a loan from {current.value} to {target.value}."
        )


def _is_store_failure(exc: Exception) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def with_store_retry(
    db: Session,
    operation: Callable[[], T],
    *,
    retries: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, STORE_RETRIES if retries is None else retries)
    backoff = STORE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except DBAPIError as exc:
            db.rollback()
            if not _is_store_failure(exc):
                raise
            if attempt >= attempts:
                STORE_LOGGER.error("Store unavailable after %s attempts: %s", attempts, exc)
                raise StoreUnavailableError("The data store is unavailable. Please try again later.") from exc
            delay = backoff * (2 ** (attempt - 1))
            STORE_LOGGER.warning("Store failure attempt=%s/%s retry_in=%.2fs: %s", attempt, attempts, delay, exc)
            sleep(delay)
    raise StoreUnavailableError("The data store is unavailable. Please try again later.")


def item_model_and_id(loan: Loan) -> tuple[type, str]:
    has_tool = bool(loan.tool_id)
    has_sample = bool(loan.hardware_sample_id)
    if has_tool == has_sample:
        raise ValueError("A loan must reference exactly one of tool_id or hardware_sample_id.")
    if has_tool:
        return Tool, loan.tool_id
    return HardwareSample, loan.hardware_sample_id


def apply_transition(
    db: Session,
    loan_id: str,
    target_status: str | LoanStatus,
    acting_role: str | Role,
    *,
    actor_id: str | None = None,
    expected_status: str | LoanStatus | None = None,
    automatic: bool = False,
    now: datetime | None = None,
) -> Loan:
    try:
        target = parse_status(target_status)
    except ValueError as exc:
        raise InvalidTransitionError(str(exc)) from exc
    try:
        role = parse_role(acting_role)
    except ValueError as exc:
        raise ForbiddenError(str(exc)) from exc
    expected = None
    if expected_status is not None:
        try:
            expected = stored_state(expected_status)
        except ValueError as exc:
            raise InvalidTransitionError(str(exc)) from exc

    def _attempt() -> Loan:
        return _apply_transition_once(
            db,
            loan_id,
            target,
            role,
            actor_id=actor_id,
            expected=expected,
            automatic=automatic,
            now=now or datetime.now(),
        )

    try:
        return with_store_retry(db, _attempt)
    except LoanLifecycleError as exc:
        LOGGER.warning(
            "Loan transition rejected loan_id=%s to=%s role=%s kind=%s reason=%s",
            loan_id,
            target.value,
            role.value,
            type(exc).__name__,
            exc,
        )
        raise


def _apply_transition_once(
    db: Session,
    loan_id: str,
    target: LoanStatus,
    role: Role,
    *,
    actor_id: str | None,
    expected: LoanStatus | None,
    automatic: bool,
    now: datetime,
) -> Loan:
    try:
        loan = db.get(Loan, loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found.")

        stored = loan.status
        current = stored_state(stored)
        if expected is not None and expected is not current:
            raise ConflictingUpdateError(
                f"Loan {loan_id} is {current.value}, not {expected.value}; it was changed by someone else."
            )
        check_transition(current, target, role, automatic=automatic)

        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target in HOLDING_STATUSES and loan.approved_at is None:
            values["approved_at"] = now
            if actor_id:
                values["approved_by"] = actor_id
        if target is LoanStatus.RETURNED:
            values["returned_at"] = now
            daily_rate = loan.Tool.daily_rate if loan.tool_id and loan.Tool else None
            fine = compute_fine(daily_rate, loan.due_date, now)
            if fine is not None:
                values["fine_amount"] = fine

        result = db.execute(
            update(Loan)
            .where(Loan.id == loan.id)
            .where(Loan.status == stored)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictingUpdateError(f"Loan {loan_id} was changed by someone else. Reload and try again.")

        _sync_item_availability(db, loan, current, target, now)
        if target is LoanStatus.RETURNED:
            _record_return_impact(db, loan, now)

        db.commit()
    except Exception:
        db.rollback()
        raise

    # Conditional updates bypass the identity map; reload loan and item on next access.
    db.expire_all()
    LOGGER.info(
        "Loan transition applied loan_id=%s from=%s to=%s role=%s automatic=%s",
        loan_id,
        current.value,
        target.value,
        role.value,
        automatic,
    )
    return loan


def _sync_item_availability(db: Session, loan: Loan, current: LoanStatus, target: LoanStatus, now: datetime) -> None:
    model, item_id = item_model_and_id(loan)
    if target in HOLDING_STATUSES and current not in HOLDING_STATUSES:
        result = db.execute(
            update(model)
            .where(model.id == item_id)
            .where(model.is_available.is_(True))
            .values(is_available=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictingUpdateError("The requested item is already on loan or no longer exists.")
        return
    if current in HOLDING_STATUSES and target in TERMINAL_STATUSES:
        db.execute(
            update(model)
            .where(model.id == item_id)
            .values(is_available=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )


def _increment_impact(db: Session, user_id: str, co2: Decimal, now: datetime) -> int:
    result = db.execute(
        update(ImpactMetric)
        .where(ImpactMetric.user_id == user_id)
        .values(
            total_loans=func.coalesce(ImpactMetric.total_loans, 0) + 1,
            co2_reduced=func.coalesce(ImpactMetric.co2_reduced, 0) + co2,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _record_return_impact(db: Session, loan: Loan, now: datetime) -> None:
    co2 = Decimal("0")
    if loan.tool_id:
        db.execute(
            update(Tool)
            .where(Tool.id == loan.tool_id)
            .values(total_loans=func.coalesce(Tool.total_loans, 0) + 1)
            .execution_options(synchronize_session=False)
        )
        if loan.Tool and loan.Tool.co2_per_use is not None:
            co2 = Decimal(str(loan.Tool.co2_per_use))

    if _increment_impact(db, loan.user_id, co2, now):
        return
    try:
        with db.begin_nested():
            db.add(
                ImpactMetric(
                    user_id=loan.user_id,
                    total_loans=1,
                    co2_reduced=co2,
                    money_saved=Decimal("0"),
                    community_score=0,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # A concurrent return created the borrower's row first.
        if not _increment_impact(db, loan.user_id, co2, now):
            raise
