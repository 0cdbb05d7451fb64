import logging
import os

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.deps import get_db
from schemas.catalog import AvailabilityUpdateDto, ConditionUpdateDto, MaintenanceRecordDto
from schemas.loans import CreateLoanDto, LoanFeedbackRequest, LoanTransitionRequest
from schemas.users import LoginRequest, RegisterRequest, RoleUpdateDto
from services.catalog_service import browse_catalog, serialize_hardware_sample, serialize_tool, set_item_availability, set_tool_condition
from services.loan_lifecycle import (
    ConflictingUpdateError,
    ForbiddenError,
    InvalidTransitionError,
    LoanLifecycleError,
    NotFoundError,
    Role,
    StoreUnavailableError,
    apply_transition,
)
from services.loan_service import (
    admin_dashboard,
    b2b_dashboard,
    confirm_pickup,
    get_loan,
    list_loans,
    member_dashboard,
    request_loan,
    serialize_loan,
    submit_feedback,
)
from services.maintenance_service import maintenance_overview, record_inspection, serialize_record
from services.user_access_service import create_session, get_session, remove_session
from services.user_role_service import get_role, get_user, list_users, register_user, set_role, verify_credentials

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="tool_library_session",
        same_site="lax",
        https_only=False,
    )

AUTH_LOGGER = logging.getLogger("tool_library.auth")
LOAN_ADMIN_ROLES = frozenset({Role.ADMIN, Role.TOOL_DOCTOR})

_ERROR_STATUS = (
    (NotFoundError, 404),
    (ForbiddenError, 403),
    (InvalidTransitionError, 400),
    (ConflictingUpdateError, 409),
    (StoreUnavailableError, 503),
)


def _http_error(exc: Exception) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except DBAPIError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/register")
def auth_register(payload: dict, db: Session = Depends(get_db)):
    try:
        parsed = RegisterRequest.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid registration request.")
    try:
        user = register_user(
            db,
            email=parsed.email,
            password=parsed.password,
            full_name=parsed.fullName,
            organization=parsed.organization,
            role=parsed.role,
        )
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc
    return {"user": user}


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    try:
        parsed = LoginRequest.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    try:
        profile = verify_credentials(db, parsed.email, parsed.password)
    except StoreUnavailableError as exc:
        raise _http_error(exc) from exc
    if not profile:
        AUTH_LOGGER.warning("Login failed email=%s", parsed.email.strip().lower())
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    session_payload = {
        "userID": profile.id,
        "email": profile.email,
        "displayName": profile.full_name or profile.email,
    }
    token = create_session(session_payload)
    request.session["user"] = dict(session_payload)
    AUTH_LOGGER.info("Login success user_id=%s", profile.id)
    return {"sessionToken": token, "user": get_user(db, profile.id)}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, _ = _require_actor(request, x_session_token, db)
    try:
        return {"user": get_user(db, user_id)}
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.get("/api/catalog")
def get_catalog(
    search: str | None = Query(None),
    category: str | None = Query(None),
    available_only: bool = Query(False, alias="availableOnly"),
    db: Session = Depends(get_db),
):
    try:
        return browse_catalog(db, search=search, category=category, available_only=available_only)
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/api/loans")
def create_loan(
    request: Request,
    payload: CreateLoanDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    try:
        loan = request_loan(
            db,
            user_id=user_id,
            acting_role=role,
            tool_id=payload.toolID,
            hardware_sample_id=payload.hardwareSampleID,
            purpose=payload.purpose,
        )
        return serialize_loan(get_loan(db, loan.id))
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.get("/api/loans")
def get_loans(
    request: Request,
    user_id_filter: str | None = Query(None, alias="userID"),
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    owner = user_id_filter if role in LOAN_ADMIN_ROLES else user_id
    try:
        loans = list_loans(db, user_id=owner, status=status)
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc
    return [serialize_loan(loan) for loan in loans]


@app.get("/api/loans/{loan_id}")
def get_loan_detail(
    request: Request,
    loan_id: str,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    try:
        loan = get_loan(db, loan_id)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc
    if role not in LOAN_ADMIN_ROLES and loan.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Loan {loan_id} not found.")
    return serialize_loan(loan)


@app.post("/api/loans/{loan_id}/transition")
def transition_loan(
    request: Request,
    loan_id: str,
    payload: LoanTransitionRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    try:
        apply_transition(
            db,
            loan_id,
            payload.status,
            role,
            actor_id=user_id,
            expected_status=payload.expectedStatus,
        )
        return serialize_loan(get_loan(db, loan_id))
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/api/loans/{loan_id}/pickup")
def pickup_loan(
    request: Request,
    loan_id: str,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    try:
        confirm_pickup(db, loan_id, user_id=user_id, acting_role=role)
        return serialize_loan(get_loan(db, loan_id))
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/api/loans/{loan_id}/feedback")
def loan_feedback(
    request: Request,
    loan_id: str,
    payload: LoanFeedbackRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, _ = _require_actor(request, x_session_token, db)
    try:
        loan = submit_feedback(db, loan_id, user_id=user_id, rating=payload.rating, feedback=payload.feedback)
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc
    return serialize_loan(loan)


@app.get("/api/dashboard/member")
def dashboard_member(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, _ = _require_actor(request, x_session_token, db)
    try:
        return member_dashboard(db, user_id)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.get("/api/dashboard/b2b")
def dashboard_b2b(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    if role not in {Role.ARCHITECT, Role.ADMIN}:
        raise HTTPException(status_code=403, detail="Architect role required.")
    try:
        return b2b_dashboard(db, user_id)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.get("/api/dashboard/admin")
def dashboard_admin(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_actor(request, x_session_token, db)
    try:
        return admin_dashboard(db)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.get("/api/dashboard/maintenance")
def dashboard_maintenance(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _, role = _require_actor(request, x_session_token, db)
    try:
        return maintenance_overview(db, acting_role=role)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.post("/api/maintenance/records")
def create_maintenance_record(
    request: Request,
    payload: MaintenanceRecordDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user_id, role = _require_actor(request, x_session_token, db)
    try:
        record = record_inspection(
            db,
            acting_role=role,
            inspector_id=user_id,
            tool_id=payload.toolID,
            new_condition=payload.newCondition,
            loan_id=payload.loanID,
            notes=payload.notes,
            repair_cost=payload.repairCost,
            next_service_date=payload.nextServiceDate,
        )
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc
    return serialize_record(record)


@app.put("/api/admin/items/{table}/{item_id}/availability")
def update_item_availability(
    request: Request,
    table: str,
    item_id: str,
    payload: AvailabilityUpdateDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _, role = _require_admin_actor(request, x_session_token, db)
    try:
        item = set_item_availability(db, table, item_id, payload.isAvailable, acting_role=role)
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc
    if table == "tools":
        return serialize_tool(item)
    return serialize_hardware_sample(item)


@app.put("/api/admin/tools/{tool_id}/condition")
def update_tool_condition(
    request: Request,
    tool_id: str,
    payload: ConditionUpdateDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _, role = _require_admin_actor(request, x_session_token, db)
    try:
        return serialize_tool(set_tool_condition(db, tool_id, payload.condition, acting_role=role))
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.get("/api/admin/users")
def list_admin_users(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _, role = _require_admin_actor(request, x_session_token, db)
    try:
        return list_users(db, acting_role=role)
    except LoanLifecycleError as exc:
        raise _http_error(exc) from exc


@app.put("/api/admin/users/{user_id}/role")
def update_user_role(
    request: Request,
    user_id: str,
    payload: RoleUpdateDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _, role = _require_admin_actor(request, x_session_token, db)
    try:
        return set_role(db, user_id, payload.role, acting_role=role)
    except (LoanLifecycleError, ValueError) as exc:
        raise _http_error(exc) from exc


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    if session_token:
        # An explicit token wins over the cookie so a revoked token cannot ride on it.
        session_from_token = get_session(session_token)
        if session_from_token:
            request.session["user"] = dict(session_from_token)
            return dict(session_from_token)
        request.session.pop("user", None)
        return None
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_actor(request: Request, session_token: str | None, db: Session) -> tuple[str, Role]:
    session = _require_session_or_401(request, session_token)
    user_id = str(session.get("userID") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Not logged in.")
    try:
        return user_id, get_role(db, user_id)
    except StoreUnavailableError as exc:
        raise _http_error(exc) from exc


def _require_admin_actor(request: Request, session_token: str | None, db: Session) -> tuple[str, Role]:
    user_id, role = _require_actor(request, session_token, db)
    if role is not Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return user_id, role
