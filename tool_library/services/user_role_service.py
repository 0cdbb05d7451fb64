from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.library_models import Profile, UserRole
from services.loan_lifecycle import (
    ConflictingUpdateError,
    ForbiddenError,
    NotFoundError,
    Role,
    parse_role,
    with_store_retry,
)


LOGGER = logging.getLogger("tool_library.auth")

DEFAULT_ROLE = Role.COMMUNITY_MEMBER
SELF_SERVICE_ROLES = frozenset({Role.COMMUNITY_MEMBER, Role.ARCHITECT, Role.TOOL_DOCTOR})
MIN_PASSWORD_LENGTH = 8


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _normalize_email(raw: str | None) -> str:
    email = (raw or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("A valid email address is required.")
    return email


def get_role(db: Session, user_id: str) -> Role:
    raw = with_store_retry(
        db,
        lambda: db.execute(select(UserRole.role).where(UserRole.user_id == user_id)).scalars().first(),
    )
    if not raw:
        return DEFAULT_ROLE
    try:
        return parse_role(raw)
    except ValueError:
        LOGGER.warning("Unknown stored role user_id=%s role=%s; using %s", user_id, raw, DEFAULT_ROLE.value)
        return DEFAULT_ROLE


def register_user(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str | None = None,
    organization: str | None = None,
    role: str | Role | None = None,
) -> dict[str, Any]:
    normalized_email = _normalize_email(email)
    trimmed = (password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    requested_role = parse_role(role) if role else DEFAULT_ROLE
    if requested_role not in SELF_SERVICE_ROLES:
        raise ForbiddenError(f"Role {requested_role.value} cannot be chosen at sign-up.")

    def _store() -> Profile:
        try:
            existing = db.execute(
                select(Profile.id).where(func.lower(Profile.email) == normalized_email)
            ).scalars().first()
            if existing:
                raise ConflictingUpdateError("An account with this email already exists.")
            salt = secrets.token_hex(16)
            profile = Profile(
                email=normalized_email,
                full_name=(full_name or "").strip() or None,
                organization=(organization or "").strip() or None,
                password_salt=salt,
                password_hash=_password_hash(trimmed, salt),
                updated_at=datetime.now(),
            )
            db.add(profile)
            db.flush()
            db.add(UserRole(user_id=profile.id, role=requested_role.value))
            db.commit()
        except Exception:
            db.rollback()
            raise
        return profile

    profile = with_store_retry(db, _store)
    LOGGER.info("User registered user_id=%s role=%s", profile.id, requested_role.value)
    return serialize_user(profile, requested_role)


def verify_credentials(db: Session, email: str, password: str) -> Profile | None:
    try:
        normalized_email = _normalize_email(email)
    except ValueError:
        return None
    profile = with_store_retry(
        db,
        lambda: db.execute(
            select(Profile).where(func.lower(Profile.email) == normalized_email)
        ).scalars().first(),
    )
    if not profile or not profile.password_hash or not profile.password_salt:
        return None
    candidate = _password_hash((password or "").strip(), profile.password_salt)
    if not hmac.compare_digest(candidate, profile.password_hash):
        return None
    return profile


def get_user(db: Session, user_id: str) -> dict[str, Any]:
    profile = with_store_retry(db, lambda: db.get(Profile, user_id))
    if not profile:
        raise NotFoundError(f"User {user_id} not found.")
    return serialize_user(profile, get_role(db, user_id))


def list_users(db: Session, *, acting_role: str | Role) -> list[dict[str, Any]]:
    if parse_role(acting_role) is not Role.ADMIN:
        raise ForbiddenError("Admin role required.")

    def _load() -> tuple[list[Profile], dict[str, str]]:
        profiles = db.execute(select(Profile)).scalars().all()
        roles = dict(db.execute(select(UserRole.user_id, UserRole.role)).all())
        return list(profiles), roles

    profiles, roles = with_store_retry(db, _load)
    users = []
    for profile in profiles:
        try:
            role = parse_role(roles.get(profile.id))
        except ValueError:
            role = DEFAULT_ROLE
        users.append(serialize_user(profile, role))
    users.sort(key=lambda item: ((item["fullName"] or "").lower(), item["email"]))
    return users


def set_role(db: Session, user_id: str, role: str | Role, *, acting_role: str | Role) -> dict[str, Any]:
    if parse_role(acting_role) is not Role.ADMIN:
        raise ForbiddenError("Only an admin can change roles.")
    next_role = parse_role(role)

    def _store() -> Profile:
        try:
            profile = db.get(Profile, user_id)
            if not profile:
                raise NotFoundError(f"User {user_id} not found.")
            row = db.execute(select(UserRole).where(UserRole.user_id == user_id)).scalars().first()
            if row:
                row.role = next_role.value
            else:
                db.add(UserRole(user_id=user_id, role=next_role.value))
            db.commit()
        except Exception:
            db.rollback()
            raise
        return profile

    profile = with_store_retry(db, _store)
    LOGGER.info("Role changed user_id=%s role=%s", user_id, next_role.value)
    return serialize_user(profile, next_role)


def serialize_user(profile: Profile, role: Role) -> dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "fullName": profile.full_name,
        "organization": profile.organization,
        "phone": profile.phone,
        "role": role.value,
    }
