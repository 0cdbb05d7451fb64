import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("TOOL_LIBRARY_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("TOOL_LIBRARY_STORE_BACKOFF_SECONDS", "0")
os.environ.setdefault(
    "SESSION_REVOCATION_PATH",
    str(Path(tempfile.gettempdir()) / f"tool_library_revoked_{os.getpid()}.json"),
)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from models.library_models import HardwareSample, Loan, Profile, Tool, UserRole


NOW = datetime(2026, 3, 2, 10, 0, 0)


def make_session_factory(db_url: str = "sqlite+pysqlite:///:memory:"):
    if ":memory:" in db_url:
        engine = create_engine(
            db_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            future=True,
        )
    else:
        engine = create_engine(db_url, connect_args={"check_same_thread": False}, future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )
    return engine, factory


def add_tool(db, **overrides) -> Tool:
    values = {
        "name": "Cordless Drill",
        "brand": "Makita",
        "description": "18V drill driver",
        "category": "power_tool",
        "condition": "good",
        "daily_rate": Decimal("5.00"),
        "co2_per_use": Decimal("2.50"),
        "total_loans": 0,
        "is_available": True,
    }
    values.update(overrides)
    tool = Tool(**values)
    db.add(tool)
    db.commit()
    return tool


def add_sample(db, **overrides) -> HardwareSample:
    values = {
        "name": "Smart Hinge Prototype",
        "brand": "Blum",
        "sample_type": "hinge",
        "max_loan_hours": 48,
        "is_available": True,
    }
    values.update(overrides)
    sample = HardwareSample(**values)
    db.add(sample)
    db.commit()
    return sample


def add_loan(db, **overrides) -> Loan:
    values = {
        "user_id": "member-1",
        "status": "pending",
        "purpose": "General borrowing",
        "requested_at": NOW,
        "due_date": datetime(2026, 3, 9, 10, 0, 0),
    }
    values.update(overrides)
    loan = Loan(**values)
    db.add(loan)
    db.commit()
    return loan


def add_user(db, email: str, role: str | None = None, full_name: str | None = None) -> Profile:
    profile = Profile(email=email, full_name=full_name)
    db.add(profile)
    db.flush()
    if role:
        db.add(UserRole(user_id=profile.id, role=role))
    db.commit()
    return profile
