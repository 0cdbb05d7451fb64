import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Tool(Base):
    __tablename__ = "tools"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    brand = Column(String(255))
    model = Column(String(255))
    description = Column(Text)
    category = Column(String(50), nullable=False)
    condition = Column(String(50), nullable=False, default="good")
    daily_rate = Column(Numeric(10, 2))
    replacement_value = Column(Numeric(10, 2))
    co2_per_use = Column(Numeric(10, 2))
    total_loans = Column(Integer, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    image_url = Column(String(500))
    specifications = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Tool")
    MaintenanceRecords = relationship("MaintenanceRecord", back_populates="Tool")


class HardwareSample(Base):
    __tablename__ = "hardware_samples"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    brand = Column(String(255))
    model = Column(String(255))
    description = Column(Text)
    sample_type = Column(String(100), nullable=False)
    max_loan_hours = Column(Integer)
    is_available = Column(Boolean, nullable=False, default=True)
    image_url = Column(String(500))
    specifications = Column(JSON)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="HardwareSample")


class Loan(Base):
    __tablename__ = "loans"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    tool_id = Column(String(36), ForeignKey("tools.id"))
    hardware_sample_id = Column(String(36), ForeignKey("hardware_samples.id"))
    status = Column(String(20), nullable=False, default="pending", index=True)
    purpose = Column(String(1000))
    requested_at = Column(DateTime, nullable=False)
    approved_at = Column(DateTime)
    approved_by = Column(String(36))
    due_date = Column(DateTime)
    returned_at = Column(DateTime)
    fine_amount = Column(Numeric(10, 2))
    rating = Column(Integer)
    feedback = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())

    Tool = relationship("Tool", back_populates="Loans")
    HardwareSample = relationship("HardwareSample", back_populates="Loans")


class MaintenanceRecord(Base):
    __tablename__ = "maintenance_records"

    id = Column(String(36), primary_key=True, default=_new_id)
    tool_id = Column(String(36), ForeignKey("tools.id"), nullable=False)
    loan_id = Column(String(36), ForeignKey("loans.id"))
    inspected_by = Column(String(36))
    previous_condition = Column(String(50))
    new_condition = Column(String(50), nullable=False)
    notes = Column(Text)
    repair_cost = Column(Numeric(10, 2))
    next_service_date = Column(Date)
    created_at = Column(DateTime, nullable=False)

    Tool = relationship("Tool", back_populates="MaintenanceRecords")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255))
    organization = Column(String(255))
    phone = Column(String(50))
    avatar_url = Column(String(500))
    password_hash = Column(String(128))
    password_salt = Column(String(64))
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now())


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False, unique=True)
    role = Column(String(32), nullable=False, default="community_member")
    created_at = Column(DateTime, server_default=func.now())


class ImpactMetric(Base):
    __tablename__ = "impact_metrics"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, unique=True)
    total_loans = Column(Integer, default=0)
    co2_reduced = Column(Numeric(10, 2), default=0)
    money_saved = Column(Numeric(10, 2), default=0)
    community_score = Column(Integer, default=0)
    updated_at = Column(DateTime, server_default=func.now())
