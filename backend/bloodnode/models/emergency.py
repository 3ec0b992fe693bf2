"""
Emergency alert models: a requester broadcasts a need for a blood type near a
point, nearby compatible donors respond, and the requester selects one.
"""

import enum
import uuid

from sqlalchemy import (
    Column, String, Enum, DateTime, Date, Integer, Float, Boolean, ForeignKey, Text,
    UniqueConstraint, Index, JSON, Uuid,
)

from bloodnode.db.postgres import Base
from bloodnode.services.clock import utcnow


class BloodType(str, enum.Enum):
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"


class UrgencyLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertStatus(str, enum.Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ResponseStatus(str, enum.Enum):
    PENDING = "pending"
    SELECTED = "selected"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EmergencyAlert(Base):
    __tablename__ = "emergency_alerts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    serial_number = Column(String, unique=True, nullable=False)
    requester_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    blood_type = Column(Enum(BloodType), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location_geohash = Column(String(12), nullable=True)
    address = Column(String, nullable=True)
    radius_km = Column(Float, nullable=False)
    urgency_level = Column(Enum(UrgencyLevel), nullable=False, default=UrgencyLevel.HIGH)
    required_bags = Column(Integer, nullable=False, default=1)
    # Clinical / logistics metadata, all optional
    hemoglobin_level = Column(Float, nullable=True)
    patient_condition = Column(Text, nullable=True)
    contact_info = Column(String, nullable=True)
    reference = Column(String, nullable=True)
    donation_place = Column(String, nullable=True)
    donation_date = Column(Date, nullable=True)
    donation_time = Column(String, nullable=True)
    status = Column(Enum(AlertStatus), nullable=False, default=AlertStatus.ACTIVE)
    donors_notified = Column(Integer, nullable=False, default=0)
    donors_responded = Column(Integer, nullable=False, default=0)
    selected_donor_id = Column(Uuid, nullable=True)
    selected_response_id = Column(Uuid, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)


class EmergencyResponse(Base):
    __tablename__ = "emergency_responses"
    __table_args__ = (
        UniqueConstraint("alert_id", "responder_id", name="uq_emergency_responses_alert_responder"),
        Index("ix_emergency_responses_alert_id", "alert_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    alert_id = Column(Uuid, ForeignKey("emergency_alerts.id"), nullable=False)
    responder_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    # Snapshot of the donor at response time
    blood_type = Column(Enum(BloodType), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    distance_km = Column(Float, nullable=True)
    message = Column(Text, nullable=True)
    can_donate_immediately = Column(Boolean, default=True)
    available_times = Column(JSON, default=list)
    contact_preference = Column(String, nullable=True)
    status = Column(Enum(ResponseStatus), nullable=False, default=ResponseStatus.PENDING)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    selected_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
