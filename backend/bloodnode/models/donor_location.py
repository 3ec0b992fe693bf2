import enum

from sqlalchemy import Column, String, Enum, DateTime, Boolean, Float, ForeignKey, Index, Uuid, event

from bloodnode.db.postgres import Base
from bloodnode.models.emergency import BloodType
from bloodnode.services.clock import utcnow
from bloodnode.services.geohash import encode

# Stored precision; the finest precision the planner ever asks for, so every
# search prefix is a true prefix of a stored geohash.
DONOR_GEOHASH_PRECISION = 7


class ContactPreference(str, enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    APP = "app"


class DonorLocation(Base):
    __tablename__ = "donor_locations"
    __table_args__ = (
        Index("ix_donor_locations_search", "geohash", "blood_type", "is_available"),
    )

    user_id = Column(Uuid, ForeignKey("users.id"), primary_key=True)
    blood_type = Column(Enum(BloodType), nullable=True)  # None = private
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    geohash = Column(String(12), nullable=False)
    address = Column(String, nullable=True)
    is_available = Column(Boolean, default=True)
    emergency_contact = Column(Boolean, default=True)  # opted in to emergency alerts
    contact_preference = Column(Enum(ContactPreference), default=ContactPreference.EMAIL)
    last_donation_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


@event.listens_for(DonorLocation, "before_insert")
@event.listens_for(DonorLocation, "before_update")
def _sync_geohash(mapper, connection, target: DonorLocation) -> None:
    target.geohash = encode(target.latitude, target.longitude, DONOR_GEOHASH_PRECISION)
