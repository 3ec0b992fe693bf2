"""
Donor directory backed by the ``users`` and ``donor_locations`` tables.

Search is a geohash prefix scan.  When the planner hands over thousands of
fine prefixes they are shortened for the SQL predicate and the exact prefix
match is applied to the returned rows.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.errors import DirectoryUnavailable, DonorNotFound
from bloodnode.models.donor_location import DonorLocation, ContactPreference
from bloodnode.models.emergency import BloodType
from bloodnode.models.user import User

logger = logging.getLogger(__name__)

# Upper bound on distinct prefixes sent in a single IN (...) predicate
MAX_SCAN_PREFIXES = 256


@dataclass
class DonorRecord:
    user_id: uuid.UUID
    name: str | None
    email: str | None
    phone: str | None
    blood_type: BloodType | None
    latitude: float
    longitude: float
    geohash: str
    address: str | None
    is_available: bool
    emergency_contact: bool
    contact_preference: ContactPreference | None
    last_donation_date: datetime | None


def _record(location: DonorLocation, user: User) -> DonorRecord:
    return DonorRecord(
        user_id=location.user_id,
        name=user.name,
        email=user.email,
        phone=user.phone,
        blood_type=location.blood_type,
        latitude=location.latitude,
        longitude=location.longitude,
        geohash=location.geohash,
        address=location.address,
        is_available=bool(location.is_available),
        emergency_contact=bool(location.emergency_contact),
        contact_preference=location.contact_preference,
        last_donation_date=location.last_donation_date,
    )


def location_to_dict(location: DonorLocation) -> dict[str, Any]:
    return {
        "user_id": str(location.user_id),
        "blood_type": location.blood_type.value if location.blood_type else None,
        "latitude": location.latitude,
        "longitude": location.longitude,
        "geohash": location.geohash,
        "address": location.address,
        "is_available": location.is_available,
        "emergency_contact": location.emergency_contact,
        "contact_preference": location.contact_preference.value if location.contact_preference else None,
        "last_donation_date": location.last_donation_date.isoformat() if location.last_donation_date else None,
        "updated_at": location.updated_at.isoformat() if location.updated_at else None,
    }


def scan_prefixes(prefixes: Iterable[str], limit: int = MAX_SCAN_PREFIXES) -> set[str]:
    """Shorten *prefixes* until at most *limit* remain (never below one char)."""
    current = set(prefixes)
    length = min((len(p) for p in current), default=0)
    current = {p[:length] for p in current}
    while len(current) > limit and length > 1:
        length -= 1
        current = {p[:length] for p in current}
    return current


class SqlDonorDirectory:
    """UserDirectory collaborator over the relational store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -- lookups ------------------------------------------------------------

    async def find_by_id(self, user_id: uuid.UUID) -> User | None:
        try:
            result = await self.db.execute(select(User).where(User.id == user_id))
        except SQLAlchemyError as exc:
            raise DirectoryUnavailable(f"User lookup failed: {exc.__class__.__name__}") from exc
        return result.scalar_one_or_none()

    async def get_donor(self, user_id: uuid.UUID) -> DonorRecord | None:
        try:
            result = await self.db.execute(
                select(DonorLocation, User)
                .join(User, User.id == DonorLocation.user_id)
                .where(DonorLocation.user_id == user_id)
            )
        except SQLAlchemyError as exc:
            raise DirectoryUnavailable(f"Donor lookup failed: {exc.__class__.__name__}") from exc
        row = result.first()
        if row is None:
            return None
        return _record(row[0], row[1])

    async def find_available(
        self,
        blood_types: Iterable[BloodType],
        geohash_prefixes: Iterable[str],
        *,
        emergency_only: bool = False,
    ) -> list[DonorRecord]:
        """Public, active, available donors of *blood_types* inside *geohash_prefixes*."""
        prefixes = set(geohash_prefixes)
        types = list(blood_types)
        if not prefixes or not types:
            return []

        scan = scan_prefixes(prefixes)
        scan_len = len(next(iter(scan)))
        lengths = sorted({len(p) for p in prefixes})

        stmt = (
            select(DonorLocation, User)
            .join(User, User.id == DonorLocation.user_id)
            .where(
                func.substr(DonorLocation.geohash, 1, scan_len).in_(scan),
                DonorLocation.blood_type.in_(types),
                DonorLocation.is_available.is_(True),
                User.public_profile.is_(True),
                User.is_active.is_(True),
            )
        )
        if emergency_only:
            stmt = stmt.where(DonorLocation.emergency_contact.is_(True))

        try:
            result = await self.db.execute(stmt)
            rows = result.all()
        except SQLAlchemyError as exc:
            logger.error("Donor directory query failed: %s", exc.__class__.__name__)
            raise DirectoryUnavailable("Donor directory query failed") from exc

        return [
            _record(location, user)
            for location, user in rows
            if any(location.geohash[:n] in prefixes for n in lengths)
        ]

    # -- writes -------------------------------------------------------------

    async def upsert_location(
        self,
        user_id: uuid.UUID,
        *,
        latitude: float,
        longitude: float,
        blood_type: BloodType | str | None = None,
        address: str | None = None,
        is_available: bool = True,
        emergency_contact: bool = True,
        contact_preference: ContactPreference | str = ContactPreference.EMAIL,
        last_donation_date: datetime | None = None,
    ) -> DonorLocation:
        location = await self.db.get(DonorLocation, user_id)
        if location is None:
            location = DonorLocation(user_id=user_id)
            self.db.add(location)

        location.latitude = latitude
        location.longitude = longitude
        location.blood_type = BloodType(blood_type) if blood_type else None
        location.address = address
        location.is_available = is_available
        location.emergency_contact = emergency_contact
        location.contact_preference = ContactPreference(contact_preference)
        location.last_donation_date = last_donation_date
        await self.db.flush()
        await self.db.refresh(location)
        return location

    async def get_location(self, user_id: uuid.UUID) -> DonorLocation:
        location = await self.db.get(DonorLocation, user_id)
        if location is None:
            raise DonorNotFound("No donor location on file")
        return location

    async def delete_location(self, user_id: uuid.UUID) -> None:
        location = await self.get_location(user_id)
        await self.db.delete(location)
        await self.db.flush()

    async def record_donation(self, user_id: uuid.UUID, donated_at: datetime) -> None:
        location = await self.db.get(DonorLocation, user_id)
        if location is None:
            logger.warning("Donation recorded for donor %s without a location row", user_id)
            return
        location.last_donation_date = donated_at
        await self.db.flush()
