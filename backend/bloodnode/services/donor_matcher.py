"""
Compatible donor discovery.

Single call path used by alert dispatch, the available-donors listing and the
public donor search: plan a geohash precision for the radius, cover the disk
with prefixes, query the directory for compatible types and rank the hits by
great-circle distance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Iterable

from bloodnode.models.emergency import BloodType
from bloodnode.services import availability, compatibility
from bloodnode.services.clock import Clock, SystemClock
from bloodnode.services.coverage import choose_precision, cover_circle, haversine_km
from bloodnode.services.donor_directory import DonorRecord

logger = logging.getLogger(__name__)


class DonorDirectory(Protocol):
    async def find_available(
        self,
        blood_types: Iterable[BloodType],
        geohash_prefixes: Iterable[str],
        *,
        emergency_only: bool = False,
    ) -> list[DonorRecord]: ...


@dataclass
class DonorMatch:
    donor: DonorRecord
    distance_km: float
    is_available: bool

    def to_dict(self, *, include_contact: bool = False) -> dict[str, Any]:
        d = self.donor
        payload = {
            "user_id": str(d.user_id),
            "name": d.name,
            "blood_type": d.blood_type.value if d.blood_type else None,
            "distance_km": round(self.distance_km, 2),
            "is_available": self.is_available,
            "contact_preference": d.contact_preference.value if d.contact_preference else None,
            "last_donation_date": d.last_donation_date.isoformat() if d.last_donation_date else None,
        }
        if include_contact:
            payload["email"] = d.email
            payload["phone"] = d.phone
        return payload


async def find_compatible_donors(
    directory: DonorDirectory,
    required_type: BloodType | str,
    latitude: float,
    longitude: float,
    radius_km: float,
    *,
    clock: Clock | None = None,
    cooldown_days: int = availability.DEFAULT_COOLDOWN_DAYS,
    only_available: bool = False,
    emergency_only: bool = False,
    exclude: Iterable[Any] = (),
) -> list[DonorMatch]:
    """Donors who can give to *required_type* within *radius_km*, nearest first.

    An empty list means nobody matched.  Directory failures propagate as
    ``DirectoryUnavailable``.
    """
    clock = clock or SystemClock()
    precision = choose_precision(radius_km)
    prefixes = cover_circle(latitude, longitude, radius_km, precision)
    compatible = compatibility.donors_for(required_type)

    records = await directory.find_available(compatible, prefixes, emergency_only=emergency_only)

    now = clock.now()
    excluded = set(exclude)
    matches: list[DonorMatch] = []
    for record in records:
        if record.user_id in excluded:
            continue
        distance = haversine_km(latitude, longitude, record.latitude, record.longitude)
        if distance > radius_km:
            continue
        eligible = availability.is_available(record.last_donation_date, now, cooldown_days)
        if only_available and not eligible:
            continue
        matches.append(DonorMatch(donor=record, distance_km=distance, is_available=eligible))

    matches.sort(key=lambda m: m.distance_km)
    logger.debug(
        "Donor match %s r=%.1fkm p=%d: %d prefixes, %d candidates, %d matches",
        BloodType(required_type).value, radius_km, precision, len(prefixes), len(records), len(matches),
    )
    return matches
