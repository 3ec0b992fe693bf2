"""
Donor profile routes.

Endpoints:
    POST   /donors/location  - Create or update the caller's donor location
    GET    /donors/location  - The caller's donor location and eligibility
    DELETE /donors/location  - Remove the caller from donor search
    GET    /donors/search    - Compatible public donors near a point
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.api.deps import get_app_settings, get_clock
from bloodnode.api.middleware.audit import log_audit
from bloodnode.api.middleware.auth import get_current_user_id
from bloodnode.config import Settings
from bloodnode.db.postgres import get_db
from bloodnode.errors import DonorNotFound, ValidationError
from bloodnode.models.donor_location import ContactPreference
from bloodnode.models.emergency import BloodType
from bloodnode.services.availability import availability_status
from bloodnode.services.clock import Clock
from bloodnode.services.donor_directory import SqlDonorDirectory, location_to_dict
from bloodnode.services.donor_matcher import find_compatible_donors

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class DonorLocationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    blood_type: Optional[BloodType] = Field(default=None, description="Omit to keep blood type private")
    address: Optional[str] = None
    is_available: bool = True
    emergency_contact: bool = True
    contact_preference: ContactPreference = ContactPreference.EMAIL
    last_donation_date: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/donors/location")
async def upsert_donor_location(
    payload: DonorLocationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
):
    directory = SqlDonorDirectory(db)
    if await directory.find_by_id(user_id) is None:
        raise DonorNotFound("Account not found")

    last_donation = payload.last_donation_date
    if last_donation is not None and last_donation.tzinfo is not None:
        last_donation = last_donation.astimezone(timezone.utc).replace(tzinfo=None)
    location = await directory.upsert_location(
        user_id,
        latitude=payload.lat,
        longitude=payload.lng,
        blood_type=payload.blood_type,
        address=payload.address,
        is_available=payload.is_available,
        emergency_contact=payload.emergency_contact,
        contact_preference=payload.contact_preference,
        last_donation_date=last_donation,
    )
    await log_audit(
        action="update",
        resource="donor_location",
        resource_id=user_id,
        user_id=user_id,
        request=request,
        db=db,
    )
    return {
        "success": True,
        "location": location_to_dict(location),
        "availability": availability_status(
            location.last_donation_date, clock.now(), settings.DONATION_COOLDOWN_DAYS,
        ),
    }


@router.get("/donors/location")
async def get_donor_location(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
):
    location = await SqlDonorDirectory(db).get_location(user_id)
    return {
        "location": location_to_dict(location),
        "availability": availability_status(
            location.last_donation_date, clock.now(), settings.DONATION_COOLDOWN_DAYS,
        ),
    }


@router.delete("/donors/location", status_code=status.HTTP_204_NO_CONTENT)
async def delete_donor_location(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    await SqlDonorDirectory(db).delete_location(user_id)
    await log_audit(
        action="delete",
        resource="donor_location",
        resource_id=user_id,
        user_id=user_id,
        request=request,
        db=db,
    )


@router.get("/donors/search")
async def search_donors(
    blood_type: BloodType,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = None,
    only_available: bool = False,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
):
    """Donors who can give to *blood_type*, nearest first.  Contact details are withheld."""
    if radius_km is None:
        radius_km = settings.EMERGENCY_DEFAULT_RADIUS_KM
    if not settings.EMERGENCY_MIN_RADIUS_KM <= radius_km <= settings.EMERGENCY_MAX_RADIUS_KM:
        raise ValidationError(
            f"radius_km must be between {settings.EMERGENCY_MIN_RADIUS_KM:g} "
            f"and {settings.EMERGENCY_MAX_RADIUS_KM:g}"
        )

    matches = await find_compatible_donors(
        SqlDonorDirectory(db),
        blood_type,
        lat,
        lng,
        radius_km,
        clock=clock,
        cooldown_days=settings.DONATION_COOLDOWN_DAYS,
        only_available=only_available,
        exclude={user_id},
    )
    return {
        "blood_type": blood_type.value,
        "radius_km": radius_km,
        "donors": [m.to_dict() for m in matches],
        "total": len(matches),
    }
