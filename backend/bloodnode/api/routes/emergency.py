"""
Emergency alert API routes.

Endpoints:
    POST /emergency/alert                      - Raise an alert and notify compatible donors
    GET  /emergency/alert/{id}                 - Current alert state and counters
    POST /emergency/alert/{id}/cancel          - Cancel an active alert (owner)
    GET  /emergency/alert/{id}/responses       - Responses and stats (owner)
    GET  /emergency/available-donors           - Eligible compatible donors for an alert (owner)
    POST /emergency/respond                    - Donor responds to an alert
    POST /emergency/select-donor               - Select one responding donor (owner)
    POST /emergency/responses/{id}/complete    - Confirm the donation happened (owner)
    POST /emergency/responses/{id}/reject      - Decline a pending response (owner)
    POST /emergency/responses/{id}/withdraw    - Donor withdraws their pending response
"""

import logging
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.api.deps import get_app_settings, get_clock, get_transport
from bloodnode.api.middleware.audit import log_audit
from bloodnode.api.middleware.auth import get_current_user_id
from bloodnode.config import Settings
from bloodnode.db.postgres import get_db
from bloodnode.errors import DirectoryUnavailable
from bloodnode.models.donor_location import ContactPreference
from bloodnode.models.emergency import BloodType, EmergencyAlert, UrgencyLevel
from bloodnode.services import alert_service, response_service
from bloodnode.services.clock import Clock
from bloodnode.services.donor_directory import SqlDonorDirectory
from bloodnode.services.donor_matcher import find_compatible_donors
from bloodnode.services.notification_service import NotificationTransport, notify_selected_donor

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class EmergencyAlertCreateRequest(BaseModel):
    blood_type: BloodType
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    radius_km: Optional[float] = Field(default=None, description="Defaults to EMERGENCY_DEFAULT_RADIUS_KM")
    urgency_level: UrgencyLevel = UrgencyLevel.HIGH
    required_bags: int = Field(..., ge=1)
    address: Optional[str] = None
    hemoglobin_level: Optional[float] = None
    patient_condition: Optional[str] = None
    contact_info: Optional[str] = None
    reference: Optional[str] = None
    donation_place: Optional[str] = None
    donation_date: Optional[date] = None
    donation_time: Optional[str] = None


class EmergencyRespondRequest(BaseModel):
    alert_id: UUID
    donor_id: UUID
    message: Optional[str] = Field(default=None, max_length=2000)
    can_donate_immediately: bool = True
    available_times: list[str] = Field(default_factory=list)
    contact_preference: Optional[ContactPreference] = None


class SelectDonorRequest(BaseModel):
    alert_id: UUID
    response_id: UUID


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_owner(alert: EmergencyAlert, user_id: UUID) -> None:
    if alert.requester_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the requester can manage this alert",
        )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

@router.post("/emergency/alert")
async def create_emergency_alert(
    payload: EmergencyAlertCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
    transport: NotificationTransport = Depends(get_transport),
):
    """Raise an alert; always returns the alert id and counters, even with zero donors."""
    result = await alert_service.raise_alert(
        db,
        settings=settings,
        transport=transport,
        clock=clock,
        requester_id=user_id,
        blood_type=payload.blood_type,
        latitude=payload.lat,
        longitude=payload.lng,
        radius_km=payload.radius_km,
        urgency_level=payload.urgency_level,
        required_bags=payload.required_bags,
        address=payload.address,
        hemoglobin_level=payload.hemoglobin_level,
        patient_condition=payload.patient_condition,
        contact_info=payload.contact_info,
        reference=payload.reference,
        donation_place=payload.donation_place,
        donation_date=payload.donation_date,
        donation_time=payload.donation_time,
    )

    await log_audit(
        action="create",
        resource="emergency_alert",
        resource_id=result["alert_id"],
        user_id=user_id,
        details={
            "blood_type": payload.blood_type.value,
            "required_bags": payload.required_bags,
            "donors_notified": result["donors_notified"],
        },
        request=request,
        db=db,
    )
    return {"success": True, **result}


@router.get("/emergency/alert/{alert_id}")
async def get_emergency_alert(
    alert_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    alert = await alert_service.get_alert_checked(db, alert_id, clock=clock)
    return alert_service.alert_to_dict(alert, clock.now())


@router.post("/emergency/alert/{alert_id}/cancel")
async def cancel_emergency_alert(
    alert_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    alert = await alert_service.get_alert(db, alert_id)
    _require_owner(alert, user_id)

    await alert_service.cancel_alert(db, alert_id, clock=clock)
    await log_audit(
        action="cancel",
        resource="emergency_alert",
        resource_id=alert_id,
        user_id=user_id,
        request=request,
        db=db,
    )
    await db.refresh(alert)
    return {"success": True, "alert": alert_service.alert_to_dict(alert, clock.now())}


@router.get("/emergency/alert/{alert_id}/responses")
async def list_emergency_responses(
    alert_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    alert = await alert_service.get_alert(db, alert_id)
    _require_owner(alert, user_id)

    responses = await response_service.list_responses(db, alert_id)
    stats = await response_service.get_stats(db, alert_id)
    return {
        "alert_id": str(alert_id),
        "responses": [response_service.response_to_dict(r) for r in responses],
        "stats": stats,
    }


@router.get("/emergency/available-donors")
async def list_available_donors(
    alert_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
):
    """Compatible donors in range whose donation cooldown has passed."""
    alert = await alert_service.get_alert(db, alert_id)
    _require_owner(alert, user_id)

    matches = await find_compatible_donors(
        SqlDonorDirectory(db),
        alert.blood_type,
        alert.latitude,
        alert.longitude,
        alert.radius_km,
        clock=clock,
        cooldown_days=settings.DONATION_COOLDOWN_DAYS,
        only_available=True,
        exclude={alert.requester_id},
    )
    return {
        "alert_id": str(alert.id),
        "donors": [m.to_dict(include_contact=True) for m in matches],
        "total": len(matches),
    }


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

@router.post("/emergency/respond", status_code=status.HTTP_201_CREATED)
async def respond_to_emergency(
    payload: EmergencyRespondRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    if payload.donor_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only respond on your own behalf",
        )

    response = await response_service.submit_response(
        db,
        alert_id=payload.alert_id,
        donor_id=payload.donor_id,
        message=payload.message,
        can_donate_immediately=payload.can_donate_immediately,
        available_times=payload.available_times,
        contact_preference=payload.contact_preference.value if payload.contact_preference else None,
        clock=clock,
    )
    await log_audit(
        action="respond",
        resource="emergency_response",
        resource_id=response.id,
        user_id=user_id,
        details=f"alert {payload.alert_id}",
        request=request,
        db=db,
    )
    return {"success": True, "response": response_service.response_to_dict(response)}


@router.post("/emergency/select-donor")
async def select_emergency_donor(
    payload: SelectDonorRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    settings: Settings = Depends(get_app_settings),
    clock: Clock = Depends(get_clock),
    transport: NotificationTransport = Depends(get_transport),
):
    alert = await alert_service.get_alert(db, payload.alert_id)
    _require_owner(alert, user_id)

    response = await response_service.select_donor(
        db,
        alert_id=payload.alert_id,
        response_id=payload.response_id,
        clock=clock,
    )
    await log_audit(
        action="select",
        resource="emergency_response",
        resource_id=response.id,
        user_id=user_id,
        details=f"alert {payload.alert_id}",
        request=request,
        db=db,
    )
    await db.commit()
    await db.refresh(alert)

    try:
        donor = await SqlDonorDirectory(db).get_donor(response.responder_id)
    except DirectoryUnavailable:
        logger.warning("Alert %s: could not load selected donor for confirmation", alert.id)
        donor = None
    confirmation_sent = await notify_selected_donor(
        alert,
        donor,
        transport=transport,
        base_url=settings.APP_BASE_URL,
        timeout_seconds=settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
    )
    return {
        "success": True,
        "alert": alert_service.alert_to_dict(alert),
        "response": response_service.response_to_dict(response),
        "confirmation_sent": confirmation_sent,
    }


async def _load_owned_response(db: AsyncSession, response_id: UUID, user_id: UUID):
    response = await response_service.get_response(db, response_id)
    alert = await alert_service.get_alert(db, response.alert_id)
    _require_owner(alert, user_id)
    return response


@router.post("/emergency/responses/{response_id}/complete")
async def complete_emergency_response(
    response_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    await _load_owned_response(db, response_id, user_id)
    response = await response_service.complete_response(db, response_id, clock=clock)
    await log_audit(
        action="complete",
        resource="emergency_response",
        resource_id=response_id,
        user_id=user_id,
        request=request,
        db=db,
    )
    return {"success": True, "response": response_service.response_to_dict(response)}


@router.post("/emergency/responses/{response_id}/reject")
async def reject_emergency_response(
    response_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    await _load_owned_response(db, response_id, user_id)
    response = await response_service.reject_response(db, response_id, clock=clock)
    await log_audit(
        action="reject",
        resource="emergency_response",
        resource_id=response_id,
        user_id=user_id,
        request=request,
        db=db,
    )
    return {"success": True, "response": response_service.response_to_dict(response)}


@router.post("/emergency/responses/{response_id}/withdraw")
async def withdraw_emergency_response(
    response_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    response = await response_service.get_response(db, response_id)
    if response.responder_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only withdraw your own response",
        )
    response = await response_service.withdraw_response(db, response_id, clock=clock)
    await log_audit(
        action="withdraw",
        resource="emergency_response",
        resource_id=response_id,
        user_id=user_id,
        request=request,
        db=db,
    )
    return {"success": True, "response": response_service.response_to_dict(response)}
