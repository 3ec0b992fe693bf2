"""
Donor responses to emergency alerts and the selection protocol.

    pending  -> selected | rejected | cancelled
    selected -> completed

Selecting a donor fulfils the alert through a compare-and-swap on the alert
row, so of two concurrent selections on one alert exactly one succeeds.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.errors import (
    DonorNotFound,
    DuplicateResponse,
    IncompatibleBloodType,
    InvalidResponseTransition,
    ResponseNotFound,
)
from bloodnode.models.emergency import EmergencyResponse, ResponseStatus
from bloodnode.services import alert_service
from bloodnode.services.clock import Clock, SystemClock
from bloodnode.services.compatibility import can_donate
from bloodnode.services.coverage import haversine_km
from bloodnode.services.donor_directory import SqlDonorDirectory

logger = logging.getLogger(__name__)

TRANSITIONS: dict[ResponseStatus, frozenset[ResponseStatus]] = {
    ResponseStatus.PENDING: frozenset({
        ResponseStatus.SELECTED,
        ResponseStatus.REJECTED,
        ResponseStatus.CANCELLED,
    }),
    ResponseStatus.SELECTED: frozenset({ResponseStatus.COMPLETED}),
}


def can_transition(current: ResponseStatus, target: ResponseStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def response_to_dict(response: EmergencyResponse) -> dict[str, Any]:
    return {
        "id": str(response.id),
        "alert_id": str(response.alert_id),
        "responder_id": str(response.responder_id),
        "blood_type": response.blood_type.value if response.blood_type else None,
        "distance_km": round(response.distance_km, 2) if response.distance_km is not None else None,
        "message": response.message,
        "can_donate_immediately": response.can_donate_immediately,
        "available_times": response.available_times or [],
        "contact_preference": response.contact_preference,
        "status": response.status.value,
        "created_at": response.created_at.isoformat() if response.created_at else None,
        "updated_at": response.updated_at.isoformat() if response.updated_at else None,
        "selected_at": response.selected_at.isoformat() if response.selected_at else None,
        "completed_at": response.completed_at.isoformat() if response.completed_at else None,
    }


def _coerce_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def get_response(db: AsyncSession, response_id: uuid.UUID | str) -> EmergencyResponse:
    response_id = _coerce_uuid(response_id)
    result = await db.execute(select(EmergencyResponse).where(EmergencyResponse.id == response_id))
    response = result.scalar_one_or_none()
    if response is None:
        raise ResponseNotFound(f"Emergency response {response_id} not found")
    return response


async def _transition(
    db: AsyncSession,
    response: EmergencyResponse,
    target: ResponseStatus,
    *,
    clock: Clock,
    **values: Any,
) -> EmergencyResponse:
    """Conditional ``response.status -> target`` guarded on the current status."""
    current = response.status
    if not can_transition(current, target):
        raise InvalidResponseTransition(
            f"Cannot move response {response.id} from {current.value} to {target.value}"
        )
    now = clock.now()
    result = await db.execute(
        update(EmergencyResponse)
        .where(EmergencyResponse.id == response.id, EmergencyResponse.status == current)
        .values(status=target, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidResponseTransition(
            f"Response {response.id} is no longer {current.value}"
        )
    await db.refresh(response)
    logger.info("Response %s: %s -> %s", response.id, current.value, target.value)
    return response


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

async def submit_response(
    db: AsyncSession,
    *,
    alert_id: uuid.UUID | str,
    donor_id: uuid.UUID | str,
    message: str | None = None,
    can_donate_immediately: bool = True,
    available_times: list[str] | None = None,
    contact_preference: str | None = None,
    clock: Clock | None = None,
) -> EmergencyResponse:
    """Record one donor's response to an active alert."""
    clock = clock or SystemClock()
    alert_id = _coerce_uuid(alert_id)
    donor_id = _coerce_uuid(donor_id)

    alert = await alert_service.get_alert(db, alert_id)
    alert_service.ensure_active(alert, clock.now())

    existing = await db.execute(
        select(EmergencyResponse.id).where(
            EmergencyResponse.alert_id == alert_id,
            EmergencyResponse.responder_id == donor_id,
        )
    )
    if existing.first() is not None:
        raise DuplicateResponse("You have already responded to this alert")

    donor = await SqlDonorDirectory(db).get_donor(donor_id)
    if donor is None:
        raise DonorNotFound("Set up your donor profile and location before responding")
    if donor.blood_type is None:
        raise IncompatibleBloodType("Your blood type is not on file")
    if not can_donate(donor.blood_type, alert.blood_type):
        raise IncompatibleBloodType(
            f"{donor.blood_type.value} cannot donate to {alert.blood_type.value}"
        )

    now = clock.now()
    response = EmergencyResponse(
        id=uuid.uuid4(),
        alert_id=alert_id,
        responder_id=donor_id,
        blood_type=donor.blood_type,
        latitude=donor.latitude,
        longitude=donor.longitude,
        distance_km=haversine_km(alert.latitude, alert.longitude, donor.latitude, donor.longitude),
        message=message,
        can_donate_immediately=can_donate_immediately,
        available_times=available_times or [],
        contact_preference=contact_preference
        or (donor.contact_preference.value if donor.contact_preference else None),
        status=ResponseStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(response)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise DuplicateResponse("You have already responded to this alert") from exc

    await alert_service.increment_responded(db, alert_id, clock=clock)
    logger.info("Donor %s responded to alert %s (%.1f km)", donor_id, alert_id, response.distance_km)
    return response


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

async def select_donor(
    db: AsyncSession,
    *,
    alert_id: uuid.UUID | str,
    response_id: uuid.UUID | str,
    clock: Clock | None = None,
) -> EmergencyResponse:
    """Select one pending response; fulfils the alert and cancels the rest."""
    clock = clock or SystemClock()
    alert_id = _coerce_uuid(alert_id)

    response = await get_response(db, response_id)
    if response.alert_id != alert_id:
        raise ResponseNotFound(f"Response {response.id} does not belong to alert {alert_id}")

    alert = await alert_service.get_alert(db, alert_id)
    alert_service.ensure_active(alert, clock.now())
    if response.status != ResponseStatus.PENDING:
        raise InvalidResponseTransition(f"Response {response.id} is {response.status.value}, not pending")

    await alert_service.mark_fulfilled(
        db,
        alert_id,
        selected_donor_id=response.responder_id,
        selected_response_id=response.id,
        clock=clock,
    )
    return await _transition(db, response, ResponseStatus.SELECTED, clock=clock, selected_at=clock.now())


async def cancel_pending_responses(
    db: AsyncSession,
    alert_id: uuid.UUID,
    *,
    keep_response_id: uuid.UUID | None = None,
    clock: Clock | None = None,
) -> int:
    """Bulk ``pending -> cancelled`` for an alert, except *keep_response_id*."""
    clock = clock or SystemClock()
    stmt = (
        update(EmergencyResponse)
        .where(
            EmergencyResponse.alert_id == alert_id,
            EmergencyResponse.status == ResponseStatus.PENDING,
        )
        .values(status=ResponseStatus.CANCELLED, updated_at=clock.now())
        .execution_options(synchronize_session=False)
    )
    if keep_response_id is not None:
        stmt = stmt.where(EmergencyResponse.id != keep_response_id)
    result = await db.execute(stmt)
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Follow-up transitions
# ---------------------------------------------------------------------------

async def complete_response(
    db: AsyncSession,
    response_id: uuid.UUID | str,
    *,
    clock: Clock | None = None,
) -> EmergencyResponse:
    """``selected -> completed`` once the donation happened; stamps the donor."""
    clock = clock or SystemClock()
    response = await get_response(db, response_id)
    now = clock.now()
    response = await _transition(db, response, ResponseStatus.COMPLETED, clock=clock, completed_at=now)
    await SqlDonorDirectory(db).record_donation(response.responder_id, now)
    return response


async def reject_response(
    db: AsyncSession,
    response_id: uuid.UUID | str,
    *,
    clock: Clock | None = None,
) -> EmergencyResponse:
    clock = clock or SystemClock()
    response = await get_response(db, response_id)
    return await _transition(db, response, ResponseStatus.REJECTED, clock=clock)


async def withdraw_response(
    db: AsyncSession,
    response_id: uuid.UUID | str,
    *,
    clock: Clock | None = None,
) -> EmergencyResponse:
    clock = clock or SystemClock()
    response = await get_response(db, response_id)
    return await _transition(db, response, ResponseStatus.CANCELLED, clock=clock)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def list_responses(db: AsyncSession, alert_id: uuid.UUID | str) -> list[EmergencyResponse]:
    result = await db.execute(
        select(EmergencyResponse)
        .where(EmergencyResponse.alert_id == _coerce_uuid(alert_id))
        .order_by(EmergencyResponse.created_at.asc())
    )
    return list(result.scalars().all())


async def get_stats(db: AsyncSession, alert_id: uuid.UUID | str) -> dict[str, int]:
    result = await db.execute(
        select(EmergencyResponse.status, func.count(EmergencyResponse.id))
        .where(EmergencyResponse.alert_id == _coerce_uuid(alert_id))
        .group_by(EmergencyResponse.status)
    )
    by_status = {status: count for status, count in result.all()}
    return {
        "total": sum(by_status.values()),
        "pending": by_status.get(ResponseStatus.PENDING, 0),
        "selected": by_status.get(ResponseStatus.SELECTED, 0),
        "completed": by_status.get(ResponseStatus.COMPLETED, 0),
        "rejected": by_status.get(ResponseStatus.REJECTED, 0),
    }
