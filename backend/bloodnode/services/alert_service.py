"""
Emergency alert lifecycle: creation, dispatch counters, fulfilment,
cancellation and expiry.

    active -> fulfilled | cancelled | expired     (all terminal)

Every transition is a conditional UPDATE guarded on ``status == active`` so a
concurrent transition can never be overwritten.  An alert whose ``expires_at``
has passed is treated as expired even if the sweep has not reached it yet.
"""

from __future__ import annotations

import logging
import random
import string
import time
import uuid
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bloodnode.config import Settings
from bloodnode.errors import (
    AlertNotActive,
    AlertNotFound,
    DirectoryUnavailable,
    InvalidTransition,
    ValidationError,
)
from bloodnode.models.emergency import (
    AlertStatus,
    BloodType,
    EmergencyAlert,
    UrgencyLevel,
)
from bloodnode.services.clock import Clock, SystemClock
from bloodnode.services.geohash import encode, validate_point

logger = logging.getLogger(__name__)

ALERT_GEOHASH_PRECISION = 7

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_BASE36[rem])
    return "".join(reversed(out))


def generate_serial_number() -> str:
    """Human-friendly reference, e.g. ``EMLZ4K2QX8A7F``."""
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=5))
    return f"EM{stamp}{suffix}"


def _coerce_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def is_expired(alert: EmergencyAlert, now) -> bool:
    return alert.status == AlertStatus.ACTIVE and alert.expires_at is not None and now > alert.expires_at


def effective_status(alert: EmergencyAlert, now) -> AlertStatus:
    return AlertStatus.EXPIRED if is_expired(alert, now) else alert.status


def alert_to_dict(alert: EmergencyAlert, now=None) -> dict[str, Any]:
    status = effective_status(alert, now) if now is not None else alert.status
    return {
        "id": str(alert.id),
        "serial_number": alert.serial_number,
        "requester_id": str(alert.requester_id),
        "blood_type": alert.blood_type.value,
        "latitude": alert.latitude,
        "longitude": alert.longitude,
        "geohash": alert.location_geohash,
        "address": alert.address,
        "radius_km": alert.radius_km,
        "urgency_level": alert.urgency_level.value,
        "required_bags": alert.required_bags,
        "hemoglobin_level": alert.hemoglobin_level,
        "patient_condition": alert.patient_condition,
        "contact_info": alert.contact_info,
        "reference": alert.reference,
        "donation_place": alert.donation_place,
        "donation_date": alert.donation_date.isoformat() if alert.donation_date else None,
        "donation_time": alert.donation_time,
        "status": status.value,
        "donors_notified": alert.donors_notified,
        "donors_responded": alert.donors_responded,
        "selected_donor_id": str(alert.selected_donor_id) if alert.selected_donor_id else None,
        "selected_response_id": str(alert.selected_response_id) if alert.selected_response_id else None,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
        "updated_at": alert.updated_at.isoformat() if alert.updated_at else None,
        "expires_at": alert.expires_at.isoformat() if alert.expires_at else None,
        "fulfilled_at": alert.fulfilled_at.isoformat() if alert.fulfilled_at else None,
        "cancelled_at": alert.cancelled_at.isoformat() if alert.cancelled_at else None,
    }


async def _diagnose(db: AsyncSession, alert_id: uuid.UUID, now, *, wanted: AlertStatus) -> None:
    """Raise the precise error for a conditional update that matched nothing."""
    result = await db.execute(
        select(EmergencyAlert.status, EmergencyAlert.expires_at).where(EmergencyAlert.id == alert_id)
    )
    row = result.first()
    if row is None:
        raise AlertNotFound(f"Emergency alert {alert_id} not found")
    status, expires_at = row
    if status == AlertStatus.ACTIVE and expires_at is not None and now > expires_at:
        raise AlertNotActive(f"Emergency alert {alert_id} has expired")
    raise InvalidTransition(f"Cannot move alert {alert_id} from {status.value} to {wanted.value}")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_alert(
    db: AsyncSession,
    *,
    settings: Settings,
    requester_id: uuid.UUID | str,
    blood_type: BloodType | str,
    latitude: float,
    longitude: float,
    required_bags: int,
    radius_km: float | None = None,
    urgency_level: UrgencyLevel | str = UrgencyLevel.HIGH,
    address: str | None = None,
    hemoglobin_level: float | None = None,
    patient_condition: str | None = None,
    contact_info: str | None = None,
    reference: str | None = None,
    donation_place: str | None = None,
    donation_date: date | None = None,
    donation_time: str | None = None,
    clock: Clock | None = None,
) -> EmergencyAlert:
    """Validate and persist a new active alert (flushed, not committed)."""
    clock = clock or SystemClock()

    try:
        blood_type = BloodType(blood_type)
    except ValueError:
        raise ValidationError(f"Unknown blood type {blood_type!r}")
    try:
        urgency_level = UrgencyLevel(urgency_level)
    except ValueError:
        raise ValidationError(f"Unknown urgency level {urgency_level!r}")

    validate_point(latitude, longitude)

    if radius_km is None:
        radius_km = settings.EMERGENCY_DEFAULT_RADIUS_KM
    if not settings.EMERGENCY_MIN_RADIUS_KM <= radius_km <= settings.EMERGENCY_MAX_RADIUS_KM:
        raise ValidationError(
            f"radius_km must be between {settings.EMERGENCY_MIN_RADIUS_KM:g} "
            f"and {settings.EMERGENCY_MAX_RADIUS_KM:g}"
        )
    if required_bags is None or required_bags < 1:
        raise ValidationError("required_bags must be at least 1")

    now = clock.now()
    alert = EmergencyAlert(
        id=uuid.uuid4(),
        serial_number=generate_serial_number(),
        requester_id=_coerce_uuid(requester_id),
        blood_type=blood_type,
        latitude=latitude,
        longitude=longitude,
        location_geohash=encode(latitude, longitude, ALERT_GEOHASH_PRECISION),
        address=address,
        radius_km=radius_km,
        urgency_level=urgency_level,
        required_bags=required_bags,
        hemoglobin_level=hemoglobin_level,
        patient_condition=patient_condition,
        contact_info=contact_info,
        reference=reference,
        donation_place=donation_place,
        donation_date=donation_date,
        donation_time=donation_time,
        status=AlertStatus.ACTIVE,
        donors_notified=0,
        donors_responded=0,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=settings.EMERGENCY_ALERT_TTL_HOURS),
    )
    db.add(alert)
    await db.flush()

    logger.info(
        "Created emergency alert %s [%s/%s] r=%.1fkm bags=%d",
        alert.id, blood_type.value, urgency_level.value, radius_km, required_bags,
    )
    return alert


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_alert(db: AsyncSession, alert_id: uuid.UUID | str) -> EmergencyAlert:
    alert_id = _coerce_uuid(alert_id)
    result = await db.execute(select(EmergencyAlert).where(EmergencyAlert.id == alert_id))
    alert = result.scalar_one_or_none()
    if alert is None:
        raise AlertNotFound(f"Emergency alert {alert_id} not found")
    return alert


async def get_alert_checked(
    db: AsyncSession,
    alert_id: uuid.UUID | str,
    *,
    clock: Clock | None = None,
) -> EmergencyAlert:
    """Load an alert, persisting the lazy ``active -> expired`` transition if due."""
    clock = clock or SystemClock()
    alert = await get_alert(db, alert_id)
    now = clock.now()
    if is_expired(alert, now):
        await db.execute(
            update(EmergencyAlert)
            .where(EmergencyAlert.id == alert.id, EmergencyAlert.status == AlertStatus.ACTIVE)
            .values(status=AlertStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.refresh(alert)
        logger.info("Emergency alert %s expired on read", alert.id)
    return alert


def ensure_active(alert: EmergencyAlert, now) -> None:
    """Raise ``AlertNotActive`` unless the alert accepts mutations right now."""
    if alert.status != AlertStatus.ACTIVE:
        raise AlertNotActive(f"Emergency alert {alert.id} is {alert.status.value}")
    if is_expired(alert, now):
        raise AlertNotActive(f"Emergency alert {alert.id} has expired")


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(EmergencyAlert.status, func.count(EmergencyAlert.id)).group_by(EmergencyAlert.status)
    )
    counts = {s.value: 0 for s in AlertStatus}
    for status, count in result.all():
        counts[status.value] = count
    return counts


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def record_dispatch(
    db: AsyncSession,
    alert_id: uuid.UUID | str,
    *,
    notified_count: int,
    responded_count: int | None = None,
    clock: Clock | None = None,
) -> None:
    """Raise the dispatch counters; neither counter ever decreases."""
    clock = clock or SystemClock()
    alert_id = _coerce_uuid(alert_id)
    values: dict[str, Any] = {
        "donors_notified": case(
            (EmergencyAlert.donors_notified < notified_count, notified_count),
            else_=EmergencyAlert.donors_notified,
        ),
        "updated_at": clock.now(),
    }
    if responded_count is not None:
        values["donors_responded"] = case(
            (EmergencyAlert.donors_responded < responded_count, responded_count),
            else_=EmergencyAlert.donors_responded,
        )
    result = await db.execute(
        update(EmergencyAlert)
        .where(EmergencyAlert.id == alert_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise AlertNotFound(f"Emergency alert {alert_id} not found")


async def increment_responded(db: AsyncSession, alert_id: uuid.UUID, *, clock: Clock | None = None) -> None:
    clock = clock or SystemClock()
    await db.execute(
        update(EmergencyAlert)
        .where(EmergencyAlert.id == alert_id)
        .values(donors_responded=EmergencyAlert.donors_responded + 1, updated_at=clock.now())
        .execution_options(synchronize_session=False)
    )


async def mark_fulfilled(
    db: AsyncSession,
    alert_id: uuid.UUID | str,
    *,
    selected_donor_id: uuid.UUID,
    selected_response_id: uuid.UUID | None = None,
    clock: Clock | None = None,
) -> None:
    """Compare-and-swap ``active -> fulfilled`` and cancel competing responses.

    Exactly one caller wins for a given alert.  A caller that loses gets
    ``InvalidTransition`` once the alert has left ``active``, and
    ``AlertNotActive`` while an overdue row still reads ``active``.
    """
    from bloodnode.services.response_service import cancel_pending_responses

    clock = clock or SystemClock()
    alert_id = _coerce_uuid(alert_id)
    now = clock.now()

    result = await db.execute(
        update(EmergencyAlert)
        .where(
            EmergencyAlert.id == alert_id,
            EmergencyAlert.status == AlertStatus.ACTIVE,
            EmergencyAlert.expires_at >= now,
        )
        .values(
            status=AlertStatus.FULFILLED,
            selected_donor_id=selected_donor_id,
            selected_response_id=selected_response_id,
            fulfilled_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Emergency alert %s: selection lost, alert no longer active", alert_id)
        await _diagnose(db, alert_id, now, wanted=AlertStatus.FULFILLED)

    cancelled = await cancel_pending_responses(
        db, alert_id, keep_response_id=selected_response_id, clock=clock,
    )
    logger.info(
        "Emergency alert %s fulfilled by donor %s (%d competing responses cancelled)",
        alert_id, selected_donor_id, cancelled,
    )


async def cancel_alert(
    db: AsyncSession,
    alert_id: uuid.UUID | str,
    *,
    clock: Clock | None = None,
) -> None:
    """``active -> cancelled``; pending responses are cancelled with it."""
    from bloodnode.services.response_service import cancel_pending_responses

    clock = clock or SystemClock()
    alert_id = _coerce_uuid(alert_id)
    now = clock.now()

    result = await db.execute(
        update(EmergencyAlert)
        .where(
            EmergencyAlert.id == alert_id,
            EmergencyAlert.status == AlertStatus.ACTIVE,
            EmergencyAlert.expires_at >= now,
        )
        .values(status=AlertStatus.CANCELLED, cancelled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await _diagnose(db, alert_id, now, wanted=AlertStatus.CANCELLED)

    await cancel_pending_responses(db, alert_id, clock=clock)
    logger.info("Emergency alert %s cancelled", alert_id)


async def expire_alerts(db: AsyncSession, *, clock: Clock | None = None) -> int:
    """Sweep: move every overdue active alert to ``expired``.  Returns the count."""
    clock = clock or SystemClock()
    now = clock.now()
    result = await db.execute(
        update(EmergencyAlert)
        .where(EmergencyAlert.status == AlertStatus.ACTIVE, EmergencyAlert.expires_at < now)
        .values(status=AlertStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.info("Expired %d emergency alert(s)", count)
    return count


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

async def _abandon_alert(db: AsyncSession, alert_id: uuid.UUID, clock: Clock) -> None:
    await db.rollback()
    try:
        await cancel_alert(db, alert_id, clock=clock)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Emergency alert %s: could not cancel after failed donor search", alert_id)
    else:
        logger.error("Emergency alert %s cancelled: donor search failed", alert_id)


async def raise_alert(
    db: AsyncSession,
    *,
    settings: Settings,
    transport,
    clock: Clock | None = None,
    requester_id: uuid.UUID | str,
    **fields: Any,
) -> dict[str, Any]:
    """Create an alert, find eligible compatible donors and notify them.

    The alert is committed before any donor is contacted.  Notification
    failures only show up in the returned counters.  If the donor search
    itself fails the alert is cancelled and ``DirectoryUnavailable`` names it,
    so a retry does not leave a second active alert behind.
    """
    from bloodnode.services.donor_directory import SqlDonorDirectory
    from bloodnode.services.donor_matcher import find_compatible_donors
    from bloodnode.services.notification_service import fan_out

    clock = clock or SystemClock()
    alert = await create_alert(db, settings=settings, requester_id=requester_id, clock=clock, **fields)
    await db.commit()
    alert_id = alert.id

    try:
        matches = await find_compatible_donors(
            SqlDonorDirectory(db),
            alert.blood_type,
            alert.latitude,
            alert.longitude,
            alert.radius_km,
            clock=clock,
            cooldown_days=settings.DONATION_COOLDOWN_DAYS,
            only_available=True,
            emergency_only=True,
            exclude={alert.requester_id},
        )
    except DirectoryUnavailable as exc:
        await _abandon_alert(db, alert_id, clock)
        raise DirectoryUnavailable(
            f"Donor search failed for emergency alert {alert_id}; the alert was cancelled"
        ) from exc

    outcome = await fan_out(
        db,
        alert,
        matches,
        transport=transport,
        base_url=settings.APP_BASE_URL,
        max_concurrency=settings.NOTIFICATION_MAX_CONCURRENCY,
        timeout_seconds=settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
    )
    await record_dispatch(db, alert.id, notified_count=outcome.notified, clock=clock)
    await db.refresh(alert)

    logger.info(
        "Emergency alert %s dispatched: %d donors found, %d notified",
        alert.id, len(matches), outcome.notified,
    )
    return {
        "alert_id": str(alert.id),
        "serial_number": alert.serial_number,
        "donors_notified": outcome.notified,
        "total_donors_found": len(matches),
        "notification": outcome.to_dict(),
        "alert": alert_to_dict(alert),
    }
