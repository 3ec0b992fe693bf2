"""Tests for the emergency alert lifecycle and alert dispatch."""

import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from bloodnode.errors import (
    AlertNotActive,
    AlertNotFound,
    ConflictError,
    DirectoryUnavailable,
    InvalidCoordinate,
    InvalidTransition,
    ValidationError,
)
from bloodnode.models.emergency import AlertStatus, EmergencyAlert, UrgencyLevel
from bloodnode.models.notification_log import DeliveryStatus, NotificationLog
from bloodnode.services import alert_service
from bloodnode.services.donor_directory import SqlDonorDirectory

from conftest import CENTER, T0, FakeTransport, FrozenClock, add_donor, add_user


def _fields(**overrides):
    fields = dict(
        blood_type="O+",
        latitude=CENTER[0],
        longitude=CENTER[1],
        required_bags=2,
        radius_km=10,
        urgency_level="critical",
    )
    fields.update(overrides)
    return fields


async def _new_alert(db, settings, clock, **overrides):
    requester = await add_user(db, name="Requester")
    alert = await alert_service.create_alert(
        db, settings=settings, requester_id=requester.id, clock=clock, **_fields(**overrides),
    )
    await db.commit()
    return alert


class TestCreateAlert:

    def test_sets_active_status_and_ttl(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                return await _new_alert(db, settings, clock)

        alert = run_db(scenario)
        assert alert.status == AlertStatus.ACTIVE
        assert alert.created_at == T0
        assert alert.expires_at == T0 + timedelta(hours=24)
        assert alert.donors_notified == 0
        assert alert.serial_number.startswith("EM")
        assert alert.urgency_level == UrgencyLevel.CRITICAL
        assert len(alert.location_geohash) == 7

    def test_default_radius_from_settings(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                return await _new_alert(db, settings, clock, radius_km=None)

        assert run_db(scenario).radius_km == settings.EMERGENCY_DEFAULT_RADIUS_KM

    @pytest.mark.parametrize("overrides,error", [
        ({"blood_type": "C+"}, ValidationError),
        ({"urgency_level": "whenever"}, ValidationError),
        ({"radius_km": 0.5}, ValidationError),
        ({"radius_km": 101}, ValidationError),
        ({"required_bags": 0}, ValidationError),
        ({"latitude": 123.0}, InvalidCoordinate),
    ])
    def test_rejects_invalid_input(self, run_db, settings, clock, overrides, error):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                with pytest.raises(error):
                    await _new_alert(db, settings, clock, **overrides)

        run_db(scenario)


class TestTransitions:

    def test_record_dispatch_is_monotonic(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                await alert_service.record_dispatch(db, alert.id, notified_count=5, responded_count=2, clock=clock)
                await alert_service.record_dispatch(db, alert.id, notified_count=3, responded_count=1, clock=clock)
                await db.commit()
                await db.refresh(alert)
                return alert

        alert = run_db(scenario)
        assert alert.donors_notified == 5
        assert alert.donors_responded == 2

    def test_record_dispatch_unknown_alert(self, run_db, clock):
        import uuid

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                with pytest.raises(AlertNotFound):
                    await alert_service.record_dispatch(db, uuid.uuid4(), notified_count=1, clock=clock)

        run_db(scenario)

    def test_cancel_is_terminal(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                await alert_service.cancel_alert(db, alert.id, clock=clock)
                await db.commit()
                with pytest.raises(InvalidTransition):
                    await alert_service.cancel_alert(db, alert.id, clock=clock)
                with pytest.raises(InvalidTransition):
                    await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=alert.requester_id, clock=clock)
                await db.refresh(alert)
                return alert

        alert = run_db(scenario)
        assert alert.status == AlertStatus.CANCELLED
        assert alert.cancelled_at == T0

    def test_mark_fulfilled_only_once(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                donor = await add_user(db)
                await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=donor.id, clock=clock)
                await db.commit()
                with pytest.raises(ConflictError):
                    await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=donor.id, clock=clock)
                await db.refresh(alert)
                return alert, donor.id

        alert, donor_id = run_db(scenario)
        assert alert.status == AlertStatus.FULFILLED
        assert alert.selected_donor_id == donor_id
        assert alert.fulfilled_at == T0

    def test_lost_selection_is_logged(self, run_db, settings, clock, caplog):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                donor = await add_user(db)
                await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=donor.id, clock=clock)
                await db.commit()
                with pytest.raises(InvalidTransition):
                    await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=donor.id, clock=clock)
                return alert.id

        with caplog.at_level(logging.WARNING, logger="bloodnode.services.alert_service"):
            alert_id = run_db(scenario)
        assert f"Emergency alert {alert_id}: selection lost" in caplog.text

    def test_unknown_alert(self, run_db, clock):
        import uuid

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                with pytest.raises(AlertNotFound):
                    await alert_service.get_alert(db, uuid.uuid4())
                with pytest.raises(AlertNotFound):
                    await alert_service.cancel_alert(db, uuid.uuid4(), clock=clock)

        run_db(scenario)


class TestExpiry:

    def test_sweep_expires_only_overdue_alerts(self, run_db, settings):
        clock = FrozenClock()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                old = await _new_alert(db, settings, clock)
                clock.advance(hours=12)
                fresh = await _new_alert(db, settings, clock)
                clock.advance(hours=13)
                expired = await alert_service.expire_alerts(db, clock=clock)
                await db.commit()
                again = await alert_service.expire_alerts(db, clock=clock)
                await db.refresh(old)
                await db.refresh(fresh)
                return expired, again, old.status, fresh.status

        expired, again, old_status, fresh_status = run_db(scenario)
        assert (expired, again) == (1, 0)
        assert old_status == AlertStatus.EXPIRED
        assert fresh_status == AlertStatus.ACTIVE

    def test_overdue_alert_refuses_transitions_before_sweep(self, run_db, settings):
        clock = FrozenClock()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                clock.advance(hours=25)
                with pytest.raises(AlertNotActive):
                    await alert_service.mark_fulfilled(db, alert.id, selected_donor_id=alert.requester_id, clock=clock)
                with pytest.raises(AlertNotActive):
                    await alert_service.cancel_alert(db, alert.id, clock=clock)
                stored = await db.scalar(select(EmergencyAlert.status).where(EmergencyAlert.id == alert.id))
                checked = await alert_service.get_alert_checked(db, alert.id, clock=clock)
                return stored, checked.status

        stored, checked = run_db(scenario)
        assert stored == AlertStatus.ACTIVE
        assert checked == AlertStatus.EXPIRED

    def test_alert_is_still_active_at_exact_expiry(self, run_db, settings):
        clock = FrozenClock()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                clock.advance(hours=24)
                assert clock.now() == alert.expires_at
                alert_service.ensure_active(alert, clock.now())
                swept = await alert_service.expire_alerts(db, clock=clock)
                checked = await alert_service.get_alert_checked(db, alert.id, clock=clock)
                status_then = checked.status
                clock.advance(seconds=1)
                with pytest.raises(AlertNotActive):
                    alert_service.ensure_active(alert, clock.now())
                swept_after = await alert_service.expire_alerts(db, clock=clock)
                return swept, status_then, swept_after

        swept, status_then, swept_after = run_db(scenario)
        assert swept == 0
        assert status_then == AlertStatus.ACTIVE
        assert swept_after == 1

    def test_cancel_at_exact_expiry_succeeds(self, run_db, settings):
        clock = FrozenClock()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                clock.advance(hours=24)
                await alert_service.cancel_alert(db, alert.id, clock=clock)
                await db.commit()
                await db.refresh(alert)
                return alert.status

        assert run_db(scenario) == AlertStatus.CANCELLED

    def test_alert_to_dict_reports_effective_status(self, run_db, settings):
        clock = FrozenClock()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                alert = await _new_alert(db, settings, clock)
                clock.advance(days=2)
                return alert_service.alert_to_dict(alert, clock.now())

        assert run_db(scenario)["status"] == "expired"


class TestRaiseAlert:

    def test_notifies_compatible_eligible_donors(self, run_db, settings, clock):
        transport = FakeTransport()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                requester = await add_user(db, name="Requester")
                await add_donor(db, "O-", distance_km=2, email="o-neg@example.org")
                await add_donor(db, "O+", distance_km=4, email="o-pos@example.org")
                await add_donor(db, "A+", distance_km=1, email="a-pos@example.org")  # incompatible
                await add_donor(db, "O+", distance_km=3, email="recent@example.org",
                                last_donation_date=T0 - timedelta(days=10))
                await add_donor(db, "O+", distance_km=40, email="far@example.org")
                await db.commit()
                result = await alert_service.raise_alert(
                    db, settings=settings, transport=transport, clock=clock,
                    requester_id=requester.id, **_fields(),
                )
                await db.commit()
                logs = (await db.execute(select(NotificationLog))).scalars().all()
                return result, logs

        result, logs = run_db(scenario)
        assert result["total_donors_found"] == 2
        assert result["donors_notified"] == 2
        assert result["alert"]["donors_notified"] == 2
        assert {m.to for m in transport.sent} == {"o-neg@example.org", "o-pos@example.org"}
        assert all("URGENT: O+ Blood Needed" in m.subject for m in transport.sent)
        assert {log.delivery_status for log in logs} == {DeliveryStatus.SENT}

    def test_zero_donors_still_creates_alert(self, run_db, settings, clock):
        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                requester = await add_user(db)
                result = await alert_service.raise_alert(
                    db, settings=settings, transport=FakeTransport(), clock=clock,
                    requester_id=requester.id, **_fields(),
                )
                await db.commit()
                alert = await alert_service.get_alert(db, result["alert_id"])
                return result, alert

        result, alert = run_db(scenario)
        assert result["total_donors_found"] == 0
        assert result["donors_notified"] == 0
        assert alert.status == AlertStatus.ACTIVE

    def test_failed_sends_do_not_fail_the_alert(self, run_db, settings, clock):
        transport = FakeTransport(reject={"bounce@example.org"}, explode={"down@example.org"})

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                requester = await add_user(db)
                await add_donor(db, "O-", distance_km=1, email="ok@example.org")
                await add_donor(db, "O-", distance_km=2, email="bounce@example.org")
                await add_donor(db, "O-", distance_km=3, email="down@example.org")
                await db.commit()
                result = await alert_service.raise_alert(
                    db, settings=settings, transport=transport, clock=clock,
                    requester_id=requester.id, **_fields(blood_type="O-"),
                )
                await db.commit()
                return result

        result = run_db(scenario)
        assert result["total_donors_found"] == 3
        assert result["donors_notified"] == 1
        assert result["notification"]["failed"] == 2

    def test_requester_is_not_notified(self, run_db, settings, clock):
        transport = FakeTransport()

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                requester = await add_donor(db, "O-", distance_km=0.5, email="me@example.org")
                await db.commit()
                return await alert_service.raise_alert(
                    db, settings=settings, transport=transport, clock=clock,
                    requester_id=requester.id, **_fields(blood_type="O-"),
                )

        assert run_db(scenario)["total_donors_found"] == 0
        assert transport.sent == []

    def test_directory_failure_cancels_the_alert(self, run_db, settings, clock):
        transport = FakeTransport()
        failing = AsyncMock(side_effect=DirectoryUnavailable("donor directory unreachable"))

        async def scenario(sessionmaker):
            async with sessionmaker() as db:
                requester = await add_user(db)
                with patch.object(SqlDonorDirectory, "find_available", new=failing):
                    with pytest.raises(DirectoryUnavailable) as excinfo:
                        await alert_service.raise_alert(
                            db, settings=settings, transport=transport, clock=clock,
                            requester_id=requester.id, **_fields(),
                        )
                stmt = select(EmergencyAlert).execution_options(populate_existing=True)
                alerts = (await db.execute(stmt)).scalars().all()
                return str(excinfo.value), alerts

        message, alerts = run_db(scenario)
        assert len(alerts) == 1
        assert alerts[0].status == AlertStatus.CANCELLED
        assert str(alerts[0].id) in message
        assert transport.sent == []
