"""Tests for donation eligibility."""

from datetime import timedelta

from bloodnode.services.availability import availability_status, is_available

from conftest import T0


class TestIsAvailable:

    def test_recent_donation_is_unavailable(self):
        assert is_available(T0 - timedelta(days=30), T0, 121) is False

    def test_never_donated_is_available(self):
        assert is_available(None, T0, 121) is True

    def test_boundary_is_inclusive(self):
        assert is_available(T0 - timedelta(days=121), T0, 121) is True
        assert is_available(T0 - timedelta(days=120, hours=23), T0, 121) is False

    def test_custom_cooldown(self):
        assert is_available(T0 - timedelta(days=60), T0, 56) is True


class TestAvailabilityStatus:

    def test_never_donated(self):
        status = availability_status(None, T0)
        assert status["status"] == "never_donated"
        assert status["is_available"] is True
        assert status["days_since_last_donation"] is None

    def test_unavailable_reports_days_remaining(self):
        status = availability_status(T0 - timedelta(days=30), T0, 121)
        assert status["status"] == "unavailable"
        assert status["days_since_last_donation"] == 30
        assert status["days_until_available"] == 91
        assert "91 days" in status["message"]

    def test_available_after_cooldown(self):
        status = availability_status(T0 - timedelta(days=200), T0, 121)
        assert status["status"] == "available"
        assert status["days_until_available"] == 0
