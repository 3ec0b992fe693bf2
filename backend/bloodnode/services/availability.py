"""
Donation eligibility derived from the last donation date.

A donor becomes eligible again once ``cooldown_days`` whole days have passed
since their last donation.  Never having donated counts as eligible.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

DEFAULT_COOLDOWN_DAYS = 121  # ~4 months


def days_since(last_donation_date: datetime, now: datetime) -> int:
    return (now - last_donation_date).days


def is_available(
    last_donation_date: datetime | None,
    now: datetime,
    cooldown_days: int = DEFAULT_COOLDOWN_DAYS,
) -> bool:
    if last_donation_date is None:
        return True
    return days_since(last_donation_date, now) >= cooldown_days


def availability_status(
    last_donation_date: datetime | None,
    now: datetime,
    cooldown_days: int = DEFAULT_COOLDOWN_DAYS,
) -> dict[str, Any]:
    """Eligibility summary shown to the donor."""
    if last_donation_date is None:
        return {
            "status": "never_donated",
            "is_available": True,
            "days_since_last_donation": None,
            "days_until_available": 0,
            "message": "Available to donate - no previous donation recorded",
        }

    elapsed = days_since(last_donation_date, now)
    if elapsed >= cooldown_days:
        return {
            "status": "available",
            "is_available": True,
            "days_since_last_donation": elapsed,
            "days_until_available": 0,
            "message": f"Available to donate - last donation {elapsed} days ago",
        }

    remaining = cooldown_days - elapsed
    return {
        "status": "unavailable",
        "is_available": False,
        "days_since_last_donation": elapsed,
        "days_until_available": remaining,
        "message": f"Available to donate in {remaining} days",
    }
