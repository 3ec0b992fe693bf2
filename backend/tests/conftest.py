"""Shared fixtures: file-backed SQLite database, frozen clock, in-memory e-mail transport."""

import asyncio
import math
import uuid
from datetime import datetime, timedelta

import pytest

from bloodnode.config import Settings
from bloodnode.db.postgres import Base, build_engine, build_sessionmaker
import bloodnode.models  # noqa: F401
from bloodnode.models.donor_location import DonorLocation
from bloodnode.models.emergency import BloodType
from bloodnode.models.user import User
from bloodnode.services.notification_service import BatchResult, EmailMessage

T0 = datetime(2026, 3, 1, 12, 0, 0)

# Hospital in central Amman; most fixtures sit within a few km of it
CENTER = (31.9539, 35.9106)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


class FakeTransport:
    """Records every message; can reject, raise or stall for chosen addresses."""

    def __init__(self, *, reject=(), explode=(), slow=(), slow_seconds: float = 1.0):
        self.sent: list[EmailMessage] = []
        self.reject = set(reject)
        self.explode = set(explode)
        self.slow = set(slow)
        self.slow_seconds = slow_seconds
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_batch(self, messages: list[EmailMessage]) -> BatchResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            ok = failed = 0
            for m in messages:
                if m.to in self.slow:
                    await asyncio.sleep(self.slow_seconds)
                if m.to in self.explode:
                    raise ConnectionError("provider unreachable")
                if m.to in self.reject:
                    failed += 1
                    continue
                self.sent.append(m)
                ok += 1
            return BatchResult(succeeded=ok, failed=failed)
        finally:
            self.in_flight -= 1


def offset_point(lat: float, lng: float, distance_km: float, bearing_deg: float) -> tuple[float, float]:
    """Destination point *distance_km* away from (lat, lng) along *bearing_deg*."""
    r = 6371.0
    d = distance_km / r
    b = math.radians(bearing_deg)
    phi1, lmb1 = math.radians(lat), math.radians(lng)
    phi2 = math.asin(math.sin(phi1) * math.cos(d) + math.cos(phi1) * math.sin(d) * math.cos(b))
    lmb2 = lmb1 + math.atan2(
        math.sin(b) * math.sin(d) * math.cos(phi1),
        math.cos(d) - math.sin(phi1) * math.sin(phi2),
    )
    lng2 = (math.degrees(lmb2) + 540.0) % 360.0 - 180.0
    return math.degrees(phi2), lng2


async def add_user(db, *, name="Donor", email=None, public_profile=True, is_active=True) -> User:
    user_id = uuid.uuid4()
    user = User(
        id=user_id,
        name=name,
        email=email if email is not None else f"{user_id.hex[:8]}@example.org",
        public_profile=public_profile,
        is_active=is_active,
        created_at=T0,
    )
    db.add(user)
    await db.flush()
    return user


async def add_donor(
    db,
    blood_type,
    *,
    distance_km: float = 1.0,
    bearing: float = 0.0,
    center=CENTER,
    last_donation_date=None,
    is_available=True,
    emergency_contact=True,
    **user_kwargs,
) -> User:
    user = await add_user(db, **user_kwargs)
    lat, lng = offset_point(center[0], center[1], distance_km, bearing)
    db.add(DonorLocation(
        user_id=user.id,
        blood_type=BloodType(blood_type) if blood_type else None,
        latitude=lat,
        longitude=lng,
        is_available=is_available,
        emergency_contact=emergency_contact,
        last_donation_date=last_donation_date,
    ))
    await db.flush()
    return user


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'bloodnode-test.db'}",
        JWT_SECRET="test-secret",
        RESEND_API_KEY="",
        RATE_LIMIT_ENABLED=False,
        NOTIFICATION_SEND_TIMEOUT_SECONDS=0.2,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def run_db(settings):
    """Run ``scenario(sessionmaker)`` against a freshly created database."""

    def _run(scenario):
        async def _main():
            engine = build_engine(settings)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            try:
                return await scenario(build_sessionmaker(engine))
            finally:
                await engine.dispose()

        return asyncio.run(_main())

    return _run
