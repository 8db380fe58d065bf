"""
Shared fixtures for booking core tests.

Everything runs on the in-memory ledger, directory and tracker with a
controllable clock, so TTL behaviour is tested without sleeping.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from careslot.config import BookingSettings
from careslot.models.booking import SpecialistProfile
from careslot.services.assignment_tracker import InMemoryAssignmentTracker
from careslot.services.booking_core import assemble_booking_core
from careslot.services.memory_ledger import InMemorySlotLedger
from careslot.services.specialist_directory import InMemorySpecialistDirectory
from careslot.utils.circuit_breaker import video_session_breaker

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


def make_profile(specialist_id: str, **overrides) -> SpecialistProfile:
    data = dict(
        id=specialist_id,
        is_online=True,
        is_accepting_patients=True,
        languages=["en"],
        timezone="UTC",
        average_rating=4.5,
        specialty=["general_practice"],
        consultation_fee_min=Decimal("50.00"),
        currency="USD",
        verification_status="verified",
        video_consultation_enabled=True,
        in_person_enabled=True,
    )
    data.update(overrides)
    return SpecialistProfile(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return BookingSettings(
        _env_file=None,
        ENVIRONMENT="test",
        LEDGER_BACKEND="memory",
        DIRECTORY_BACKEND="memory",
        TRACKER_BACKEND="memory",
        SWEEPER_ENABLED=False,
        HOLD_TTL_SECONDS=60,
        HOLD_MAX_LIFETIME_SECONDS=600,
        TRANSIENT_RETRY_ATTEMPTS=3,
        TRANSIENT_RETRY_BASE_DELAY=0.0,
        TRANSIENT_RETRY_MAX_DELAY=0.0,
        SWEEP_BATCH_SIZE=500,
        MATCH_MAX_ATTEMPTS=3,
        INSTANT_CONSULT_DURATION_MINUTES=15,
        INSTANT_LEAD_SECONDS=60,
        INSTANT_HORIZON_MINUTES=30,
        VIDEO_SESSION_WEBHOOK_URL=None,
    )


@pytest.fixture
def ledger():
    return InMemorySlotLedger()


@pytest.fixture
def directory():
    return InMemorySpecialistDirectory([
        make_profile("spec-a"),
        make_profile("spec-b", languages=["en", "es"], timezone="Europe/Madrid", average_rating=4.8),
        make_profile("spec-c", is_online=False, in_person_enabled=False),
    ])


@pytest.fixture
def tracker(clock):
    return InMemoryAssignmentTracker(clock=clock.timestamp)


@pytest.fixture
def core(settings, ledger, directory, tracker, clock):
    return assemble_booking_core(settings, ledger, directory, tracker, clock=clock)


@pytest.fixture
def hold_manager(core):
    return core.hold_manager


@pytest.fixture
def finalizer(core):
    return core.finalizer


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Module-level breakers keep state between tests otherwise."""
    video_session_breaker.reset()
    yield
    video_session_breaker.reset()
