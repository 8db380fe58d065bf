"""
Service wiring for the booking core.

Builds the ledger, directory and tracker backends selected in settings and
the services on top of them. The FastAPI lifespan and scripts share it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from careslot.config import BookingSettings, get_redis_client, get_settings
from careslot.services.assignment_tracker import (
    AssignmentTracker,
    InMemoryAssignmentTracker,
    RedisAssignmentTracker,
)
from careslot.services.availability_service import AvailabilityService
from careslot.services.booking_finalizer import BookingFinalizer
from careslot.services.hold_cleanup_job import ExpirySweeper
from careslot.services.hold_manager import HoldManager
from careslot.services.instant_connect import InstantConnectService
from careslot.services.match_engine import MatchEngine
from careslot.services.memory_ledger import InMemorySlotLedger
from careslot.services.slot_ledger import SlotLedger
from careslot.services.specialist_directory import (
    EligibilityPredicate,
    InMemorySpecialistDirectory,
    SpecialistDirectory,
    SupabaseSpecialistDirectory,
    allow_all,
)
from careslot.services.video_sessions import VideoSessionNotifier
from careslot.utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class BookingCore:
    settings: BookingSettings
    ledger: SlotLedger
    directory: SpecialistDirectory
    tracker: AssignmentTracker
    hold_manager: HoldManager
    finalizer: BookingFinalizer
    availability: AvailabilityService
    match_engine: MatchEngine
    sweeper: ExpirySweeper
    instant_connect: InstantConnectService
    video_sessions: Optional[VideoSessionNotifier] = field(default=None)

    async def close(self) -> None:
        self.sweeper.stop()
        if self.video_sessions is not None:
            await self.video_sessions.close()
        await self.ledger.close()


def assemble_booking_core(
    settings: BookingSettings,
    ledger: SlotLedger,
    directory: SpecialistDirectory,
    tracker: AssignmentTracker,
    video_sessions: Optional[VideoSessionNotifier] = None,
    eligibility: EligibilityPredicate = allow_all,
    clock: Callable[[], datetime] = utc_now
) -> BookingCore:
    """Wire services over already-built backends."""
    hold_manager = HoldManager(ledger, directory, settings, tracker=tracker, clock=clock)
    finalizer = BookingFinalizer(ledger, settings, tracker=tracker, clock=clock)
    availability = AvailabilityService(ledger, clock=clock)
    match_engine = MatchEngine(
        directory, tracker, hold_manager, availability, settings, eligibility=eligibility, clock=clock
    )
    return BookingCore(
        settings=settings,
        ledger=ledger,
        directory=directory,
        tracker=tracker,
        hold_manager=hold_manager,
        finalizer=finalizer,
        availability=availability,
        match_engine=match_engine,
        sweeper=ExpirySweeper(ledger, settings, tracker=tracker, clock=clock),
        instant_connect=InstantConnectService(match_engine, finalizer, directory, video_sessions),
        video_sessions=video_sessions,
    )


async def create_booking_core(settings: Optional[BookingSettings] = None) -> BookingCore:
    """
    Build backends from settings:
    - LEDGER_BACKEND: postgres (asyncpg) or memory
    - DIRECTORY_BACKEND: supabase or memory
    - TRACKER_BACKEND: redis or memory
    """
    settings = settings or get_settings()

    if settings.LEDGER_BACKEND == "postgres":
        from careslot.services.postgres_ledger import create_postgres_ledger
        ledger = await create_postgres_ledger(settings)
    else:
        logger.warning("Using in-memory slot ledger (single process only)")
        ledger = InMemorySlotLedger()

    if settings.DIRECTORY_BACKEND == "supabase":
        from careslot.database import create_supabase_client
        directory = SupabaseSpecialistDirectory(create_supabase_client(settings=settings))
    else:
        directory = InMemorySpecialistDirectory()

    if settings.TRACKER_BACKEND == "redis":
        tracker = RedisAssignmentTracker(get_redis_client(settings))
    else:
        tracker = InMemoryAssignmentTracker()

    core = assemble_booking_core(
        settings,
        ledger,
        directory,
        tracker,
        video_sessions=VideoSessionNotifier(settings),
    )
    logger.info(
        f"✅ Booking core ready (ledger={settings.LEDGER_BACKEND}, "
        f"directory={settings.DIRECTORY_BACKEND}, tracker={settings.TRACKER_BACKEND})"
    )
    return core
