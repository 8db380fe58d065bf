"""
Availability read path

Shows which intervals of a specialist's timeline are still bookable. Active
unexpired holds and non-cancelled appointments count as occupied. Results
are a snapshot; Reserve re-checks under the timeline lock.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from careslot.exceptions import InvalidReservationError
from careslot.models.booking import OpenSlot
from careslot.services.slot_ledger import SlotLedger, ceil_to_minute, next_open_start, open_starts
from careslot.utils.timezone_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


class AvailabilityService:

    def __init__(self, ledger: SlotLedger, clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self._clock = clock

    async def open_slots(
        self,
        specialist_id: str,
        window_start: datetime,
        window_end: datetime,
        duration_minutes: int,
        step_minutes: int = 15
    ) -> List[OpenSlot]:
        """
        Free slots of duration_minutes on a step_minutes grid inside the window.

        The grid is anchored at window_start; starts in the past are skipped.

        Raises:
            InvalidReservationError: Bad window, duration or step
        """
        window_start, window_end = self._validate_window(window_start, window_end)
        if duration_minutes <= 0 or step_minutes <= 0:
            raise InvalidReservationError("duration_minutes and step_minutes must be positive", reason="invalid_duration")

        now = self._clock()
        occupied = await self.ledger.occupied_intervals(specialist_id, window_start, window_end, now)

        length = timedelta(minutes=duration_minutes)
        slots = [
            OpenSlot(
                specialist_id=specialist_id,
                start_time=start,
                end_time=start + length,
                duration_minutes=duration_minutes,
            )
            for start in open_starts(occupied, window_start, window_end, duration_minutes, step_minutes)
            if start > now
        ]
        logger.debug(
            f"Specialist {specialist_id}: {len(slots)} open slot(s) between "
            f"{window_start.isoformat()} and {window_end.isoformat()} ({len(occupied)} occupied)"
        )
        return slots

    async def next_open_start(
        self,
        specialist_id: str,
        earliest: datetime,
        duration_minutes: int,
        horizon: timedelta
    ) -> Optional[datetime]:
        """
        Earliest whole-minute start >= earliest where duration_minutes fits,
        starting no later than earliest + horizon.
        """
        earliest = ceil_to_minute(ensure_aware(earliest))
        latest_start = earliest + horizon
        window_end = latest_start + timedelta(minutes=duration_minutes)
        occupied = await self.ledger.occupied_intervals(specialist_id, earliest, window_end, self._clock())
        return next_open_start(occupied, earliest, duration_minutes, latest_start)

    @staticmethod
    def _validate_window(window_start: datetime, window_end: datetime):
        try:
            window_start = ensure_aware(window_start)
            window_end = ensure_aware(window_end)
        except ValueError:
            raise InvalidReservationError("window bounds must include a timezone", reason="naive_datetime")
        if window_end <= window_start:
            raise InvalidReservationError("window_end must be after window_start", reason="invalid_window")
        return window_start, window_end
