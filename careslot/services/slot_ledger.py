"""
Slot Ledger

Single source of truth for occupied intervals on a specialist's timeline:
active holds that have not passed their TTL and appointments that are not
cancelled. All writes happen inside a LedgerTransaction, which serialises
writers per specialist through a timeline lock. Backends:

- PostgresSlotLedger (asyncpg): production, multi-instance safe
- InMemorySlotLedger: tests and local development, single process
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import AsyncContextManager, Dict, Iterable, List, Optional, Sequence, Tuple

from careslot.models.booking import (
    Appointment,
    AppointmentStatus,
    Hold,
    HoldState,
    LedgerInterval,
)

logger = logging.getLogger(__name__)


class LedgerTransaction(ABC):
    """
    Unit of work against the ledger.

    Everything done through one instance commits or rolls back together.
    Callers lock the specialist timeline before reading it for a decision.
    """

    @abstractmethod
    async def lock_timeline(self, specialist_id: str) -> None:
        """Block other writers on this specialist's timeline until the transaction ends."""

    @abstractmethod
    async def find_overlapping(
        self,
        specialist_id: str,
        start_time: datetime,
        end_time: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        """Live holds and occupying appointments overlapping [start_time, end_time)."""

    @abstractmethod
    async def expire_stale_holds(self, specialist_id: str, now: datetime) -> List[Hold]:
        """Mark this timeline's active holds whose TTL passed as expired. Returns the expired holds."""

    @abstractmethod
    async def find_active_hold_by_client_key(
        self,
        patient_id: str,
        client_hold_id: str,
        now: datetime
    ) -> Optional[Hold]:
        """Active, unexpired hold previously created with the same idempotency key."""

    @abstractmethod
    async def insert_hold(self, hold: Hold) -> None:
        ...

    @abstractmethod
    async def get_hold(self, hold_id: str, for_update: bool = False) -> Optional[Hold]:
        ...

    @abstractmethod
    async def transition_hold(
        self,
        hold_id: str,
        from_state: HoldState,
        to_state: HoldState,
        now: datetime
    ) -> Optional[Hold]:
        """
        Conditional write: only applies while the hold is still in from_state.

        Returns the updated hold, or None when the condition did not match
        (another transaction won the race).
        """

    @abstractmethod
    async def extend_hold(self, hold_id: str, expires_at: datetime) -> Optional[Hold]:
        """Move expires_at of an active hold. Returns None if the hold is no longer active."""

    @abstractmethod
    async def insert_appointment(self, appointment: Appointment) -> None:
        ...

    @abstractmethod
    async def get_appointment(self, appointment_id: str, for_update: bool = False) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def update_appointment_status(
        self,
        appointment_id: str,
        from_statuses: Iterable[AppointmentStatus],
        to_status: AppointmentStatus,
        now: datetime,
        metadata_patch: Optional[Dict] = None
    ) -> Optional[Appointment]:
        """Conditional status change; None when the appointment is not in from_statuses."""


class SlotLedger(ABC):
    """Storage backend for holds and appointments."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[LedgerTransaction]:
        """Open a transaction. Exceptions inside roll it back."""

    @abstractmethod
    async def occupied_intervals(
        self,
        specialist_id: str,
        window_start: datetime,
        window_end: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        """Snapshot read of occupied intervals overlapping the window, ordered by start."""

    @abstractmethod
    async def expire_due_holds(self, now: datetime, batch_size: int) -> List[Hold]:
        """Batched conditional update active -> expired for holds with expires_at <= now. Returns the expired holds."""

    @abstractmethod
    async def purge_terminal_holds(self, older_than: datetime) -> int:
        """Delete released/expired holds closed before older_than."""

    @abstractmethod
    async def count_holds_by_state(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def get_hold(self, hold_id: str) -> Optional[Hold]:
        ...

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        ...

    async def close(self) -> None:
        """Release backend resources."""


# ============================================================================
# Interval arithmetic (read path)
# ============================================================================

def ceil_to_minute(dt: datetime) -> datetime:
    """Round up to the next whole minute (no-op on exact minutes)."""
    if dt.second == 0 and dt.microsecond == 0:
        return dt
    return dt.replace(second=0, microsecond=0) + timedelta(minutes=1)


def merge_intervals(intervals: Iterable[LedgerInterval]) -> List[Tuple[datetime, datetime]]:
    """Collapse overlapping or touching intervals into sorted disjoint spans."""
    spans = sorted((iv.start_time, iv.end_time) for iv in intervals)
    merged: List[Tuple[datetime, datetime]] = []
    for start, end in spans:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def next_open_start(
    occupied: Sequence[LedgerInterval],
    earliest: datetime,
    duration_minutes: int,
    latest_start: datetime
) -> Optional[datetime]:
    """
    Earliest start >= earliest such that [start, start + duration) is free.

    Returns None if no such start exists at or before latest_start.
    """
    length = timedelta(minutes=duration_minutes)
    candidate = earliest
    for busy_start, busy_end in merge_intervals(occupied):
        if busy_end <= candidate:
            continue
        if candidate + length <= busy_start:
            break
        candidate = max(candidate, busy_end)
    if candidate > latest_start:
        return None
    return candidate


def open_starts(
    occupied: Sequence[LedgerInterval],
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    step_minutes: int
) -> List[datetime]:
    """Grid starts in [window_start, window_end) whose whole interval fits the window and is free."""
    length = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)
    busy = merge_intervals(occupied)

    starts: List[datetime] = []
    candidate = window_start
    idx = 0
    while candidate + length <= window_end:
        # Skip spans that end before the candidate
        while idx < len(busy) and busy[idx][1] <= candidate:
            idx += 1
        end = candidate + length
        clash = idx < len(busy) and busy[idx][0] < end
        if not clash:
            starts.append(candidate)
        candidate += step
    return starts
