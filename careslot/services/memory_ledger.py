"""
In-memory Slot Ledger

Same transaction contract as the Postgres ledger, for tests and local
development. Writers on one specialist's timeline are serialised with an
asyncio.Lock per timeline; every mutation is journaled so a failed
transaction is rolled back. Only safe inside a single process and event loop.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from careslot.models.booking import (
    Appointment,
    AppointmentStatus,
    Hold,
    HoldState,
    LedgerInterval,
    intervals_overlap,
)
from careslot.services.slot_ledger import LedgerTransaction, SlotLedger

logger = logging.getLogger(__name__)

_Record = Union[Hold, Appointment]


class InMemorySlotLedger(SlotLedger):
    """Dict-backed ledger with per-timeline locks."""

    def __init__(self):
        self.holds: Dict[str, Hold] = {}
        self.appointments: Dict[str, Appointment] = {}
        self._timeline_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, specialist_id: str) -> asyncio.Lock:
        lock = self._timeline_locks.get(specialist_id)
        if lock is None:
            lock = asyncio.Lock()
            self._timeline_locks[specialist_id] = lock
        return lock

    @asynccontextmanager
    async def transaction(self):
        tx = InMemoryLedgerTransaction(self)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        finally:
            tx.release_locks()

    def _overlapping(
        self,
        specialist_id: str,
        start_time: datetime,
        end_time: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        found: List[LedgerInterval] = []
        for hold in self.holds.values():
            if (hold.specialist_id == specialist_id and hold.occupies_at(now)
                    and intervals_overlap(hold.start_time, hold.end_time, start_time, end_time)):
                found.append(LedgerInterval(
                    specialist_id=specialist_id,
                    start_time=hold.start_time,
                    end_time=hold.end_time,
                    source="hold",
                    ref_id=hold.id,
                ))
        for appt in self.appointments.values():
            if (appt.specialist_id == specialist_id and appt.occupies
                    and intervals_overlap(appt.start_time, appt.end_time, start_time, end_time)):
                found.append(LedgerInterval(
                    specialist_id=specialist_id,
                    start_time=appt.start_time,
                    end_time=appt.end_time,
                    source="appointment",
                    ref_id=appt.id,
                ))
        found.sort(key=lambda iv: (iv.start_time, iv.ref_id))
        return found

    async def occupied_intervals(
        self,
        specialist_id: str,
        window_start: datetime,
        window_end: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        return self._overlapping(specialist_id, window_start, window_end, now)

    async def expire_due_holds(self, now: datetime, batch_size: int) -> List[Hold]:
        due = sorted(
            (h for h in self.holds.values() if h.state == HoldState.ACTIVE and h.expires_at <= now),
            key=lambda h: (h.expires_at, h.id),
        )[:batch_size]
        expired = []
        for hold in due:
            # Conditional write; a commit that already won leaves the hold untouched
            current = self.holds.get(hold.id)
            if current is not None and current.state == HoldState.ACTIVE:
                updated = current.model_copy(update={"state": HoldState.EXPIRED, "closed_at": now})
                self.holds[hold.id] = updated
                expired.append(updated)
        return expired

    async def purge_terminal_holds(self, older_than: datetime) -> int:
        doomed = [
            h.id for h in self.holds.values()
            if h.state in (HoldState.RELEASED, HoldState.EXPIRED)
            and (h.closed_at or h.created_at) < older_than
        ]
        for hold_id in doomed:
            del self.holds[hold_id]
        return len(doomed)

    async def count_holds_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in HoldState}
        for hold in self.holds.values():
            counts[hold.state.value] += 1
        return counts

    async def get_hold(self, hold_id: str) -> Optional[Hold]:
        return self.holds.get(hold_id)

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        return self.appointments.get(appointment_id)


class InMemoryLedgerTransaction(LedgerTransaction):

    def __init__(self, ledger: InMemorySlotLedger):
        self.ledger = ledger
        self._held_locks: List[asyncio.Lock] = []
        self._locked_timelines: Set[str] = set()
        # (table, key, previous value or None when the row was inserted)
        self._undo: List[Tuple[str, str, Optional[_Record]]] = []

    async def lock_timeline(self, specialist_id: str) -> None:
        if specialist_id in self._locked_timelines:
            return
        lock = self.ledger._lock_for(specialist_id)
        await lock.acquire()
        self._held_locks.append(lock)
        self._locked_timelines.add(specialist_id)

    def release_locks(self) -> None:
        while self._held_locks:
            self._held_locks.pop().release()
        self._locked_timelines.clear()

    def rollback(self) -> None:
        if self._undo:
            logger.debug(f"Rolling back {len(self._undo)} in-memory ledger writes")
        while self._undo:
            table, key, previous = self._undo.pop()
            rows = self.ledger.holds if table == "holds" else self.ledger.appointments
            if previous is None:
                rows.pop(key, None)
            else:
                rows[key] = previous

    def _write_hold(self, hold: Hold) -> None:
        self._undo.append(("holds", hold.id, self.ledger.holds.get(hold.id)))
        self.ledger.holds[hold.id] = hold

    def _write_appointment(self, appointment: Appointment) -> None:
        self._undo.append(("appointments", appointment.id, self.ledger.appointments.get(appointment.id)))
        self.ledger.appointments[appointment.id] = appointment

    async def find_overlapping(
        self,
        specialist_id: str,
        start_time: datetime,
        end_time: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        return self.ledger._overlapping(specialist_id, start_time, end_time, now)

    async def expire_stale_holds(self, specialist_id: str, now: datetime) -> List[Hold]:
        stale = sorted(
            (h for h in self.ledger.holds.values()
             if h.specialist_id == specialist_id and h.state == HoldState.ACTIVE and h.is_expired_at(now)),
            key=lambda h: h.id,
        )
        expired = []
        for hold in stale:
            updated = hold.model_copy(update={"state": HoldState.EXPIRED, "closed_at": now})
            self._write_hold(updated)
            expired.append(updated)
        return expired

    async def find_active_hold_by_client_key(
        self,
        patient_id: str,
        client_hold_id: str,
        now: datetime
    ) -> Optional[Hold]:
        for hold in self.ledger.holds.values():
            if (hold.patient_id == patient_id and hold.client_hold_id == client_hold_id
                    and hold.occupies_at(now)):
                return hold
        return None

    async def insert_hold(self, hold: Hold) -> None:
        if hold.id in self.ledger.holds:
            raise ValueError(f"Hold {hold.id} already exists")
        self._write_hold(hold)

    async def get_hold(self, hold_id: str, for_update: bool = False) -> Optional[Hold]:
        return self.ledger.holds.get(hold_id)

    async def transition_hold(
        self,
        hold_id: str,
        from_state: HoldState,
        to_state: HoldState,
        now: datetime
    ) -> Optional[Hold]:
        current = self.ledger.holds.get(hold_id)
        if current is None or current.state != from_state:
            return None
        updated = current.model_copy(update={"state": to_state, "closed_at": now})
        self._write_hold(updated)
        return updated

    async def extend_hold(self, hold_id: str, expires_at: datetime) -> Optional[Hold]:
        current = self.ledger.holds.get(hold_id)
        if current is None or current.state != HoldState.ACTIVE:
            return None
        updated = current.model_copy(update={"expires_at": expires_at})
        self._write_hold(updated)
        return updated

    async def insert_appointment(self, appointment: Appointment) -> None:
        if appointment.id in self.ledger.appointments:
            raise ValueError(f"Appointment {appointment.id} already exists")
        if any(a.hold_id == appointment.hold_id for a in self.ledger.appointments.values()):
            raise ValueError(f"Hold {appointment.hold_id} already has an appointment")
        self._write_appointment(appointment)

    async def get_appointment(self, appointment_id: str, for_update: bool = False) -> Optional[Appointment]:
        return self.ledger.appointments.get(appointment_id)

    async def update_appointment_status(
        self,
        appointment_id: str,
        from_statuses: Iterable[AppointmentStatus],
        to_status: AppointmentStatus,
        now: datetime,
        metadata_patch: Optional[Dict] = None
    ) -> Optional[Appointment]:
        current = self.ledger.appointments.get(appointment_id)
        if current is None or current.status not in set(from_statuses):
            return None
        metadata = dict(current.metadata)
        if metadata_patch:
            metadata.update(metadata_patch)
        updated = current.model_copy(update={"status": to_status, "updated_at": now, "metadata": metadata})
        self._write_appointment(updated)
        return updated
