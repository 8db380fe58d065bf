"""
Tests for the slot ledger: interval arithmetic and the in-memory backend.
"""

from datetime import timedelta

import pytest

from careslot.models.booking import (
    Appointment,
    AppointmentStatus,
    Hold,
    HoldState,
    LedgerInterval,
    intervals_overlap,
)
from careslot.services.slot_ledger import ceil_to_minute, merge_intervals, next_open_start, open_starts
from tests.conftest import T0


def at(hour: int, minute: int = 0):
    return T0.replace(hour=hour, minute=minute)


def busy(start, end, ref="x", source="hold"):
    return LedgerInterval(specialist_id="spec-a", start_time=start, end_time=end, source=source, ref_id=ref)


def make_hold(hold_id="h1", specialist_id="spec-a", start=None, minutes=30, created=T0, ttl=60, **kw):
    return Hold(
        id=hold_id,
        specialist_id=specialist_id,
        patient_id=kw.pop("patient_id", "patient-1"),
        start_time=start or at(10),
        duration_minutes=minutes,
        created_at=created,
        expires_at=created + timedelta(seconds=ttl),
        **kw,
    )


def make_appointment(appt_id="a1", hold_id="h1", start=None, minutes=30, status=AppointmentStatus.PENDING):
    return Appointment(
        id=appt_id,
        hold_id=hold_id,
        specialist_id="spec-a",
        patient_id="patient-1",
        start_time=start or at(10),
        duration_minutes=minutes,
        status=status,
        created_at=T0,
        updated_at=T0,
    )


# ==================== Interval Arithmetic ====================

class TestIntervals:

    def test_half_open_back_to_back_do_not_overlap(self):
        assert not intervals_overlap(at(10), at(10, 30), at(10, 30), at(11))
        assert intervals_overlap(at(10), at(10, 30), at(10, 29), at(11))

    def test_contained_interval_overlaps(self):
        assert intervals_overlap(at(10), at(12), at(10, 30), at(11))

    def test_ceil_to_minute(self):
        assert ceil_to_minute(at(10)) == at(10)
        assert ceil_to_minute(at(10) + timedelta(seconds=1)) == at(10, 1)

    def test_merge_intervals_collapses_touching_and_overlapping(self):
        merged = merge_intervals([
            busy(at(11), at(11, 30)),
            busy(at(10), at(10, 30)),
            busy(at(10, 30), at(10, 45)),
            busy(at(10, 40), at(10, 50)),
        ])
        assert merged == [(at(10), at(10, 50)), (at(11), at(11, 30))]

    def test_next_open_start_empty_timeline(self):
        assert next_open_start([], at(10), 15, at(10, 30)) == at(10)

    def test_next_open_start_skips_busy_spans(self):
        occupied = [busy(at(10), at(10, 30)), busy(at(10, 40), at(11))]
        # 10:30-10:40 is too short for 15 minutes
        assert next_open_start(occupied, at(10), 15, at(12)) == at(11)
        assert next_open_start(occupied, at(10), 10, at(12)) == at(10, 30)

    def test_next_open_start_respects_latest_start(self):
        occupied = [busy(at(10), at(11))]
        assert next_open_start(occupied, at(10), 15, at(10, 30)) is None

    def test_open_starts_grid(self):
        occupied = [busy(at(10), at(10, 30))]
        starts = open_starts(occupied, at(9, 30), at(11), 30, 15)
        assert starts == [at(9, 30), at(10, 30)]

    def test_open_starts_window_must_fit_duration(self):
        assert open_starts([], at(10), at(10, 20), 30, 15) == []


# ==================== In-memory Ledger ====================

class TestInMemoryLedger:

    @pytest.mark.asyncio
    async def test_occupied_intervals_ignore_expired_holds_and_cancelled_appointments(self, ledger):
        ledger.holds["live"] = make_hold("live", start=at(10))
        ledger.holds["stale"] = make_hold("stale", start=at(11), created=T0 - timedelta(minutes=5))
        ledger.appointments["a1"] = make_appointment("a1", "h-old", start=at(12))
        ledger.appointments["a2"] = make_appointment("a2", "h-old2", start=at(13), status=AppointmentStatus.CANCELLED)

        occupied = await ledger.occupied_intervals("spec-a", at(9), at(14), T0)

        assert [iv.ref_id for iv in occupied] == ["live", "a1"]
        assert occupied[1].source == "appointment"

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, ledger):
        with pytest.raises(RuntimeError):
            async with ledger.transaction() as tx:
                await tx.lock_timeline("spec-a")
                await tx.insert_hold(make_hold("h1"))
                raise RuntimeError("boom")

        assert ledger.holds == {}
        assert not ledger._lock_for("spec-a").locked()

    @pytest.mark.asyncio
    async def test_rollback_restores_previous_state(self, ledger):
        ledger.holds["h1"] = make_hold("h1")
        with pytest.raises(RuntimeError):
            async with ledger.transaction() as tx:
                await tx.transition_hold("h1", HoldState.ACTIVE, HoldState.COMMITTED, T0)
                raise RuntimeError("boom")

        assert ledger.holds["h1"].state == HoldState.ACTIVE

    @pytest.mark.asyncio
    async def test_transition_hold_is_conditional(self, ledger):
        ledger.holds["h1"] = make_hold("h1")
        async with ledger.transaction() as tx:
            first = await tx.transition_hold("h1", HoldState.ACTIVE, HoldState.RELEASED, T0)
            second = await tx.transition_hold("h1", HoldState.ACTIVE, HoldState.COMMITTED, T0)

        assert first.state == HoldState.RELEASED
        assert second is None
        assert ledger.holds["h1"].state == HoldState.RELEASED

    @pytest.mark.asyncio
    async def test_second_appointment_for_same_hold_rejected(self, ledger):
        async with ledger.transaction() as tx:
            await tx.insert_appointment(make_appointment("a1", "h1"))

        with pytest.raises(ValueError):
            async with ledger.transaction() as tx:
                await tx.insert_appointment(make_appointment("a2", "h1", start=at(15)))

        assert list(ledger.appointments) == ["a1"]

    @pytest.mark.asyncio
    async def test_expire_due_holds_batches_oldest_first(self, ledger):
        for i in range(5):
            ledger.holds[f"h{i}"] = make_hold(f"h{i}", start=at(10 + i), created=T0 - timedelta(seconds=120 - i))
        ledger.holds["fresh"] = make_hold("fresh", start=at(16))

        expired = await ledger.expire_due_holds(T0, batch_size=3)

        assert [h.id for h in expired] == ["h0", "h1", "h2"]
        assert all(h.state == HoldState.EXPIRED for h in expired)
        assert ledger.holds["h3"].state == HoldState.ACTIVE
        assert ledger.holds["fresh"].state == HoldState.ACTIVE
        assert ledger.holds["h0"].closed_at == T0

    @pytest.mark.asyncio
    async def test_expire_due_holds_leaves_committed_holds(self, ledger):
        ledger.holds["h1"] = make_hold("h1", created=T0 - timedelta(minutes=5), state=HoldState.COMMITTED)
        assert await ledger.expire_due_holds(T0, batch_size=10) == []
        assert ledger.holds["h1"].state == HoldState.COMMITTED

    @pytest.mark.asyncio
    async def test_purge_keeps_committed_and_recent_holds(self, ledger):
        old = T0 - timedelta(days=10)
        ledger.holds["old-expired"] = make_hold("old-expired", created=old, state=HoldState.EXPIRED, closed_at=old)
        ledger.holds["old-committed"] = make_hold("old-committed", created=old, state=HoldState.COMMITTED, closed_at=old)
        ledger.holds["new-released"] = make_hold("new-released", state=HoldState.RELEASED, closed_at=T0)

        deleted = await ledger.purge_terminal_holds(T0 - timedelta(days=7))

        assert deleted == 1
        assert set(ledger.holds) == {"old-committed", "new-released"}

    @pytest.mark.asyncio
    async def test_count_holds_by_state(self, ledger):
        ledger.holds["h1"] = make_hold("h1")
        ledger.holds["h2"] = make_hold("h2", state=HoldState.EXPIRED)
        counts = await ledger.count_holds_by_state()
        assert counts == {"active": 1, "released": 0, "expired": 1, "committed": 0}
