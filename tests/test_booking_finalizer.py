"""
Tests for BookingFinalizer: commit and the appointment lifecycle.
"""

import asyncio
import random
from datetime import timedelta
from decimal import Decimal

import pytest

from careslot.exceptions import TransientStorageError
from careslot.models.booking import AppointmentStatus, BookingOutcome, HoldState, intervals_overlap
from careslot.services.memory_ledger import InMemoryLedgerTransaction
from tests.conftest import T0


def at(hour: int, minute: int = 0):
    return T0.replace(hour=hour, minute=minute)


async def reserve(hold_manager, patient="patient-1", start=None, minutes=30, specialist="spec-a"):
    result = await hold_manager.reserve(specialist, patient, start or at(10), minutes)
    assert result.ok
    return result.hold


# ==================== Commit ====================

class TestCommit:

    @pytest.mark.asyncio
    async def test_commit_creates_pending_appointment(self, hold_manager, finalizer, ledger):
        hold = await reserve(hold_manager)

        result = await finalizer.commit(hold.id, fee=Decimal("80.00"), currency="EUR", metadata={"chief_complaint": "cough"})

        assert result.outcome == BookingOutcome.COMMITTED
        appt = result.appointment
        assert appt.status == AppointmentStatus.PENDING
        assert appt.hold_id == hold.id
        assert (appt.specialist_id, appt.patient_id) == ("spec-a", "patient-1")
        assert (appt.start_time, appt.end_time) == (hold.start_time, hold.end_time)
        assert appt.fee == Decimal("80.00") and appt.currency == "EUR"
        assert appt.metadata["chief_complaint"] == "cough"
        assert appt.metadata["consultation_type"] == "video"
        assert ledger.holds[hold.id].state == HoldState.COMMITTED
        assert ledger.appointments[appt.id] == appt

    @pytest.mark.asyncio
    async def test_currency_defaults_from_settings(self, hold_manager, finalizer):
        hold = await reserve(hold_manager)
        result = await finalizer.commit(hold.id)
        assert result.appointment.currency == "USD"
        assert result.appointment.fee is None

    @pytest.mark.asyncio
    async def test_commit_twice_reports_already_committed(self, hold_manager, finalizer, ledger):
        hold = await reserve(hold_manager)
        await finalizer.commit(hold.id)

        again = await finalizer.commit(hold.id)

        assert again.outcome == BookingOutcome.ALREADY_COMMITTED
        assert len(ledger.appointments) == 1

    @pytest.mark.asyncio
    async def test_concurrent_commits_create_one_appointment(self, hold_manager, finalizer, ledger):
        hold = await reserve(hold_manager)

        results = await asyncio.gather(*[finalizer.commit(hold.id) for _ in range(5)])

        outcomes = [r.outcome for r in results]
        assert outcomes.count(BookingOutcome.COMMITTED) == 1
        assert outcomes.count(BookingOutcome.ALREADY_COMMITTED) == 4
        assert len(ledger.appointments) == 1

    @pytest.mark.asyncio
    async def test_commit_after_ttl_expires_without_sweep(self, hold_manager, finalizer, ledger, clock):
        hold = await reserve(hold_manager)
        clock.advance(seconds=61)

        result = await finalizer.commit(hold.id)

        assert result.outcome == BookingOutcome.EXPIRED
        assert ledger.holds[hold.id].state == HoldState.EXPIRED
        assert ledger.appointments == {}

    @pytest.mark.asyncio
    async def test_commit_released_hold(self, hold_manager, finalizer):
        hold = await reserve(hold_manager)
        await hold_manager.release(hold.id, "patient-1")

        result = await finalizer.commit(hold.id)
        assert result.outcome == BookingOutcome.RELEASED

    @pytest.mark.asyncio
    async def test_commit_unknown_hold(self, finalizer):
        result = await finalizer.commit("missing")
        assert result.outcome == BookingOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_committed_interval_blocks_new_reserves(self, hold_manager, finalizer, clock):
        hold = await reserve(hold_manager)
        await finalizer.commit(hold.id)
        clock.advance(minutes=5)

        result = await hold_manager.reserve("spec-a", "patient-2", at(10, 15), 30)

        assert result.outcome == BookingOutcome.CONFLICT
        assert result.conflicts[0].source == "appointment"

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_transient_error(self, hold_manager, finalizer, ledger, monkeypatch):
        hold = await reserve(hold_manager)

        async def failing(self, *args, **kwargs):
            raise TransientStorageError("deadlock detected")

        monkeypatch.setattr(InMemoryLedgerTransaction, "insert_appointment", failing)
        result = await finalizer.commit(hold.id)

        assert result.outcome == BookingOutcome.TRANSIENT_ERROR
        assert ledger.holds[hold.id].state == HoldState.ACTIVE
        assert ledger.appointments == {}


# ==================== Appointment Lifecycle ====================

class TestLifecycle:

    @pytest.fixture
    async def appointment(self, hold_manager, finalizer):
        hold = await reserve(hold_manager)
        return (await finalizer.commit(hold.id)).appointment

    @pytest.mark.asyncio
    async def test_confirm_then_complete(self, finalizer, appointment):
        confirmed = await finalizer.confirm(appointment.id)
        completed = await finalizer.complete(appointment.id)

        assert confirmed.outcome == BookingOutcome.UPDATED
        assert confirmed.appointment.status == AppointmentStatus.CONFIRMED
        assert completed.appointment.status == AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, finalizer, appointment):
        await finalizer.confirm(appointment.id)
        again = await finalizer.confirm(appointment.id)
        assert again.outcome == BookingOutcome.UPDATED
        assert again.appointment.status == AppointmentStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel_frees_interval(self, hold_manager, finalizer, appointment, ledger):
        result = await finalizer.cancel(appointment.id, reason="patient request")

        assert result.appointment.status == AppointmentStatus.CANCELLED
        assert result.appointment.metadata["cancellation_reason"] == "patient request"
        rebook = await hold_manager.reserve("spec-a", "patient-2", at(10), 30)
        assert rebook.ok

    @pytest.mark.asyncio
    async def test_completed_appointment_cannot_be_cancelled(self, finalizer, appointment):
        await finalizer.complete(appointment.id)
        result = await finalizer.cancel(appointment.id)

        assert result.outcome == BookingOutcome.INVALID_TRANSITION
        assert result.appointment.status == AppointmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, finalizer):
        result = await finalizer.confirm("missing")
        assert result.outcome == BookingOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cancel_releases_assignment_claim(self, hold_manager, finalizer, tracker):
        await tracker.claim("spec-a", "token-1", ttl_seconds=1800)
        hold = (await hold_manager.reserve(
            "spec-a", "patient-1", at(11), 15, metadata={"assignment_token": "token-1"}
        )).hold
        appt = (await finalizer.commit(hold.id)).appointment

        await finalizer.cancel(appt.id)

        assert (await tracker.inflight_counts(["spec-a"]))["spec-a"] == 0


# ==================== End-to-end properties ====================

class TestBookingProperties:

    @pytest.mark.asyncio
    async def test_example_scenario(self, hold_manager, finalizer, core, clock):
        # A and B race for 10:00-10:30
        a, b = await asyncio.gather(
            hold_manager.reserve("spec-a", "patient-a", at(10), 30),
            hold_manager.reserve("spec-a", "patient-b", at(10), 30),
        )
        assert {a.outcome, b.outcome} == {BookingOutcome.RESERVED, BookingOutcome.CONFLICT}
        winner = a if a.ok else b

        committed = await finalizer.commit(winner.hold.id)
        assert committed.appointment.status == AppointmentStatus.PENDING

        # B moves to 10:30-11:00 and abandons it
        b_retry = await hold_manager.reserve("spec-a", "patient-b", at(10, 30), 30)
        assert b_retry.ok

        clock.advance(seconds=61)
        assert await core.sweeper.sweep() == 1

        c = await hold_manager.reserve("spec-a", "patient-c", at(10, 30), 30)
        assert c.ok

    @pytest.mark.asyncio
    async def test_no_overlapping_appointments_under_storm(self, hold_manager, finalizer, ledger, monkeypatch):
        original = InMemoryLedgerTransaction.find_overlapping

        async def yielding(self, *args, **kwargs):
            await asyncio.sleep(0)
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(InMemoryLedgerTransaction, "find_overlapping", yielding)
        rng = random.Random(7)

        async def attempt(i: int):
            start = at(10) + timedelta(minutes=5 * rng.randint(0, 24))
            result = await hold_manager.reserve("spec-a", f"patient-{i}", start, rng.choice([15, 30, 45]))
            if result.ok:
                await asyncio.sleep(0)
                await finalizer.commit(result.hold.id)

        await asyncio.gather(*[attempt(i) for i in range(60)])

        appts = [a for a in ledger.appointments.values() if a.occupies]
        assert appts
        for i, x in enumerate(appts):
            for y in appts[i + 1:]:
                assert not intervals_overlap(x.start_time, x.end_time, y.start_time, y.end_time)
