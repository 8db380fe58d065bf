"""
Tests for the availability read path.
"""

from datetime import timedelta

import pytest

from careslot.exceptions import InvalidReservationError
from tests.conftest import T0


def at(hour: int, minute: int = 0):
    return T0.replace(hour=hour, minute=minute)


@pytest.fixture
def availability(core):
    return core.availability


class TestOpenSlots:

    @pytest.mark.asyncio
    async def test_empty_timeline(self, availability):
        slots = await availability.open_slots("spec-a", at(10), at(11), 30, step_minutes=30)
        assert [(s.start_time, s.end_time) for s in slots] == [(at(10), at(10, 30)), (at(10, 30), at(11))]

    @pytest.mark.asyncio
    async def test_active_hold_is_occupied(self, availability, hold_manager):
        await hold_manager.reserve("spec-a", "patient-1", at(10, 15), 30)

        slots = await availability.open_slots("spec-a", at(10), at(11, 30), 30)

        assert [s.start_time for s in slots] == [at(10, 45), at(11)]

    @pytest.mark.asyncio
    async def test_expired_hold_is_free_before_sweep(self, availability, hold_manager, clock):
        await hold_manager.reserve("spec-a", "patient-1", at(10), 30)
        clock.advance(seconds=60)

        slots = await availability.open_slots("spec-a", at(10), at(10, 30), 30)
        assert len(slots) == 1

    @pytest.mark.asyncio
    async def test_appointment_occupies_until_cancelled(self, availability, hold_manager, finalizer):
        hold = (await hold_manager.reserve("spec-a", "patient-1", at(10), 30)).hold
        appt = (await finalizer.commit(hold.id)).appointment

        assert await availability.open_slots("spec-a", at(10), at(10, 30), 30) == []
        await finalizer.cancel(appt.id)
        assert len(await availability.open_slots("spec-a", at(10), at(10, 30), 30)) == 1

    @pytest.mark.asyncio
    async def test_past_starts_are_skipped(self, availability, clock):
        clock.advance(minutes=20)
        slots = await availability.open_slots("spec-a", at(9), at(10), 15)
        assert slots[0].start_time == at(9, 30)

    @pytest.mark.asyncio
    async def test_invalid_window(self, availability):
        with pytest.raises(InvalidReservationError):
            await availability.open_slots("spec-a", at(11), at(10), 30)
        with pytest.raises(InvalidReservationError):
            await availability.open_slots("spec-a", at(10).replace(tzinfo=None), at(11), 30)
        with pytest.raises(InvalidReservationError):
            await availability.open_slots("spec-a", at(10), at(11), 0)


class TestNextOpenStart:

    @pytest.mark.asyncio
    async def test_rounds_up_to_whole_minute(self, availability):
        start = await availability.next_open_start("spec-a", at(10) + timedelta(seconds=5), 15, timedelta(minutes=30))
        assert start == at(10, 1)

    @pytest.mark.asyncio
    async def test_skips_occupied_interval(self, availability, hold_manager):
        await hold_manager.reserve("spec-a", "patient-1", at(10), 20)
        start = await availability.next_open_start("spec-a", at(10), 15, timedelta(minutes=30))
        assert start == at(10, 20)

    @pytest.mark.asyncio
    async def test_none_beyond_horizon(self, availability, hold_manager):
        await hold_manager.reserve("spec-a", "patient-1", at(10), 60)
        assert await availability.next_open_start("spec-a", at(10), 15, timedelta(minutes=30)) is None
