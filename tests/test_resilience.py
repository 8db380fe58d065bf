"""
Tests for transient retry handling and booking core wiring.
"""

from unittest.mock import AsyncMock

import pytest

from careslot.exceptions import TransientStorageError
from careslot.resilience import with_transient_retry
from careslot.services.booking_core import create_booking_core
from careslot.services.memory_ledger import InMemorySlotLedger


class TestTransientRetry:

    @pytest.mark.asyncio
    async def test_retries_until_success(self, settings):
        func = AsyncMock(side_effect=[TransientStorageError(), TransientStorageError(), "done"])

        result = await with_transient_retry(settings, "reserve", func, "spec-a", flag=True)

        assert result == "done"
        assert func.await_count == 3
        func.assert_awaited_with("spec-a", flag=True)

    @pytest.mark.asyncio
    async def test_reraises_after_attempts(self, settings):
        func = AsyncMock(side_effect=TransientStorageError("deadlock"))

        with pytest.raises(TransientStorageError):
            await with_transient_retry(settings, "commit", func, attempts=2)

        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self, settings):
        func = AsyncMock(side_effect=ValueError("bug"))

        with pytest.raises(ValueError):
            await with_transient_retry(settings, "commit", func)

        assert func.await_count == 1


class TestCreateBookingCore:

    @pytest.mark.asyncio
    async def test_memory_backends(self, settings):
        core = await create_booking_core(settings)
        try:
            assert isinstance(core.ledger, InMemorySlotLedger)
            assert core.match_engine.hold_manager is core.hold_manager
            assert core.instant_connect.finalizer is core.finalizer
            assert core.video_sessions is not None and not core.video_sessions.enabled
        finally:
            await core.close()
