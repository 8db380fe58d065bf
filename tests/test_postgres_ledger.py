"""
Tests for the asyncpg ledger: error mapping, SQL shape and row decoding.

The pool and connection are mocks; database behaviour (exclusion
constraint, SKIP LOCKED) is exercised against a real server in
integration environments only.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from careslot.exceptions import LedgerInvariantError, TransientStorageError
from careslot.models.booking import AppointmentStatus, HoldState
from careslot.services.postgres_ledger import (
    LEDGER_SCHEMA_SQL,
    PostgresSlotLedger,
    _rows_affected,
    storage_errors,
)
from tests.conftest import T0


def at(hour: int, minute: int = 0):
    return T0.replace(hour=hour, minute=minute)


def hold_row(**overrides):
    row = dict(
        id="h1",
        specialist_id="spec-a",
        patient_id="patient-1",
        start_time=at(10),
        duration_minutes=30,
        state="active",
        consultation_type="video",
        client_hold_id=None,
        created_at=T0,
        expires_at=T0 + timedelta(seconds=60),
        closed_at=None,
        metadata=None,
    )
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    return conn


@pytest.fixture
def pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.execute = AsyncMock(return_value="DELETE 0")
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def pg_ledger(pool):
    return PostgresSlotLedger(pool, schema="healthcare")


# ==================== Error mapping ====================

class TestStorageErrors:

    @pytest.mark.parametrize("error", [
        asyncpg.exceptions.DeadlockDetectedError("deadlock detected"),
        asyncpg.exceptions.SerializationError("could not serialize access"),
        asyncpg.exceptions.LockNotAvailableError("could not obtain lock"),
        asyncpg.exceptions.QueryCanceledError("canceling statement due to lock timeout"),
        ConnectionResetError("connection reset"),
    ])
    @pytest.mark.asyncio
    async def test_transient_errors(self, error):
        with pytest.raises(TransientStorageError) as exc_info:
            async with storage_errors("reserve"):
                raise error
        assert exc_info.value.cause is error

    @pytest.mark.asyncio
    async def test_exclusion_violation_is_invariant_breach(self):
        with pytest.raises(LedgerInvariantError):
            async with storage_errors("commit"):
                raise asyncpg.exceptions.ExclusionViolationError("conflicting key value")

    @pytest.mark.asyncio
    async def test_other_database_errors_propagate(self):
        with pytest.raises(asyncpg.exceptions.UniqueViolationError):
            async with storage_errors("reserve"):
                raise asyncpg.exceptions.UniqueViolationError("duplicate key")

    def test_rows_affected(self):
        assert _rows_affected("DELETE 3") == 3
        assert _rows_affected("UPDATE 0") == 0
        assert _rows_affected("") == 0
        assert _rows_affected(None) == 0


# ==================== Schema ====================

class TestSchema:

    def test_rejects_unsafe_schema_name(self, pool):
        with pytest.raises(ValueError):
            PostgresSlotLedger(pool, schema="healthcare; DROP TABLE x")

    def test_schema_sql_renders(self):
        sql = LEDGER_SCHEMA_SQL.format(schema="healthcare")
        assert "CREATE TABLE IF NOT EXISTS healthcare.appointment_holds" in sql
        assert "EXCLUDE USING gist" in sql
        assert "'{}'::jsonb" in sql

    @pytest.mark.asyncio
    async def test_create_schema(self, pg_ledger, conn):
        await pg_ledger.create_schema()
        sql = conn.execute.await_args.args[0]
        assert "healthcare.specialist_timelines" in sql


# ==================== Ledger reads and sweeps ====================

class TestPostgresLedger:

    @pytest.mark.asyncio
    async def test_occupied_intervals(self, pg_ledger, pool):
        pool.fetch.return_value = [
            {"source": "hold", "ref_id": "h1", "start_time": at(10), "end_time": at(10, 30)},
            {"source": "appointment", "ref_id": "a1", "start_time": at(11), "end_time": at(11, 30)},
        ]

        occupied = await pg_ledger.occupied_intervals("spec-a", at(9), at(12), T0)

        assert [(iv.source, iv.ref_id) for iv in occupied] == [("hold", "h1"), ("appointment", "a1")]
        args = pool.fetch.await_args.args
        assert args[1:5] == ("spec-a", at(9), at(12), T0)
        assert sorted(args[5]) == ["completed", "confirmed", "pending"]

    @pytest.mark.asyncio
    async def test_expire_due_holds_skips_locked_rows(self, pg_ledger, pool):
        pool.fetch.return_value = [
            hold_row(id="h1", state="expired", closed_at=T0),
            hold_row(id="h2", state="expired", closed_at=T0, metadata={"assignment_token": "t-2"}),
        ]

        expired = await pg_ledger.expire_due_holds(T0, batch_size=100)

        assert [h.id for h in expired] == ["h1", "h2"]
        assert expired[1].state == HoldState.EXPIRED
        assert expired[1].metadata == {"assignment_token": "t-2"}
        sql, now, batch = pool.fetch.await_args.args
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "RETURNING h.id, h.specialist_id" in sql
        assert (now, batch) == (T0, 100)

    @pytest.mark.asyncio
    async def test_expire_due_holds_transient_failure(self, pg_ledger, pool):
        pool.fetch.side_effect = asyncpg.exceptions.DeadlockDetectedError("deadlock detected")
        with pytest.raises(TransientStorageError):
            await pg_ledger.expire_due_holds(T0, batch_size=100)

    @pytest.mark.asyncio
    async def test_purge_terminal_holds(self, pg_ledger, pool):
        pool.execute.return_value = "DELETE 4"
        assert await pg_ledger.purge_terminal_holds(T0) == 4

    @pytest.mark.asyncio
    async def test_count_holds_by_state_fills_missing_states(self, pg_ledger, pool):
        pool.fetch.return_value = [{"state": "active", "n": 2}, {"state": "committed", "n": 5}]
        counts = await pg_ledger.count_holds_by_state()
        assert counts == {"active": 2, "released": 0, "expired": 0, "committed": 5}

    @pytest.mark.asyncio
    async def test_get_hold_decodes_row(self, pg_ledger, pool):
        pool.fetchrow.return_value = hold_row()

        hold = await pg_ledger.get_hold("h1")

        assert hold.state == HoldState.ACTIVE
        assert hold.end_time == at(10, 30)
        assert hold.metadata == {}

    @pytest.mark.asyncio
    async def test_get_hold_missing(self, pg_ledger):
        assert await pg_ledger.get_hold("missing") is None

    @pytest.mark.asyncio
    async def test_close_owned_pool(self, pg_ledger, pool):
        await pg_ledger.close()
        pool.close.assert_awaited_once()


# ==================== Transactions ====================

class TestPostgresTransaction:

    @pytest.mark.asyncio
    async def test_transaction_uses_configured_isolation(self, pool, conn):
        ledger = PostgresSlotLedger(pool, isolation="serializable")
        async with ledger.transaction():
            pass
        conn.transaction.assert_called_once_with(isolation="serializable")

    @pytest.mark.asyncio
    async def test_lock_timeline_creates_then_locks_row(self, pg_ledger, conn):
        async with pg_ledger.transaction() as tx:
            await tx.lock_timeline("spec-a")

        insert_sql = conn.execute.await_args.args[0]
        lock_sql = conn.fetchrow.await_args.args[0]
        assert "ON CONFLICT (specialist_id) DO NOTHING" in insert_sql
        assert "FOR UPDATE" in lock_sql
        assert conn.fetchrow.await_args.args[1] == "spec-a"

    @pytest.mark.asyncio
    async def test_deadlock_inside_transaction_is_transient(self, pg_ledger, conn):
        conn.fetchrow.side_effect = asyncpg.exceptions.DeadlockDetectedError("deadlock detected")
        with pytest.raises(TransientStorageError):
            async with pg_ledger.transaction() as tx:
                await tx.lock_timeline("spec-a")

    @pytest.mark.asyncio
    async def test_transition_hold_is_conditional_update(self, pg_ledger, conn):
        conn.fetchrow.return_value = hold_row(state="committed", closed_at=T0)

        async with pg_ledger.transaction() as tx:
            hold = await tx.transition_hold("h1", HoldState.ACTIVE, HoldState.COMMITTED, T0)

        sql, *params = conn.fetchrow.await_args.args
        assert "WHERE id = $1 AND state = $2" in sql
        assert params == ["h1", "active", "committed", T0]
        assert hold.state == HoldState.COMMITTED

    @pytest.mark.asyncio
    async def test_transition_hold_lost_race(self, pg_ledger, conn):
        async with pg_ledger.transaction() as tx:
            assert await tx.transition_hold("h1", HoldState.ACTIVE, HoldState.EXPIRED, T0) is None

    @pytest.mark.asyncio
    async def test_get_hold_for_update(self, pg_ledger, conn):
        conn.fetchrow.return_value = hold_row()
        async with pg_ledger.transaction() as tx:
            await tx.get_hold("h1", for_update=True)
        assert conn.fetchrow.await_args.args[0].endswith("FOR UPDATE")

    @pytest.mark.asyncio
    async def test_update_appointment_status_merges_metadata(self, pg_ledger, conn):
        async with pg_ledger.transaction() as tx:
            await tx.update_appointment_status(
                "a1",
                [AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED],
                AppointmentStatus.CANCELLED,
                T0,
                {"cancellation_reason": "patient request"},
            )

        sql, *params = conn.fetchrow.await_args.args
        assert "metadata || $4::jsonb" in sql
        assert params == ["a1", "cancelled", T0, {"cancellation_reason": "patient request"}, ["pending", "confirmed"]]
