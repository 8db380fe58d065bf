"""
PostgreSQL Slot Ledger (asyncpg)

Correctness comes from the database, not from in-process locks, because
only the database sees every instance's writes:

- Each transaction locks the specialist's row in specialist_timelines
  (SELECT ... FOR UPDATE) before its overlap check, so writers on one
  timeline are serialised and writers on different timelines never wait
  on each other.
- State changes are conditional UPDATEs (WHERE state = 'active'), so a
  Commit and a Sweep racing on one hold resolve to exactly one winner.
- An exclusion constraint on non-cancelled appointments is the last line
  of defence against overlapping bookings.

Serialization failures, deadlocks, lock timeouts, cancelled statements and
dropped connections surface as TransientStorageError.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from careslot.exceptions import LedgerInvariantError, TransientStorageError
from careslot.models.booking import (
    OCCUPYING_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    Hold,
    HoldState,
    LedgerInterval,
)
from careslot.services.slot_ledger import LedgerTransaction, SlotLedger

logger = logging.getLogger(__name__)

TRANSIENT_DB_ERRORS = (
    asyncpg.exceptions.TransactionRollbackError,  # serialization_failure, deadlock_detected
    asyncpg.exceptions.LockNotAvailableError,
    asyncpg.exceptions.QueryCanceledError,  # statement_timeout / lock_timeout
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    ConnectionError,
    asyncio.TimeoutError,
)

_IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

_OCCUPYING_STATUSES = sorted(s.value for s in OCCUPYING_APPOINTMENT_STATUSES)

LEDGER_SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS btree_gist;

CREATE SCHEMA IF NOT EXISTS {schema};

CREATE TABLE IF NOT EXISTS {schema}.specialist_timelines (
    specialist_id TEXT PRIMARY KEY,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS {schema}.appointment_holds (
    id TEXT PRIMARY KEY,
    specialist_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
    state TEXT NOT NULL DEFAULT 'active'
        CHECK (state IN ('active', 'released', 'expired', 'committed')),
    consultation_type TEXT NOT NULL DEFAULT 'video',
    client_hold_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    closed_at TIMESTAMPTZ,
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    CHECK (end_time > start_time)
);

CREATE INDEX IF NOT EXISTS appointment_holds_timeline_idx
    ON {schema}.appointment_holds (specialist_id, start_time) WHERE state = 'active';
CREATE INDEX IF NOT EXISTS appointment_holds_expiry_idx
    ON {schema}.appointment_holds (expires_at) WHERE state = 'active';
CREATE INDEX IF NOT EXISTS appointment_holds_client_key_idx
    ON {schema}.appointment_holds (patient_id, client_hold_id) WHERE client_hold_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS {schema}.appointments (
    id TEXT PRIMARY KEY,
    hold_id TEXT NOT NULL UNIQUE REFERENCES {schema}.appointment_holds (id),
    specialist_id TEXT NOT NULL,
    patient_id TEXT NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'confirmed', 'completed', 'cancelled')),
    fee NUMERIC(12, 2),
    currency TEXT NOT NULL DEFAULT 'USD',
    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT appointments_no_overlap EXCLUDE USING gist (
        specialist_id WITH =,
        tstzrange(start_time, end_time, '[)') WITH &&
    ) WHERE (status <> 'cancelled')
);

CREATE INDEX IF NOT EXISTS appointments_timeline_idx
    ON {schema}.appointments (specialist_id, start_time) WHERE status <> 'cancelled';
"""

_HOLD_COLUMNS = (
    "id, specialist_id, patient_id, start_time, duration_minutes, state, consultation_type, "
    "client_hold_id, created_at, expires_at, closed_at, metadata"
)
# Qualified for UPDATE ... FROM, where "id" is ambiguous
_HOLD_COLUMNS_QUALIFIED = ", ".join(f"h.{col.strip()}" for col in _HOLD_COLUMNS.split(","))
_APPOINTMENT_COLUMNS = (
    "id, hold_id, specialist_id, patient_id, start_time, duration_minutes, status, fee, "
    "currency, metadata, created_at, updated_at"
)


def _row_to_hold(row: asyncpg.Record) -> Hold:
    data = dict(row)
    data["metadata"] = data.get("metadata") or {}
    return Hold(**data)


def _row_to_appointment(row: asyncpg.Record) -> Appointment:
    data = dict(row)
    data["metadata"] = data.get("metadata") or {}
    return Appointment(**data)


def _row_to_interval(row: asyncpg.Record, specialist_id: str) -> LedgerInterval:
    return LedgerInterval(
        specialist_id=specialist_id,
        start_time=row["start_time"],
        end_time=row["end_time"],
        source=row["source"],
        ref_id=row["ref_id"],
    )


def _rows_affected(status: str) -> int:
    """Parse asyncpg command status such as 'DELETE 3'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


@asynccontextmanager
async def storage_errors(operation: str):
    """Normalise asyncpg failures into the ledger's error taxonomy."""
    try:
        yield
    except asyncpg.exceptions.ExclusionViolationError as e:
        logger.critical(f"Ledger invariant violated during {operation}: {e}")
        raise LedgerInvariantError(message=f"Overlapping appointments rejected by database: {e}") from e
    except TRANSIENT_DB_ERRORS as e:
        logger.warning(f"Transient storage failure during {operation}: {type(e).__name__}: {e}")
        raise TransientStorageError(f"{operation} failed: {type(e).__name__}", cause=e) from e


class PostgresSlotLedger(SlotLedger):
    """Slot ledger over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, schema: str = "healthcare", isolation: str = "read_committed"):
        if not _IDENTIFIER_RE.match(schema):
            raise ValueError(f"Invalid schema name: {schema!r}")
        self.pool = pool
        self.schema = schema
        self.isolation = isolation
        self._overlap_sql = f"""
            SELECT 'hold' AS source, id AS ref_id, start_time, end_time
              FROM {schema}.appointment_holds
             WHERE specialist_id = $1 AND state = 'active' AND expires_at > $4
               AND start_time < $3 AND end_time > $2
            UNION ALL
            SELECT 'appointment' AS source, id AS ref_id, start_time, end_time
              FROM {schema}.appointments
             WHERE specialist_id = $1 AND status = ANY($5::text[])
               AND start_time < $3 AND end_time > $2
            ORDER BY start_time, ref_id
        """

    async def create_schema(self) -> None:
        """Apply LEDGER_SCHEMA_SQL (idempotent)."""
        async with storage_errors("create_schema"):
            async with self.pool.acquire() as conn:
                await conn.execute(LEDGER_SCHEMA_SQL.format(schema=self.schema))
        logger.info(f"Ledger schema ensured in '{self.schema}'")

    @asynccontextmanager
    async def transaction(self):
        async with storage_errors("transaction"):
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation=self.isolation):
                    yield PostgresLedgerTransaction(conn, self)

    async def occupied_intervals(
        self,
        specialist_id: str,
        window_start: datetime,
        window_end: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        async with storage_errors("occupied_intervals"):
            rows = await self.pool.fetch(
                self._overlap_sql, specialist_id, window_start, window_end, now, _OCCUPYING_STATUSES
            )
        return [_row_to_interval(row, specialist_id) for row in rows]

    async def expire_due_holds(self, now: datetime, batch_size: int) -> List[Hold]:
        # SKIP LOCKED: holds being committed right now are left to that Commit
        sql = f"""
            UPDATE {self.schema}.appointment_holds AS h
               SET state = 'expired', closed_at = $1
              FROM (
                    SELECT id FROM {self.schema}.appointment_holds
                     WHERE state = 'active' AND expires_at <= $1
                     ORDER BY expires_at, id
                     LIMIT $2
                     FOR UPDATE SKIP LOCKED
                   ) AS due
             WHERE h.id = due.id AND h.state = 'active'
         RETURNING {_HOLD_COLUMNS_QUALIFIED}
        """
        async with storage_errors("expire_due_holds"):
            rows = await self.pool.fetch(sql, now, batch_size)
        return [_row_to_hold(row) for row in rows]

    async def purge_terminal_holds(self, older_than: datetime) -> int:
        sql = f"""
            DELETE FROM {self.schema}.appointment_holds
             WHERE state IN ('released', 'expired')
               AND COALESCE(closed_at, created_at) < $1
        """
        async with storage_errors("purge_terminal_holds"):
            status = await self.pool.execute(sql, older_than)
        return _rows_affected(status)

    async def count_holds_by_state(self) -> Dict[str, int]:
        sql = f"SELECT state, count(*) AS n FROM {self.schema}.appointment_holds GROUP BY state"
        async with storage_errors("count_holds_by_state"):
            rows = await self.pool.fetch(sql)
        counts = {state.value: 0 for state in HoldState}
        counts.update({row["state"]: row["n"] for row in rows})
        return counts

    async def get_hold(self, hold_id: str) -> Optional[Hold]:
        sql = f"SELECT {_HOLD_COLUMNS} FROM {self.schema}.appointment_holds WHERE id = $1"
        async with storage_errors("get_hold"):
            row = await self.pool.fetchrow(sql, hold_id)
        return _row_to_hold(row) if row else None

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        sql = f"SELECT {_APPOINTMENT_COLUMNS} FROM {self.schema}.appointments WHERE id = $1"
        async with storage_errors("get_appointment"):
            row = await self.pool.fetchrow(sql, appointment_id)
        return _row_to_appointment(row) if row else None

    async def close(self) -> None:
        from careslot import database

        if self.pool is database._db_pool:
            await database.close_db_pool()
        else:
            await self.pool.close()


class PostgresLedgerTransaction(LedgerTransaction):

    def __init__(self, conn: asyncpg.Connection, ledger: PostgresSlotLedger):
        self.conn = conn
        self.ledger = ledger
        self.schema = ledger.schema

    async def lock_timeline(self, specialist_id: str) -> None:
        await self.conn.execute(
            f"""
            INSERT INTO {self.schema}.specialist_timelines (specialist_id)
            VALUES ($1)
            ON CONFLICT (specialist_id) DO NOTHING
            """,
            specialist_id
        )
        await self.conn.fetchrow(
            f"""
            SELECT specialist_id FROM {self.schema}.specialist_timelines
             WHERE specialist_id = $1
             FOR UPDATE
            """,
            specialist_id
        )

    async def find_overlapping(
        self,
        specialist_id: str,
        start_time: datetime,
        end_time: datetime,
        now: datetime
    ) -> List[LedgerInterval]:
        rows = await self.conn.fetch(
            self.ledger._overlap_sql, specialist_id, start_time, end_time, now, _OCCUPYING_STATUSES
        )
        return [_row_to_interval(row, specialist_id) for row in rows]

    async def expire_stale_holds(self, specialist_id: str, now: datetime) -> List[Hold]:
        rows = await self.conn.fetch(
            f"""
            UPDATE {self.schema}.appointment_holds
               SET state = 'expired', closed_at = $2
             WHERE specialist_id = $1 AND state = 'active' AND expires_at <= $2
         RETURNING {_HOLD_COLUMNS}
            """,
            specialist_id, now
        )
        return sorted((_row_to_hold(row) for row in rows), key=lambda h: h.id)

    async def find_active_hold_by_client_key(
        self,
        patient_id: str,
        client_hold_id: str,
        now: datetime
    ) -> Optional[Hold]:
        row = await self.conn.fetchrow(
            f"""
            SELECT {_HOLD_COLUMNS} FROM {self.schema}.appointment_holds
             WHERE patient_id = $1 AND client_hold_id = $2
               AND state = 'active' AND expires_at > $3
             ORDER BY created_at DESC
             LIMIT 1
            """,
            patient_id, client_hold_id, now
        )
        return _row_to_hold(row) if row else None

    async def insert_hold(self, hold: Hold) -> None:
        await self.conn.execute(
            f"""
            INSERT INTO {self.schema}.appointment_holds (
                id, specialist_id, patient_id, start_time, end_time, duration_minutes, state,
                consultation_type, client_hold_id, created_at, expires_at, closed_at, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
            hold.id, hold.specialist_id, hold.patient_id, hold.start_time, hold.end_time,
            hold.duration_minutes, hold.state.value, hold.consultation_type, hold.client_hold_id,
            hold.created_at, hold.expires_at, hold.closed_at, hold.metadata
        )

    async def get_hold(self, hold_id: str, for_update: bool = False) -> Optional[Hold]:
        sql = f"SELECT {_HOLD_COLUMNS} FROM {self.schema}.appointment_holds WHERE id = $1"
        if for_update:
            sql += " FOR UPDATE"
        row = await self.conn.fetchrow(sql, hold_id)
        return _row_to_hold(row) if row else None

    async def transition_hold(
        self,
        hold_id: str,
        from_state: HoldState,
        to_state: HoldState,
        now: datetime
    ) -> Optional[Hold]:
        row = await self.conn.fetchrow(
            f"""
            UPDATE {self.schema}.appointment_holds
               SET state = $3, closed_at = $4
             WHERE id = $1 AND state = $2
         RETURNING {_HOLD_COLUMNS}
            """,
            hold_id, from_state.value, to_state.value, now
        )
        return _row_to_hold(row) if row else None

    async def extend_hold(self, hold_id: str, expires_at: datetime) -> Optional[Hold]:
        row = await self.conn.fetchrow(
            f"""
            UPDATE {self.schema}.appointment_holds
               SET expires_at = $2
             WHERE id = $1 AND state = 'active'
         RETURNING {_HOLD_COLUMNS}
            """,
            hold_id, expires_at
        )
        return _row_to_hold(row) if row else None

    async def insert_appointment(self, appointment: Appointment) -> None:
        await self.conn.execute(
            f"""
            INSERT INTO {self.schema}.appointments (
                id, hold_id, specialist_id, patient_id, start_time, end_time, duration_minutes,
                status, fee, currency, metadata, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            """,
            appointment.id, appointment.hold_id, appointment.specialist_id, appointment.patient_id,
            appointment.start_time, appointment.end_time, appointment.duration_minutes,
            appointment.status.value, appointment.fee, appointment.currency, appointment.metadata,
            appointment.created_at, appointment.updated_at
        )

    async def get_appointment(self, appointment_id: str, for_update: bool = False) -> Optional[Appointment]:
        sql = f"SELECT {_APPOINTMENT_COLUMNS} FROM {self.schema}.appointments WHERE id = $1"
        if for_update:
            sql += " FOR UPDATE"
        row = await self.conn.fetchrow(sql, appointment_id)
        return _row_to_appointment(row) if row else None

    async def update_appointment_status(
        self,
        appointment_id: str,
        from_statuses: Iterable[AppointmentStatus],
        to_status: AppointmentStatus,
        now: datetime,
        metadata_patch: Optional[Dict[str, Any]] = None
    ) -> Optional[Appointment]:
        row = await self.conn.fetchrow(
            f"""
            UPDATE {self.schema}.appointments
               SET status = $2, updated_at = $3, metadata = metadata || $4::jsonb
             WHERE id = $1 AND status = ANY($5::text[])
         RETURNING {_APPOINTMENT_COLUMNS}
            """,
            appointment_id, to_status.value, now, metadata_patch or {},
            [s.value for s in from_statuses]
        )
        return _row_to_appointment(row) if row else None


async def create_postgres_ledger(settings) -> PostgresSlotLedger:
    """Build a PostgresSlotLedger on the shared pool from careslot.database."""
    from careslot.database import init_db_pool

    pool = await init_db_pool(settings)
    return PostgresSlotLedger(pool, schema=settings.LEDGER_SCHEMA, isolation=settings.LEDGER_ISOLATION)
