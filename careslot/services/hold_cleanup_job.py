"""
Expiry Sweeper

Background job that moves holds past their TTL to `expired` so their slots
show up as bookable again. Reserve and Commit already treat a lapsed hold
as free, so the sweep only keeps the stored state and the read path tidy.

Also deletes released/expired holds once they are older than the
retention window. Committed holds are kept because appointments
reference them.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from careslot.config import BookingSettings, get_settings
from careslot.exceptions import TransientStorageError
from careslot.observability.metrics import observe_holds_expired, observe_holds_purged
from careslot.services.assignment_tracker import AssignmentTracker, release_hold_claims
from careslot.services.slot_ledger import SlotLedger
from careslot.utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)

# Upper bound on batches per sweep so one run cannot monopolise the store
MAX_BATCHES_PER_SWEEP = 20


class ExpirySweeper:
    """
    Periodic sweep of expired holds.
    Runs every SWEEP_INTERVAL_SECONDS with at most one instance in flight.
    """

    def __init__(
        self,
        ledger: SlotLedger,
        settings: Optional[BookingSettings] = None,
        tracker: Optional[AssignmentTracker] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the sweeper.

        Args:
            ledger: Slot ledger to sweep
            settings: Interval, batch size and retention
            tracker: Match-engine claims of expired holds are dropped here
            clock: Source of the current time (timezone-aware)
        """
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.tracker = tracker
        self._clock = clock
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False
        self.last_run: Optional[Dict[str, Any]] = None

        logger.info(f"Initialized ExpirySweeper with {self.settings.SWEEP_INTERVAL_SECONDS}s interval")

    async def sweep(self) -> int:
        """
        Expire every active hold whose expires_at has passed.

        Holds locked by an in-progress commit are skipped; that commit (or
        the next sweep) settles them.

        Returns:
            Number of holds moved to expired
        """
        now = self._clock()
        total = 0
        for _ in range(MAX_BATCHES_PER_SWEEP):
            expired = await self.ledger.expire_due_holds(now, self.settings.SWEEP_BATCH_SIZE)
            total += len(expired)
            await release_hold_claims(self.tracker, expired)
            if len(expired) < self.settings.SWEEP_BATCH_SIZE:
                break

        observe_holds_expired(total, path="sweep")
        if total:
            logger.info(f"Sweep expired {total} hold(s)")
        return total

    async def purge_terminal_holds(self) -> int:
        """
        Delete released/expired holds closed more than TERMINAL_HOLD_RETENTION_DAYS ago.

        Returns:
            Number of holds deleted
        """
        cutoff = self._clock() - timedelta(days=self.settings.TERMINAL_HOLD_RETENTION_DAYS)
        deleted = await self.ledger.purge_terminal_holds(cutoff)
        observe_holds_purged(deleted)
        if deleted:
            logger.info(f"Cleaned up {deleted} old holds")
        return deleted

    async def get_statistics(self) -> Dict[str, Any]:
        """
        Current hold counts per state.

        Returns:
            Dictionary with {state}_holds counts, commit rate and timestamp
        """
        counts = await self.ledger.count_holds_by_state()
        stats: Dict[str, Any] = {f"{state}_holds": n for state, n in counts.items()}

        committed = counts.get("committed", 0)
        closed = committed + counts.get("expired", 0) + counts.get("released", 0)
        stats["commit_rate"] = round(committed / closed * 100, 2) if closed else 0
        stats["timestamp"] = self._clock().isoformat()
        return stats

    async def run_once(self) -> Dict[str, Any]:
        """
        One sweep plus one retention cleanup (for the scheduler, tests or manual runs).

        Returns:
            Run statistics
        """
        started = self._clock()
        stats: Dict[str, Any] = {"start_time": started.isoformat(), "expired_holds": 0, "purged_holds": 0}
        stats["expired_holds"] = await self.sweep()
        stats["purged_holds"] = await self.purge_terminal_holds()
        stats["duration_seconds"] = (self._clock() - started).total_seconds()
        self.last_run = stats
        return stats

    async def _scheduled_sweep(self) -> None:
        try:
            await self.sweep()
        except TransientStorageError as e:
            logger.warning(f"Sweep skipped after transient storage failure, retrying next tick: {e}")
        except Exception as e:
            logger.error(f"Error in expiry sweep: {e}", exc_info=True)

    async def _scheduled_purge(self) -> None:
        try:
            await self.purge_terminal_holds()
        except Exception as e:
            logger.warning(f"Error cleaning up old holds: {e}")

    def start(self) -> None:
        """
        Start the scheduled sweep. Must be called from a running event loop.
        """
        if self.is_running:
            return

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self.scheduler.add_job(
            self._scheduled_sweep,
            trigger=IntervalTrigger(seconds=self.settings.SWEEP_INTERVAL_SECONDS),
            id='hold_expiry_sweep',
            name='Hold Expiry Sweep',
            misfire_grace_time=self.settings.SWEEP_INTERVAL_SECONDS,
            coalesce=True,  # Combine missed runs
            max_instances=1  # Only one sweep at a time
        )
        self.scheduler.add_job(
            self._scheduled_purge,
            trigger=IntervalTrigger(hours=1),
            id='hold_retention_cleanup',
            name='Terminal Hold Retention Cleanup',
            coalesce=True,
            max_instances=1
        )
        # Also sweep once on startup
        self.scheduler.add_job(
            self._scheduled_sweep,
            trigger='date',
            run_date=datetime.now(),
            id='hold_expiry_sweep_startup',
            name='Hold Expiry Sweep (Startup)'
        )

        self.scheduler.start()
        self.is_running = True
        logger.info(f"Expiry sweeper started (runs every {self.settings.SWEEP_INTERVAL_SECONDS} seconds)")

    def stop(self) -> None:
        if self.is_running and self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Expiry sweeper stopped")
