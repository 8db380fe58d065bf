"""
Booking Finalizer

Turns a valid, unexpired hold into an appointment in one transaction. This
is the only code path that creates appointments. Mutual exclusion was
established when the hold was reserved; commit only materialises it.

Also owns the appointment lifecycle after commit (confirm, complete,
cancel). Cancelling gives the interval back to the timeline.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from careslot.config import BookingSettings, get_settings
from careslot.exceptions import LedgerInvariantError, TransientStorageError
from careslot.models.booking import (
    Appointment,
    AppointmentStatus,
    AppointmentStatusResult,
    BookingOutcome,
    CommitResult,
    HoldState,
)
from careslot.observability.metrics import observe_outcome, track_ledger_latency
from careslot.resilience import with_transient_retry
from careslot.services.assignment_tracker import ASSIGNMENT_TOKEN_KEY, AssignmentTracker, release_hold_claims
from careslot.services.hold_manager import TERMINAL_OUTCOMES
from careslot.services.slot_ledger import SlotLedger
from careslot.utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class BookingFinalizer:

    def __init__(
        self,
        ledger: SlotLedger,
        settings: Optional[BookingSettings] = None,
        tracker: Optional[AssignmentTracker] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.tracker = tracker
        self._clock = clock

    # ========================================================================
    # Commit
    # ========================================================================

    async def commit(
        self,
        hold_id: str,
        fee: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CommitResult:
        """
        Convert an active, unexpired hold into a pending appointment.

        Args:
            hold_id: Hold to commit
            fee: Consultation fee confirmed by the payment step
            currency: Fee currency (DEFAULT_CURRENCY when omitted)
            metadata: Merged over the hold's metadata on the appointment

        Returns:
            CommitResult: COMMITTED, EXPIRED, ALREADY_COMMITTED, RELEASED,
            NOT_FOUND or TRANSIENT_ERROR

        Raises:
            LedgerInvariantError: The store rejected the appointment as overlapping
        """
        with track_ledger_latency("commit"):
            try:
                result = await with_transient_retry(
                    self.settings, "commit", self._commit_once, hold_id, fee, currency, metadata or {}
                )
            except TransientStorageError as e:
                logger.error(f"Commit of hold {hold_id} gave up after retries: {e}")
                result = CommitResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))
            except LedgerInvariantError as e:
                logger.critical(f"Commit of hold {hold_id} hit a ledger invariant violation: {e}")
                raise

        if result.outcome in (BookingOutcome.EXPIRED, BookingOutcome.RELEASED) and result.hold is not None:
            await release_hold_claims(self.tracker, [result.hold])

        observe_outcome("commit", result.outcome)
        if result.ok:
            logger.info(
                f"✅ Hold {hold_id} committed as appointment {result.appointment.id} "
                f"(specialist {result.appointment.specialist_id}, {result.appointment.start_time.isoformat()})"
            )
        else:
            logger.info(f"Commit of hold {hold_id} rejected: {result.outcome.value}")
        return result

    async def _commit_once(
        self,
        hold_id: str,
        fee: Optional[Decimal],
        currency: Optional[str],
        metadata: Dict[str, Any]
    ) -> CommitResult:
        now = self._clock()
        async with self.ledger.transaction() as tx:
            hold = await tx.get_hold(hold_id)
            if hold is None:
                return CommitResult(outcome=BookingOutcome.NOT_FOUND, message=f"Hold {hold_id} not found")

            # Timeline first, then the hold row
            await tx.lock_timeline(hold.specialist_id)
            hold = await tx.get_hold(hold_id, for_update=True)

            if hold.state != HoldState.ACTIVE:
                return CommitResult(outcome=TERMINAL_OUTCOMES[hold.state], hold=hold, message="Hold already closed")

            if hold.is_expired_at(now):
                expired = await tx.transition_hold(hold_id, HoldState.ACTIVE, HoldState.EXPIRED, now)
                return CommitResult(
                    outcome=BookingOutcome.EXPIRED,
                    hold=expired or hold,
                    message="Hold expired before commit; reserve again",
                )

            committed = await tx.transition_hold(hold_id, HoldState.ACTIVE, HoldState.COMMITTED, now)
            if committed is None:
                current = await tx.get_hold(hold_id)
                return CommitResult(outcome=TERMINAL_OUTCOMES[current.state], hold=current)

            appointment = Appointment(
                id=str(uuid.uuid4()),
                hold_id=hold.id,
                specialist_id=hold.specialist_id,
                patient_id=hold.patient_id,
                start_time=hold.start_time,
                duration_minutes=hold.duration_minutes,
                status=AppointmentStatus.PENDING,
                fee=fee,
                currency=currency or self.settings.DEFAULT_CURRENCY,
                metadata={"consultation_type": hold.consultation_type, **hold.metadata, **metadata},
                created_at=now,
                updated_at=now,
            )
            await tx.insert_appointment(appointment)

        return CommitResult(outcome=BookingOutcome.COMMITTED, hold=committed, appointment=appointment)

    # ========================================================================
    # Appointment lifecycle
    # ========================================================================

    async def confirm(self, appointment_id: str) -> AppointmentStatusResult:
        """pending -> confirmed"""
        return await self._change_status(
            "confirm", appointment_id, (AppointmentStatus.PENDING,), AppointmentStatus.CONFIRMED
        )

    async def complete(self, appointment_id: str) -> AppointmentStatusResult:
        """pending|confirmed -> completed"""
        result = await self._change_status(
            "complete",
            appointment_id,
            (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
            AppointmentStatus.COMPLETED,
        )
        await self._release_assignment(result)
        return result

    async def cancel(self, appointment_id: str, reason: Optional[str] = None) -> AppointmentStatusResult:
        """pending|confirmed -> cancelled; the interval becomes bookable again."""
        patch = {"cancellation_reason": reason} if reason else None
        result = await self._change_status(
            "cancel",
            appointment_id,
            (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
            AppointmentStatus.CANCELLED,
            metadata_patch=patch,
        )
        await self._release_assignment(result)
        return result

    async def _change_status(
        self,
        operation: str,
        appointment_id: str,
        from_statuses: Iterable[AppointmentStatus],
        to_status: AppointmentStatus,
        metadata_patch: Optional[Dict[str, Any]] = None
    ) -> AppointmentStatusResult:
        with track_ledger_latency(operation):
            try:
                result = await with_transient_retry(
                    self.settings,
                    operation,
                    self._change_status_once,
                    appointment_id,
                    tuple(from_statuses),
                    to_status,
                    metadata_patch,
                )
            except TransientStorageError as e:
                logger.error(f"{operation} of appointment {appointment_id} gave up after retries: {e}")
                result = AppointmentStatusResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))

        observe_outcome(operation, result.outcome)
        return result

    async def _change_status_once(
        self,
        appointment_id: str,
        from_statuses: tuple,
        to_status: AppointmentStatus,
        metadata_patch: Optional[Dict[str, Any]]
    ) -> AppointmentStatusResult:
        now = self._clock()
        async with self.ledger.transaction() as tx:
            appointment = await tx.get_appointment(appointment_id)
            if appointment is None:
                return AppointmentStatusResult(
                    outcome=BookingOutcome.NOT_FOUND, message=f"Appointment {appointment_id} not found"
                )

            await tx.lock_timeline(appointment.specialist_id)
            appointment = await tx.get_appointment(appointment_id, for_update=True)

            if appointment.status == to_status:
                return AppointmentStatusResult(
                    outcome=BookingOutcome.UPDATED,
                    appointment=appointment,
                    message=f"Appointment already {to_status.value}",
                )
            if appointment.status not in from_statuses:
                return AppointmentStatusResult(
                    outcome=BookingOutcome.INVALID_TRANSITION,
                    appointment=appointment,
                    message=f"Cannot move appointment from {appointment.status.value} to {to_status.value}",
                )

            updated = await tx.update_appointment_status(
                appointment_id, from_statuses, to_status, now, metadata_patch
            )

        logger.info(f"Appointment {appointment_id}: {appointment.status.value} -> {to_status.value}")
        return AppointmentStatusResult(outcome=BookingOutcome.UPDATED, appointment=updated)

    async def _release_assignment(self, result: AppointmentStatusResult) -> None:
        """Drop the match-engine in-flight claim once an instant consultation ends."""
        if self.tracker is None or result.appointment is None or result.outcome != BookingOutcome.UPDATED:
            return
        token = result.appointment.metadata.get(ASSIGNMENT_TOKEN_KEY)
        if not token:
            return
        try:
            await self.tracker.release(result.appointment.specialist_id, token)
        except Exception as e:
            logger.warning(f"Failed to release in-flight claim {token}: {e}")
