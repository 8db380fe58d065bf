"""
Hold Manager

Creates, renews and releases short-lived exclusive holds on a specialist's
timeline. A hold removes its interval from bookable availability until it
is committed, released or passes its TTL.

Reserve runs in one ledger transaction:
1. Lock the specialist's timeline
2. Expire this timeline's holds whose TTL already passed
3. Check for an overlapping live hold or occupying appointment
4. Insert the new hold (or report the conflict and create nothing)
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from careslot.config import BookingSettings, get_settings
from careslot.exceptions import (
    DirectoryUnavailableError,
    InvalidReservationError,
    TransientStorageError,
)
from careslot.models.booking import (
    BookingOutcome,
    ConsultationType,
    Hold,
    HoldState,
    ReleaseResult,
    RenewResult,
    ReservationResult,
)
from careslot.observability.metrics import (
    observe_holds_expired,
    observe_outcome,
    track_ledger_latency,
)
from careslot.resilience import with_transient_retry
from careslot.services.assignment_tracker import AssignmentTracker, release_hold_claims
from careslot.services.slot_ledger import LedgerTransaction, SlotLedger
from careslot.services.specialist_directory import SpecialistDirectory
from careslot.utils.timezone_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)

# Outcome reported for a hold that is already in a terminal state
TERMINAL_OUTCOMES = {
    HoldState.RELEASED: BookingOutcome.RELEASED,
    HoldState.EXPIRED: BookingOutcome.EXPIRED,
    HoldState.COMMITTED: BookingOutcome.ALREADY_COMMITTED,
}


class HoldManager:
    """Reserve / Release / Renew against the slot ledger."""

    def __init__(
        self,
        ledger: SlotLedger,
        directory: SpecialistDirectory,
        settings: Optional[BookingSettings] = None,
        tracker: Optional[AssignmentTracker] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.ledger = ledger
        self.directory = directory
        self.settings = settings or get_settings()
        self.tracker = tracker
        self._clock = clock

    @property
    def hold_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.HOLD_TTL_SECONDS)

    @property
    def max_hold_lifetime(self) -> timedelta:
        return timedelta(seconds=self.settings.HOLD_MAX_LIFETIME_SECONDS)

    # ========================================================================
    # Reserve
    # ========================================================================

    async def reserve(
        self,
        specialist_id: str,
        patient_id: str,
        start_time: datetime,
        duration_minutes: int,
        consultation_type: str = ConsultationType.VIDEO.value,
        client_hold_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ReservationResult:
        """
        Place a hold on [start_time, start_time + duration) for the patient.

        Args:
            specialist_id: Specialist whose timeline is reserved
            patient_id: Patient requesting the hold
            start_time: Timezone-aware start, strictly in the future
            duration_minutes: Length of the interval
            consultation_type: video, in_person or instant
            client_hold_id: Idempotency key; a retry with the same key returns the existing hold,
                reuse for a different specialist or interval is rejected
            metadata: Opaque data stored on the hold

        Returns:
            ReservationResult with outcome RESERVED, CONFLICT or TRANSIENT_ERROR

        Raises:
            InvalidReservationError: Request fails validation
        """
        try:
            start_time = await self._validate_request(
                specialist_id, patient_id, start_time, duration_minutes, consultation_type
            )
        except DirectoryUnavailableError as e:
            observe_outcome("reserve", BookingOutcome.TRANSIENT_ERROR)
            return ReservationResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))

        with track_ledger_latency("reserve"):
            try:
                result = await with_transient_retry(
                    self.settings,
                    "reserve",
                    self._reserve_once,
                    specialist_id,
                    patient_id,
                    start_time,
                    duration_minutes,
                    consultation_type,
                    client_hold_id,
                    metadata or {},
                )
            except TransientStorageError as e:
                logger.error(f"Reserve for specialist {specialist_id} gave up after retries: {e}")
                result = ReservationResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))

        observe_outcome("reserve", result.outcome)
        if result.outcome == BookingOutcome.RESERVED and result.is_new:
            logger.info(
                f"Hold {result.hold.id} reserved for patient {patient_id} with specialist "
                f"{specialist_id} at {start_time.isoformat()} (expires {result.hold.expires_at.isoformat()})"
            )
        elif result.outcome == BookingOutcome.CONFLICT:
            logger.info(
                f"Reserve conflict for specialist {specialist_id} at {start_time.isoformat()}: "
                f"{len(result.conflicts)} overlapping interval(s)"
            )
        return result

    async def _validate_request(
        self,
        specialist_id: str,
        patient_id: str,
        start_time: datetime,
        duration_minutes: int,
        consultation_type: str
    ) -> datetime:
        """Returns start_time normalised to UTC."""
        if not specialist_id or not patient_id:
            raise InvalidReservationError("specialist_id and patient_id are required", reason="missing_field")

        if duration_minutes <= 0:
            raise InvalidReservationError("duration_minutes must be positive", reason="invalid_duration")
        if duration_minutes > self.settings.MAX_BOOKING_DURATION_MINUTES:
            raise InvalidReservationError(
                f"duration_minutes cannot exceed {self.settings.MAX_BOOKING_DURATION_MINUTES}",
                reason="invalid_duration"
            )

        try:
            start_time = ensure_aware(start_time)
        except ValueError:
            raise InvalidReservationError("start_time must include a timezone", reason="naive_datetime")

        if start_time <= self._clock():
            raise InvalidReservationError("start_time must be in the future", reason="start_in_past")

        profile = await self.directory.get_specialist(specialist_id)
        if profile is None:
            raise InvalidReservationError(f"Specialist {specialist_id} not found", reason="unknown_specialist")
        if not profile.is_accepting_patients:
            raise InvalidReservationError(
                f"Specialist {specialist_id} is not accepting patients", reason="not_accepting"
            )
        if not profile.offers(consultation_type):
            raise InvalidReservationError(
                f"Specialist {specialist_id} does not offer {consultation_type} consultations",
                reason="consultation_type_unavailable"
            )
        return start_time

    async def _reserve_once(
        self,
        specialist_id: str,
        patient_id: str,
        start_time: datetime,
        duration_minutes: int,
        consultation_type: str,
        client_hold_id: Optional[str],
        metadata: Dict[str, Any]
    ) -> ReservationResult:
        now = self._clock()

        async with self.ledger.transaction() as tx:
            await tx.lock_timeline(specialist_id)

            stale = await tx.expire_stale_holds(specialist_id, now)
            if stale:
                logger.debug(f"Expired {len(stale)} stale hold(s) on specialist {specialist_id} timeline")
            observe_holds_expired(len(stale), path="inline")

            result = await self._place_hold(
                tx, now, specialist_id, patient_id, start_time, duration_minutes,
                consultation_type, client_hold_id, metadata
            )

        await release_hold_claims(self.tracker, stale)
        return result

    async def _place_hold(
        self,
        tx: LedgerTransaction,
        now: datetime,
        specialist_id: str,
        patient_id: str,
        start_time: datetime,
        duration_minutes: int,
        consultation_type: str,
        client_hold_id: Optional[str],
        metadata: Dict[str, Any]
    ) -> ReservationResult:
        """Idempotency lookup, overlap check and insert, on an already locked timeline."""
        end_time = start_time + timedelta(minutes=duration_minutes)

        if client_hold_id:
            existing = await tx.find_active_hold_by_client_key(patient_id, client_hold_id, now)
            if existing is not None:
                if (existing.specialist_id, existing.start_time, existing.duration_minutes) != (
                        specialist_id, start_time, duration_minutes):
                    raise InvalidReservationError(
                        f"client_hold_id {client_hold_id} already identifies hold {existing.id} "
                        f"for a different specialist or interval",
                        reason="idempotency_key_reused",
                    )
                logger.info(f"Idempotent reserve: returning hold {existing.id} for key {client_hold_id}")
                return ReservationResult(
                    outcome=BookingOutcome.RESERVED,
                    hold=existing,
                    is_new=False,
                    message="Existing hold returned for client_hold_id",
                )

        conflicts = await tx.find_overlapping(specialist_id, start_time, end_time, now)
        if conflicts:
            return ReservationResult(
                outcome=BookingOutcome.CONFLICT,
                conflicts=conflicts,
                message="Requested interval overlaps an existing hold or appointment",
            )

        hold = Hold(
            id=str(uuid.uuid4()),
            specialist_id=specialist_id,
            patient_id=patient_id,
            start_time=start_time,
            duration_minutes=duration_minutes,
            state=HoldState.ACTIVE,
            consultation_type=consultation_type,
            client_hold_id=client_hold_id,
            created_at=now,
            expires_at=now + self.hold_ttl,
            metadata=metadata,
        )
        await tx.insert_hold(hold)
        return ReservationResult(outcome=BookingOutcome.RESERVED, hold=hold)

    # ========================================================================
    # Release
    # ========================================================================

    async def release(self, hold_id: str, requester_id: str) -> ReleaseResult:
        """
        Release a hold on behalf of the holding patient.

        Idempotent: releasing a hold that is already released, expired or
        committed reports that state and changes nothing.
        """
        with track_ledger_latency("release"):
            try:
                result = await with_transient_retry(
                    self.settings, "release", self._release_once, hold_id, requester_id
                )
            except TransientStorageError as e:
                logger.error(f"Release of hold {hold_id} gave up after retries: {e}")
                result = ReleaseResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))

        await self._drop_claim(result)
        observe_outcome("release", result.outcome)
        return result

    async def _release_once(self, hold_id: str, requester_id: str) -> ReleaseResult:
        now = self._clock()
        async with self.ledger.transaction() as tx:
            hold = await tx.get_hold(hold_id)
            if hold is None:
                return ReleaseResult(outcome=BookingOutcome.NOT_FOUND, message=f"Hold {hold_id} not found")
            if hold.patient_id != requester_id:
                logger.warning(f"Patient {requester_id} attempted to release hold {hold_id} they do not hold")
                return ReleaseResult(outcome=BookingOutcome.FORBIDDEN, message="Only the holding patient may release")

            await tx.lock_timeline(hold.specialist_id)
            hold = await tx.get_hold(hold_id, for_update=True)

            if hold.state != HoldState.ACTIVE:
                return ReleaseResult(outcome=TERMINAL_OUTCOMES[hold.state], hold=hold, message="Hold already closed")

            released = await tx.transition_hold(hold_id, HoldState.ACTIVE, HoldState.RELEASED, now)

        logger.info(f"Hold {hold_id} released by patient {requester_id}")
        return ReleaseResult(outcome=BookingOutcome.RELEASED, hold=released)

    # ========================================================================
    # Renew
    # ========================================================================

    async def renew(self, hold_id: str, requester_id: Optional[str] = None) -> RenewResult:
        """
        Push expires_at out by one TTL, capped at created_at + HOLD_MAX_LIFETIME_SECONDS.

        Returns:
            RENEWED, LIMIT_REACHED (cap already reached), EXPIRED, or the
            terminal state of a closed hold
        """
        with track_ledger_latency("renew"):
            try:
                result = await with_transient_retry(
                    self.settings, "renew", self._renew_once, hold_id, requester_id
                )
            except TransientStorageError as e:
                logger.error(f"Renew of hold {hold_id} gave up after retries: {e}")
                result = RenewResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e))

        await self._drop_claim(result)
        observe_outcome("renew", result.outcome)
        return result

    async def _renew_once(self, hold_id: str, requester_id: Optional[str]) -> RenewResult:
        now = self._clock()
        async with self.ledger.transaction() as tx:
            hold = await tx.get_hold(hold_id)
            if hold is None:
                return RenewResult(outcome=BookingOutcome.NOT_FOUND, message=f"Hold {hold_id} not found")
            if requester_id is not None and hold.patient_id != requester_id:
                return RenewResult(outcome=BookingOutcome.FORBIDDEN, message="Only the holding patient may renew")

            await tx.lock_timeline(hold.specialist_id)
            hold = await tx.get_hold(hold_id, for_update=True)

            if hold.state != HoldState.ACTIVE:
                return RenewResult(outcome=TERMINAL_OUTCOMES[hold.state], hold=hold, message="Hold already closed")

            if hold.is_expired_at(now):
                expired = await tx.transition_hold(hold_id, HoldState.ACTIVE, HoldState.EXPIRED, now)
                return RenewResult(outcome=BookingOutcome.EXPIRED, hold=expired, message="Hold TTL already passed")

            cap = hold.created_at + self.max_hold_lifetime
            new_expiry = min(now + self.hold_ttl, cap)
            if new_expiry <= hold.expires_at:
                return RenewResult(
                    outcome=BookingOutcome.LIMIT_REACHED,
                    hold=hold,
                    message=f"Hold lifetime is capped at {self.settings.HOLD_MAX_LIFETIME_SECONDS}s",
                )

            renewed = await tx.extend_hold(hold_id, new_expiry)

        logger.info(f"Hold {hold_id} renewed until {new_expiry.isoformat()}")
        return RenewResult(outcome=BookingOutcome.RENEWED, hold=renewed)

    async def _drop_claim(self, result) -> None:
        """A hold that ended released or expired no longer counts as an in-flight assignment."""
        if result.outcome in (BookingOutcome.RELEASED, BookingOutcome.EXPIRED) and result.hold is not None:
            await release_hold_claims(self.tracker, [result.hold])
