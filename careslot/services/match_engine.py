"""
Match Engine

Assigns a patient asking for immediate care to an online specialist.

Ranking is advisory. The engine claims the top candidate in the assignment
tracker (so concurrent requests see the extra load), finds the candidate's
next open slot and Reserves it. Reserve is what guarantees the specialist
is not double-booked; on Conflict the candidate is dropped and the next
one is tried, up to MATCH_MAX_ATTEMPTS.

Ranking order:
1. Timezone proximity bucket (skipped for emergencies)
2. Fewest in-flight assignments
3. Highest average rating
4. Longest idle since last assignment (never assigned first)
5. Specialist id
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from careslot.config import BookingSettings, get_settings
from careslot.exceptions import DirectoryUnavailableError, InvalidReservationError
from careslot.models.booking import (
    BookingOutcome,
    MatchResult,
    RoutingCandidate,
    RoutingRequest,
    SpecialistProfile,
    Urgency,
)
from careslot.observability.metrics import observe_match, observe_outcome
from careslot.services.assignment_tracker import ASSIGNMENT_TOKEN_KEY, AssignmentTracker
from careslot.services.availability_service import AvailabilityService
from careslot.services.hold_manager import HoldManager
from careslot.services.specialist_directory import (
    EligibilityPredicate,
    SpecialistDirectory,
    allow_all,
)
from careslot.utils.timezone_utils import offset_distance_hours, utc_now

logger = logging.getLogger(__name__)

VERIFIED = "verified"


# ============================================================================
# Ranking
# ============================================================================

def timezone_bucket(distance_hours: float, adjacent_offset_hours: float = 1.0) -> int:
    """Same or adjacent offset is bucket 0; otherwise whole hours of distance."""
    if distance_hours <= adjacent_offset_hours:
        return 0
    return math.ceil(distance_hours)


def ranking_key(candidate: RoutingCandidate, urgency: Urgency, adjacent_offset_hours: float = 1.0) -> tuple:
    tz = 0 if urgency == Urgency.EMERGENCY else timezone_bucket(
        candidate.timezone_distance_hours, adjacent_offset_hours
    )
    idle = candidate.last_assigned_at if candidate.last_assigned_at is not None else float("-inf")
    return (tz, candidate.inflight_count, -candidate.average_rating, idle, candidate.specialist_id)


def rank_candidates(
    candidates: Sequence[RoutingCandidate],
    urgency: Urgency = Urgency.ROUTINE,
    adjacent_offset_hours: float = 1.0
) -> List[RoutingCandidate]:
    """Best candidate first."""
    return sorted(candidates, key=lambda c: ranking_key(c, urgency, adjacent_offset_hours))


# ============================================================================
# Engine
# ============================================================================

class MatchEngine:

    def __init__(
        self,
        directory: SpecialistDirectory,
        tracker: AssignmentTracker,
        hold_manager: HoldManager,
        availability: AvailabilityService,
        settings: Optional[BookingSettings] = None,
        eligibility: EligibilityPredicate = allow_all,
        clock: Callable[[], datetime] = utc_now
    ):
        self.directory = directory
        self.tracker = tracker
        self.hold_manager = hold_manager
        self.availability = availability
        self.settings = settings or get_settings()
        self.eligibility = eligibility
        self._clock = clock

    def eligible_profiles(self, request: RoutingRequest, profiles: Sequence[SpecialistProfile]) -> List[SpecialistProfile]:
        """
        Apply the hard filters: online, accepting, verified, video enabled,
        consultation type, specialty, max fee, eligibility predicate, then
        language (falling back to any language if nobody speaks it).
        """
        pool = [
            p for p in profiles
            if p.is_online
            and p.is_accepting_patients
            and p.verification_status == VERIFIED
            and p.video_consultation_enabled
            and p.offers(request.consultation_type)
        ]
        if request.specialty:
            pool = [p for p in pool if request.specialty in p.specialty]
        if request.max_fee is not None:
            pool = [
                p for p in pool
                if p.consultation_fee_min is not None and p.consultation_fee_min <= request.max_fee
            ]
        pool = [p for p in pool if self.eligibility(request, p)]

        speakers = [p for p in pool if p.speaks(request.patient_language)]
        if speakers:
            return speakers
        if pool and self.settings.MATCH_LANGUAGE_FALLBACK:
            logger.info(
                f"No online specialist speaks '{request.patient_language}', "
                f"falling back to {len(pool)} candidate(s) in any language"
            )
            return pool
        return []

    async def build_candidates(
        self,
        request: RoutingRequest,
        profiles: Sequence[SpecialistProfile],
        now: datetime
    ) -> List[RoutingCandidate]:
        ids = [p.id for p in profiles]
        try:
            inflight = await self.tracker.inflight_counts(ids)
            last = await self.tracker.last_assigned(ids)
        except Exception as e:
            # Load data only affects ordering
            logger.warning(f"Assignment tracker unavailable, ranking without load data: {e}")
            inflight, last = {}, {}

        return [
            RoutingCandidate(
                specialist_id=p.id,
                online=p.is_online,
                accepting=p.is_accepting_patients,
                languages=frozenset(lang.lower() for lang in p.languages),
                timezone=p.timezone,
                inflight_count=inflight.get(p.id, 0),
                last_assigned_at=last.get(p.id),
                average_rating=p.average_rating,
                timezone_distance_hours=offset_distance_hours(request.patient_timezone, p.timezone, now),
                profile=p,
            )
            for p in profiles
        ]

    async def find_match(self, request: RoutingRequest) -> MatchResult:
        """
        Select a specialist and hold their next open slot.

        Returns:
            MatchResult: MATCHED (with hold), NONE_AVAILABLE or TRANSIENT_ERROR
        """
        try:
            profiles = await self.directory.list_online_specialists(request.specialty)
        except DirectoryUnavailableError as e:
            return self._finish(MatchResult(outcome=BookingOutcome.TRANSIENT_ERROR, message=str(e)))

        pool = self.eligible_profiles(request, profiles)
        if not pool:
            logger.info(f"No eligible specialists online for patient {request.patient_id}")
            return self._finish(MatchResult(
                outcome=BookingOutcome.NONE_AVAILABLE,
                message="No specialists available right now",
            ))

        excluded: List[str] = []
        attempts = 0
        while attempts < self.settings.MATCH_MAX_ATTEMPTS:
            remaining = [p for p in pool if p.id not in excluded]
            if not remaining:
                break

            now = self._clock()
            candidates = await self.build_candidates(request, remaining, now)
            best = rank_candidates(candidates, request.urgency, self.settings.MATCH_ADJACENT_OFFSET_HOURS)[0]
            attempts += 1

            token = str(uuid.uuid4())
            await self._claim(best.specialist_id, token)

            result = await self._reserve_next_slot(best, request, token, now)
            if result is not None and result.outcome == BookingOutcome.RESERVED:
                await self._record_assignment(best.specialist_id)
                logger.info(
                    f"Matched patient {request.patient_id} to specialist {best.specialist_id} "
                    f"on attempt {attempts} (hold {result.hold.id})"
                )
                return self._finish(MatchResult(
                    outcome=BookingOutcome.MATCHED,
                    specialist_id=best.specialist_id,
                    hold=result.hold,
                    attempts=attempts,
                    excluded=excluded,
                ))

            await self._release_claim(best.specialist_id, token)

            if result is not None and result.outcome == BookingOutcome.TRANSIENT_ERROR:
                return self._finish(MatchResult(
                    outcome=BookingOutcome.TRANSIENT_ERROR,
                    attempts=attempts,
                    excluded=excluded,
                    message=result.message,
                ))

            excluded.append(best.specialist_id)
            logger.info(f"Candidate {best.specialist_id} unavailable on attempt {attempts}, trying next")

        return self._finish(MatchResult(
            outcome=BookingOutcome.NONE_AVAILABLE,
            attempts=attempts,
            excluded=excluded,
            message="No specialists available right now",
        ))

    async def _reserve_next_slot(
        self,
        candidate: RoutingCandidate,
        request: RoutingRequest,
        token: str,
        now: datetime
    ):
        """Reserve the candidate's next open slot. None when there is no slot or the directory rejects it."""
        duration = self.settings.INSTANT_CONSULT_DURATION_MINUTES
        start = await self.availability.next_open_start(
            candidate.specialist_id,
            now + timedelta(seconds=self.settings.INSTANT_LEAD_SECONDS),
            duration,
            timedelta(minutes=self.settings.INSTANT_HORIZON_MINUTES),
        )
        if start is None:
            logger.debug(f"Specialist {candidate.specialist_id} has no open slot within the horizon")
            return None

        metadata: Dict[str, str] = {
            ASSIGNMENT_TOKEN_KEY: token,
            "urgency": request.urgency.value,
        }
        try:
            return await self.hold_manager.reserve(
                candidate.specialist_id,
                request.patient_id,
                start,
                duration,
                consultation_type=request.consultation_type,
                metadata=metadata,
            )
        except InvalidReservationError as e:
            logger.info(f"Specialist {candidate.specialist_id} rejected by reserve validation: {e.reason}")
            return None

    async def _claim(self, specialist_id: str, token: str) -> None:
        try:
            await self.tracker.claim(specialist_id, token, self.settings.INFLIGHT_ASSIGNMENT_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Could not record in-flight claim for {specialist_id}: {e}")

    async def _release_claim(self, specialist_id: str, token: str) -> None:
        try:
            await self.tracker.release(specialist_id, token)
        except Exception as e:
            logger.warning(f"Could not release in-flight claim for {specialist_id}: {e}")

    async def _record_assignment(self, specialist_id: str) -> None:
        try:
            await self.tracker.record_assignment(specialist_id, self._clock().timestamp())
        except Exception as e:
            logger.warning(f"Could not record assignment time for {specialist_id}: {e}")

    @staticmethod
    def _finish(result: MatchResult) -> MatchResult:
        observe_outcome("find_match", result.outcome)
        observe_match(result.outcome, result.attempts)
        return result
