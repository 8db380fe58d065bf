"""
Instant Connect

FindMatch -> Commit -> video session request, for patients who want to
see someone now.
"""

import logging
from typing import Optional

from careslot.models.booking import BookingOutcome, InstantConnectResult, RoutingRequest
from careslot.observability.metrics import observe_outcome
from careslot.services.booking_finalizer import BookingFinalizer
from careslot.services.match_engine import MatchEngine
from careslot.services.specialist_directory import SpecialistDirectory
from careslot.services.video_sessions import VideoSessionNotifier

logger = logging.getLogger(__name__)


class InstantConnectService:

    def __init__(
        self,
        match_engine: MatchEngine,
        finalizer: BookingFinalizer,
        directory: SpecialistDirectory,
        video_sessions: Optional[VideoSessionNotifier] = None
    ):
        self.match_engine = match_engine
        self.finalizer = finalizer
        self.directory = directory
        self.video_sessions = video_sessions

    async def connect(self, request: RoutingRequest) -> InstantConnectResult:
        """
        Match the patient, commit the hold at the specialist's minimum fee
        and ask the video service for a room.

        A failed video request leaves the appointment in place and is
        reported as video_session_notified=False.
        """
        match = await self.match_engine.find_match(request)
        if not match.ok:
            result = InstantConnectResult(
                outcome=match.outcome,
                attempts=match.attempts,
                message=match.message,
            )
            observe_outcome("instant_connect", result.outcome)
            return result

        profile = await self._profile_or_none(match.specialist_id)
        commit = await self.finalizer.commit(
            match.hold.id,
            fee=profile.consultation_fee_min if profile else None,
            currency=profile.currency if profile else None,
            metadata={
                "consultation_type": request.consultation_type,
                "urgency": request.urgency.value,
                **request.metadata,
            },
        )
        if not commit.ok:
            # Only a hold that lapsed between match and commit gets here
            logger.warning(f"Instant connect commit for hold {match.hold.id} failed: {commit.outcome.value}")
            result = InstantConnectResult(
                outcome=commit.outcome,
                specialist_id=match.specialist_id,
                hold=commit.hold or match.hold,
                attempts=match.attempts,
                message=commit.message,
            )
            observe_outcome("instant_connect", result.outcome)
            return result

        notified = False
        if self.video_sessions is not None:
            notified = await self.video_sessions.notify(commit.appointment)

        result = InstantConnectResult(
            outcome=BookingOutcome.COMMITTED,
            specialist_id=match.specialist_id,
            hold=commit.hold,
            appointment=commit.appointment,
            attempts=match.attempts,
            video_session_notified=notified,
            message="Specialist found and ready to connect",
        )
        observe_outcome("instant_connect", result.outcome)
        return result

    async def _profile_or_none(self, specialist_id: str):
        try:
            return await self.directory.get_specialist(specialist_id)
        except Exception as e:
            logger.warning(f"Fee lookup for specialist {specialist_id} failed, committing without fee: {e}")
            return None
