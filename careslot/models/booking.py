"""
Pydantic models for the slot ledger, holds, appointments and routing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HoldState(str, Enum):
    """Hold lifecycle states. Everything except ACTIVE is terminal."""
    ACTIVE = "active"
    RELEASED = "released"
    EXPIRED = "expired"
    COMMITTED = "committed"


TERMINAL_HOLD_STATES = frozenset({HoldState.RELEASED, HoldState.EXPIRED, HoldState.COMMITTED})


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Appointments in these states keep their interval off the bookable timeline
OCCUPYING_APPOINTMENT_STATUSES = frozenset({
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.COMPLETED,
})


class ConsultationType(str, Enum):
    VIDEO = "video"
    IN_PERSON = "in_person"
    INSTANT = "instant"


class Urgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class BookingOutcome(str, Enum):
    """Result variants returned to callers of the booking core."""
    RESERVED = "reserved"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    ALREADY_COMMITTED = "already_committed"
    RELEASED = "released"
    NONE_AVAILABLE = "none_available"
    TRANSIENT_ERROR = "transient_error"
    COMMITTED = "committed"
    RENEWED = "renewed"
    LIMIT_REACHED = "limit_reached"
    MATCHED = "matched"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    UPDATED = "updated"
    INVALID_TRANSITION = "invalid_transition"


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: [a, b) and [b, c) do not overlap."""
    return start_a < end_b and start_b < end_a


class Hold(BaseModel):
    """Short-lived exclusive reservation of a specialist's interval."""
    id: str = Field(..., description="Hold identifier")
    specialist_id: str = Field(..., description="Specialist whose timeline is held")
    patient_id: str = Field(..., description="Patient holding the interval")
    start_time: datetime = Field(..., description="Interval start (UTC)")
    duration_minutes: int = Field(..., gt=0, description="Interval length")
    state: HoldState = Field(HoldState.ACTIVE, description="Lifecycle state")
    consultation_type: str = Field(ConsultationType.VIDEO.value, description="Requested consultation type")
    client_hold_id: Optional[str] = Field(None, description="Client-provided idempotency key")
    created_at: datetime = Field(..., description="Creation timestamp")
    expires_at: datetime = Field(..., description="Hold expiration time")
    closed_at: Optional[datetime] = Field(None, description="Time of the terminal transition")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_HOLD_STATES

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def occupies_at(self, now: datetime) -> bool:
        """Active, unexpired holds occupy their interval."""
        return self.state == HoldState.ACTIVE and not self.is_expired_at(now)


class Appointment(BaseModel):
    """Durable booking created from a committed hold (1:1)."""
    id: str = Field(..., description="Appointment identifier")
    hold_id: str = Field(..., description="Committed hold this appointment materialises")
    specialist_id: str
    patient_id: str
    start_time: datetime
    duration_minutes: int = Field(..., gt=0)
    status: AppointmentStatus = AppointmentStatus.PENDING
    fee: Optional[Decimal] = None
    currency: str = "USD"
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque to the core")
    created_at: datetime
    updated_at: datetime

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def occupies(self) -> bool:
        return self.status in OCCUPYING_APPOINTMENT_STATUSES


class LedgerInterval(BaseModel):
    """An occupied interval on a specialist's timeline."""
    specialist_id: str
    start_time: datetime
    end_time: datetime
    source: str = Field(..., description="'hold' or 'appointment'")
    ref_id: str = Field(..., description="Hold or appointment id")


class OpenSlot(BaseModel):
    specialist_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int


# ============================================================================
# Operation results
# ============================================================================

class _Result(BaseModel):
    outcome: BookingOutcome
    message: Optional[str] = None


class ReservationResult(_Result):
    hold: Optional[Hold] = None
    conflicts: List[LedgerInterval] = Field(default_factory=list)
    is_new: bool = True

    @property
    def ok(self) -> bool:
        return self.outcome == BookingOutcome.RESERVED


class ReleaseResult(_Result):
    hold: Optional[Hold] = None


class RenewResult(_Result):
    hold: Optional[Hold] = None


class CommitResult(_Result):
    hold: Optional[Hold] = None
    appointment: Optional[Appointment] = None

    @property
    def ok(self) -> bool:
        return self.outcome == BookingOutcome.COMMITTED


class AppointmentStatusResult(_Result):
    appointment: Optional[Appointment] = None


class MatchResult(_Result):
    specialist_id: Optional[str] = None
    hold: Optional[Hold] = None
    attempts: int = 0
    excluded: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == BookingOutcome.MATCHED


class InstantConnectResult(_Result):
    specialist_id: Optional[str] = None
    hold: Optional[Hold] = None
    appointment: Optional[Appointment] = None
    attempts: int = 0
    video_session_notified: bool = False


# ============================================================================
# Directory and routing
# ============================================================================

class SpecialistProfile(BaseModel):
    """Specialist attributes as published by the directory."""
    id: str
    is_online: bool = False
    is_accepting_patients: bool = False
    languages: List[str] = Field(default_factory=lambda: ["en"])
    timezone: Optional[str] = None
    average_rating: float = 0.0
    specialty: List[str] = Field(default_factory=list)
    consultation_fee_min: Optional[Decimal] = None
    currency: Optional[str] = None
    verification_status: str = "pending"
    video_consultation_enabled: bool = False
    in_person_enabled: bool = False
    emergency_availability: bool = False

    @property
    def consultation_types(self) -> frozenset:
        offered = set()
        if self.video_consultation_enabled:
            offered.add(ConsultationType.VIDEO.value)
            offered.add(ConsultationType.INSTANT.value)
        if self.in_person_enabled:
            offered.add(ConsultationType.IN_PERSON.value)
        return frozenset(offered)

    def offers(self, consultation_type: str) -> bool:
        return consultation_type in self.consultation_types

    def speaks(self, language: Optional[str]) -> bool:
        if not language:
            return True
        wanted = language.lower()
        return any(lang.lower() == wanted for lang in self.languages)


class RoutingRequest(BaseModel):
    """Immediate-care request handed to the match engine."""
    patient_id: str
    patient_timezone: str = "UTC"
    patient_language: str = "en"
    urgency: Urgency = Urgency.ROUTINE
    specialty: Optional[str] = None
    max_fee: Optional[Decimal] = None
    consultation_type: str = ConsultationType.INSTANT.value
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class RoutingCandidate:
    """Per-invocation view of one specialist; never persisted."""
    specialist_id: str
    online: bool
    accepting: bool
    languages: frozenset
    timezone: Optional[str]
    inflight_count: int = 0
    last_assigned_at: Optional[float] = None
    average_rating: float = 0.0
    timezone_distance_hours: float = 0.0
    profile: Optional[SpecialistProfile] = field(default=None, repr=False)
