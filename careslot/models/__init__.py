"""Data models for the booking core."""
from careslot.models.booking import (
    Appointment,
    AppointmentStatus,
    BookingOutcome,
    Hold,
    HoldState,
    RoutingRequest,
    SpecialistProfile,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "BookingOutcome",
    "Hold",
    "HoldState",
    "RoutingRequest",
    "SpecialistProfile",
]
