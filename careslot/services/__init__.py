"""Booking core services."""
from careslot.services.booking_core import BookingCore, assemble_booking_core, create_booking_core

__all__ = ["BookingCore", "assemble_booking_core", "create_booking_core"]
