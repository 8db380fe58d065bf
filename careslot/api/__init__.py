"""HTTP routes for the booking core."""
