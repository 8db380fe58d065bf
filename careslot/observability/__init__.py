"""Observability: Prometheus metrics for the booking core."""
