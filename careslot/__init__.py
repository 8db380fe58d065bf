"""Careslot: appointment slot reservation and instant specialist matching."""

__version__ = "1.0.0"

__all__ = ["app", "__version__"]


def __getattr__(name):
    # careslot.main loads .env and configures logging on import
    if name == "app":
        from careslot.main import app

        return app
    raise AttributeError(f"module 'careslot' has no attribute {name!r}")
