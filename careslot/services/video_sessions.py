"""
Video session notifier

After a successful commit of an instant consultation, the video platform is
told to provision a room. This runs after the booking transaction and is
best effort: failures are logged and never undo the appointment.
"""

import logging
from typing import Optional

import httpx

from careslot.config import BookingSettings, get_settings
from careslot.models.booking import Appointment
from careslot.utils.circuit_breaker import CircuitBreakerOpen, video_session_breaker

logger = logging.getLogger(__name__)


class VideoSessionNotifier:
    """POSTs committed instant appointments to VIDEO_SESSION_WEBHOOK_URL."""

    def __init__(
        self,
        settings: Optional[BookingSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings or get_settings()
        self.webhook_url = self.settings.VIDEO_SESSION_WEBHOOK_URL
        self._client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.VIDEO_SESSION_TIMEOUT_SECONDS)
        return self._client

    @staticmethod
    def build_payload(appointment: Appointment) -> dict:
        return {
            "appointment_id": appointment.id,
            "specialist_id": appointment.specialist_id,
            "patient_id": appointment.patient_id,
            "start_time": appointment.start_time.isoformat(),
            "duration_minutes": appointment.duration_minutes,
            "consultation_type": appointment.metadata.get("consultation_type"),
        }

    @video_session_breaker
    async def _post(self, payload: dict) -> None:
        response = await self._get_client().post(self.webhook_url, json=payload)
        response.raise_for_status()

    async def notify(self, appointment: Appointment) -> bool:
        """
        Returns:
            True if the video service acknowledged the session request
        """
        if not self.enabled:
            logger.debug("Video session webhook not configured, skipping notification")
            return False

        try:
            await self._post(self.build_payload(appointment))
        except CircuitBreakerOpen as e:
            logger.warning(f"Video session notification skipped for {appointment.id}: {e}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Video session notification failed for {appointment.id}: {e}")
            return False

        logger.info(f"Video session requested for appointment {appointment.id}")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
