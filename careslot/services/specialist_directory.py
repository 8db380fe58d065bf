"""
Specialist Directory

Read-only view of specialists: who exists, who is online and accepting
patients, which languages, timezone, rating and fees. The booking core
never writes here; online state may be stale, and Reserve is what
actually validates exclusivity.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from supabase import Client

from careslot.exceptions import DirectoryUnavailableError
from careslot.models.booking import RoutingRequest, SpecialistProfile

logger = logging.getLogger(__name__)

# (request, profile) -> eligible? Insurance network checks plug in here.
EligibilityPredicate = Callable[[RoutingRequest, SpecialistProfile], bool]


def allow_all(request: RoutingRequest, profile: SpecialistProfile) -> bool:
    return True


class SpecialistDirectory(ABC):

    @abstractmethod
    async def get_specialist(self, specialist_id: str) -> Optional[SpecialistProfile]:
        ...

    @abstractmethod
    async def list_online_specialists(self, specialty: Optional[str] = None) -> List[SpecialistProfile]:
        """Specialists currently online and accepting patients."""


class InMemorySpecialistDirectory(SpecialistDirectory):
    """Directory backed by a dict, for tests and local development."""

    def __init__(self, profiles: Iterable[SpecialistProfile] = ()):
        self.profiles: Dict[str, SpecialistProfile] = {p.id: p for p in profiles}

    def upsert(self, profile: SpecialistProfile) -> None:
        self.profiles[profile.id] = profile

    def set_online(self, specialist_id: str, online: bool) -> None:
        profile = self.profiles[specialist_id]
        self.profiles[specialist_id] = profile.model_copy(update={"is_online": online})

    async def get_specialist(self, specialist_id: str) -> Optional[SpecialistProfile]:
        return self.profiles.get(specialist_id)

    async def list_online_specialists(self, specialty: Optional[str] = None) -> List[SpecialistProfile]:
        return [
            p for p in self.profiles.values()
            if p.is_online and p.is_accepting_patients
            and (specialty is None or specialty in p.specialty)
        ]


class SupabaseSpecialistDirectory(SpecialistDirectory):
    """
    Directory over the Supabase `specialists` table.

    The supabase-py client is synchronous, so queries run in a worker thread.
    """

    COLUMNS = (
        "id, is_online, is_accepting_patients, languages, timezone, average_rating, specialty, "
        "consultation_fee_min, currency, verification_status, video_consultation_enabled, "
        "in_person_enabled, emergency_availability"
    )

    def __init__(self, client: Client, schema: str = "public", table: str = "specialists"):
        self.client = client
        self.schema = schema
        self.table = table

    def _query(self):
        return self.client.schema(self.schema).table(self.table).select(self.COLUMNS)

    async def _execute(self, query, description: str) -> List[Dict[str, Any]]:
        try:
            result = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.error(f"Specialist directory query failed ({description}): {e}")
            raise DirectoryUnavailableError(f"Specialist directory unavailable: {e}") from e
        return result.data or []

    @staticmethod
    def _to_profile(row: Dict[str, Any]) -> SpecialistProfile:
        data = {k: v for k, v in row.items() if v is not None}
        data["id"] = str(row["id"])
        if isinstance(data.get("specialty"), str):
            data["specialty"] = [data["specialty"]]
        return SpecialistProfile(**data)

    async def get_specialist(self, specialist_id: str) -> Optional[SpecialistProfile]:
        rows = await self._execute(self._query().eq("id", specialist_id).limit(1), f"get {specialist_id}")
        return self._to_profile(rows[0]) if rows else None

    async def list_online_specialists(self, specialty: Optional[str] = None) -> List[SpecialistProfile]:
        query = self._query().eq("is_online", True).eq("is_accepting_patients", True)
        if specialty:
            query = query.contains("specialty", [specialty])
        rows = await self._execute(query, "list online")
        profiles = [self._to_profile(row) for row in rows]
        logger.debug(f"Directory returned {len(profiles)} online specialists (specialty={specialty})")
        return profiles
