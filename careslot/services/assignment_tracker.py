"""
Assignment Tracker

Load-balancing bookkeeping for the match engine: how many instant
assignments each specialist currently has in flight, and when each was
last assigned. Advisory only; Reserve decides exclusivity.

Redis layout (hash-tag keys for Redis Cluster):
- inflight:{specialist_id}  sorted set, member = claim token, score = expiry epoch
- assign:last              hash, field = specialist_id, value = epoch seconds
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Iterable, Optional

from redis.asyncio import Redis

from careslot.models.booking import Hold

logger = logging.getLogger(__name__)

# Metadata key linking a hold (and its appointment) to its in-flight claim
ASSIGNMENT_TOKEN_KEY = "assignment_token"


class AssignmentTracker(ABC):

    @abstractmethod
    async def claim(self, specialist_id: str, token: str, ttl_seconds: int) -> None:
        """Count one in-flight assignment for the specialist until released or ttl passes."""

    @abstractmethod
    async def release(self, specialist_id: str, token: str) -> None:
        ...

    @abstractmethod
    async def record_assignment(self, specialist_id: str, at: Optional[float] = None) -> None:
        """Remember the time of the specialist's latest successful assignment."""

    @abstractmethod
    async def inflight_counts(self, specialist_ids: Iterable[str]) -> Dict[str, int]:
        ...

    @abstractmethod
    async def last_assigned(self, specialist_ids: Iterable[str]) -> Dict[str, Optional[float]]:
        ...


class InMemoryAssignmentTracker(AssignmentTracker):

    def __init__(self, clock=time.time):
        self._clock = clock
        self._claims: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._last: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def claim(self, specialist_id: str, token: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._claims[specialist_id][token] = self._clock() + ttl_seconds

    async def release(self, specialist_id: str, token: str) -> None:
        async with self._lock:
            self._claims[specialist_id].pop(token, None)

    async def record_assignment(self, specialist_id: str, at: Optional[float] = None) -> None:
        self._last[specialist_id] = at if at is not None else self._clock()

    async def inflight_counts(self, specialist_ids: Iterable[str]) -> Dict[str, int]:
        now = self._clock()
        async with self._lock:
            counts = {}
            for sid in specialist_ids:
                live = {t: exp for t, exp in self._claims.get(sid, {}).items() if exp > now}
                self._claims[sid] = live
                counts[sid] = len(live)
            return counts

    async def last_assigned(self, specialist_ids: Iterable[str]) -> Dict[str, Optional[float]]:
        return {sid: self._last.get(sid) for sid in specialist_ids}


class RedisAssignmentTracker(AssignmentTracker):

    LAST_ASSIGNED_KEY = "assign:last"

    def __init__(self, redis_client: Redis, key_prefix: str = "careslot"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _inflight_key(self, specialist_id: str) -> str:
        return f"{self.key_prefix}:inflight:{{{specialist_id}}}"

    def _last_key(self) -> str:
        return f"{self.key_prefix}:{self.LAST_ASSIGNED_KEY}"

    async def claim(self, specialist_id: str, token: str, ttl_seconds: int) -> None:
        key = self._inflight_key(specialist_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {token: time.time() + ttl_seconds})
            pipe.expire(key, ttl_seconds)
            await pipe.execute()
        logger.debug(f"Claimed in-flight slot {token} for specialist {specialist_id}")

    async def release(self, specialist_id: str, token: str) -> None:
        await self.redis.zrem(self._inflight_key(specialist_id), token)

    async def record_assignment(self, specialist_id: str, at: Optional[float] = None) -> None:
        await self.redis.hset(self._last_key(), specialist_id, at if at is not None else time.time())

    async def inflight_counts(self, specialist_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(specialist_ids)
        if not ids:
            return {}
        now = time.time()
        async with self.redis.pipeline(transaction=False) as pipe:
            for sid in ids:
                key = self._inflight_key(sid)
                pipe.zremrangebyscore(key, "-inf", now)
                pipe.zcard(key)
            results = await pipe.execute()
        # Every second reply is a ZCARD
        return {sid: int(results[i * 2 + 1]) for i, sid in enumerate(ids)}

    async def last_assigned(self, specialist_ids: Iterable[str]) -> Dict[str, Optional[float]]:
        ids = list(specialist_ids)
        if not ids:
            return {}
        values = await self.redis.hmget(self._last_key(), ids)
        return {sid: (float(v) if v is not None else None) for sid, v in zip(ids, values)}


async def release_hold_claims(tracker: Optional[AssignmentTracker], holds: Iterable[Hold]) -> int:
    """
    Drop the in-flight claims carried by holds that closed without becoming
    an appointment (released or expired). Tracker failures are logged only.

    Returns:
        Number of claims released
    """
    if tracker is None:
        return 0
    released = 0
    for hold in holds:
        token = hold.metadata.get(ASSIGNMENT_TOKEN_KEY)
        if not token:
            continue
        try:
            await tracker.release(hold.specialist_id, token)
            released += 1
        except Exception as e:
            logger.warning(f"Failed to release in-flight claim {token} of hold {hold.id}: {e}")
    return released
