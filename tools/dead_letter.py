import json
import time
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from loguru import logger

REDIS_HASH = "dlq:events"
REDIS_INDEX = "dlq:index"

EVENT_TYPES = ("campaign_webhook", "chat_postback", "lead_persist", "chat_notification")


@dataclass
class FailedEvent:
    """A unit of work that failed and is kept for inspection or replay."""

    id: str
    type: str
    payload: Dict[str, Any]
    error_message: str
    error_code: Optional[str] = None
    request_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    retry_count: int = 0
    last_retry_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailedEvent":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


class DeadLetterQueue:
    """Bounded dead-letter list persisted to Redis, falling back to process memory.

    Entries older than ``ttl_seconds`` are dropped, and once ``max_size`` is
    reached the oldest entry is evicted to make room.
    """

    def __init__(self, max_size: int = 1000, ttl_seconds: int = 7 * 24 * 3600, clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.r: Optional[redis.Redis] = None
        self._memory: "OrderedDict[str, FailedEvent]" = OrderedDict()

    async def start(self, redis_url: Optional[str] = None, max_size: Optional[int] = None,
                    ttl_seconds: Optional[int] = None) -> None:
        if max_size is not None:
            self.max_size = max_size
        if ttl_seconds is not None:
            self.ttl_seconds = ttl_seconds
        if not redis_url:
            logger.info("No REDIS_URL configured, dead-letter list kept in memory")
            return
        try:
            self.r = redis.from_url(redis_url, socket_timeout=5, socket_connect_timeout=5)
            await self.r.ping()
            logger.info("Dead-letter list connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed, dead-letter list kept in memory: {e}")
            self.r = None

    async def close(self) -> None:
        if self.r is not None:
            await self.r.aclose()
            self.r = None
        self._memory.clear()

    @property
    def storage(self) -> str:
        return "redis" if self.r is not None else "memory"

    async def add(
        self,
        event_type: str,
        payload: Dict[str, Any],
        error: BaseException,
        request_id: Optional[str] = None,
    ) -> FailedEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown dead-letter event type: {event_type}")
        event = FailedEvent(
            id=f"dlq_{uuid.uuid4().hex}",
            type=event_type,
            payload=payload,
            error_message=getattr(error, "message", None) or str(error) or type(error).__name__,
            error_code=getattr(error, "code", None),
            request_id=request_id,
            created_at=self._clock(),
        )
        logger.warning(f"Dead-lettered {event_type} event {event.id}: {event.error_message}")

        if self.r is not None:
            try:
                await self._redis_put(event)
                await self._redis_trim()
                return event
            except Exception as e:
                logger.error(f"Redis write failed, storing dead-letter event in memory: {e}")

        self._purge_memory()
        while len(self._memory) >= self.max_size:
            evicted_id, _ = self._memory.popitem(last=False)
            logger.warning(f"Dead-letter list full, evicted {evicted_id}")
        self._memory[event.id] = event
        return event

    async def get(self, event_id: str) -> Optional[FailedEvent]:
        if self.r is not None:
            try:
                raw = await self.r.hget(REDIS_HASH, event_id)
                event = FailedEvent.from_dict(json.loads(raw)) if raw else None
                if event is not None and self._expired(event):
                    await self._redis_delete(event_id)
                    return None
                if event is not None:
                    return event
            except Exception as e:
                logger.error(f"Redis read failed for {event_id}: {e}")

        self._purge_memory()
        return self._memory.get(event_id)

    async def list_events(self, limit: Optional[int] = None) -> List[FailedEvent]:
        """Newest first."""
        events: List[FailedEvent] = []
        if self.r is not None:
            try:
                await self._redis_trim()
                ids = await self.r.zrevrange(REDIS_INDEX, 0, -1 if limit is None else limit - 1)
                if ids:
                    raws = await self.r.hmget(REDIS_HASH, ids)
                    events = [FailedEvent.from_dict(json.loads(raw)) for raw in raws if raw]
            except Exception as e:
                logger.error(f"Redis list failed: {e}")

        self._purge_memory()
        events.extend(reversed(list(self._memory.values())))
        events.sort(key=lambda ev: ev.created_at, reverse=True)
        return events if limit is None else events[:limit]

    async def remove(self, event_id: str) -> bool:
        removed = self._memory.pop(event_id, None) is not None
        if self.r is not None:
            try:
                removed = await self._redis_delete(event_id) or removed
            except Exception as e:
                logger.error(f"Redis delete failed for {event_id}: {e}")
        return removed

    async def mark_retried(self, event_id: str) -> Optional[FailedEvent]:
        event = await self.get(event_id)
        if event is None:
            return None
        event.retry_count += 1
        event.last_retry_at = self._clock()
        if event_id in self._memory:
            self._memory[event_id] = event
        elif self.r is not None:
            try:
                await self.r.hset(REDIS_HASH, event_id, json.dumps(event.to_dict()))
            except Exception as e:
                logger.error(f"Redis update failed for {event_id}: {e}")
        return event

    async def stats(self) -> Dict[str, Any]:
        events = await self.list_events()
        by_type: Dict[str, int] = {}
        for event in events:
            by_type[event.type] = by_type.get(event.type, 0) + 1
        return {
            "total_events": len(events),
            "by_type": by_type,
            "oldest_event": events[-1].created_at if events else None,
            "newest_event": events[0].created_at if events else None,
            "storage": self.storage,
        }

    def _expired(self, event: FailedEvent) -> bool:
        return self._clock() - event.created_at > self.ttl_seconds

    def _purge_memory(self) -> None:
        for event_id in [eid for eid, ev in self._memory.items() if self._expired(ev)]:
            del self._memory[event_id]

    async def _redis_put(self, event: FailedEvent) -> None:
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.hset(REDIS_HASH, event.id, json.dumps(event.to_dict()))
            pipe.zadd(REDIS_INDEX, {event.id: event.created_at})
            await pipe.execute()

    async def _redis_delete(self, event_id: str) -> bool:
        async with self.r.pipeline(transaction=True) as pipe:
            pipe.hdel(REDIS_HASH, event_id)
            pipe.zrem(REDIS_INDEX, event_id)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def _redis_trim(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        stale = await self.r.zrangebyscore(REDIS_INDEX, "-inf", cutoff)
        overflow = max(0, await self.r.zcard(REDIS_INDEX) - len(stale) - self.max_size)
        if overflow:
            stale += await self.r.zrange(REDIS_INDEX, len(stale), len(stale) + overflow - 1)
        if stale:
            async with self.r.pipeline(transaction=True) as pipe:
                pipe.hdel(REDIS_HASH, *stale)
                pipe.zrem(REDIS_INDEX, *stale)
                await pipe.execute()


# Global dead-letter list, started and closed by the app lifespan
dead_letter_queue = DeadLetterQueue()
