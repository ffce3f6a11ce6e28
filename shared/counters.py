"""
Shared monotonic counters.

The gremlin request counter and the chaos event counter must be global across
all concurrent callers (and, with Redis, across processes). When the shared
store is unreachable the counter keeps working from a local value and flags
the reading as degraded instead of failing the caller.
"""
import threading
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CounterReading:
    value: int
    degraded: bool = False


class SharedCounter:
    def __init__(self, name: str, redis_client: aioredis.Redis | None = None):
        self.name = name
        self._redis = redis_client
        self._lock = threading.Lock()
        self._local = 0
        self.degraded = False

    @classmethod
    def from_url(cls, name: str, redis_url: str = ""):
        client = aioredis.from_url(redis_url, decode_responses=True) if redis_url else None
        return cls(name, client)

    @property
    def key(self) -> str:
        return f"counter:{self.name}"

    def _increment_local(self) -> int:
        with self._lock:
            self._local += 1
            return self._local

    async def increment(self) -> CounterReading:
        """Atomically increments and returns the new value."""
        if self._redis is None:
            return CounterReading(self._increment_local())

        try:
            value = int(await self._redis.incr(self.key))
        except (RedisError, OSError) as e:
            if not self.degraded:
                logger.warning("shared_counter_degraded", counter=self.name, error=str(e))
            self.degraded = True
            return CounterReading(self._increment_local(), degraded=True)

        # Keep the local mirror close so a later fallback continues the sequence
        with self._lock:
            self._local = max(self._local, value)
        if self.degraded:
            logger.info("shared_counter_recovered", counter=self.name)
            self.degraded = False
        return CounterReading(value)

    async def current(self) -> CounterReading:
        if self._redis is None:
            return CounterReading(self._local)
        try:
            raw = await self._redis.get(self.key)
        except (RedisError, OSError):
            return CounterReading(self._local, degraded=True)
        return CounterReading(int(raw or 0), degraded=self.degraded)

    async def reset(self):
        with self._lock:
            self._local = 0
        self.degraded = False
        if self._redis is not None:
            try:
                await self._redis.delete(self.key)
            except (RedisError, OSError) as e:
                logger.warning("shared_counter_reset_failed", counter=self.name, error=str(e))

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
