"""
Fault injection for the inventory service.

Two independent mechanisms:

* LatencyGremlin - deterministic latency. Every call bumps one shared counter
  and every Nth call (globally, across all concurrent callers) is delayed.
* ChaosMonkey - probabilistic crash *after* a ledger commit. The mutation is
  durable but the caller receives an error: Schrödinger's Warehouse.
"""
import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

import structlog

from shared.config import settings
from shared.counters import SharedCounter
from shared.errors import ChaosFault
from shared.observability.metrics import warehouse_chaos_events_total, warehouse_gremlin_delays_total

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GremlinResult:
    delayed: bool
    delay_ms: int
    request_number: int
    degraded: bool = False


class LatencyGremlin:
    def __init__(
        self,
        counter: SharedCounter,
        enabled: bool = False,
        every_nth: int = 5,
        delay_ms: int = 5000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if every_nth < 1:
            raise ValueError("every_nth must be >= 1")
        self.counter = counter
        self.enabled = enabled
        self.every_nth = every_nth
        self.delay_ms = delay_ms
        self._sleep = sleep

    async def apply(self) -> GremlinResult:
        if not self.enabled:
            return GremlinResult(delayed=False, delay_ms=0, request_number=0)

        reading = await self.counter.increment()
        if reading.value % self.every_nth != 0:
            return GremlinResult(False, 0, reading.value, reading.degraded)

        logger.info("gremlin_delay", delay_ms=self.delay_ms, request_number=reading.value)
        warehouse_gremlin_delays_total.inc()
        await self._sleep(self.delay_ms / 1000)
        return GremlinResult(True, self.delay_ms, reading.value, reading.degraded)

    async def status(self) -> dict:
        reading = await self.counter.current()
        next_delay_in = None
        if self.enabled:
            next_delay_in = self.every_nth - (reading.value % self.every_nth)
        return {
            "enabled": self.enabled,
            "everyNthRequest": self.every_nth,
            "delayMs": self.delay_ms,
            "currentRequestCount": reading.value,
            "nextDelayIn": next_delay_in,
            "degraded": reading.degraded,
        }


class ChaosMonkey:
    def __init__(
        self,
        counter: SharedCounter,
        enabled: bool = False,
        crash_probability: float = 0.1,
        rng: random.Random | None = None,
    ):
        if not 0.0 <= crash_probability <= 1.0:
            raise ValueError("crash_probability must be within [0, 1]")
        self.counter = counter
        self.enabled = enabled
        self.crash_probability = crash_probability
        self._rng = rng or random.Random()
        self.last_event: dict | None = None

    def should_crash(self) -> bool:
        return self.enabled and self._rng.random() < self.crash_probability

    async def after_commit(self, context: str):
        """
        Called only once a ledger mutation is durable. May raise ChaosFault,
        which the transport must surface as a failure despite the commit.
        """
        if not self.should_crash():
            return

        reading = await self.counter.increment()
        self.last_event = {
            "time": datetime.now(timezone.utc).isoformat(),
            "context": context,
            "sequence": reading.value,
            "message": "Simulated crash after DB commit",
        }
        warehouse_chaos_events_total.inc()
        logger.error("chaos_crash_after_commit", context=context, sequence=reading.value)
        raise ChaosFault(f"Schrödinger's Warehouse: crash after {context}")

    async def status(self) -> dict:
        reading = await self.counter.current()
        return {
            "enabled": self.enabled,
            "crashProbability": self.crash_probability,
            "totalChaosEvents": reading.value,
            "lastChaosEvent": self.last_event,
            "degraded": reading.degraded,
        }


class FaultInjector:
    def __init__(self, gremlin: LatencyGremlin, chaos: ChaosMonkey):
        self.gremlin = gremlin
        self.chaos = chaos

    @classmethod
    def disabled(cls):
        return cls(
            LatencyGremlin(SharedCounter("gremlin_requests")),
            ChaosMonkey(SharedCounter("chaos_events")),
        )

    @classmethod
    def from_settings(cls):
        return cls(
            LatencyGremlin(
                SharedCounter.from_url("gremlin_requests", settings.REDIS_URL),
                enabled=settings.GREMLIN_ENABLED,
                every_nth=settings.GREMLIN_EVERY_NTH_REQUEST,
                delay_ms=settings.GREMLIN_DELAY_MS,
            ),
            ChaosMonkey(
                SharedCounter.from_url("chaos_events", settings.REDIS_URL),
                enabled=settings.CHAOS_ENABLED,
                crash_probability=settings.CHAOS_CRASH_PROBABILITY,
            ),
        )

    async def status(self) -> dict:
        return {
            "gremlin": await self.gremlin.status(),
            "chaos": await self.chaos.status(),
        }

    async def close(self):
        await self.gremlin.counter.close()
        await self.chaos.counter.close()


_fault_injector: FaultInjector | None = None


def get_fault_injector() -> FaultInjector:
    global _fault_injector
    if _fault_injector is None:
        _fault_injector = FaultInjector.from_settings()
    return _fault_injector
