"""
Circuit breaker as an explicit finite-state machine.

    CLOSED ──(error ratio > threshold over >= volume calls)──> OPEN
    OPEN ──(reset timeout elapsed)──> HALF_OPEN
    HALF_OPEN ──(trial call succeeded)──> CLOSED
    HALF_OPEN ──(trial call failed)──> OPEN (fresh cool-down)

State is shared by every concurrent caller, so all reads and transitions happen
under one lock. The clock is injectable so thresholds and cool-downs can be
tested without sleeping.
"""
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from shared.errors import CircuitOpenError
from shared.observability.metrics import inventory_circuit_state

logger = structlog.get_logger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_STATE_GAUGE_VALUE = {BreakerState.CLOSED: 0, BreakerState.HALF_OPEN: 1, BreakerState.OPEN: 2}


@dataclass(frozen=True)
class BreakerConfig:
    error_threshold_percentage: float = 50.0
    volume_threshold: int = 5
    reset_timeout_s: float = 30.0
    rolling_window_s: float = 10.0


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._rejected = 0

    # --- transitions (caller holds the lock) ---

    def _transition(self, new_state: BreakerState):
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        inventory_circuit_state.labels(breaker=self.name).set(_STATE_GAUGE_VALUE[new_state])
        log = logger.warning if new_state == BreakerState.OPEN else logger.info
        log("circuit_state_changed", breaker=self.name, old=old_state.value, new=new_state.value)

    def _trip(self, now: float):
        self._opened_at = now
        self._trial_in_flight = False
        self._outcomes.clear()
        self._transition(BreakerState.OPEN)

    def _refresh(self, now: float):
        if (
            self._state == BreakerState.OPEN
            and now - self._opened_at >= self.config.reset_timeout_s
        ):
            self._trial_in_flight = False
            self._transition(BreakerState.HALF_OPEN)

    def _prune(self, now: float):
        horizon = now - self.config.rolling_window_s
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    # --- public API ---

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def allow_request(self) -> bool:
        """
        Decides whether a call may reach the dependency.
        In HALF_OPEN exactly one caller is let through until its outcome is recorded.
        """
        with self._lock:
            self._refresh(self._clock())
            if self._state == BreakerState.CLOSED:
                return True
            if self._state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            self._rejected += 1
            return False

    def guard(self):
        if not self.allow_request():
            raise CircuitOpenError(f"Circuit '{self.name}' is open")

    def record_success(self):
        with self._lock:
            now = self._clock()
            if self._state == BreakerState.HALF_OPEN:
                self._trial_in_flight = False
                self._outcomes.clear()
                self._transition(BreakerState.CLOSED)
                return
            if self._state == BreakerState.OPEN:
                return
            self._outcomes.append((now, True))
            self._prune(now)

    def record_failure(self):
        with self._lock:
            now = self._clock()
            if self._state == BreakerState.HALF_OPEN:
                self._trip(now)
                return
            if self._state == BreakerState.OPEN:
                return
            self._outcomes.append((now, False))
            self._prune(now)

            total = len(self._outcomes)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            if total >= self.config.volume_threshold:
                ratio = failures / total * 100
                if ratio > self.config.error_threshold_percentage:
                    self._trip(now)

    def reset(self):
        with self._lock:
            self._outcomes.clear()
            self._opened_at = None
            self._trial_in_flight = False
            self._rejected = 0
            self._transition(BreakerState.CLOSED)

    def snapshot(self) -> dict:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._prune(now)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            retry_in = None
            if self._state == BreakerState.OPEN:
                retry_in = max(0.0, self.config.reset_timeout_s - (now - self._opened_at))
            return {
                "name": self.name,
                "state": self._state.value,
                "window_requests": len(self._outcomes),
                "window_failures": failures,
                "rejected": self._rejected,
                "retry_in_s": retry_in,
                "error_threshold_percentage": self.config.error_threshold_percentage,
                "volume_threshold": self.config.volume_threshold,
                "reset_timeout_s": self.config.reset_timeout_s,
            }
