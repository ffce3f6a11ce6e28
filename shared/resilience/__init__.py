from .circuit_breaker import BreakerConfig, BreakerState, CircuitBreaker
from .retry import RetryPolicy, retry_async

__all__ = [
    "BreakerConfig",
    "BreakerState",
    "CircuitBreaker",
    "RetryPolicy",
    "retry_async",
]
