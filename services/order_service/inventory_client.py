"""
Resilient client for the inventory service.

Every deduction goes through three layers:

1. Circuit breaker - fail fast while the inventory service is known to be down.
2. Retry with exponential backoff and jitter - only for timeouts and 5xx.
3. Per-attempt timeout - advisory only. The attempt keeps running in the
   background; the ledger may still commit after we stopped waiting.

Results are returned as a DeductOutcome rather than raised, so the order
service can decide what to tell the user without guessing from exceptions.
"""
import asyncio
import random
import time
from dataclasses import dataclass, replace
from enum import Enum

import httpx
import structlog

from shared.config import settings
from shared.errors import CircuitOpenError, InventoryTimeout, UpstreamUnavailable, ValidationError
from shared.observability.metrics import warehouse_inventory_call_duration_seconds
from shared.resilience import BreakerConfig, CircuitBreaker, RetryPolicy, retry_async
from shared.security import internal_headers

logger = structlog.get_logger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    UNAVAILABLE = "unavailable"
    # The ledger reported a crash after its commit: stock may well be gone
    COMMITTED_BUT_UNCONFIRMED = "committed_but_unconfirmed"
    REJECTED = "rejected"


RETRYABLE_KINDS = frozenset({
    OutcomeKind.TIMEOUT,
    OutcomeKind.CIRCUIT_OPEN,
    OutcomeKind.UNAVAILABLE,
    OutcomeKind.COMMITTED_BUT_UNCONFIRMED,
})

# Outcomes that say something about the health of the inventory service
DEPENDENCY_FAILURES = frozenset({
    OutcomeKind.TIMEOUT,
    OutcomeKind.UNAVAILABLE,
    OutcomeKind.COMMITTED_BUT_UNCONFIRMED,
})


def is_retryable(kind: OutcomeKind) -> bool:
    return kind in RETRYABLE_KINDS


@dataclass(frozen=True)
class DeductOutcome:
    kind: OutcomeKind
    error: str | None = None
    data: dict | None = None
    status_code: int | None = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.ALREADY_PROCESSED)

    @property
    def already_processed(self) -> bool:
        return self.kind == OutcomeKind.ALREADY_PROCESSED

    @property
    def timed_out(self) -> bool:
        return self.kind == OutcomeKind.TIMEOUT

    @property
    def circuit_open(self) -> bool:
        return self.kind == OutcomeKind.CIRCUIT_OPEN

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def classify_response(response: httpx.Response) -> DeductOutcome:
    body = _json_body(response)
    status = response.status_code

    if status == 200:
        return DeductOutcome(OutcomeKind.SUCCESS, data=body, status_code=status)
    if status == 409:
        return DeductOutcome(OutcomeKind.ALREADY_PROCESSED, data=body, status_code=status)
    if status >= 500:
        message = body.get("message") or body.get("detail") or f"Inventory service returned {status}"
        kind = OutcomeKind.COMMITTED_BUT_UNCONFIRMED if body.get("chaosEvent") else OutcomeKind.UNAVAILABLE
        return DeductOutcome(kind, error=message, data=body, status_code=status)
    return DeductOutcome(
        OutcomeKind.REJECTED,
        error=body.get("detail") or body.get("message") or f"Inventory service returned {status}",
        data=body,
        status_code=status,
    )


class ResilientInventoryClient:
    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        base_url: str = settings.INVENTORY_URL,
        timeout_ms: int = settings.REQUEST_TIMEOUT_MS,
        retry_policy: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        sleep=asyncio.sleep,
        rand=random.random,
    ):
        # The transport timeout is deliberately loose; attempts are bounded by timeout_ms
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            headers=internal_headers(),
            timeout=httpx.Timeout(settings.MAX_TIMEOUT_MS / 1000 * 2),
        )
        self._timeout_ms = timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker("inventory_deduct", BreakerConfig())
        self._sleep = sleep
        self._rand = rand
        self._in_flight: set[asyncio.Task] = set()

    # --- timeout control ---

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    def set_timeout(self, timeout_ms: int) -> int:
        if not settings.MIN_TIMEOUT_MS <= timeout_ms <= settings.MAX_TIMEOUT_MS:
            raise ValidationError(
                f"timeoutMs must be a number between {settings.MIN_TIMEOUT_MS} and {settings.MAX_TIMEOUT_MS}"
            )
        self._timeout_ms = timeout_ms
        logger.info("inventory_timeout_updated", timeout_ms=timeout_ms)
        return self._timeout_ms

    def _forget(self, task: asyncio.Task):
        self._in_flight.discard(task)
        # Abandoned attempts may still fail later; retrieve so asyncio does not complain
        if not task.cancelled():
            task.exception()

    async def _bounded(self, coro, timeout_ms: int | None = None):
        """
        Waits at most the current timeout for `coro`. On expiry the underlying
        request is left running: the inventory side may still commit.
        """
        task = asyncio.ensure_future(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._forget)
        timeout_s = (timeout_ms or self._timeout_ms) / 1000
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_s)

    async def _request(self, method: str, url: str, timeout_ms: int | None = None, **kwargs):
        return await self._bounded(self._http.request(method, url, **kwargs), timeout_ms)

    # --- deduction ---

    async def _attempt_deduct(self, order_id, payload: dict, attempt: int) -> DeductOutcome:
        logger.info("inventory_deduct_attempt", order_id=str(order_id), attempt=attempt + 1)
        started = time.perf_counter()
        try:
            response = await self._request("POST", "/deduct", json=payload)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            outcome = DeductOutcome(
                OutcomeKind.TIMEOUT,
                error="Inventory service did not respond in time. Your order may still be processed.",
            )
        except httpx.TransportError as e:
            outcome = DeductOutcome(OutcomeKind.UNAVAILABLE, error=f"Inventory service unreachable: {e}")
        except httpx.HTTPError as e:
            outcome = DeductOutcome(OutcomeKind.UNAVAILABLE, error=f"Inventory request failed: {e}")
        else:
            outcome = classify_response(response)

        warehouse_inventory_call_duration_seconds.labels(outcome=outcome.kind.value).observe(
            time.perf_counter() - started
        )
        return replace(outcome, attempts=attempt + 1)

    async def deduct(self, order_id, idempotency_key: str, items) -> DeductOutcome:
        try:
            self.breaker.guard()
        except CircuitOpenError:
            logger.warning("inventory_circuit_open", order_id=str(order_id))
            return DeductOutcome(
                OutcomeKind.CIRCUIT_OPEN,
                error="Inventory service is temporarily unavailable. Please try again later.",
                attempts=0,
            )

        payload = {
            "orderId": str(order_id),
            "idempotencyKey": idempotency_key,
            "items": [{"productId": str(i.product_id), "quantity": i.quantity} for i in items],
        }

        def log_retry(attempt, delay_ms, outcome):
            logger.info(
                "inventory_deduct_retry",
                order_id=str(order_id),
                reason=outcome.kind.value,
                delay_ms=round(delay_ms),
                next_attempt=attempt + 2,
                max_attempts=self.retry_policy.max_attempts,
            )

        try:
            outcome = await retry_async(
                lambda attempt: self._attempt_deduct(order_id, payload, attempt),
                should_retry=lambda o: o.retryable,
                policy=self.retry_policy,
                sleep=self._sleep,
                rand=self._rand,
                on_retry=log_retry,
            )
        except BaseException:
            # An admitted call always reports an outcome; a half-open breaker waits on it
            self.breaker.record_failure()
            raise

        if outcome.kind in DEPENDENCY_FAILURES:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()

        if outcome.already_processed:
            logger.info("inventory_already_processed", order_id=str(order_id))
        elif not outcome.success:
            logger.warning(
                "inventory_deduct_failed",
                order_id=str(order_id),
                kind=outcome.kind.value,
                error=outcome.error,
                attempts=outcome.attempts,
            )
        return outcome

    # --- reads ---

    async def check_availability(self, items) -> dict:
        """Stock check with retry. Not guarded by the breaker: it never mutates."""
        payload = {"items": [{"productId": str(i.product_id), "quantity": i.quantity} for i in items]}

        async def attempt_check(attempt):
            # (result, worth retrying)
            try:
                response = await self._request("POST", "/check", json=payload)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                return {"success": False, "timedOut": True,
                        "error": "Inventory check timed out. Please try again."}, True
            except httpx.TransportError as e:
                return {"success": False, "error": f"Inventory service unreachable: {e}"}, True

            body = _json_body(response)
            if response.status_code >= 500:
                return {"success": False, "error": body.get("detail") or "Inventory check failed"}, True
            if response.status_code >= 400:
                return {"success": False, "error": body.get("detail") or "Inventory check rejected"}, False
            return {"success": True, "available": body.get("available"), "items": body.get("items", [])}, False

        result, _ = await retry_async(
            attempt_check,
            should_retry=lambda r: r[1],
            policy=self.retry_policy,
            sleep=self._sleep,
            rand=self._rand,
        )
        return result

    async def transactions_for_order(self, order_id) -> list[dict]:
        """Audit trail for one order. Raises when the ledger cannot be consulted."""
        try:
            response = await self._request("GET", f"/transactions/order/{order_id}")
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise InventoryTimeout(f"Timed out reading transactions for order {order_id}") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Inventory service unreachable: {e}") from e

        if response.status_code == 404:
            return []
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"Inventory service returned {response.status_code} for order {order_id} transactions"
            )
        return _json_body(response).get("transactions", [])

    async def check_health(self) -> dict:
        try:
            response = await self._request("GET", "/health", timeout_ms=2000)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            return {"healthy": False, "error": str(e) or type(e).__name__}
        return {"healthy": response.status_code == 200, "data": _json_body(response)}

    def circuit_status(self) -> dict:
        return self.breaker.snapshot()

    async def aclose(self):
        await self._http.aclose()


_inventory_client: ResilientInventoryClient | None = None


def get_inventory_client() -> ResilientInventoryClient:
    global _inventory_client
    if _inventory_client is None:
        _inventory_client = ResilientInventoryClient()
    return _inventory_client
