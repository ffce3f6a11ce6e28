"""
Error taxonomy shared by the order and inventory services.

Every error knows whether a caller may safely retry the operation and which
HTTP status the routers should answer with.
"""


class ServiceError(Exception):
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed request."""
    status_code = 400


class NotFoundError(ServiceError):
    """Unknown order or product."""
    status_code = 404


class InsufficientStock(ServiceError):
    """Business rejection. Never retried."""
    status_code = 400

    def __init__(self, product_id, product_name: str, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {product_name}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InvalidStateTransition(ServiceError):
    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from '{current}' to '{target}'")
        self.current = current
        self.target = target


class InventoryTimeout(ServiceError):
    status_code = 503
    retryable = True


class CircuitOpenError(ServiceError):
    """Raised by the breaker when no call may reach the dependency."""
    status_code = 503
    retryable = True


class ChaosFault(ServiceError):
    """
    Injected crash after the ledger transaction committed.

    The mutation is durable; only the response is lost. This is NOT a rollback
    and must never be reported as one.
    """
    status_code = 500
    retryable = True
    committed_but_unconfirmed = True


class StorageError(ServiceError):
    """Database failure. Rolls back the current transaction only."""
    status_code = 500


class UpstreamUnavailable(ServiceError):
    """The inventory service answered 5xx or could not be reached."""
    status_code = 503
    retryable = True
