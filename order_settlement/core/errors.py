"""
Exception taxonomy for the settlement core.

Caller errors (4xx-equivalent) are raised immediately and never retried.
Gateway failures are split into transient (``GatewayUnavailable``, safe to
retry with backoff) and permanent (``GatewayRejected``/``RefundRejected``,
``InvalidSignature``). ``ConflictingNotification`` is never auto-resolved.
"""
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """
    Base exception for all settlement errors.

    Every exception carries:
    - Error code (stable, for client handling)
    - HTTP status (for API responses)
    - Retryable flag (for callers deciding on backoff)
    - Details (structured context for logs)
    """

    error_code = "settlement_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "details": {k: str(v) for k, v in self.details.items()},
            }
        }


class InvalidRequest(SettlementError):
    """Malformed business input (empty cart, bad quantity, unknown product)."""

    error_code = "invalid_request"
    http_status = 400


class PrecisionError(InvalidRequest):
    """Amount cannot be represented with two fractional digits."""

    error_code = "precision_error"


class NotFound(SettlementError):
    """Order or payment id unknown to a caller-facing accessor."""

    error_code = "not_found"
    http_status = 404


class InsufficientStock(SettlementError):
    """Requested quantity exceeds available stock for a SKU."""

    error_code = "insufficient_stock"
    http_status = 409

    def __init__(
        self,
        sku: str,
        requested: int,
        available: Optional[int] = None,
        product_id: Optional[str] = None,
    ):
        super().__init__(
            f"Insufficient stock for {sku}: requested {requested}, available {available}",
            sku=sku,
            requested=requested,
            available=available,
            product_id=product_id,
        )
        self.sku = sku
        self.requested = requested
        self.available = available
        self.product_id = product_id


class ConflictingPayment(SettlementError):
    """A non-terminal (or successful) payment already exists for the order."""

    error_code = "conflicting_payment"
    http_status = 409


class AmountMismatch(SettlementError):
    """Amount differs from the order total or the recorded payment amount."""

    error_code = "amount_mismatch"
    http_status = 400


class InvalidStateTransition(SettlementError):
    """Transition is not present in the order or payment transition table."""

    error_code = "invalid_state_transition"
    http_status = 409

    def __init__(self, entity: str, current: Any, target: Any, reason: str = ""):
        message = f"Invalid {entity} status transition from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, entity=entity, current=current, target=target)
        self.current = current
        self.target = target


class Forbidden(SettlementError):
    """Requester is neither the owner nor an administrator."""

    error_code = "forbidden"
    http_status = 403


class InvalidSignature(SettlementError):
    """Callback signature does not match the recomputed signature."""

    error_code = "invalid_signature"
    http_status = 400


class UnrecognizedTransaction(SettlementError):
    """Callback references a transaction id with no matching payment."""

    error_code = "unrecognized_transaction"
    http_status = 404


class ConflictingNotification(SettlementError):
    """Gateway reported an outcome that contradicts the recorded terminal status."""

    error_code = "conflicting_notification"
    http_status = 409


class UnsupportedOperation(SettlementError):
    """Operation not supported by the selected payment method."""

    error_code = "unsupported_operation"
    http_status = 400


class GatewayError(SettlementError):
    """Base exception for gateway call failures."""

    error_code = "gateway_error"
    http_status = 502


class GatewayUnavailable(GatewayError):
    """Network error, timeout or 5xx from a gateway. Safe to retry."""

    error_code = "gateway_unavailable"
    http_status = 503
    retryable = True


class GatewayRejected(GatewayError):
    """Gateway reported a business error. Not retryable."""

    error_code = "gateway_rejected"
    http_status = 422


class RefundRejected(GatewayRejected):
    """Gateway refused the refund."""

    error_code = "refund_rejected"
