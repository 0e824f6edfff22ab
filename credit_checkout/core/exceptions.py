"""
Exception classes for the checkout service.

Every exception carries a machine-readable code and the HTTP status it maps
to, so route handlers can surface it without re-classifying.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """
    Base exception for checkout errors.

    Every exception includes:
    - Error code (for client handling)
    - Message (safe to show to users)
    - HTTP status code (for API responses)
    """

    def __init__(
        self,
        message: str,
        code: str,
        http_status: int = 500,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.metadata = kwargs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {"message": self.message, "code": self.code}


# ============================================================================
# AUTHENTICATION ERRORS
# ============================================================================

class AuthError(CheckoutError):
    """A bearer credential was presented and rejected, or identity is required."""

    def __init__(self, message: str, code: str, **kwargs: Any):
        super().__init__(message=message, code=code, http_status=401, **kwargs)


# ============================================================================
# ORDER ERRORS
# ============================================================================

class OrderError(CheckoutError):
    """Base class for order creation failures. Never retried server-side."""


class InvalidAmountError(OrderError):
    def __init__(self, message: str = "Amount must be a positive, finite number", **kwargs: Any):
        super().__init__(message=message, code="INVALID_AMOUNT", http_status=400, **kwargs)


class UnknownPackageError(OrderError):
    def __init__(self, package_id: str, **kwargs: Any):
        super().__init__(
            message=f"Unknown package: {package_id!r}",
            code="UNKNOWN_PACKAGE",
            http_status=400,
            package_id=package_id,
            **kwargs,
        )


class UnsupportedCurrencyError(OrderError):
    def __init__(self, currency: str, **kwargs: Any):
        super().__init__(
            message=f"Currency not accepted: {currency!r}",
            code="UNSUPPORTED_CURRENCY",
            http_status=400,
            currency=currency,
            **kwargs,
        )


class IdempotencyConflictError(OrderError):
    """An idempotency key was reused for a different purchase."""

    def __init__(self, idempotency_key: str, **kwargs: Any):
        super().__init__(
            message="Idempotency key was already used for a different order",
            code="IDEMPOTENCY_CONFLICT",
            http_status=409,
            idempotency_key=idempotency_key,
            **kwargs,
        )


class GatewayUnavailableError(OrderError):
    """
    The gateway rejected, failed or timed out on order creation.

    Timeouts map to 504, every other gateway failure to 502.
    """

    def __init__(self, message: str, timed_out: bool = False, **kwargs: Any):
        super().__init__(
            message=message,
            code="GATEWAY_TIMEOUT" if timed_out else "GATEWAY_UNAVAILABLE",
            http_status=504 if timed_out else 502,
            **kwargs,
        )
        self.timed_out = timed_out


# ============================================================================
# GATEWAY / ROUTING ERRORS
# ============================================================================

class UnknownProviderError(CheckoutError):
    def __init__(self, provider: str, **kwargs: Any):
        super().__init__(
            message=f"Unsupported payment provider: {provider!r}",
            code="UNKNOWN_PROVIDER",
            http_status=404,
            provider=provider,
            **kwargs,
        )


class UnsupportedMethodError(CheckoutError):
    def __init__(self, method: str, **kwargs: Any):
        super().__init__(
            message=f"Unsupported payment method: {method!r}",
            code="UNSUPPORTED_METHOD",
            http_status=400,
            method=method,
            **kwargs,
        )


class OrderNotFoundError(CheckoutError):
    def __init__(self, order_id: str, **kwargs: Any):
        super().__init__(
            message=f"Order not found: {order_id}",
            code="ORDER_NOT_FOUND",
            http_status=404,
            order_id=order_id,
            **kwargs,
        )


class WebhookError(CheckoutError):
    """Raised when a gateway webhook cannot be authenticated or parsed."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message=message, code="INVALID_WEBHOOK", http_status=400, **kwargs)


def error_detail(message: str, code: Optional[str] = None) -> Dict[str, Any]:
    """Build an error response body."""
    body: Dict[str, Any] = {"message": message}
    if code:
        body["code"] = code
    return body
