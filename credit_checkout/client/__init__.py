"""HTTP client for driving a checkout against the API."""
from .checkout_session import (
    CheckoutRequestError,
    CheckoutSession,
    CheckoutState,
    CheckoutStateError,
    PaymentResult,
)

__all__ = [
    "CheckoutRequestError",
    "CheckoutSession",
    "CheckoutState",
    "CheckoutStateError",
    "PaymentResult",
]
