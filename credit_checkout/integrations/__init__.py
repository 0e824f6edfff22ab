"""External integrations: payment gateway and its webhooks."""
from .razorpay_gateway import (
    CheckoutDescriptor,
    CircuitBreaker,
    GatewayOrder,
    PaymentMethod,
    RazorpayGateway,
    compute_signature,
)
from .webhook_handler import WebhookHandler

__all__ = [
    "CheckoutDescriptor",
    "CircuitBreaker",
    "GatewayOrder",
    "PaymentMethod",
    "RazorpayGateway",
    "WebhookHandler",
    "compute_signature",
]
