"""Interface the order and verification services need from a payment gateway."""
from typing import Dict, Optional, Protocol


class GatewayOrderLike(Protocol):
    id: str
    amount: int
    currency: str


class PaymentGateway(Protocol):
    name: str
    key_id: str

    async def create_order(
        self, amount: int, currency: str, notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrderLike: ...

    def verify_payment_signature(
        self, order_id: str, payment_reference: str, signature: str
    ) -> bool: ...
