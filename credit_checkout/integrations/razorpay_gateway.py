"""
Razorpay gateway adapter.

Implements:
- Order creation over the REST API with a hard timeout
- Circuit breaker that fails fast while the gateway is unhealthy
- Checkout descriptor construction for the client-side payment UI
- Payment and webhook signature computation (HMAC-SHA256)

Order creation is never retried here; retry policy belongs to the caller.
"""
import enum
import hashlib
import hmac
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from credit_checkout.config import Settings
from credit_checkout.core.exceptions import GatewayUnavailableError, UnsupportedMethodError
from credit_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"
    NETBANKING = "netbanking"
    ALL = "all"

    @classmethod
    def parse(cls, value: "str | PaymentMethod") -> "PaymentMethod":
        """Parse a method name, rejecting anything not in the enum."""
        try:
            return cls(str(value.value if isinstance(value, cls) else value).lower())
        except ValueError:
            raise UnsupportedMethodError(str(value)) from None


INSTRUMENTS = [m for m in PaymentMethod if m is not PaymentMethod.ALL]


def compute_signature(secret: str, message: str) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def payment_signature_payload(order_id: str, payment_reference: str) -> str:
    """The string the gateway signs for a completed checkout payment."""
    return f"{order_id}|{payment_reference}"


@dataclass(frozen=True)
class GatewayOrder:
    """Order as registered with the provider."""

    id: str
    amount: int
    currency: str
    receipt: str
    status: str = "created"


@dataclass(frozen=True)
class CheckoutDescriptor:
    """Everything the client needs to open the provider's payment UI."""

    key: str
    order_id: str
    amount: int
    currency: str
    name: str
    description: str
    method: Dict[str, bool] = field(default_factory=dict)
    prefill: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents piling requests onto a failing gateway by temporarily
    rejecting calls once the failure count reaches a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            GatewayUnavailableError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise GatewayUnavailableError("Payment gateway temporarily unavailable")

        try:
            result = await func(*args, **kwargs)
        except GatewayUnavailableError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("circuit_breaker_state_changed", state=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)


class RazorpayGateway:
    """
    Razorpay REST client plus the pure checkout/signature helpers.

    The key secret doubles as the checkout signing secret; webhooks are
    signed with a separate webhook secret.
    """

    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        merchant_name: str = "Aynstyn",
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self.merchant_name = merchant_name
        self.http_client = http_client or httpx.AsyncClient(
            base_url=api_base,
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout),
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info("razorpay_gateway_initialized", key_id=key_id)

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            api_base=settings.razorpay_api_base,
            timeout=settings.gateway_timeout_seconds,
            merchant_name=settings.merchant_name,
            http_client=http_client,
        )

    @property
    def has_webhook_secret(self) -> bool:
        return bool(self._webhook_secret)

    async def create_order(
        self,
        amount: int,
        currency: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Register an order with Razorpay.

        Args:
            amount: Amount in settlement minor units (paise)
            currency: Settlement currency code
            notes: Optional key/value notes stored on the provider order

        Returns:
            GatewayOrder: The provider-issued order

        Raises:
            GatewayUnavailableError: On rejection, transport failure or timeout
        """
        receipt = f"rcpt_{uuid.uuid4().hex[:24]}"
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes or {},
        }
        logger.info("creating_gateway_order", amount=amount, currency=currency, receipt=receipt)
        return await self.circuit_breaker.call(self._post_order, payload)

    async def _post_order(self, payload: Dict[str, Any]) -> GatewayOrder:
        start = time.time()
        try:
            response = await self.http_client.post("/orders", json=payload)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call("create_order", "timeout", time.time() - start)
            logger.error("gateway_order_timeout", error=str(e))
            raise GatewayUnavailableError("Payment gateway timed out", timed_out=True) from e
        except httpx.HTTPError as e:
            metrics.record_gateway_call("create_order", "transport_error", time.time() - start)
            logger.error("gateway_order_transport_error", error=str(e))
            raise GatewayUnavailableError("Payment gateway unreachable") from e

        duration = time.time() - start
        if response.status_code >= 400:
            metrics.record_gateway_call("create_order", str(response.status_code), duration)
            description = _error_description(response)
            logger.error(
                "gateway_order_rejected",
                status_code=response.status_code,
                error=description,
            )
            raise GatewayUnavailableError(f"Payment gateway rejected the order: {description}")

        try:
            body = response.json()
            order = GatewayOrder(
                id=body["id"],
                amount=int(body["amount"]),
                currency=body["currency"],
                receipt=body.get("receipt") or payload["receipt"],
                status=body.get("status", "created"),
            )
        except (ValueError, KeyError, TypeError) as e:
            metrics.record_gateway_call("create_order", "bad_response", duration)
            logger.error("gateway_order_bad_response", error=str(e))
            raise GatewayUnavailableError("Payment gateway returned an unreadable response") from e

        metrics.record_gateway_call("create_order", "success", duration)
        logger.info("gateway_order_created", gateway_order_id=order.id, duration_seconds=duration)
        return order

    def build_checkout_descriptor(
        self,
        order: Any,
        method: "str | PaymentMethod" = PaymentMethod.ALL,
        prefill: Optional[Dict[str, str]] = None,
    ) -> CheckoutDescriptor:
        """
        Map an order and a chosen instrument to a checkout descriptor.

        Pure: no network, no state.

        Raises:
            UnsupportedMethodError: If the method is not recognized
        """
        selected = PaymentMethod.parse(method)
        if selected is PaymentMethod.ALL:
            method_config: Dict[str, bool] = {}
        else:
            method_config = {m.value: m is selected for m in INSTRUMENTS}

        return CheckoutDescriptor(
            key=order.gateway_key_id,
            order_id=order.id,
            amount=order.amount,
            currency=order.currency,
            name=self.merchant_name,
            description=f"{order.package_id} - AI Assessment Credits",
            method=method_config,
            prefill=dict(prefill or {}),
        )

    def expected_payment_signature(self, order_id: str, payment_reference: str) -> str:
        return compute_signature(
            self._key_secret, payment_signature_payload(order_id, payment_reference)
        )

    def verify_payment_signature(
        self, order_id: str, payment_reference: str, signature: str
    ) -> bool:
        """Constant-time check of a checkout callback signature."""
        expected = self.expected_payment_signature(order_id, payment_reference)
        return hmac.compare_digest(expected.encode(), signature.encode())

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Constant-time check of ``X-Razorpay-Signature`` over the raw body."""
        if not self._webhook_secret:
            return False
        expected = hmac.new(self._webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.encode())

    async def aclose(self) -> None:
        await self.http_client.aclose()


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["description"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200] or response.reason_phrase
