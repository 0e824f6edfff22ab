"""
Client-side checkout flow.

``CheckoutSession`` walks one purchase through the API:

    IDLE -> ORDER_CREATED -> METHOD_SELECTED -> SUBMITTED -> SUCCEEDED | FAILED

The payment itself happens in the provider's UI, represented here by a
``payment_surface`` callable that receives the checkout descriptor and
returns the gateway-issued ``(payment_reference, signature)`` pair.
"""
import enum
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import httpx
import structlog

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]
PaymentSurface = Callable[[Dict[str, Any]], Awaitable[Tuple[str, str]]]


class CheckoutState(str, enum.Enum):
    IDLE = "idle"
    ORDER_CREATED = "order_created"
    METHOD_SELECTED = "method_selected"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckoutState.SUCCEEDED, CheckoutState.FAILED)


class CheckoutStateError(Exception):
    """Raised when a session step is called out of order."""

    def __init__(self, operation: str, state: CheckoutState):
        super().__init__(f"Cannot {operation} while checkout is {state.value}")
        self.operation = operation
        self.state = state


class CheckoutRequestError(Exception):
    """Raised when the API refuses a checkout step."""

    def __init__(self, message: str, code: Optional[str], status_code: int):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


@dataclass(frozen=True)
class PaymentResult:
    order_id: str
    success: bool
    message: Optional[str] = None
    code: Optional[str] = None


class CheckoutSession:
    """
    Drives one purchase from order creation to verified payment.

    Args:
        http_client: Client whose base URL points at the checkout API
        provider: Gateway path segment
        token_provider: Async callable returning the current bearer token, or
            None to check out anonymously
        idempotency_key: Key sent with order creation; generated per session
            when omitted, so retrying ``create_order`` never mints a second order
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        provider: str = "razorpay",
        token_provider: Optional[TokenProvider] = None,
        idempotency_key: Optional[str] = None,
    ):
        self.http_client = http_client
        self.provider = provider
        self.token_provider = token_provider
        self.idempotency_key = idempotency_key or uuid.uuid4().hex

        self.state = CheckoutState.IDLE
        self.order: Optional[Dict[str, Any]] = None
        self.descriptor: Optional[Dict[str, Any]] = None
        self.result: Optional[PaymentResult] = None
        self._package_id: Optional[str] = None
        self._pending: Optional[Tuple[str, str]] = None

    @property
    def order_id(self) -> Optional[str]:
        return self.order["id"] if self.order else None

    def _require(self, operation: str, *states: CheckoutState) -> None:
        if self.state not in states:
            raise CheckoutStateError(operation, self.state)

    def _transition(self, state: CheckoutState) -> None:
        logger.debug(
            "checkout_state_changed",
            order_id=self.order_id,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state

    async def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.token_provider is not None:
            token = await self.token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        raise CheckoutRequestError(
            body.get("message") or response.reason_phrase,
            body.get("code"),
            response.status_code,
        )

    async def create_order(
        self, amount: Union[Decimal, str], currency: str, package_id: str
    ) -> Dict[str, Any]:
        """
        Create the server-side order.

        Raises:
            CheckoutStateError: If an order already exists for this session
            CheckoutRequestError: If the API rejects the order
        """
        self._require("create an order", CheckoutState.IDLE)

        headers = await self._headers()
        headers["Idempotency-Key"] = self.idempotency_key
        response = await self.http_client.post(
            f"/api/payments/{self.provider}/create-order",
            json={"amount": str(amount), "currency": currency, "packageId": package_id},
            headers=headers,
        )
        self._raise_for_error(response)

        self.order = response.json()
        self._package_id = package_id
        self._transition(CheckoutState.ORDER_CREATED)
        logger.info("checkout_order_created", order_id=self.order_id, package_id=package_id)
        return self.order

    async def select_method(self, method: str = "all") -> Dict[str, Any]:
        """
        Choose the payment instrument and fetch the checkout descriptor.

        May be called again to change the method before submitting.
        """
        self._require(
            "select a payment method",
            CheckoutState.ORDER_CREATED,
            CheckoutState.METHOD_SELECTED,
        )

        response = await self.http_client.get(
            f"/api/payments/{self.provider}/orders/{self.order_id}/checkout",
            params={"method": method},
            headers=await self._headers(),
        )
        self._raise_for_error(response)

        self.descriptor = response.json()
        self._transition(CheckoutState.METHOD_SELECTED)
        return self.descriptor

    async def submit(self, payment_surface: PaymentSurface) -> PaymentResult:
        """
        Collect the payment and have the server verify it.

        If the payment surface raises (for example the user closed the
        payment UI) the session returns to METHOD_SELECTED and the error
        propagates.
        """
        self._require("submit payment", CheckoutState.METHOD_SELECTED)
        if self.descriptor is None:
            raise CheckoutStateError("submit payment", self.state)

        self._transition(CheckoutState.SUBMITTED)
        try:
            self._pending = await payment_surface(self.descriptor)
        except Exception:
            self._transition(CheckoutState.METHOD_SELECTED)
            raise
        return await self._confirm()

    async def retry_verification(self) -> PaymentResult:
        """
        Re-send the last submission after a transport failure, a 5xx
        response or an expired credential.

        Verification is idempotent on the server, so this never grants twice.
        """
        self._require("retry verification", CheckoutState.SUBMITTED)
        if self._pending is None:
            raise CheckoutStateError("retry verification", self.state)
        return await self._confirm()

    async def _confirm(self) -> PaymentResult:
        if self._pending is None:
            raise CheckoutStateError("confirm payment", self.state)
        payment_reference, signature = self._pending

        # Transport errors leave the session SUBMITTED for retry_verification
        response = await self.http_client.post(
            f"/api/payments/{self.provider}/verify",
            json={
                "orderId": self.order_id,
                "paymentReference": payment_reference,
                "signature": signature,
                "packageId": self._package_id,
            },
            headers=await self._headers(),
        )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code == 401 or response.status_code >= 500:
            # Credential or server problem, not a payment outcome: stay SUBMITTED
            logger.warning(
                "checkout_verification_unavailable",
                order_id=self.order_id,
                status_code=response.status_code,
            )
            raise CheckoutRequestError(
                body.get("message") or response.reason_phrase,
                body.get("code"),
                response.status_code,
            )

        self.result = PaymentResult(
            order_id=self.order_id or "",
            success=response.is_success and bool(body.get("success")),
            message=body.get("message"),
            code=body.get("code"),
        )
        self._transition(CheckoutState.SUCCEEDED if self.result.success else CheckoutState.FAILED)
        logger.info(
            "checkout_completed",
            order_id=self.order_id,
            success=self.result.success,
            code=self.result.code,
        )
        return self.result

    def reset(self) -> None:
        """Start over after a finished checkout, with a fresh idempotency key."""
        self._require("reset", CheckoutState.SUCCEEDED, CheckoutState.FAILED)
        self.state = CheckoutState.IDLE
        self.order = None
        self.descriptor = None
        self.result = None
        self._package_id = None
        self._pending = None
        self.idempotency_key = uuid.uuid4().hex
