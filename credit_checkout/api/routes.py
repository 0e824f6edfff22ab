"""
API routes for credit checkout.
"""
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.core.currency import ConvertedAmount
from credit_checkout.core.exceptions import OrderNotFoundError
from credit_checkout.core.identity import VerifiedIdentity
from credit_checkout.core.verification_service import VerificationFailure
from credit_checkout.database.models import Order
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway
from credit_checkout.integrations.webhook_handler import WebhookHandler

from .dependencies import (
    AppServices,
    get_db,
    get_gateway,
    get_services,
    get_webhook_handler,
    optional_identity,
    require_identity,
)
from .schemas import (
    CheckoutDescriptorResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    CreditsResponse,
    HealthCheckResponse,
    OrderStatusResponse,
    PackageResponse,
    PackagesResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

VERIFICATION_STATUS = {
    VerificationFailure.ORDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    VerificationFailure.SIGNATURE_MISMATCH: status.HTTP_400_BAD_REQUEST,
    VerificationFailure.ORDER_CLOSED: status.HTTP_409_CONFLICT,
    VerificationFailure.PAYMENT_FAILED: status.HTTP_409_CONFLICT,
}

VERIFICATION_MESSAGES = {
    VerificationFailure.ORDER_NOT_FOUND: "Order not found",
    VerificationFailure.SIGNATURE_MISMATCH: "Payment signature verification failed",
    VerificationFailure.ORDER_CLOSED: "Order is no longer open for payment",
    VerificationFailure.PAYMENT_FAILED: "Payment failed",
}


def _order_response(order: Order) -> CreateOrderResponse:
    return CreateOrderResponse(
        id=order.id,
        amount=order.amount,
        currency=order.currency,
        key_id=order.gateway_key_id,
        package_id=order.package_id,
        status=order.status,
        display_amount=str(
            ConvertedAmount(order.amount, order.currency, order.conversion_policy).major_units
        ),
    )


async def _visible_order(
    session: AsyncSession,
    services: AppServices,
    gateway: RazorpayGateway,
    order_id: str,
    identity: Optional[VerifiedIdentity],
) -> Order:
    """Load an order, hiding orders of other providers or other owners."""
    order = await services.order_service.get_order(session, order_id)
    if order is None or order.provider != gateway.name:
        raise OrderNotFoundError(order_id)
    if order.subject_id and (identity is None or identity.subject_id != order.subject_id):
        logger.warning(
            "order_access_denied",
            order_id=order_id,
            subject_id=identity.subject_id if identity is not None else None,
        )
        raise OrderNotFoundError(order_id)
    return order


@payment_router.get(
    "/packages",
    response_model=PackagesResponse,
    summary="List credit packages",
)
async def list_packages(services: AppServices = Depends(get_services)) -> PackagesResponse:
    return PackagesResponse(
        packages=[
            PackageResponse(**package.model_dump())
            for package in services.settings.packages.values()
        ]
    )


@payment_router.get(
    "/credits",
    response_model=CreditsResponse,
    summary="Credit balance of the signed-in user",
)
async def get_credits(
    identity: VerifiedIdentity = Depends(require_identity),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> CreditsResponse:
    balance = await services.ledger.balance(db, identity.subject_id)
    return CreditsResponse(credits=balance)


@payment_router.post(
    "/{provider}/create-order",
    response_model=CreateOrderResponse,
    summary="Create a payment order",
    description="Create a provider order for a credit package. Idempotent per Idempotency-Key.",
)
async def create_order(
    request: CreateOrderRequest,
    gateway: RazorpayGateway = Depends(get_gateway),
    identity: Optional[VerifiedIdentity] = Depends(optional_identity),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> CreateOrderResponse:
    """
    Create a new order in ``created`` state.

    Anonymous callers may buy; the order is then unowned until verification.
    """
    start_time = time.time()
    logger.info(
        "api_create_order_request",
        provider=gateway.name,
        package_id=request.package_id,
        currency=request.currency,
        subject_id=identity.subject_id if identity else None,
    )

    order = await services.order_service.create_order(
        db,
        gateway,
        amount=request.amount,
        source_currency=request.currency,
        package_id=request.package_id,
        subject_id=identity.subject_id if identity else None,
        idempotency_key=idempotency_key,
    )

    logger.info(
        "api_create_order_success",
        order_id=order.id,
        duration_seconds=time.time() - start_time,
    )
    return _order_response(order)


@payment_router.post(
    "/{provider}/verify",
    response_model=VerifyPaymentResponse,
    responses={
        400: {"model": VerifyPaymentResponse},
        404: {"model": VerifyPaymentResponse},
        409: {"model": VerifyPaymentResponse},
    },
    summary="Verify a completed payment",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    gateway: RazorpayGateway = Depends(get_gateway),
    identity: Optional[VerifiedIdentity] = Depends(optional_identity),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    Check the checkout callback signature and settle the order.

    Repeating a successful call returns success again without granting twice.
    """
    outcome = await services.verification_service.verify(
        db,
        gateway,
        order_id=request.order_id,
        payment_reference=request.payment_reference,
        signature=request.signature,
        subject_id=identity.subject_id if identity else None,
    )

    if outcome.verified:
        logger.info(
            "api_verify_success", order_id=outcome.order_id, replayed=outcome.replayed
        )
        return VerifyPaymentResponse(success=True, message="Payment verified successfully")

    logger.warning("api_verify_failed", order_id=outcome.order_id, reason=outcome.reason.value)
    body = VerifyPaymentResponse(
        success=False,
        message=VERIFICATION_MESSAGES[outcome.reason],
        code=outcome.reason.value,
    )
    return JSONResponse(
        status_code=VERIFICATION_STATUS[outcome.reason],
        content=body.model_dump(by_alias=True),
    )


@payment_router.get(
    "/{provider}/orders/{order_id}",
    response_model=OrderStatusResponse,
    summary="Get order status",
)
async def get_order_status(
    order_id: str,
    gateway: RazorpayGateway = Depends(get_gateway),
    identity: Optional[VerifiedIdentity] = Depends(optional_identity),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> OrderStatusResponse:
    order = await _visible_order(db, services, gateway, order_id, identity)
    return OrderStatusResponse(
        id=order.id,
        amount=order.amount,
        currency=order.currency,
        package_id=order.package_id,
        status=order.status,
    )


@payment_router.get(
    "/{provider}/orders/{order_id}/checkout",
    response_model=CheckoutDescriptorResponse,
    summary="Build checkout options",
    description="Options for opening the provider checkout restricted to one payment method.",
)
async def get_checkout_descriptor(
    order_id: str,
    method: str = Query(default="all"),
    gateway: RazorpayGateway = Depends(get_gateway),
    identity: Optional[VerifiedIdentity] = Depends(optional_identity),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_db),
) -> CheckoutDescriptorResponse:
    order = await _visible_order(db, services, gateway, order_id, identity)

    prefill: Dict[str, str] = {}
    if identity is not None:
        if identity.display_name:
            prefill["name"] = identity.display_name
        if identity.email:
            prefill["email"] = identity.email

    descriptor = gateway.build_checkout_descriptor(order, method=method, prefill=prefill)
    return CheckoutDescriptorResponse(**descriptor.to_dict())


@payment_router.post(
    "/{provider}/webhook",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
)
async def gateway_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
    db: AsyncSession = Depends(get_db),
    razorpay_signature: Optional[str] = Header(default=None, alias="X-Razorpay-Signature"),
    razorpay_event_id: Optional[str] = Header(default=None, alias="X-Razorpay-Event-Id"),
) -> WebhookResponse:
    """
    Handle gateway webhook events.

    The signature is checked over the raw body before anything is parsed.
    """
    body = await request.body()
    event = handler.verify_signature(body, razorpay_signature)
    logger.info("api_webhook_received", event_type=event["event"], event_id=razorpay_event_id)

    result = await handler.process_event(event, db, razorpay_signature, event_id=razorpay_event_id)
    return WebhookResponse(**result)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: AppServices = Depends(get_services)) -> Any:
    """Readiness probe endpoint. 503 until every dependency is available."""
    result = await services.health_check.readiness()
    if result["status"] != "healthy":
        logger.warning("readiness_check_failed", checks=result["checks"])
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
