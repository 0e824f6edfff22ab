"""
Razorpay webhook handler with signature verification and event routing.

Implements:
- Webhook signature verification over the raw body
- Event type routing to handlers
- Settlement through the same compare-and-set as client verification, so
  duplicate or racing deliveries never grant twice
"""
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.core.exceptions import WebhookError
from credit_checkout.core.verification_service import VerificationService
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway
from credit_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any], AsyncSession, str], Awaitable[Dict[str, Any]]]


class WebhookHandler:
    """
    Handles Razorpay webhook events.

    Features:
    - Signature verification using the webhook secret
    - Event type routing to registered handlers
    - Unknown events acknowledged and ignored
    """

    def __init__(self, gateway: RazorpayGateway, verification_service: VerificationService):
        self.gateway = gateway
        self.verification_service = verification_service
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment.captured", self.handle_payment_captured)
        self.register_handler("order.paid", self.handle_payment_captured)
        self.register_handler("payment.failed", self.handle_payment_failed)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Razorpay event type (e.g., 'payment.captured')
            handler: Async callable taking (event, session, signature)
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the event.

        Args:
            payload: Raw request body as bytes
            signature: X-Razorpay-Signature header value

        Returns:
            Dict[str, Any]: Parsed event

        Raises:
            WebhookError: If the signature is missing or wrong, or the body is not JSON
        """
        if not self.gateway.has_webhook_secret:
            raise WebhookError("Webhook secret is not configured")
        if not signature or not self.gateway.verify_webhook_signature(payload, signature):
            logger.error("webhook_signature_verification_failed")
            raise WebhookError("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(event, dict) or "event" not in event:
            raise WebhookError("Webhook body has no event type")
        return event

    async def process_event(
        self,
        event: Dict[str, Any],
        session: AsyncSession,
        signature: str,
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Returns:
            Dict[str, Any]: Processing result
        """
        event_type = event["event"]
        event_id = event_id or event.get("id") or "unknown"
        log = logger.bind(event_id=event_id, event_type=event_type)

        handler = self.event_handlers.get(event_type)
        if handler is None:
            log.info("webhook_event_ignored")
            metrics.record_webhook_event(event_type, "ignored")
            return {
                "status": "ignored",
                "event_id": event_id,
                "message": f"No handler registered for event type: {event_type}",
            }

        try:
            result = await handler(event, session, signature)
        except (AttributeError, KeyError, TypeError) as e:
            metrics.record_webhook_event(event_type, "malformed")
            log.error("webhook_event_malformed", error=str(e))
            raise WebhookError(f"Malformed {event_type} event: missing {e}") from e

        metrics.record_webhook_event(event_type, result["status"])
        log.info("webhook_event_processed", status=result["status"])
        return {"event_id": event_id, **result}

    async def handle_payment_captured(
        self, event: Dict[str, Any], session: AsyncSession, signature: str
    ) -> Dict[str, Any]:
        """Settle the order a captured payment belongs to."""
        payment = event["payload"]["payment"]["entity"]
        if not payment.get("order_id"):
            return _unattached(payment)

        outcome = await self.verification_service.confirm_captured(
            session,
            order_id=payment["order_id"],
            payment_reference=payment["id"],
            evidence=signature,
        )
        if outcome.verified:
            status = "duplicate" if outcome.replayed else "success"
            return {"status": status, "message": f"Order {outcome.order_id} verified"}
        return {
            "status": "rejected",
            "message": f"Order {outcome.order_id} not settled: {outcome.reason.value}",
        }

    async def handle_payment_failed(
        self, event: Dict[str, Any], session: AsyncSession, signature: str
    ) -> Dict[str, Any]:
        """Audit a failed attempt; the order stays open for a retry."""
        payment = event["payload"]["payment"]["entity"]
        if not payment.get("order_id"):
            return _unattached(payment)

        await self.verification_service.record_failed_attempt(
            session,
            order_id=payment["order_id"],
            payment_reference=payment["id"],
            evidence=signature,
        )
        return {
            "status": "success",
            "message": f"Failed attempt {payment['id']} recorded for order {payment['order_id']}",
        }


def _unattached(payment: Dict[str, Any]) -> Dict[str, Any]:
    # Payment links and direct captures carry no order of ours
    logger.info("webhook_payment_without_order", payment_reference=payment.get("id"))
    return {"status": "ignored", "message": "Payment is not attached to an order"}
