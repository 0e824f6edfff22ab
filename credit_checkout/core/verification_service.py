"""
Payment verification with exactly-once credit issuance.

The ``created -> verified`` transition is a single status-guarded UPDATE
(compare-and-set). Only the caller whose UPDATE changes the row writes the
``verified`` record and grants credits, in the same transaction. Callers that
lose the race observe the verified order and return the same outcome with no
side effects. Different orders never contend with each other.
"""
import enum
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.core.gateway import PaymentGateway
from credit_checkout.core.ledger import CreditLedger
from credit_checkout.database.models import (
    Order,
    OrderStatus,
    VerificationOutcomeType,
    VerificationRecord,
)
from credit_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class VerificationFailure(str, enum.Enum):
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    ORDER_CLOSED = "ORDER_CLOSED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of one verification attempt."""

    order_id: str
    verified: bool
    reason: Optional[VerificationFailure] = None
    replayed: bool = False

    @property
    def success(self) -> bool:
        return self.verified

    @classmethod
    def failed(cls, order_id: str, reason: VerificationFailure) -> "VerificationOutcome":
        return cls(order_id=order_id, verified=False, reason=reason)


class VerificationService:
    """
    Validates completed-payment callbacks and settles orders.

    Every attempt, successful or not, leaves a ``VerificationRecord`` so
    forged or repeated submissions are auditable.
    """

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    async def verify(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        order_id: str,
        payment_reference: str,
        signature: str,
        subject_id: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Verify a checkout callback and credit the order's owner once.

        Args:
            session: Database session
            gateway: Gateway whose shared secret signed the callback
            order_id: Provider order id
            payment_reference: Provider payment id
            signature: Hex HMAC-SHA256 of ``order_id|payment_reference``
            subject_id: Verified identity presenting the callback; credited
                only when the order itself was placed anonymously

        Returns:
            VerificationOutcome: Same inputs always yield the same outcome
        """
        log = logger.bind(order_id=order_id, payment_reference=payment_reference)

        order = await self._load_order(session, order_id)
        if order is None:
            log.warning("verification_order_not_found")
            return await self._record_failure(
                session, order_id, payment_reference, signature,
                VerificationFailure.ORDER_NOT_FOUND, source="checkout",
            )

        prior = await self._verified_record(session, order_id)
        if prior is not None and _same_submission(prior, payment_reference, signature):
            log.info("verification_replayed")
            metrics.record_verification("verified", "replayed")
            return VerificationOutcome(order_id=order_id, verified=True, replayed=True)

        if not gateway.verify_payment_signature(order_id, payment_reference, signature):
            log.warning("verification_signature_mismatch")
            return await self._record_failure(
                session, order_id, payment_reference, signature,
                VerificationFailure.SIGNATURE_MISMATCH, source="checkout",
            )

        return await self._settle(
            session,
            order,
            payment_reference,
            signature,
            source="checkout",
            subject_id=order.subject_id or subject_id,
        )

    async def confirm_captured(
        self,
        session: AsyncSession,
        order_id: str,
        payment_reference: str,
        evidence: str,
    ) -> VerificationOutcome:
        """
        Settle an order from an already-authenticated gateway webhook.

        Shares the compare-and-set with ``verify``, so a webhook racing the
        client callback still yields exactly one grant.
        """
        order = await self._load_order(session, order_id)
        if order is None:
            logger.warning("webhook_order_not_found", order_id=order_id)
            return await self._record_failure(
                session, order_id, payment_reference, evidence,
                VerificationFailure.ORDER_NOT_FOUND, source="webhook",
            )
        return await self._settle(
            session, order, payment_reference, evidence,
            source="webhook", subject_id=order.subject_id,
        )

    async def record_failed_attempt(
        self,
        session: AsyncSession,
        order_id: str,
        payment_reference: str,
        evidence: str,
    ) -> VerificationOutcome:
        """
        Audit a payment attempt the gateway reports as failed.

        The order stays ``created``: a declined attempt can be followed by a
        successful one on the same gateway order, which must still settle.
        Abandoned orders are closed by the expiry sweep instead.
        """
        outcome = await self._record_failure(
            session, order_id, payment_reference, evidence,
            VerificationFailure.PAYMENT_FAILED, source="webhook",
        )
        logger.info(
            "payment_attempt_failed", order_id=order_id, payment_reference=payment_reference
        )
        return outcome

    async def _settle(
        self,
        session: AsyncSession,
        order: Order,
        payment_reference: str,
        signature: str,
        source: str,
        subject_id: Optional[str],
    ) -> VerificationOutcome:
        order_id = order.id
        now = datetime.now(timezone.utc)

        for attempt in (1, 2):
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.CREATED.value)
                .values(status=OrderStatus.VERIFIED.value, closed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                break

            session.add(
                VerificationRecord(
                    order_id=order_id,
                    payment_reference=payment_reference,
                    signature=signature,
                    outcome=VerificationOutcomeType.VERIFIED.value,
                    source=source,
                    verified_at=now,
                )
            )
            try:
                grant = await self.ledger.grant(session, order, subject_id)
                await session.commit()
            except IntegrityError:
                # A concurrent first grant to the same subject created the
                # balance row; the order itself is still open
                await session.rollback()
                logger.warning("verification_grant_conflict", order_id=order_id, attempt=attempt)
                if attempt == 2:
                    raise
                await session.refresh(order)
                continue

            metrics.record_verification("verified", None)
            metrics.record_credit_grant(grant.package_id, grant.credits)
            logger.info(
                "payment_verified",
                order_id=order_id,
                payment_reference=payment_reference,
                source=source,
                subject_id=subject_id,
            )
            return VerificationOutcome(order_id=order_id, verified=True)

        # Lost the transition: report whatever terminal state the winner left
        status = await self._current_status(session, order_id)
        if status == OrderStatus.VERIFIED.value:
            logger.info("verification_already_settled", order_id=order_id, source=source)
            metrics.record_verification("verified", "replayed")
            return VerificationOutcome(order_id=order_id, verified=True, replayed=True)

        logger.warning("verification_order_closed", order_id=order_id, status=status)
        return await self._record_failure(
            session, order_id, payment_reference, signature,
            VerificationFailure.ORDER_CLOSED, source=source,
        )

    async def _record_failure(
        self,
        session: AsyncSession,
        order_id: str,
        payment_reference: str,
        signature: str,
        reason: VerificationFailure,
        source: str,
    ) -> VerificationOutcome:
        session.add(
            VerificationRecord(
                order_id=order_id,
                payment_reference=payment_reference,
                signature=signature,
                outcome=VerificationOutcomeType.FAILED.value,
                reason=reason.value,
                source=source,
                verified_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
        metrics.record_verification("failed", reason.value)
        return VerificationOutcome.failed(order_id, reason)

    @staticmethod
    async def _load_order(session: AsyncSession, order_id: str) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _current_status(session: AsyncSession, order_id: str) -> Optional[str]:
        result = await session.execute(select(Order.status).where(Order.id == order_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _verified_record(
        session: AsyncSession, order_id: str
    ) -> Optional[VerificationRecord]:
        result = await session.execute(
            select(VerificationRecord).where(
                VerificationRecord.order_id == order_id,
                VerificationRecord.outcome == VerificationOutcomeType.VERIFIED.value,
            )
        )
        return result.scalar_one_or_none()


def _same_submission(record: VerificationRecord, payment_reference: str, signature: str) -> bool:
    return hmac.compare_digest(
        record.payment_reference.encode(), payment_reference.encode()
    ) and hmac.compare_digest(record.signature.encode(), signature.encode())
