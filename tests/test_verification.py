"""
Verification tests: signature checks, idempotence and exactly-once credit grants.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.core.ledger import DatabaseCreditLedger
from credit_checkout.core.order_service import OrderService
from credit_checkout.core.verification_service import (
    VerificationFailure,
    VerificationOutcome,
    VerificationService,
)
from credit_checkout.database.connection import Database
from credit_checkout.database.models import (
    CreditGrant,
    Order,
    OrderStatus,
    VerificationOutcomeType,
    VerificationRecord,
)
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway

from .conftest import sign


async def place_order(
    order_service: OrderService,
    gateway: RazorpayGateway,
    session: AsyncSession,
    subject_id: Optional[str] = "user-123",
    package_id: str = "starter-pack",
    amount: str = "12.00",
) -> Order:
    return await order_service.create_order(
        session, gateway, amount, "USD", package_id, subject_id=subject_id
    )


async def records(session: AsyncSession, order_id: str) -> List[VerificationRecord]:
    result = await session.execute(
        select(VerificationRecord)
        .where(VerificationRecord.order_id == order_id)
        .order_by(VerificationRecord.id)
    )
    return list(result.scalars().all())


async def grant_count(session: AsyncSession, order_id: Optional[str] = None) -> int:
    query = select(func.count()).select_from(CreditGrant)
    if order_id is not None:
        query = query.where(CreditGrant.order_id == order_id)
    result = await session.execute(query)
    return result.scalar_one()


async def order_status(session: AsyncSession, order_id: str) -> str:
    result = await session.execute(select(Order.status).where(Order.id == order_id))
    return result.scalar_one()


class TestVerify:
    """Test suite for VerificationService.verify."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_correct_signature_verifies_and_credits_owner(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        outcome = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", sign(order.id, "pay_123")
        )

        assert outcome == VerificationOutcome(order_id=order.id, verified=True)
        assert outcome.success
        assert await order_status(db_session, order.id) == OrderStatus.VERIFIED.value
        assert await ledger.balance(db_session, "user-123") == 30

        [record] = await records(db_session, order.id)
        assert record.outcome == VerificationOutcomeType.VERIFIED.value
        assert record.payment_reference == "pay_123"
        assert record.source == "checkout"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_verify_grants_once(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)
        signature = sign(order.id, "pay_123")

        first = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", signature
        )
        second = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", signature
        )

        assert first.verified and second.verified
        assert second.replayed
        assert first.success == second.success
        assert await grant_count(db_session, order.id) == 1
        assert len(await records(db_session, order.id)) == 1
        assert await ledger.balance(db_session, "user-123") == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_signature_is_recorded_as_failed(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        outcome = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", "tampered-signature"
        )

        assert not outcome.success
        assert outcome.reason is VerificationFailure.SIGNATURE_MISMATCH
        [record] = await records(db_session, order.id)
        assert record.outcome == VerificationOutcomeType.FAILED.value
        assert record.reason == "SIGNATURE_MISMATCH"
        assert record.signature == "tampered-signature"
        assert await grant_count(db_session) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_forged_attempt_does_not_block_genuine_payment(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        forged = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", sign(order.id, "pay_123", "wrong-secret")
        )
        genuine = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", sign(order.id, "pay_123")
        )

        assert not forged.success
        assert genuine.success
        assert [r.outcome for r in await records(db_session, order.id)] == ["failed", "verified"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_after_success_fails_without_side_effects(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)
        await verification_service.verify(
            db_session, gateway, order.id, "pay_123", sign(order.id, "pay_123")
        )

        outcome = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", "tampered-signature"
        )

        assert not outcome.success
        assert outcome.reason is VerificationFailure.SIGNATURE_MISMATCH
        assert await order_status(db_session, order.id) == OrderStatus.VERIFIED.value
        assert await ledger.balance(db_session, "user-123") == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_inputs_give_same_outcome(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        outcomes = [
            await verification_service.verify(db_session, gateway, order.id, "pay_9", "bad")
            for _ in range(3)
        ]

        assert {(o.verified, o.reason) for o in outcomes} == {
            (False, VerificationFailure.SIGNATURE_MISMATCH)
        }
        assert len(await records(db_session, order.id)) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_is_recorded(
        self,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        outcome = await verification_service.verify(
            db_session, gateway, "order_missing", "pay_1", sign("order_missing", "pay_1")
        )

        assert outcome.reason is VerificationFailure.ORDER_NOT_FOUND
        [record] = await records(db_session, "order_missing")
        assert record.reason == "ORDER_NOT_FOUND"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_order_is_closed(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)
        await order_service.expire_stale_orders(
            db_session, now=datetime.now(timezone.utc) + timedelta(hours=1)
        )

        outcome = await verification_service.verify(
            db_session, gateway, order.id, "pay_123", sign(order.id, "pay_123")
        )

        assert outcome.reason is VerificationFailure.ORDER_CLOSED
        assert await order_status(db_session, order.id) == OrderStatus.EXPIRED.value
        assert await grant_count(db_session) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_anonymous_order_credits_verifying_identity(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session, subject_id=None)

        await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1"), subject_id="user-456"
        )

        assert await ledger.balance(db_session, "user-456") == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_owned_order_credits_owner_not_presenter(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session, subject_id="user-123")

        await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1"), subject_id="user-456"
        )

        assert await ledger.balance(db_session, "user-123") == 30
        assert await ledger.balance(db_session, "user-456") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unowned_grant_is_still_recorded(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session, subject_id=None)

        outcome = await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
        )

        assert outcome.success
        result = await db_session.execute(select(CreditGrant).where(CreditGrant.order_id == order.id))
        grant = result.scalar_one()
        assert grant.subject_id is None
        assert grant.credits == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balances_accumulate_across_orders(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        starter = await place_order(order_service, gateway, db_session)
        basic = await place_order(
            order_service, gateway, db_session, package_id="basic", amount="4.99"
        )

        for order in (starter, basic):
            await verification_service.verify(
                db_session, gateway, order.id, "pay_x", sign(order.id, "pay_x")
            )

        assert await ledger.balance(db_session, "user-123") == 40


class TestGatewayNotifications:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_attempt_is_audited_and_order_stays_open(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        outcome = await verification_service.record_failed_attempt(
            db_session, order.id, "pay_declined", "evidence"
        )

        assert outcome.reason is VerificationFailure.PAYMENT_FAILED
        assert await order_status(db_session, order.id) == OrderStatus.CREATED.value
        [record] = await records(db_session, order.id)
        assert record.outcome == VerificationOutcomeType.FAILED.value
        assert record.reason == VerificationFailure.PAYMENT_FAILED.value
        assert record.payment_reference == "pay_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_then_successful_attempt_grants_once(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)
        await verification_service.record_failed_attempt(
            db_session, order.id, "pay_declined", "evidence"
        )

        callback = await verification_service.verify(
            db_session, gateway, order.id, "pay_ok", sign(order.id, "pay_ok")
        )
        captured = await verification_service.confirm_captured(
            db_session, order.id, "pay_ok", "webhook-signature"
        )

        assert callback.verified and not callback.replayed
        assert captured.verified and captured.replayed
        assert await order_status(db_session, order.id) == OrderStatus.VERIFIED.value
        assert await grant_count(db_session, order.id) == 1
        assert await ledger.balance(db_session, "user-123") == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_notice_cannot_undo_verification(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)
        await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
        )

        await verification_service.record_failed_attempt(db_session, order.id, "pay_2", "e")
        assert await order_status(db_session, order.id) == OrderStatus.VERIFIED.value

        replay = await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
        )
        assert replay.verified and replay.replayed

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_then_callback_grants_once(
        self,
        order_service: OrderService,
        verification_service: VerificationService,
        gateway: RazorpayGateway,
        db_session: AsyncSession,
    ) -> None:
        order = await place_order(order_service, gateway, db_session)

        captured = await verification_service.confirm_captured(
            db_session, order.id, "pay_1", "webhook-signature"
        )
        callback = await verification_service.verify(
            db_session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
        )

        assert captured.verified and not captured.replayed
        assert callback.verified and callback.replayed
        assert await grant_count(db_session, order.id) == 1


class TestConcurrentVerification:
    """Races on one order must produce exactly one grant."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_callbacks_grant_once(
        self,
        database: Database,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
    ) -> None:
        async with database.session_factory() as session:
            order = await place_order(order_service, gateway, session)
        signature = sign(order.id, "pay_123")

        async def attempt() -> VerificationOutcome:
            async with database.session_factory() as session:
                return await verification_service.verify(
                    session, gateway, order.id, "pay_123", signature
                )

        outcomes = await asyncio.gather(*(attempt() for _ in range(8)))

        assert all(outcome.verified for outcome in outcomes)
        assert sum(1 for outcome in outcomes if not outcome.replayed) == 1

        async with database.session_factory() as session:
            assert await grant_count(session, order.id) == 1
            verified = [
                r for r in await records(session, order.id)
                if r.outcome == VerificationOutcomeType.VERIFIED.value
            ]
            assert len(verified) == 1
            assert await ledger.balance(session, "user-123") == 30

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_webhook_racing_callback_grants_once(
        self,
        database: Database,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
    ) -> None:
        async with database.session_factory() as session:
            order = await place_order(order_service, gateway, session)

        async def callback() -> VerificationOutcome:
            async with database.session_factory() as session:
                return await verification_service.verify(
                    session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
                )

        async def webhook() -> VerificationOutcome:
            async with database.session_factory() as session:
                return await verification_service.confirm_captured(
                    session, order.id, "pay_1", "webhook-signature"
                )

        outcomes = await asyncio.gather(callback(), webhook(), callback(), webhook())

        assert all(outcome.verified for outcome in outcomes)
        async with database.session_factory() as session:
            assert await grant_count(session, order.id) == 1
            assert await ledger.balance(session, "user-123") == 30

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_orders_verify_independently(
        self,
        database: Database,
        order_service: OrderService,
        verification_service: VerificationService,
        ledger: DatabaseCreditLedger,
        gateway: RazorpayGateway,
    ) -> None:
        async with database.session_factory() as session:
            orders = [await place_order(order_service, gateway, session) for _ in range(4)]

        async def attempt(order: Order) -> VerificationOutcome:
            async with database.session_factory() as session:
                return await verification_service.verify(
                    session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
                )

        outcomes: List[Any] = await asyncio.gather(*(attempt(order) for order in orders))

        assert all(outcome.verified and not outcome.replayed for outcome in outcomes)
        async with database.session_factory() as session:
            assert await grant_count(session) == 4
            assert await ledger.balance(session, "user-123") == 120
