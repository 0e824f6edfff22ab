"""
Tests for the order expiry worker.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from credit_checkout.config import Settings
from credit_checkout.core.order_service import OrderService
from credit_checkout.core.verification_service import VerificationService
from credit_checkout.database.connection import Database
from credit_checkout.database.models import Order, OrderStatus
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway
from credit_checkout.workers import run_expiry_pass, start_order_expiry_worker

from .conftest import sign


async def backdate(database: Database, order_id: str, minutes: int) -> None:
    async with database.session() as session:
        await session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes))
        )
        await session.commit()


async def status_of(database: Database, order_id: str) -> str:
    async with database.session() as session:
        result = await session.execute(select(Order.status).where(Order.id == order_id))
        return result.scalar_one()


class TestOrderExpiryWorker:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_pass_expires_only_stale_orders(
        self, database: Database, order_service: OrderService, gateway: RazorpayGateway
    ) -> None:
        async with database.session() as session:
            stale = await order_service.create_order(session, gateway, "12.00", "USD", "starter-pack")
            fresh = await order_service.create_order(session, gateway, "12.00", "USD", "starter-pack")
        await backdate(database, stale.id, minutes=45)

        assert await run_expiry_pass(database, order_service) == 1

        assert await status_of(database, stale.id) == OrderStatus.EXPIRED.value
        assert await status_of(database, fresh.id) == OrderStatus.CREATED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_runs_once(
        self,
        test_settings: Settings,
        database: Database,
        order_service: OrderService,
        gateway: RazorpayGateway,
    ) -> None:
        async with database.session() as session:
            order = await order_service.create_order(
                session, gateway, "4.99", "USD", "basic"
            )
        await backdate(database, order.id, minutes=test_settings.order_ttl_minutes + 1)

        await start_order_expiry_worker(interval_seconds=1, settings=test_settings, once=True)

        assert await status_of(database, order.id) == OrderStatus.EXPIRED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verified_orders_never_expire(
        self,
        database: Database,
        order_service: OrderService,
        gateway: RazorpayGateway,
        verification_service: VerificationService,
    ) -> None:
        async with database.session() as session:
            order = await order_service.create_order(session, gateway, "12.00", "USD", "starter-pack")
            await verification_service.verify(
                session, gateway, order.id, "pay_1", sign(order.id, "pay_1")
            )
        await backdate(database, order.id, minutes=120)

        assert await run_expiry_pass(database, order_service) == 0
        assert await status_of(database, order.id) == OrderStatus.VERIFIED.value
