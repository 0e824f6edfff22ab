"""
Order creation and lifecycle housekeeping.

Flow for ``create_order``:
1. Validate amount, package and currency
2. Convert to settlement minor units and check against the catalog price
3. Return the existing order for a replayed idempotency key
4. Register the order with the gateway (bounded by the gateway timeout)
5. Persist the order in ``created`` state
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.config import CreditPackage
from credit_checkout.core.currency import ConvertedAmount, CurrencyConverter
from credit_checkout.core.exceptions import (
    CheckoutError,
    IdempotencyConflictError,
    InvalidAmountError,
    UnknownPackageError,
)
from credit_checkout.core.gateway import PaymentGateway
from credit_checkout.database.models import Order, OrderStatus
from credit_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def _parse_amount(amount: Any) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidAmountError()
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError() from None
    if not value.is_finite() or value <= 0:
        raise InvalidAmountError()
    return value


class OrderService:
    """
    Creates payment orders. Every call mints a fresh order unless the
    caller supplies an idempotency key that was seen before.
    """

    def __init__(
        self,
        converter: CurrencyConverter,
        packages: Dict[str, CreditPackage],
        order_ttl_minutes: int = 30,
    ):
        self.converter = converter
        self.packages = packages
        self.order_ttl = timedelta(minutes=order_ttl_minutes)

    def _validate(self, amount: Any, source_currency: str, package_id: str) -> ConvertedAmount:
        """
        Validate order input and price it in settlement minor units.

        Raises:
            InvalidAmountError: Non-positive, non-finite, or not the package price
            UnknownPackageError: Empty or unknown package id
            UnsupportedCurrencyError: Currency outside the allow-list
        """
        value = _parse_amount(amount)

        package = self.packages.get(package_id) if package_id else None
        if package is None:
            raise UnknownPackageError(package_id or "")

        converted = self.converter.to_settlement(value, source_currency)
        expected = self.converter.to_settlement(package.price, package.currency)
        if converted.minor_units != expected.minor_units:
            raise InvalidAmountError(
                f"Amount does not match the price of package {package_id!r}"
            )
        return converted

    async def create_order(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        amount: Any,
        source_currency: str,
        package_id: str,
        subject_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """
        Create a payment order in ``created`` state.

        Args:
            session: Database session
            gateway: Provider the order is registered with
            amount: Price in ``source_currency`` major units
            source_currency: Currency the price is quoted in
            package_id: Credit package being bought
            subject_id: Verified identity placing the order, if any
            idempotency_key: Optional caller-supplied key for safe retries

        Returns:
            Order: The persisted order

        Raises:
            OrderError: Classified validation or gateway failure
        """
        logger.info(
            "order_creation_started",
            provider=gateway.name,
            source_currency=source_currency,
            package_id=package_id,
            subject_id=subject_id,
        )

        try:
            converted = self._validate(amount, source_currency, package_id)

            if idempotency_key:
                existing = await self._find_by_idempotency_key(session, idempotency_key)
                if existing is not None:
                    return self._replay(existing, idempotency_key, converted, package_id, subject_id)

            gateway_order = await gateway.create_order(
                amount=converted.minor_units,
                currency=converted.currency,
                notes={"package_id": package_id},
            )
        except CheckoutError as e:
            metrics.record_order_error(e.code)
            logger.warning("order_creation_failed", code=e.code, error=e.message)
            raise

        order = Order(
            id=gateway_order.id,
            provider=gateway.name,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            source_amount=str(amount),
            source_currency=source_currency.upper(),
            conversion_policy=converted.policy_version,
            package_id=package_id,
            gateway_key_id=gateway.key_id,
            subject_id=subject_id,
            idempotency_key=idempotency_key,
            status=OrderStatus.CREATED.value,
            created_at=datetime.now(timezone.utc),
        )
        session.add(order)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            if not idempotency_key:
                raise
            # A concurrent request with the same key won the insert
            existing = await self._find_by_idempotency_key(session, idempotency_key)
            if existing is None:
                raise
            logger.warning(
                "order_idempotency_race_lost",
                gateway_order_id=gateway_order.id,
                order_id=existing.id,
            )
            return self._replay(existing, idempotency_key, converted, package_id, subject_id)

        metrics.record_order_created(order.currency, package_id, order.amount)
        logger.info(
            "order_created",
            order_id=order.id,
            amount=order.amount,
            currency=order.currency,
            package_id=package_id,
        )
        return order

    @staticmethod
    def _replay(
        existing: Order,
        idempotency_key: str,
        converted: ConvertedAmount,
        package_id: str,
        subject_id: Optional[str],
    ) -> Order:
        if (
            existing.package_id != package_id
            or existing.amount != converted.minor_units
            or existing.subject_id != subject_id
        ):
            raise IdempotencyConflictError(idempotency_key)
        logger.info("order_idempotent_return", order_id=existing.id)
        return existing

    @staticmethod
    async def _find_by_idempotency_key(
        session: AsyncSession, idempotency_key: str
    ) -> Optional[Order]:
        result = await session.execute(
            select(Order).where(Order.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
        result = await session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def expire_stale_orders(
        self, session: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """
        Move orders still ``created`` after the order TTL to ``expired``.

        Uses the same status-guarded update as verification, so an order that
        is being verified concurrently is never expired underneath it.

        Returns:
            int: Number of orders expired
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.order_ttl
        result = await session.execute(
            update(Order)
            .where(Order.status == OrderStatus.CREATED.value, Order.created_at < cutoff)
            .values(status=OrderStatus.EXPIRED.value, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        expired = result.rowcount or 0
        metrics.record_orders_expired(expired)
        logger.info("stale_orders_expired", count=expired, cutoff=cutoff.isoformat())
        return expired
