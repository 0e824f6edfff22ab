"""
Credit ledger: the side effect gated behind first-time verification.

Grants are written through the caller's session so they commit or roll back
together with the ``verified`` record.
"""
from datetime import datetime, timezone
from typing import Optional, Protocol

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.config import CreditPackage
from credit_checkout.database.models import CreditBalance, CreditGrant, Order

logger = structlog.get_logger(__name__)


class CreditLedger(Protocol):
    async def grant(
        self, session: AsyncSession, order: Order, subject_id: Optional[str]
    ) -> CreditGrant: ...

    async def balance(self, session: AsyncSession, subject_id: str) -> int: ...


class DatabaseCreditLedger:
    """Stores grants and balances in the service database."""

    def __init__(self, packages: dict[str, CreditPackage]):
        self.packages = packages

    async def grant(
        self, session: AsyncSession, order: Order, subject_id: Optional[str]
    ) -> CreditGrant:
        """
        Add one grant row for the order and credit the subject's balance.

        The unique ``order_id`` on grants makes a second grant for the same
        order fail at flush time.
        """
        package = self.packages[order.package_id]
        now = datetime.now(timezone.utc)
        grant = CreditGrant(
            order_id=order.id,
            subject_id=subject_id,
            package_id=package.id,
            credits=package.credits,
            granted_at=now,
        )
        session.add(grant)

        if subject_id is not None:
            result = await session.execute(
                update(CreditBalance)
                .where(CreditBalance.subject_id == subject_id)
                .values(credits=CreditBalance.credits + package.credits, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.add(
                    CreditBalance(subject_id=subject_id, credits=package.credits, updated_at=now)
                )
        else:
            logger.warning("credit_grant_unassigned", order_id=order.id)

        await session.flush()
        logger.info(
            "credits_granted",
            order_id=order.id,
            subject_id=subject_id,
            credits=package.credits,
        )
        return grant

    async def balance(self, session: AsyncSession, subject_id: str) -> int:
        result = await session.execute(
            select(CreditBalance.credits).where(CreditBalance.subject_id == subject_id)
        )
        return result.scalar_one_or_none() or 0
