"""SQLAlchemy database models for order and verification bookkeeping."""
import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class OrderStatus(str, enum.Enum):
    """Server-persisted order states. ``submitted`` only exists client-side."""

    CREATED = "created"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.CREATED


class VerificationOutcomeType(str, enum.Enum):
    VERIFIED = "verified"
    FAILED = "failed"


class Order(Base):
    """
    Payment orders table.

    One row per provider-registered order. The primary key is the
    provider-issued order id; it never changes once written.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    source_amount: Mapped[str] = mapped_column(String(32), nullable=False)
    source_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    conversion_policy: Mapped[str] = mapped_column(String(64), nullable=False)
    package_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_key_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=OrderStatus.CREATED.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('created', 'verified', 'failed', 'expired')",
            name="valid_order_status",
        ),
        Index("idx_orders_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, amount={self.amount} {self.currency}, "
            f"package={self.package_id}, status={self.status})>"
        )


class VerificationRecord(Base):
    """
    Verification attempts audit table.

    One row per verification attempt, successful or not. At most one
    ``verified`` row may exist per order (enforced by a partial unique index).
    """

    __tablename__ = "verification_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    signature: Mapped[str] = mapped_column(String(256), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="checkout")
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("outcome IN ('verified', 'failed')", name="valid_outcome"),
        Index(
            "uq_verification_verified_once",
            "order_id",
            unique=True,
            sqlite_where=text("outcome = 'verified'"),
            postgresql_where=text("outcome = 'verified'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<VerificationRecord(id={self.id}, order_id={self.order_id}, "
            f"outcome={self.outcome}, reason={self.reason})>"
        )


class CreditGrant(Base):
    """
    Ledger entries: one credit grant per verified order.

    The unique order id makes a second grant for the same order impossible.
    """

    __tablename__ = "credit_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    package_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (CheckConstraint("credits > 0", name="positive_credits"),)


class CreditBalance(Base):
    """Current credit balance per identity subject."""

    __tablename__ = "credit_balances"

    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), onupdate=func.now()
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="non_negative_credits"),)
