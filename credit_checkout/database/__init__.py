"""Database package for order and verification bookkeeping."""
from .connection import Database
from .models import (
    Base,
    CreditBalance,
    CreditGrant,
    Order,
    OrderStatus,
    VerificationOutcomeType,
    VerificationRecord,
)

__all__ = [
    "Base",
    "CreditBalance",
    "CreditGrant",
    "Database",
    "Order",
    "OrderStatus",
    "VerificationOutcomeType",
    "VerificationRecord",
]
