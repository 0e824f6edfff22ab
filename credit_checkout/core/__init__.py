"""Core order, identity and verification logic."""
from .currency import ConvertedAmount, CurrencyConverter, StaticRateConverter
from .gateway import PaymentGateway
from .identity import (
    ANONYMOUS,
    Anonymous,
    IdentityResult,
    IdentityVerifier,
    Rejected,
    RejectionReason,
    VerifiedIdentity,
)
from .ledger import CreditLedger, DatabaseCreditLedger
from .order_service import OrderService
from .verification_service import VerificationFailure, VerificationOutcome, VerificationService

__all__ = [
    "ANONYMOUS",
    "Anonymous",
    "ConvertedAmount",
    "CreditLedger",
    "CurrencyConverter",
    "DatabaseCreditLedger",
    "IdentityResult",
    "IdentityVerifier",
    "OrderService",
    "PaymentGateway",
    "Rejected",
    "RejectionReason",
    "StaticRateConverter",
    "VerificationFailure",
    "VerificationOutcome",
    "VerificationService",
    "VerifiedIdentity",
]
