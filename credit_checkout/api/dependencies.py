"""
FastAPI dependencies.

Services are built once per application by ``create_app`` and kept on
``app.state.services``; routes reach them only through these functions.
"""
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.config import Settings
from credit_checkout.core.exceptions import AuthError, UnknownProviderError
from credit_checkout.core.identity import (
    Anonymous,
    IdentityResult,
    IdentityVerifier,
    Rejected,
    VerifiedIdentity,
)
from credit_checkout.core.ledger import CreditLedger
from credit_checkout.core.order_service import OrderService
from credit_checkout.core.verification_service import VerificationService
from credit_checkout.database.connection import Database
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway
from credit_checkout.integrations.webhook_handler import WebhookHandler
from credit_checkout.monitoring.health import HealthCheck


@dataclass
class AppServices:
    settings: Settings
    database: Database
    identity_verifier: IdentityVerifier
    gateways: Dict[str, RazorpayGateway]
    ledger: CreditLedger
    order_service: OrderService
    verification_service: VerificationService
    health_check: HealthCheck
    webhook_handlers: Dict[str, WebhookHandler] = field(default_factory=dict)


def get_services(request: Request) -> AppServices:
    return request.app.state.services


async def get_db(
    services: AppServices = Depends(get_services),
) -> AsyncGenerator[AsyncSession, Any]:
    async with services.database.session() as session:
        yield session


def get_gateway(provider: str, services: AppServices = Depends(get_services)) -> RazorpayGateway:
    """Resolve the ``{provider}`` path segment to a configured gateway."""
    gateway = services.gateways.get(provider.lower())
    if gateway is None:
        raise UnknownProviderError(provider)
    return gateway


def get_webhook_handler(
    provider: str, services: AppServices = Depends(get_services)
) -> WebhookHandler:
    handler = services.webhook_handlers.get(provider.lower())
    if handler is None:
        raise UnknownProviderError(provider)
    return handler


async def get_identity_result(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    services: AppServices = Depends(get_services),
) -> IdentityResult:
    """Verify the request's bearer credential at most once per request."""
    cached = getattr(request.state, "identity", None)
    if cached is not None:
        return cached
    result = await services.identity_verifier.verify(authorization)
    request.state.identity = result
    return result


async def optional_identity(
    result: IdentityResult = Depends(get_identity_result),
) -> Optional[VerifiedIdentity]:
    """
    Identity for routes open to anonymous callers.

    A presented but bad credential is still an error: the caller meant to be
    signed in, so silently treating them as anonymous would misattribute
    the purchase.

    Raises:
        AuthError: If the credential was rejected
    """
    if isinstance(result, Rejected):
        raise AuthError(result.reason.message, result.reason.value)
    if isinstance(result, Anonymous):
        return None
    return result


async def require_identity(
    identity: Optional[VerifiedIdentity] = Depends(optional_identity),
) -> VerifiedIdentity:
    if identity is None:
        raise AuthError("Authentication required", "AUTH_REQUIRED")
    return identity
