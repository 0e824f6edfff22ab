"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from firebase_admin import auth
from sqlalchemy.ext.asyncio import AsyncSession

from credit_checkout.api.main import create_app
from credit_checkout.config import Settings
from credit_checkout.core.currency import StaticRateConverter
from credit_checkout.core.identity import IdentityVerifier
from credit_checkout.core.ledger import DatabaseCreditLedger
from credit_checkout.core.order_service import OrderService
from credit_checkout.core.verification_service import VerificationService
from credit_checkout.database.connection import Database
from credit_checkout.integrations.razorpay_gateway import RazorpayGateway

KEY_ID = "rzp_test_1DP5mmOlF5G5ag"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
API_BASE = "https://api.razorpay.test/v1"

USERS: Dict[str, Dict[str, Any]] = {
    "valid-token": {
        "uid": "user-123",
        "sub": "user-123",
        "email": "ada@example.com",
        "name": "Ada Lovelace",
        "picture": "https://example.com/ada.png",
    },
    "other-user-token": {"uid": "user-456", "sub": "user-456", "email": "bob@example.com"},
}


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without the HTTP app")
    config.addinivalue_line("markers", "integration: tests driving the ASGI app")
    config.addinivalue_line("markers", "race: concurrent verification tests")


def sign(order_id: str, payment_reference: str, secret: str = KEY_SECRET) -> str:
    """Checkout callback signature as the gateway computes it."""
    message = f"{order_id}|{payment_reference}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def fake_verify_id_token(token: str, app: Any = None, **kwargs: Any) -> Dict[str, Any]:
    """Stand-in for ``firebase_admin.auth.verify_id_token``."""
    if token == "expired-token":
        raise auth.ExpiredIdTokenError("Token expired 1 hour ago", cause=None)
    if token == "revoked-token":
        raise auth.RevokedIdTokenError("The Firebase ID token has been revoked.")
    if token in USERS:
        return dict(USERS[token])
    raise auth.InvalidIdTokenError("Could not verify token signature.")


class FakeRazorpayApi:
    """
    MockTransport handler imitating ``POST /v1/orders``.

    Set ``fail_with`` to make the next calls raise, or ``status_code`` to
    make them return a Razorpay error body.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[Callable[[httpx.Request], Exception]] = None
        self.status_code = 200

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with(request)
        if self.status_code >= 400:
            return httpx.Response(
                self.status_code,
                json={
                    "error": {
                        "code": "BAD_REQUEST_ERROR",
                        "description": "Authentication failed",
                    }
                },
            )
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": f"order_{uuid.uuid4().hex[:14]}",
                "entity": "order",
                "amount": body["amount"],
                "amount_paid": 0,
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
                "notes": body.get("notes", {}),
            },
        )


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings with a file-backed SQLite database per test."""
    return Settings(
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        razorpay_api_base=API_BASE,
        firebase_project_id="credit-checkout-test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        app_name="credit-checkout-test",
        app_env="test",
        log_level="DEBUG",
        allowed_origins="http://test",
    )


@pytest.fixture
def razorpay_api() -> FakeRazorpayApi:
    return FakeRazorpayApi()


@pytest_asyncio.fixture
async def gateway(razorpay_api: FakeRazorpayApi) -> AsyncGenerator[RazorpayGateway, Any]:
    http_client = httpx.AsyncClient(
        base_url=API_BASE,
        auth=(KEY_ID, KEY_SECRET),
        transport=httpx.MockTransport(razorpay_api),
    )
    gateway = RazorpayGateway(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        http_client=http_client,
    )
    yield gateway
    await gateway.aclose()


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create tables in a fresh database."""
    database = Database(test_settings)
    await database.init_db()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, Any]:
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def ledger(test_settings: Settings) -> DatabaseCreditLedger:
    return DatabaseCreditLedger(test_settings.packages)


@pytest.fixture
def order_service(test_settings: Settings) -> OrderService:
    return OrderService(
        StaticRateConverter.from_settings(test_settings),
        test_settings.packages,
        order_ttl_minutes=test_settings.order_ttl_minutes,
    )


@pytest.fixture
def verification_service(ledger: DatabaseCreditLedger) -> VerificationService:
    return VerificationService(ledger)


@pytest.fixture
def firebase_app() -> MagicMock:
    return MagicMock(name="firebase_app")


@pytest.fixture
def identity_verifier(firebase_app: MagicMock, mocker: Any) -> IdentityVerifier:
    """Verifier whose token checks are answered by ``fake_verify_id_token``."""
    mocker.patch(
        "credit_checkout.core.identity.auth.verify_id_token",
        side_effect=fake_verify_id_token,
    )
    return IdentityVerifier(firebase_app, check_revoked=True, clock_skew_seconds=30)


@pytest.fixture
def app(
    test_settings: Settings,
    identity_verifier: IdentityVerifier,
    gateway: RazorpayGateway,
    database: Database,
) -> Any:
    return create_app(
        test_settings,
        identity_verifier=identity_verifier,
        gateways={gateway.name: gateway},
        database=database,
    )


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client bound to the ASGI app (lifespan is not run; tables exist already)."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": "Bearer valid-token"}


@pytest.fixture
def starter_order_request() -> Dict[str, Any]:
    return {"amount": "12.00", "currency": "USD", "packageId": "starter-pack"}
