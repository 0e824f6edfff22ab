"""
Bearer-credential verification against the identity authority.

``IdentityVerifier.verify`` never raises for a bad credential. It returns one
of three results, and callers decide what each means for their route:

- ``VerifiedIdentity``: the credential is valid
- ``Anonymous``: no credential, a non-bearer header, or an identity
  infrastructure failure (logged, then degraded)
- ``Rejected``: the credential is expired, invalid or revoked
"""
import asyncio
import enum
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional, Union

import firebase_admin
import structlog
from firebase_admin import auth, credentials

from credit_checkout.config import Settings
from credit_checkout.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

BEARER_PREFIX = "Bearer "


class RejectionReason(str, enum.Enum):
    """Why a presented credential was refused. Values are the API error codes."""

    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "INVALID_TOKEN"
    TOKEN_REVOKED = "TOKEN_REVOKED"

    @property
    def message(self) -> str:
        return _REJECTION_MESSAGES[self]


_REJECTION_MESSAGES = {
    RejectionReason.TOKEN_EXPIRED: "Authentication token has expired. Please sign in again.",
    RejectionReason.TOKEN_INVALID: "Invalid authentication token. Please sign in again.",
    RejectionReason.TOKEN_REVOKED: "Authentication token has been revoked. Please sign in again.",
}


@dataclass(frozen=True)
class VerifiedIdentity:
    subject_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    picture_url: Optional[str] = None


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason


ANONYMOUS = Anonymous()

IdentityResult = Union[VerifiedIdentity, Anonymous, Rejected]


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the credential from an Authorization header, or None if not a bearer header."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def create_firebase_app(settings: Settings) -> firebase_admin.App:
    """
    Initialise a named Firebase Admin app for this service.

    A named app keeps this service's identity client separate from the
    process-wide default app, so nothing depends on import order.
    """
    if settings.firebase_credentials_path:
        credential = credentials.Certificate(settings.firebase_credentials_path)
    else:
        credential = credentials.ApplicationDefault()
    return firebase_admin.initialize_app(
        credential,
        options={"projectId": settings.firebase_project_id},
        name=f"{settings.app_name}-identity",
    )


class IdentityVerifier:
    """
    Verifies Firebase ID tokens with an injected Firebase Admin app.

    Token checks (signature against current signing keys, audience, issuer,
    expiry with clock-skew tolerance, optional revocation) are delegated to
    ``firebase_admin.auth.verify_id_token``.
    """

    def __init__(
        self,
        firebase_app: Any,
        check_revoked: bool = True,
        clock_skew_seconds: int = 0,
    ):
        self.firebase_app = firebase_app
        self.check_revoked = check_revoked
        self.clock_skew_seconds = clock_skew_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentityVerifier":
        return cls(
            create_firebase_app(settings),
            check_revoked=settings.identity_check_revoked,
            clock_skew_seconds=settings.identity_clock_skew_seconds,
        )

    def _decode(self, token: str) -> dict[str, Any]:
        return auth.verify_id_token(
            token,
            app=self.firebase_app,
            check_revoked=self.check_revoked,
            clock_skew_seconds=self.clock_skew_seconds,
        )

    async def verify(self, authorization: Optional[str]) -> IdentityResult:
        """
        Classify the Authorization header of a request.

        Args:
            authorization: Raw header value, or None when absent

        Returns:
            IdentityResult: VerifiedIdentity, ANONYMOUS or Rejected(reason)
        """
        token = extract_bearer_token(authorization)
        if token is None:
            metrics.record_identity_result("anonymous")
            return ANONYMOUS

        loop = asyncio.get_running_loop()
        try:
            # verify_id_token may fetch signing keys over the network
            claims = await loop.run_in_executor(None, partial(self._decode, token))
        except auth.ExpiredIdTokenError:
            return self._reject(RejectionReason.TOKEN_EXPIRED)
        except (auth.RevokedIdTokenError, auth.UserDisabledError):
            return self._reject(RejectionReason.TOKEN_REVOKED)
        except auth.InvalidIdTokenError:
            return self._reject(RejectionReason.TOKEN_INVALID)
        except Exception as e:
            # Identity infrastructure trouble must not block anonymous browsing
            logger.error(
                "identity_verification_degraded",
                error_type=type(e).__name__,
                error=str(e),
            )
            metrics.record_identity_result("degraded")
            return ANONYMOUS

        identity = VerifiedIdentity(
            subject_id=claims.get("uid") or claims["sub"],
            email=claims.get("email"),
            display_name=claims.get("name"),
            picture_url=claims.get("picture"),
        )
        logger.info("identity_verified", subject_id=identity.subject_id)
        metrics.record_identity_result("verified")
        return identity

    @staticmethod
    def _reject(reason: RejectionReason) -> Rejected:
        logger.warning("identity_rejected", reason=reason.value)
        metrics.record_identity_result(reason.value.lower())
        return Rejected(reason)
