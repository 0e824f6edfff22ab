"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Gateway credentials are configured
- Identity app is initialised
"""
from typing import Any, Dict, Mapping, Optional

import structlog

from credit_checkout.database.connection import Database

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Gateway and identity checks are configuration checks only; neither
    calls out to the provider.
    """

    def __init__(
        self,
        database: Database,
        gateways: Mapping[str, Any],
        identity_verifier: Optional[Any] = None,
    ):
        self.database = database
        self.gateways = gateways
        self.identity_verifier = identity_verifier

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await self.database.ping()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_gateways(self) -> Dict[str, Any]:
        """
        Check that every gateway has credentials.

        Raises:
            HealthCheckError: If no gateway is usable
        """
        if not self.gateways:
            raise HealthCheckError("No payment gateway configured")
        missing = [name for name, gateway in self.gateways.items() if not gateway.key_id]
        if missing:
            raise HealthCheckError(f"Gateway credentials missing: {', '.join(missing)}")
        return {
            "status": "healthy",
            "service": "gateways",
            "providers": sorted(self.gateways),
        }

    async def check_identity(self) -> Dict[str, Any]:
        if self.identity_verifier is None or self.identity_verifier.firebase_app is None:
            raise HealthCheckError("Identity verifier is not initialised")
        return {"status": "healthy", "service": "identity"}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("gateways", self.check_gateways),
            ("identity", self.check_identity),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
