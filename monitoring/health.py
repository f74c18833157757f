"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Payment gateway configuration and reachability
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from database.connection import session_scope

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Mercado Pago configuration and reachability check
    - Overall system health status
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.gateway = gateway

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with session_scope(self._session_factory) as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check that Mercado Pago is configured and answers.

        Raises:
            HealthCheckError: If the token is missing or the API is unreachable
        """
        if not self.settings.is_payment_configured:
            logger.error("gateway_health_check_failed", error="access token not configured")
            raise HealthCheckError("Mercado Pago access token is not configured")

        ping = getattr(self.gateway, "ping", None)
        if ping is None:
            return {
                "status": "healthy",
                "service": "mercadopago",
                "message": "Mercado Pago configured",
                "test_mode": self.settings.is_test_mode,
            }

        try:
            reachable = await ping()
        except Exception as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Mercado Pago health check failed: {str(e)}")
        if not reachable:
            raise HealthCheckError("Mercado Pago rejected the access token")

        return {
            "status": "healthy",
            "service": "mercadopago",
            "message": "Mercado Pago API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("mercadopago", self.check_gateway)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: every dependency must be available."""
        return await self.check_all()
