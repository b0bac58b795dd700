"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- M-Pesa gateway configuration, and credentials when a token cache is supplied
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text

from mpesa_ledger.config import get_settings
from mpesa_ledger.database.connection import get_session_factory

if TYPE_CHECKING:
    from mpesa_ledger.integrations.token_cache import AccessTokenCache

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway configuration/credential check
    - Overall system health status
    """

    def __init__(self, token_cache: Optional["AccessTokenCache"] = None) -> None:
        """
        Initialize health check service.

        Args:
            token_cache: Optional token cache; when given, readiness also
                verifies that the provider accepts our credentials
        """
        self.settings = get_settings()
        self.token_cache = token_cache

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
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
        Check the M-Pesa gateway setup.

        Raises:
            HealthCheckError: If configuration is incomplete or the token fetch fails
        """
        missing = [
            name
            for name in (
                "mpesa_consumer_key",
                "mpesa_consumer_secret",
                "mpesa_shortcode",
                "mpesa_passkey",
            )
            if not getattr(self.settings, name)
        ]
        if missing:
            raise HealthCheckError(f"M-Pesa configuration incomplete: {', '.join(missing)}")

        result = {
            "status": "healthy",
            "service": "mpesa",
            "environment": self.settings.mpesa_environment,
            "message": "M-Pesa gateway configured",
        }
        if self.token_cache is None:
            return result

        try:
            await self.token_cache.acquire_token()
        except Exception as e:
            logger.error("mpesa_health_check_failed", error=str(e))
            raise HealthCheckError(f"M-Pesa token check failed: {str(e)}")

        result["message"] = "M-Pesa credentials accepted"
        return result

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("mpesa", self.check_gateway)):
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
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
