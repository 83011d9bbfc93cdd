"""
Health checks for liveness and readiness checks.
"""
from datetime import datetime, timezone
from typing import Dict, Any
import time
import psutil
from redis.asyncio import Redis
from redis.exceptions import RedisError
from .config import Settings, get_settings
from .logging import get_logger
from .messaging.runtime import ServiceRuntime

logger = get_logger()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _level(available: float, minimum: float) -> str:
    """"error" below the minimum, "warning" below twice the minimum, else "ok"."""
    if available < minimum:
        return "error"
    if available < minimum * 2:
        return "warning"
    return "ok"


class HealthChecker:
    """
    Health checks for one helpdesk service process.

    Liveness only says the process answers. Readiness says the service
    can take messages: its endpoint and every broker client are connected
    and the host has headroom. Any check in "error" makes it not ready;
    "warning" and "skipped" do not.
    """

    def __init__(
        self,
        service_name: str = "helpdesk",
        version: str = "0.1.0",
        runtime: ServiceRuntime | None = None,
        settings: Settings | None = None,
        min_disk_gb: float = 1.0,
        min_memory_mb: float = 50.0,
    ):
        self.service_name = service_name
        self.version = version
        self.runtime = runtime
        self.settings = settings or get_settings()
        self.min_disk_gb = min_disk_gb
        self.min_memory_mb = min_memory_mb

    def _describe(self, status: str) -> Dict[str, Any]:
        return {
            "status": status,
            "service": self.service_name,
            "version": self.version,
            "timestamp": _timestamp(),
        }

    def liveness(self) -> Dict[str, Any]:
        return self._describe("ok")

    async def readiness(self) -> Dict[str, Any]:
        """
        Run every readiness check.

        Returns:
            dict: Overall status ("ready" or "not_ready") and per-check results
        """
        checks = {
            "broker": await self._check_broker(),
            "redis": await self._check_redis(),
            "disk_space": self._check_disk_space(),
            "memory": self._check_memory(),
        }
        failed = [name for name, check in checks.items() if check["status"] == "error"]
        if failed:
            logger.warning("health.not_ready", failed=failed)
        result = self._describe("not_ready" if failed else "ready")
        result["checks"] = checks
        return result

    async def _check_broker(self) -> Dict[str, Any]:
        if self.runtime is None:
            return {"status": "skipped", "message": "No service runtime"}
        if not self.runtime.is_started:
            return {"status": "error", "error": "Service runtime not started"}
        connections = await self.runtime.health()
        down = sorted(name for name, healthy in connections.items() if not healthy)
        if down:
            return {"status": "error", "connections": connections, "error": f"Disconnected: {', '.join(down)}"}
        return {"status": "ok", "connections": connections}

    async def _check_redis(self) -> Dict[str, Any]:
        """Ping Redis when the service is configured to use it."""
        if not self.settings.REDIS_URL:
            return {"status": "skipped", "message": "Redis not configured"}

        client = Redis.from_url(str(self.settings.REDIS_URL), socket_timeout=2)
        start = time.monotonic()
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning("health.redis_failed", error=str(e))
            return {"status": "error", "error": str(e)}
        finally:
            await client.aclose()
        return {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 2)}

    def _check_disk_space(self) -> Dict[str, Any]:
        try:
            disk = psutil.disk_usage("/")
        except (psutil.Error, OSError) as e:
            logger.warning("health.disk_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_gb = disk.free / (1024**3)
        return {
            "status": _level(available_gb, self.min_disk_gb),
            "available_gb": round(available_gb, 2),
            "used_percent": disk.percent,
        }

    def _check_memory(self) -> Dict[str, Any]:
        try:
            memory = psutil.virtual_memory()
        except (psutil.Error, OSError) as e:
            logger.warning("health.memory_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_mb = memory.available / (1024**2)
        return {
            "status": _level(available_mb, self.min_memory_mb),
            "available_mb": round(available_mb, 2),
            "used_percent": memory.percent,
        }
