"""Health check endpoints for the firehose service."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web


logger = logging.getLogger(__name__)

HealthProvider = Callable[[], Awaitable[Dict[str, Any]]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, health_provider: HealthProvider, service_name: str = "aprs-firehose"):
        self.health_provider = health_provider
        self.service_name = service_name

    async def health(self, request: web.Request) -> web.Response:
        """Full health report; 503 unless healthy."""
        try:
            health_data = await self.health_provider()
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )

        status = 200 if health_data["status"] == "healthy" else 503
        return web.json_response(health_data, status=status, dumps=_dumps)

    async def ready(self, request: web.Request) -> web.Response:
        """Readiness probe: ready while healthy or degraded."""
        try:
            health_data = await self.health_provider()
        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {"ready": False, "error": str(e), "timestamp": _now()},
                status=503
            )

        is_ready = health_data["status"] in ["healthy", "degraded"]
        return web.json_response(
            {"ready": is_ready, "status": health_data["status"], "timestamp": _now()},
            status=200 if is_ready else 503
        )

    async def live(self, request: web.Request) -> web.Response:
        """Liveness probe."""
        return web.json_response({"alive": True, "timestamp": _now()}, status=200)


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(self, health_provider: HealthProvider, host: str = "0.0.0.0", port: int = 8080):
        self.health_provider = health_provider
        self.host = host
        self.port = port
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        handler = HealthCheckHandler(self.health_provider)
        app.router.add_get('/health', handler.health)
        app.router.add_get('/ready', handler.ready)
        app.router.add_get('/live', handler.live)
        return app

    async def start(self):
        logger.info(f"Starting health check server on {self.host}:{self.port}")

        self.app = self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Health check server started on http://{self.host}:{self.port}")

    async def stop(self):
        logger.info("Stopping health check server")

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("Health check server stopped")
