"""
Health check endpoints for pipeline workers.

Provides Kubernetes-compatible health check endpoints:
- /health/live - Liveness probe (is the worker's event loop responsive?)
- /health/ready - Readiness probe (is the broker connected and the store reachable?)

Usage:
    health_server = HealthCheckServer(port=8080, worker_name="challenges-ingester")
    await health_server.start()
    health_server.set_ready(transport_connected=True, store_reachable=True)
    ...
    await health_server.stop()
"""

import logging
import time
from datetime import UTC, datetime

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server for Kubernetes health check endpoints.

    Runs on the worker's own event loop. A stalled loop therefore also stops
    answering probes, which is what the liveness check is meant to catch.

    Readiness returns 200 only while the broker connection is up, the store is
    reachable and no error state is set; otherwise 503.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "worker",
        enabled: bool = True,
        heartbeat_timeout_seconds: float = 60.0,
    ):
        """
        Args:
            port: HTTP port to listen on. 0 picks a free port, None disables the server.
            worker_name: Name of the worker for logging and responses
            enabled: If False, start() and stop() become no-ops
            heartbeat_timeout_seconds: Max seconds since the last record_heartbeat()
                before liveness returns 503. 0 disables the check.
        """
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._ready = False
        self._transport_connected = False
        self._store_reachable = True
        self._error_message: str | None = None
        self._started_at = datetime.now(UTC)
        self._heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self._last_heartbeat: float | None = None

        self._runner: web.AppRunner | None = None
        self._actual_port: int | None = None

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def actual_port(self) -> int | None:
        """Bound port while running, else None."""
        return self._actual_port

    @property
    def error_message(self) -> str | None:
        return self._error_message

    def set_ready(self, transport_connected: bool, store_reachable: bool | None = None) -> None:
        """Update readiness from the worker's view of its dependencies."""
        self._transport_connected = transport_connected
        if store_reachable is not None:
            self._store_reachable = store_reachable

        old_ready = self._ready
        self._ready = (
            self._transport_connected and self._store_reachable and self._error_message is None
        )
        if old_ready != self._ready:
            logger.info(
                f"Readiness status changed: {old_ready} -> {self._ready}",
                extra={"worker_name": self.worker_name},
            )

    def set_error(self, error_message: str) -> None:
        """Put the server in an error state that keeps it not-ready."""
        self._error_message = error_message
        self._ready = False
        logger.error(
            f"Health check error state set: {error_message}",
            extra={"worker_name": self.worker_name, "error": error_message},
        )

    def clear_error(self) -> None:
        if self._error_message:
            logger.info("Health check error state cleared", extra={"worker_name": self.worker_name})
        self._error_message = None

    def record_heartbeat(self) -> None:
        self._last_heartbeat = time.monotonic()

    async def handle_liveness(self, request: web.Request) -> web.Response:
        uptime_seconds = int((datetime.now(UTC) - self._started_at).total_seconds())

        if self._heartbeat_timeout_seconds > 0 and self._last_heartbeat is not None:
            staleness = time.monotonic() - self._last_heartbeat
            if staleness > self._heartbeat_timeout_seconds:
                logger.warning(
                    "Liveness check failed: event loop heartbeat stale",
                    extra={
                        "worker_name": self.worker_name,
                        "timeout_seconds": self._heartbeat_timeout_seconds,
                    },
                )
                return web.json_response(
                    {
                        "status": "unhealthy",
                        "reason": "heartbeat_stale",
                        "worker": self.worker_name,
                        "heartbeat_staleness_seconds": round(staleness, 1),
                        "uptime_seconds": uptime_seconds,
                    },
                    status=503,
                )

        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": uptime_seconds,
                "timestamp": datetime.now(UTC).isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        checks = {
            "transport_connected": self._transport_connected,
            "store_reachable": self._store_reachable,
        }

        if self._ready:
            return web.json_response(
                {"status": "ready", "worker": self.worker_name, "checks": checks},
                status=200,
            )

        reasons = []
        if self._error_message:
            reasons.append("error")
        if not self._transport_connected:
            reasons.append("transport_disconnected")
        if not self._store_reachable:
            reasons.append("store_unreachable")

        body = {
            "status": "not_ready",
            "worker": self.worker_name,
            "reasons": reasons,
            "checks": checks,
        }
        if self._error_message:
            body["error"] = self._error_message
        return web.json_response(body, status=503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    async def start(self) -> None:
        """Start listening. Falls back to a dynamic port if the configured one is taken."""
        if not self._enabled or self._runner is not None:
            return

        runner = web.AppRunner(self.create_app(), access_log=None)
        await runner.setup()
        try:
            site = web.TCPSite(runner, "0.0.0.0", self.port)
            await site.start()
        except OSError as e:
            if self.port == 0:
                await runner.cleanup()
                raise
            logger.warning(
                f"Port {self.port} in use, falling back to dynamic port assignment",
                extra={"worker_name": self.worker_name, "error": str(e)},
            )
            site = web.TCPSite(runner, "0.0.0.0", 0)
            await site.start()

        self._runner = runner
        server = site._server
        sockets = getattr(server, "sockets", None) or []
        self._actual_port = sockets[0].getsockname()[1] if sockets else self.port

        logger.info(
            "Health check server started",
            extra={"worker_name": self.worker_name, "port": self._actual_port},
        )

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._actual_port = None
        logger.info("Health check server stopped", extra={"worker_name": self.worker_name})
