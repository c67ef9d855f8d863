"""
Liveness and readiness endpoints for the relay.

- GET /health/live  - 200 while the process runs
- GET /health/ready - 200 while the event stream and the sink are both up

The aiohttp server runs on its own event loop in a daemon thread, so
probes keep answering while the relay's loop is busy writing a batch.

Usage:
    health_server = HealthCheckServer(port=8080, worker_name="events-to-db")
    await health_server.start()
    health_server.set_ready(source_connected=True, sink_connected=True)
    await health_server.stop()
"""

import asyncio
import errno
import logging
import threading
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from aiohttp import web

logger = logging.getLogger(__name__)

# 10048 is WSAEADDRINUSE
_PORT_IN_USE = (errno.EADDRINUSE, 10048)
_START_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class _Status:
    state: str
    source_connected: bool
    sink_connected: bool
    error: str | None

    @property
    def ready(self) -> bool:
        return self.source_connected and self.sink_connected and self.error is None

    @property
    def reasons(self) -> list[str]:
        reasons = []
        if not self.source_connected:
            reasons.append("source_disconnected")
        if not self.sink_connected:
            reasons.append("sink_disconnected")
        return reasons


class HealthCheckServer:
    """
    Probe server fed by the pipeline driver.

    The driver reports connection status with set_ready() and its state
    name with set_state(). A fatal error recorded with set_error() keeps
    readiness false until clear_error().

    port=0 picks a free port; port=None (or enabled=False) turns the
    server into a no-op that still tracks status.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "events-to-db",
        enabled: bool = True,
    ):
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._started_at = datetime.now(UTC)
        self._actual_port: int | None = None

        self._lock = threading.Lock()
        self._status = _Status(state="stopped", source_connected=False, sink_connected=False, error=None)

        self._thread: threading.Thread | None = None
        self._listening = threading.Event()
        self._stopping = threading.Event()

    # -- status, called from the relay loop --------------------------------

    def _update(self, **changes) -> tuple[_Status, _Status]:
        with self._lock:
            before = self._status
            self._status = replace(before, **changes)
            return before, self._status

    def set_ready(self, source_connected: bool, sink_connected: bool | None = None) -> None:
        """Record connection status; sink status is kept when not given."""
        changes = {"source_connected": source_connected}
        if sink_connected is not None:
            changes["sink_connected"] = sink_connected
        before, after = self._update(**changes)
        if before.ready != after.ready:
            logger.info(
                f"Readiness changed: {before.ready} -> {after.ready}",
                extra={"state": after.state},
            )

    def set_state(self, state: str) -> None:
        self._update(state=state)

    def set_error(self, error_message: str) -> None:
        self._update(error=error_message)
        logger.error(f"Relay reported a fatal error: {error_message}", extra={"error": error_message})

    def clear_error(self) -> None:
        self._update(error=None)

    @property
    def error_message(self) -> str | None:
        with self._lock:
            return self._status.error

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._status.ready

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    # -- HTTP handlers, called from the server thread -----------------------

    def _response(self, status: int, /, **body) -> web.Response:
        body = {**body, "worker": self.worker_name, "timestamp": datetime.now(UTC).isoformat()}
        return web.json_response(body, status=status)

    async def handle_liveness(self, request: web.Request) -> web.Response:
        uptime = datetime.now(UTC) - self._started_at
        return self._response(200, status="alive", uptime_seconds=int(uptime.total_seconds()))

    async def handle_readiness(self, request: web.Request) -> web.Response:
        with self._lock:
            current = self._status

        if current.error:
            return self._response(503, status="error", state=current.state, error=current.error)

        checks = {
            "source_connected": current.source_connected,
            "sink_connected": current.sink_connected,
        }
        if current.ready:
            return self._response(200, status="ready", state=current.state, checks=checks)
        return self._response(
            503, status="not_ready", state=current.state, reasons=current.reasons, checks=checks
        )

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    # -- server thread ------------------------------------------------------

    async def _listen(self, port: int) -> web.AppRunner | None:
        """Bind port; None if it is taken."""
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", port, reuse_address=True)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            if e.errno in _PORT_IN_USE:
                return None
            raise

        sockets = site._server.sockets if site._server is not None else None
        self._actual_port = sockets[0].getsockname()[1] if sockets else port
        return runner

    async def _serve(self) -> None:
        runner = await self._listen(self.port)
        if runner is None and self.port != 0:
            logger.warning(f"Port {self.port} in use, health server falling back to a free port")
            runner = await self._listen(0)
        if runner is None:
            logger.warning("Could not bind the health check server")
            return

        try:
            logger.info(
                "Health check server started",
                extra={"http_url": f"http://localhost:{self._actual_port}/health/ready"},
            )
            self._listening.set()
            while not self._stopping.is_set():
                await asyncio.sleep(0.2)
        finally:
            await runner.cleanup()

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._serve())
        except Exception as e:
            logger.error(f"Health server thread failed: {e}", exc_info=True)
        finally:
            # start() waits on this even when binding failed
            self._listening.set()

    async def start(self) -> None:
        """Serve from a background thread. Failing to bind only logs a warning."""
        if not self._enabled:
            logger.debug("Health check server disabled")
            return
        if self._thread is not None and self._thread.is_alive():
            return

        self._stopping.clear()
        self._listening.clear()
        self._thread = threading.Thread(
            target=self._thread_main,
            name=f"health-{self.worker_name}",
            daemon=True,
        )
        self._thread.start()

        await asyncio.to_thread(self._listening.wait, _START_TIMEOUT_SECONDS)
        if self._actual_port is None:
            logger.warning("Continuing without health checks")
            self._enabled = False

    async def stop(self) -> None:
        if self._thread is None:
            return

        self._stopping.set()
        await asyncio.to_thread(self._thread.join, _START_TIMEOUT_SECONDS)
        if self._thread.is_alive():
            logger.warning("Health server thread did not stop in time")
        else:
            logger.info("Health check server stopped")
        self._thread = None
        self._actual_port = None


__all__ = ["HealthCheckServer"]
