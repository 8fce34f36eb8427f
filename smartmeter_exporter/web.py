"""
Metrics HTTP endpoint.

Serves the sink's registry in the Prometheus text format, a health
check and a small landing page. The server runs embedded in the
exporter's event loop; signal handling stays with the exporter so it
controls the shutdown order.
"""
import asyncio
import contextlib
import logging
import socket
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from . import __version__
from .metrics.sink import MetricsSink

logger = logging.getLogger(__name__)

METRICS_PATH = "/metrics"

LANDING_PAGE = """<html>
<head><title>SmartMeter Exporter</title></head>
<body>
<h1>SmartMeter Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


def create_app(
    sink: MetricsSink,
    stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        sink: Metrics sink whose registry is exposed.
        stats_provider: Optional callable whose result is included in
            the health report.
    """
    app = FastAPI(
        title="SmartMeter Exporter",
        version=__version__,
        description="Prometheus exporter for B-route smart meters",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.sink = sink
    app.state.stats_provider = stats_provider

    register_exception_handlers(app)
    register_routes(app)

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception serving {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "INTERNAL_ERROR",
                "message": "An internal error occurred",
            },
        )


def register_routes(app: FastAPI) -> None:
    """Register HTTP routes."""

    # Sync handler: rendering runs in the threadpool, off the event loop
    @app.get(METRICS_PATH)
    def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(
            content=app.state.sink.render(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/health")
    def health_check():
        """Report liveness and the last successful scrape."""
        snap = app.state.sink.snapshot()
        report = {
            "status": "ok",
            "last_success_timestamp": snap.last_success_timestamp,
            "scrapes": int(snap.scrape_count),
            "errors": snap.errors,
            "version": __version__,
        }
        if app.state.stats_provider is not None:
            report["exporter"] = app.state.stats_provider()
        return report

    @app.get("/", response_class=HTMLResponse)
    def root():
        return LANDING_PAGE.format(path=METRICS_PATH)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to its owner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class MetricsHTTPServer:
    """
    Runs the metrics app inside the current event loop.

    Listens on ``host:port`` until stopped; the listener is closed
    with a bounded grace period for in-flight requests.
    """

    def __init__(
        self,
        app: FastAPI,
        host: str = "::",
        port: int = 9102,
        shutdown_grace: float = 5.0,
    ):
        self.app = app
        self.host = host
        self.port = port
        self.shutdown_grace = shutdown_grace

        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            OSError: If the port cannot be bound.
        """
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self.shutdown_grace,
        )
        sock = self._bind()
        # Port 0 binds an ephemeral port; report the real one
        self.port = sock.getsockname()[1]
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[sock]), name="metrics_http"
        )

        while not self._server.started:
            if self._task.done():
                exc = None if self._task.cancelled() else self._task.exception()
                self._task = None
                sock.close()
                raise OSError(
                    f"Metrics server failed to start on {self.host}:{self.port}"
                ) from exc
            await asyncio.sleep(0.05)

        logger.info(f"Metrics server listening on {self.host}:{self.port}")

    def _bind(self) -> socket.socket:
        """Bind the listening socket (raises OSError when the port is taken)."""
        host = self.host
        if host in ("", "::") and not socket.has_dualstack_ipv6():
            logger.warning("IPv6 unavailable, listening on IPv4 only")
            host = "0.0.0.0"

        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            if family == socket.AF_INET6 and host == "::":
                # Accept IPv4-mapped connections on the wildcard address
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind((host, self.port))
        except OSError:
            sock.close()
            raise
        sock.set_inheritable(True)
        return sock

    async def stop(self) -> None:
        """Stop accepting connections and wait for in-flight requests."""
        if self._server is None or self._task is None:
            return

        logger.info("Stopping metrics server")
        self._server.should_exit = True

        try:
            await asyncio.wait_for(self._task, timeout=self.shutdown_grace + 1.0)
        except asyncio.TimeoutError:
            logger.warning("Metrics server did not stop in time, forcing exit")
            self._server.force_exit = True
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        finally:
            self._task = None
            self._server = None
