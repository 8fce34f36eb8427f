"""
SmartMeter Exporter - Main Entry Point.

Starts the exporter that:
1. Opens the Wi-SUN module on the serial port
2. Scrapes instantaneous power and current from the smart meter
3. Serves the readings as Prometheus metrics over HTTP
"""
import argparse
import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError

from . import __version__
from .config import ExporterSettings
from .devices.client import DeviceClient
from .devices.device_session import DeviceSession
from .devices.skstack import SKStackClient
from .logging_setup import configure_logging
from .metrics.sink import MetricsSink
from .polling.orchestrator import ScrapeOrchestrator
from .polling.scheduler import ScrapeScheduler
from .web import MetricsHTTPServer, create_app

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ExporterSettings], Awaitable[DeviceClient]]


class ExporterServer:
    """
    Main exporter orchestrator.

    Wires the device client, the scrape loop and the metrics endpoint
    together and owns their startup and shutdown order.
    """

    def __init__(
        self,
        settings: Optional[ExporterSettings] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        """
        Initialize the exporter.

        Args:
            settings: Exporter settings.
            client_factory: Coroutine building the device client from
                settings (defaults to opening an SKSTACK module).
        """
        self.settings = settings or ExporterSettings()
        self._client_factory = client_factory or SKStackClient.open

        # Core components
        self.client: Optional[DeviceClient] = None
        self.session: Optional[DeviceSession] = None
        self.sink: Optional[MetricsSink] = None
        self.orchestrator: Optional[ScrapeOrchestrator] = None
        self.scheduler: Optional[ScrapeScheduler] = None
        self.http_server: Optional[MetricsHTTPServer] = None

        # State
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._stop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Start the exporter.

        Raises:
            SystemExit: If the serial device cannot be opened.
            OSError: If the metrics port cannot be bound.
        """
        settings = self.settings
        logger.info(f"Starting Prometheus exporter on :{settings.port}")
        logger.info(
            f"Device: {settings.device}, Interval: {settings.interval}s, "
            f"DSE: {settings.dse}"
        )

        try:
            self.client = await self._client_factory(settings)
        except OSError as e:
            raise SystemExit(f"Failed to open device: {e}") from e

        self.session = DeviceSession(address=settings.ipaddr)
        self.sink = MetricsSink()
        self.orchestrator = ScrapeOrchestrator(
            self.client,
            self.sink,
            query_retries=settings.link.query_retries,
        )
        self.scheduler = ScrapeScheduler(
            self.orchestrator,
            self.session,
            interval=settings.interval,
        )
        self.http_server = MetricsHTTPServer(
            create_app(self.sink, stats_provider=self.get_stats),
            host=settings.http.host,
            port=settings.port,
            shutdown_grace=settings.http.shutdown_grace,
        )

        try:
            await self.http_server.start()
        except OSError:
            await self.client.close()
            raise

        await self.scheduler.start()

        self._running = True
        logger.info("Exporter started")

    async def stop(self) -> None:
        """
        Stop the exporter.

        Safe to call repeatedly: later calls wait for the shutdown already
        in progress.
        """
        if self._stop_task is None:
            if not self._running:
                self._shutdown_event.set()
                return
            self._stop_task = asyncio.create_task(self._shutdown(), name="exporter_shutdown")

        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        logger.info("Shutting down exporter...")
        self._running = False

        try:
            # Let the in-flight scrape finish before closing the port under it
            if self.scheduler:
                await self.scheduler.stop()

            if self.http_server:
                await self.http_server.stop()

            if self.client:
                await self.client.close()
        finally:
            self._shutdown_event.set()

        logger.info("Exporter stopped")

    async def serve_forever(self) -> None:
        """Run until shutdown."""
        await self._shutdown_event.wait()

    def get_stats(self) -> dict:
        """Get exporter statistics."""
        stats = {"running": self._running}

        if self.scheduler:
            stats["scheduler"] = self.scheduler.get_stats()

        if self.client:
            stats["device"] = self.client.get_stats()

        return stats


def setup_signal_handlers(server: ExporterServer, loop: asyncio.AbstractEventLoop):
    """Setup signal handlers for graceful shutdown."""
    pending = set()

    def signal_handler():
        logger.info("Received shutdown signal")
        task = loop.create_task(server.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(signal_handler))


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="smartmeter-exporter",
        description="Prometheus exporter for B-route smart meters (ECHONET Lite over Wi-SUN)",
    )
    parser.add_argument("--id", help="B-route ID (env SMARTMETER_ID)")
    parser.add_argument("--password", help="B-route password (env SMARTMETER_PASSWORD)")
    parser.add_argument("--device", help="Serial port device path (default /dev/ttyACM0)")
    parser.add_argument("--interval", help="Scrape interval in seconds (default 60, minimum 10)")
    parser.add_argument("--port", type=int, help="Exporter listen port (default 9102)")
    parser.add_argument("--channel", help="Fixed Wi-SUN channel in hex (skips scan)")
    parser.add_argument("--panid", help="Fixed PAN ID in hex (skips scan)")
    parser.add_argument("--ipaddr", help="Fixed smart meter IPv6 address (skips scan)")
    parser.add_argument(
        "--dse",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Module is a Dual Stack Edition (default on)",
    )
    parser.add_argument(
        "-v", "--verbosity",
        type=int,
        choices=range(0, 4),
        help="Log verbosity: 0 quiet, 1 info, 2 debug, 3 debug with serial trace",
    )
    parser.add_argument("--log-format", choices=["text", "json"], help="Log output format")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_settings(argv: Optional[List[str]] = None) -> ExporterSettings:
    """
    Load settings from the environment, overridden by flags.

    Raises:
        SystemExit: If the configuration is invalid or incomplete.
    """
    args = build_parser().parse_args(argv)
    overrides = {
        key: value
        for key, value in vars(args).items()
        if value is not None
    }

    try:
        settings = ExporterSettings(**overrides)
    except ValidationError as e:
        raise SystemExit(f"Error: invalid configuration:\n{e}") from e

    if settings.validate_credentials():
        raise SystemExit("Error: ID and Password are required via flags or env vars.")

    return settings


async def run(settings: ExporterSettings) -> None:
    """Run the exporter until a shutdown signal arrives."""
    server = ExporterServer(settings)
    setup_signal_handlers(server, asyncio.get_running_loop())

    try:
        await server.start()
        await server.serve_forever()
    finally:
        await server.stop()


def main(argv: Optional[List[str]] = None) -> None:
    """Console entry point."""
    settings = load_settings(argv)
    configure_logging(settings.verbosity, settings.log_format)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except OSError as e:
        raise SystemExit(f"Error: cannot serve metrics on :{settings.port}: {e}") from e


if __name__ == "__main__":
    main()
