"""
SKSTACK Wi-SUN client for B-route smart meters.

Drives an SKSTACK-IP serial module (BP35A1/BP35C0, or a Dual Stack
Edition module such as RL7023 Stick-D/DSS) to discover the meter,
authenticate with PANA and exchange ECHONET Lite frames over UDP.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import ExporterSettings, MIN_CHANNEL
from ..connection.serial_connection import SerialConnection
from ..protocols.echonet import ECHONET_LITE_PORT, Frame, FrameError
from .client import (
    AddressResolveError,
    AuthenticationError,
    DeviceError,
    QueryError,
)

logger = logging.getLogger(__name__)

# Asynchronous event numbers
EVENT_SCAN_DONE = "22"
EVENT_PANA_FAILED = "24"
EVENT_PANA_DONE = "25"

# Active scan with information element request
SCAN_MODE_ACTIVE = 2
ALL_CHANNELS_MASK = 0xFFFFFFFF

# B-route side on Dual Stack Edition modules
DSE_SIDE_B_ROUTE = "0"

_PAN_REQUIRED_FIELDS = {"Channel", "Pan ID", "Addr"}


class SKCommandError(DeviceError):
    """Raised when the module answers a command with FAIL."""

    def __init__(self, command: str, response: str):
        self.command = command
        self.response = response
        super().__init__(
            f"{command} failed: {response}",
            code="SK_COMMAND_FAILED",
            details={"command": command, "response": response},
        )


@dataclass
class PanDescriptor:
    """PAN found by an active scan (EPANDESC block)."""
    channel: str
    pan_id: str
    mac_address: str
    lqi: Optional[str] = None
    pair_id: Optional[str] = None

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "PanDescriptor":
        return cls(
            channel=fields["Channel"],
            pan_id=fields["Pan ID"],
            mac_address=fields["Addr"],
            lqi=fields.get("LQI"),
            pair_id=fields.get("PairID"),
        )


@dataclass
class UdpDatagram:
    """Parsed ERXUDP event."""
    sender: str
    remote_port: str
    local_port: str
    data: bytes


def parse_erxudp(line: str) -> Optional[UdpDatagram]:
    """
    Parse an ERXUDP line.

    BP35A1 and Dual Stack Edition modules differ in the number of
    fields between the ports and the payload, so the data length and
    data are taken from the last two fields.

    Args:
        line: Line starting with ERXUDP.

    Returns:
        Datagram, or None if the line is malformed.
    """
    tokens = line.split()
    if len(tokens) < 8 or tokens[0] != "ERXUDP":
        return None

    try:
        length = int(tokens[-2], 16)
        data = bytes.fromhex(tokens[-1])
    except ValueError:
        return None

    if len(data) != length:
        return None

    return UdpDatagram(
        sender=tokens[1],
        remote_port=tokens[3],
        local_port=tokens[4],
        data=data,
    )


class SKStackClient:
    """
    Device client for an SKSTACK-IP Wi-SUN module.

    Implements the DeviceClient capability: address resolution by
    active scan, PANA authentication and ECHONET Lite queries.
    """

    def __init__(
        self,
        connection: SerialConnection,
        rbid: str,
        password: str,
        channel: Optional[str] = None,
        pan_id: Optional[str] = None,
        ipaddr: Optional[str] = None,
        dual_stack: bool = False,
        retry_interval: float = 5.0,
        command_timeout: float = 5.0,
        response_timeout: float = 20.0,
        scan_duration: int = 6,
        scan_timeout: float = 120.0,
        join_timeout: float = 60.0,
    ):
        """
        Initialize the client.

        Args:
            connection: Open serial connection to the module.
            rbid: B-route ID.
            password: B-route password.
            channel: Fixed channel (hex); scanned if not provided.
            pan_id: Fixed PAN ID (hex); scanned if not provided.
            ipaddr: Fixed meter IPv6 address; resolved if not provided.
            dual_stack: Module is a Dual Stack Edition.
            retry_interval: Delay between query attempts.
            command_timeout: Timeout waiting for OK/FAIL.
            response_timeout: Timeout waiting for a response frame.
            scan_duration: SKSCAN duration exponent.
            scan_timeout: Timeout for a full scan.
            join_timeout: Timeout for PANA authentication.
        """
        self.connection = connection
        self.rbid = rbid
        self.password = password
        self.channel = channel
        self.pan_id = pan_id
        self.ipaddr = ipaddr
        self.dual_stack = dual_stack
        self.retry_interval = retry_interval
        self.command_timeout = command_timeout
        self.response_timeout = response_timeout
        self.scan_duration = scan_duration
        self.scan_timeout = scan_timeout
        self.join_timeout = join_timeout

        self.pan: Optional[PanDescriptor] = None

    @classmethod
    async def open(cls, settings: ExporterSettings) -> "SKStackClient":
        """
        Open the serial port and build a client from settings.

        Raises:
            ConnectionError: If the port cannot be opened.
        """
        connection = await SerialConnection.open(
            settings.device,
            baudrate=settings.link.baudrate,
            trace=settings.wire_trace,
        )
        return cls(
            connection,
            rbid=settings.id,
            password=settings.password,
            channel=settings.channel,
            pan_id=settings.panid,
            ipaddr=settings.ipaddr,
            dual_stack=settings.dse,
            retry_interval=settings.link.retry_interval,
            command_timeout=settings.link.command_timeout,
            response_timeout=settings.link.response_timeout,
            scan_duration=settings.link.scan_duration,
            scan_timeout=settings.link.scan_timeout,
            join_timeout=settings.link.join_timeout,
        )

    # ------------------------------------------------------------------
    # Command plumbing
    # ------------------------------------------------------------------

    async def _read_until_ok(self, keyword: str) -> List[str]:
        """
        Read response lines until OK.

        Echoed command lines are skipped; unsolicited lines are
        returned to the caller.

        Raises:
            SKCommandError: On FAIL.
            asyncio.TimeoutError: If no OK arrives in time.
        """
        lines = []
        while True:
            line = await self.connection.read_line(timeout=self.command_timeout)
            if not line or line.startswith(keyword):
                continue
            if line == "OK" or line.startswith("OK "):
                return lines
            if line.startswith("FAIL"):
                raise SKCommandError(keyword, line)
            lines.append(line)

    async def _command(self, command: str) -> List[str]:
        """Send a text command and wait for OK."""
        keyword = command.split(" ", 1)[0]
        await self.connection.send_line(command, timeout=self.command_timeout)
        return await self._read_until_ok(keyword)

    async def _wait_for_event(self, numbers: tuple, timeout: float) -> List[str]:
        """
        Wait for one of the given EVENT numbers.

        Returns:
            The event's fields (``EVENT`` excluded).

        Raises:
            asyncio.TimeoutError: If no such event arrives in time.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            line = await self.connection.read_line(timeout=remaining)
            tokens = line.split()
            if len(tokens) >= 2 and tokens[0] == "EVENT" and tokens[1] in numbers:
                return tokens[1:]

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _channel_mask(self) -> int:
        if self.channel is None:
            return ALL_CHANNELS_MASK
        return 1 << (int(self.channel, 16) - MIN_CHANNEL)

    async def scan(self) -> PanDescriptor:
        """
        Actively scan for the meter's PAN.

        Returns:
            Descriptor of the first PAN found.

        Raises:
            AddressResolveError: If no PAN answers.
        """
        command = f"SKSCAN {SCAN_MODE_ACTIVE} {self._channel_mask():08X} {self.scan_duration}"
        if self.dual_stack:
            command += f" {DSE_SIDE_B_ROUTE}"

        logger.info("Scanning for smart meter PAN...")
        try:
            await self._command(command)
            descriptor = await self._collect_scan_results()
        except (asyncio.TimeoutError, ConnectionError, SKCommandError) as e:
            raise AddressResolveError(f"Active scan failed: {e!r}") from e

        if descriptor is None:
            raise AddressResolveError("No PAN found by active scan")

        self.pan = descriptor
        self.channel = descriptor.channel
        self.pan_id = descriptor.pan_id
        logger.info(
            f"Found PAN: channel={descriptor.channel} pan_id={descriptor.pan_id} "
            f"addr={descriptor.mac_address}"
        )
        return descriptor

    async def _collect_scan_results(self) -> Optional[PanDescriptor]:
        """Read EPANDESC blocks until EVENT 22; return the first one."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.scan_timeout
        found: Optional[PanDescriptor] = None
        fields: Optional[Dict[str, str]] = None

        def finish_block() -> None:
            # A block ends at the next EPANDESC or EVENT line
            nonlocal found
            if found is None and fields and _PAN_REQUIRED_FIELDS <= fields.keys():
                found = PanDescriptor.from_fields(fields)

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            line = await self.connection.read_line(timeout=remaining)

            if line.startswith("EPANDESC"):
                finish_block()
                fields = {}
                continue

            if line.startswith("EVENT"):
                finish_block()
                fields = None
                if line.split()[1:2] == [EVENT_SCAN_DONE]:
                    return found
                continue

            if fields is not None and ":" in line:
                key, value = line.split(":", 1)
                fields[key.strip()] = value.strip()

    async def resolve_address(self) -> str:
        """
        Resolve the meter's IPv6 link-local address.

        Uses the fixed address when configured; otherwise scans for the
        meter and converts its MAC address with SKLL64.

        Raises:
            AddressResolveError: If the address cannot be determined.
        """
        if self.ipaddr:
            return self.ipaddr

        descriptor = self.pan or await self.scan()

        try:
            await self.connection.send_line(
                f"SKLL64 {descriptor.mac_address}",
                timeout=self.command_timeout,
            )
            while True:
                line = await self.connection.read_line(timeout=self.command_timeout)
                if line and not line.startswith("SKLL64"):
                    break
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise AddressResolveError(f"SKLL64 failed: {e!r}") from e

        if line.startswith("FAIL") or ":" not in line:
            raise AddressResolveError(f"SKLL64 returned unexpected response: {line}")

        logger.info(f"Resolved smart meter address: {line}")
        return line

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self, address: str) -> None:
        """
        Authenticate with the meter (PANA join).

        Args:
            address: Meter IPv6 address.

        Raises:
            AuthenticationError: If the join fails or times out.
        """
        try:
            await self._command(f"SKSETPWD {len(self.password):X} {self.password}")
            await self._command(f"SKSETRBID {self.rbid}")

            if self.channel is None or self.pan_id is None:
                await self.scan()

            await self._command(f"SKSREG S2 {self.channel}")
            await self._command(f"SKSREG S3 {self.pan_id}")
            await self._command(f"SKJOIN {address}")

            event = await self._wait_for_event(
                (EVENT_PANA_DONE, EVENT_PANA_FAILED),
                timeout=self.join_timeout,
            )
        except AddressResolveError as e:
            raise AuthenticationError(f"PAN lookup failed: {e.message}") from e
        except SKCommandError as e:
            raise AuthenticationError(e.message, details=e.details) from e
        except (asyncio.TimeoutError, ConnectionError) as e:
            raise AuthenticationError(f"PANA authentication failed: {e!r}") from e

        if event[0] != EVENT_PANA_DONE:
            raise AuthenticationError(f"PANA authentication rejected by {address}")

        logger.info(f"PANA authentication with {address} complete")

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def _send_to(self, address: str, payload: bytes) -> List[str]:
        """Send a UDP datagram to the meter; return lines seen before OK."""
        header = f"SKSENDTO 1 {address} {ECHONET_LITE_PORT} 1 "
        if self.dual_stack:
            header += f"{DSE_SIDE_B_ROUTE} "
        header += f"{len(payload):04X} "

        if self.connection.trace:
            logger.debug(f">> {header}{payload.hex().upper()}")
        await self.connection.write(header.encode("ascii") + payload, timeout=self.command_timeout)
        return await self._read_until_ok("SKSENDTO")

    def _match_response(self, line: str, request: Frame) -> Optional[Frame]:
        if not line.startswith("ERXUDP"):
            return None

        datagram = parse_erxudp(line)
        if datagram is None or datagram.remote_port != ECHONET_LITE_PORT:
            return None

        try:
            frame = Frame.decode(datagram.data)
        except FrameError as e:
            logger.debug(f"Discarding undecodable frame from {datagram.sender}: {e}")
            return None

        return frame if frame.is_response_to(request) else None

    async def _await_response(self, request: Frame, pending: List[str]) -> Frame:
        """Wait for the frame answering ``request``."""
        for line in pending:
            frame = self._match_response(line, request)
            if frame is not None:
                return frame

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.response_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            line = await self.connection.read_line(timeout=remaining)
            frame = self._match_response(line, request)
            if frame is not None:
                return frame

    async def query(self, address: str, request: Frame, retries: int = 3) -> Frame:
        """
        Send an ECHONET Lite request and wait for its response.

        Args:
            address: Meter IPv6 address.
            request: Request frame.
            retries: Number of attempts before giving up.

        Returns:
            Response frame (Get_Res or Get_SNA).

        Raises:
            QueryError: If every attempt fails.
        """
        payload = request.encode()
        last_error: Optional[BaseException] = None
        attempts = max(1, retries)

        for attempt in range(1, attempts + 1):
            try:
                pending = await self._send_to(address, payload)
                return await self._await_response(request, pending)
            except (asyncio.TimeoutError, ConnectionError, SKCommandError) as e:
                last_error = e
                logger.debug(f"Query attempt {attempt}/{attempts} to {address} failed: {e!r}")

            if attempt < attempts:
                await asyncio.sleep(self.retry_interval)

        raise QueryError(
            f"No response from {address} after {attempts} attempts: {last_error!r}",
            attempts=attempts,
        ) from last_error

    async def close(self) -> None:
        """Close the serial connection."""
        await self.connection.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get link statistics."""
        return {
            "connection": self.connection.get_stats(),
            "channel": self.channel,
            "pan_id": self.pan_id,
            "dual_stack": self.dual_stack,
        }

    def __repr__(self) -> str:
        return (
            f"SKStackClient("
            f"port={self.connection.port}, "
            f"channel={self.channel}, "
            f"dse={self.dual_stack})"
        )
