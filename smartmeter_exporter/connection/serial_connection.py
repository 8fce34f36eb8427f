"""
Serial connection wrapper for the Wi-SUN module.

Provides line-oriented reading and raw writing over an asyncio
stream pair opened on a serial port, with timeout handling and
connection state tracking.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import serial_asyncio

logger = logging.getLogger(__name__)

LINE_ENDING = b"\r\n"

# Commands whose arguments must not reach the logs
_SECRET_COMMANDS = re.compile(r"^(SKSETPWD\s+\S+\s+)(\S+)")


def mask_secrets(line: str) -> str:
    """Mask the password argument of SKSETPWD."""
    return _SECRET_COMMANDS.sub(r"\1********", line)


class ConnectionState(str, Enum):
    """Connection state enumeration."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SerialConnection:
    """
    Wrapper for an asyncio serial stream pair.

    Provides high-level methods for reading response lines and
    writing commands, with proper timeout handling.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        port: str = "unknown",
        trace: bool = False,
    ):
        """
        Initialize the connection wrapper.

        Args:
            reader: Asyncio stream reader.
            writer: Asyncio stream writer.
            port: Serial port path, for logging.
            trace: Log every line read and written at DEBUG.
        """
        self.reader = reader
        self.writer = writer
        self.port = port
        self.trace = trace

        self._state = ConnectionState.CONNECTED
        self._connected_at = datetime.now(timezone.utc)
        self._last_activity = self._connected_at
        self._bytes_received = 0
        self._bytes_sent = 0
        self._error_count = 0

        logger.info(f"Serial connection opened on {self.port}")

    @classmethod
    async def open(
        cls,
        port: str,
        baudrate: int = 115200,
        trace: bool = False,
    ) -> "SerialConnection":
        """
        Open a serial port.

        Args:
            port: Device path, e.g. /dev/ttyACM0.
            baudrate: Line speed.
            trace: Enable wire tracing.

        Returns:
            Open connection.

        Raises:
            ConnectionError: If the port cannot be opened.
        """
        try:
            reader, writer = await serial_asyncio.open_serial_connection(
                url=port,
                baudrate=baudrate,
            )
        except Exception as e:
            raise ConnectionError(f"Cannot open serial port {port}: {e}") from e

        return cls(reader, writer, port=port, trace=trace)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if connection is still active."""
        return self._state == ConnectionState.CONNECTED

    async def read_line(self, timeout: float = 10.0) -> str:
        """
        Read one CRLF-terminated line.

        Args:
            timeout: Read timeout in seconds.

        Returns:
            Decoded line without the line ending.

        Raises:
            asyncio.TimeoutError: If read times out.
            ConnectionError: If the port is closed or fails.
        """
        if not self.is_connected:
            raise ConnectionError("Connection is not active")

        try:
            data = await asyncio.wait_for(
                self.reader.readuntil(LINE_ENDING),
                timeout=timeout,
            )
        except asyncio.LimitOverrunError as e:
            self._error_count += 1
            raise ConnectionError(
                f"Line too long (limit: {e.consumed} bytes)"
            ) from e
        except asyncio.IncompleteReadError as e:
            self._state = ConnectionState.DISCONNECTED
            raise ConnectionError(
                f"Port closed while reading: {len(e.partial)} bytes"
            ) from e
        except asyncio.TimeoutError:
            self._error_count += 1
            raise

        self._bytes_received += len(data)
        self._last_activity = datetime.now(timezone.utc)

        line = data.decode("ascii", errors="replace").strip()
        if self.trace:
            logger.debug(f"<< {mask_secrets(line)}")
        return line

    async def write(self, data: bytes, timeout: float = 10.0) -> None:
        """
        Write raw bytes to the port.

        Args:
            data: Bytes to write.
            timeout: Drain timeout in seconds.

        Raises:
            asyncio.TimeoutError: If write times out.
            ConnectionError: If the port fails.
        """
        if not self.is_connected:
            raise ConnectionError("Connection is not active")

        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout=timeout)
        except ConnectionError:
            self._state = ConnectionState.ERROR
            raise
        except asyncio.TimeoutError:
            self._error_count += 1
            raise

        self._bytes_sent += len(data)
        self._last_activity = datetime.now(timezone.utc)

    async def send_line(self, line: str, timeout: float = 10.0) -> None:
        """Write a text command terminated by CRLF."""
        if self.trace:
            logger.debug(f">> {mask_secrets(line)}")
        await self.write(line.encode("ascii") + LINE_ENDING, timeout=timeout)

    async def close(self) -> None:
        """Close the port gracefully."""
        if self._state == ConnectionState.DISCONNECTED:
            return

        logger.info(f"Closing serial connection on {self.port}")
        self._state = ConnectionState.DISCONNECTED

        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=5.0)
        except Exception as e:
            logger.debug(f"Error closing serial port: {e}")

    def get_stats(self) -> dict:
        """Get connection statistics."""
        now = datetime.now(timezone.utc)
        return {
            "port": self.port,
            "state": self._state.value,
            "connected_at": self._connected_at.isoformat(),
            "uptime_seconds": (now - self._connected_at).total_seconds(),
            "idle_seconds": (now - self._last_activity).total_seconds(),
            "bytes_received": self._bytes_received,
            "bytes_sent": self._bytes_sent,
            "error_count": self._error_count,
        }

    def __repr__(self) -> str:
        return f"SerialConnection(port={self.port}, state={self._state.value})"
