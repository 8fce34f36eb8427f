"""
Configuration for the SmartMeter exporter.

Provides settings for the B-route credentials, the serial Wi-SUN
module, the scrape interval and the metrics HTTP server. Values come
from SMARTMETER_* environment variables (or .env) and can be
overridden by command-line flags.
"""
import logging
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 60
MIN_INTERVAL = 10

# Wi-SUN B-route channels as printed by SKSCAN (hex)
MIN_CHANNEL = 0x21
MAX_CHANNEL = 0x3C


class DeviceLinkSettings(BaseSettings):
    """Serial module and SKSTACK command configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SMARTMETER_LINK_",
        env_file=".env",
        extra="ignore",
    )

    baudrate: int = Field(default=115200, description="Serial line speed")
    query_retries: int = Field(default=3, ge=1, description="Attempts per query")
    retry_interval: float = Field(default=5.0, ge=0, description="Delay between query attempts")
    command_timeout: float = Field(default=5.0, gt=0, description="Timeout waiting for OK/FAIL")
    response_timeout: float = Field(default=20.0, gt=0, description="Timeout waiting for ERXUDP")
    scan_duration: int = Field(default=6, ge=1, le=14, description="SKSCAN duration exponent")
    scan_timeout: float = Field(default=120.0, gt=0, description="Timeout for a full active scan")
    join_timeout: float = Field(default=60.0, gt=0, description="Timeout for PANA authentication")


class HTTPServerSettings(BaseSettings):
    """Metrics HTTP server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SMARTMETER_HTTP_",
        env_file=".env",
        extra="ignore",
    )

    host: str = Field(default="::", description="Server bind address (\"::\" listens on IPv4 and IPv6)")
    shutdown_grace: float = Field(default=5.0, ge=0, description="Graceful shutdown period (seconds)")


class ExporterSettings(BaseSettings):
    """Main configuration for the exporter."""

    model_config = SettingsConfigDict(
        env_prefix="SMARTMETER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # B-route credentials
    id: str = Field(default="", description="B-route ID")
    password: str = Field(default="", description="B-route password")

    # Device
    device: str = Field(default="/dev/ttyACM0", description="Serial port device path")
    channel: Optional[str] = Field(default=None, description="Fixed Wi-SUN channel (skip scan)")
    panid: Optional[str] = Field(default=None, description="Fixed PAN ID (skip scan)")
    ipaddr: Optional[str] = Field(default=None, description="Fixed smart meter IPv6 address")
    dse: bool = Field(default=True, description="Dual Stack Edition module")

    # Scraping and serving
    interval: int = Field(default=DEFAULT_INTERVAL, description="Scrape interval in seconds")
    port: int = Field(default=9102, ge=1, le=65535, description="Exporter listen port")

    # Logging
    verbosity: int = Field(default=1, ge=0, description="Log verbosity (0:quiet, 3:debug)")
    log_format: Literal["text", "json"] = Field(default="text", description="Log output format")

    # Sub-settings
    link: DeviceLinkSettings = Field(default_factory=DeviceLinkSettings)
    http: HTTPServerSettings = Field(default_factory=HTTPServerSettings)

    @field_validator("interval", mode="before")
    @classmethod
    def _fallback_interval(cls, value):
        """Replace an unparseable or too short interval with the default."""
        try:
            seconds = int(str(value).strip())
        except (TypeError, ValueError):
            seconds = None

        if seconds is None or seconds < MIN_INTERVAL:
            logger.warning(f"Invalid interval {value}, using default {DEFAULT_INTERVAL}s")
            return DEFAULT_INTERVAL
        return seconds

    @field_validator("channel", "panid", "ipaddr", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("channel")
    @classmethod
    def _normalize_channel(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        channel = int(value, 16)
        if not MIN_CHANNEL <= channel <= MAX_CHANNEL:
            raise ValueError(
                f"channel must be between {MIN_CHANNEL:02X} and {MAX_CHANNEL:02X} (hex)"
            )
        return f"{channel:02X}"

    @field_validator("panid")
    @classmethod
    def _normalize_panid(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        pan_id = int(value, 16)
        if not 0 <= pan_id <= 0xFFFF:
            raise ValueError("panid must be a 16-bit hex value")
        return f"{pan_id:04X}"

    @property
    def wire_trace(self) -> bool:
        """Whether serial traffic is logged line by line."""
        return self.verbosity >= 3

    def validate_credentials(self) -> List[str]:
        """
        Validate that the B-route credentials are present.

        Returns:
            List of error messages, empty if valid.
        """
        errors = []

        if not self.id:
            errors.append("B-route ID is required (--id or SMARTMETER_ID)")

        if not self.password:
            errors.append("B-route password is required (--password or SMARTMETER_PASSWORD)")

        return errors


@lru_cache()
def get_settings() -> ExporterSettings:
    """
    Get cached exporter settings.

    Uses LRU cache to avoid re-reading environment variables on every access.
    """
    return ExporterSettings()
