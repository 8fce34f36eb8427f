"""
Device client capability and its error types.

The scrape orchestrator only talks to the meter through this surface;
the SKSTACK implementation lives in ``skstack``.
"""
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from ..protocols.echonet import Frame


class DeviceError(Exception):
    """
    Base exception for all device communication errors.

    All device exceptions inherit from this class so callers can
    absorb transport failures with a single handler.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class AddressResolveError(DeviceError):
    """Raised when the meter's network address cannot be resolved."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="IP_RESOLVE_FAILED", details=details)


class AuthenticationError(DeviceError):
    """Raised when link-layer authentication (PANA join) fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="AUTH_FAILED", details=details)


class QueryError(DeviceError):
    """Raised when a request gets no usable response after all attempts."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.attempts = attempts
        merged = {"attempts": attempts, **(details or {})}
        super().__init__(message, code="QUERY_FAILED", details=merged)


@runtime_checkable
class DeviceClient(Protocol):
    """Capability surface consumed by the scrape orchestrator."""

    async def resolve_address(self) -> str:
        """Resolve the meter's address. Raises AddressResolveError."""
        ...

    async def authenticate(self, address: str) -> None:
        """(Re-)authenticate with the meter. Raises AuthenticationError."""
        ...

    async def query(self, address: str, request: Frame, retries: int = 3) -> Frame:
        """Send a request and return the response. Raises QueryError."""
        ...

    async def close(self) -> None:
        ...

    def get_stats(self) -> Dict[str, Any]:
        """Link statistics for the health report."""
        ...
