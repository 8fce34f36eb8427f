"""
Device session state.

Holds the resolved meter address and authentication state. Owned
exclusively by the scrape cycle; the HTTP side never sees it.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..models import ScrapeOutcome
from .client import DeviceError


@dataclass
class DeviceSession:
    """
    Session with a single smart meter.

    The address is cached for the lifetime of the process once resolved;
    nothing invalidates it short of a restart. Authentication is assumed
    valid from the start and only cleared when a query fails; the
    recovery path sets it again after a successful join.
    """
    address: Optional[str] = None
    authenticated: bool = True

    # Timestamps
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    authenticated_at: Optional[datetime] = None
    last_cycle_at: Optional[datetime] = None
    last_outcome: Optional[ScrapeOutcome] = None
    last_error: Optional[Dict[str, Any]] = None

    # Counters
    total_cycles: int = 0
    successful_cycles: int = 0
    consecutive_failures: int = 0
    reauth_attempts: int = 0

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    @property
    def has_address(self) -> bool:
        """Check if the meter address is known."""
        return self.address is not None

    def cache_address(self, address: str) -> None:
        """Cache a resolved address for all future cycles."""
        self.address = address
        self.resolved_at = datetime.now(timezone.utc)

    def mark_authenticated(self) -> None:
        self.authenticated = True
        self.authenticated_at = datetime.now(timezone.utc)

    def invalidate_authentication(self) -> None:
        self.authenticated = False

    def record_reauth_attempt(self) -> None:
        self.reauth_attempts += 1

    def record_error(self, error: Exception) -> None:
        """Keep a structured description of the latest failure."""
        if isinstance(error, DeviceError):
            self.last_error = error.to_dict()
        else:
            self.last_error = {
                "error": type(error).__name__,
                "message": str(error),
                "details": {},
            }

    def record_outcome(self, outcome: ScrapeOutcome) -> None:
        """
        Record the outcome of a finished cycle.

        Args:
            outcome: Outcome of the cycle.
        """
        self.total_cycles += 1
        self.last_cycle_at = datetime.now(timezone.utc)
        self.last_outcome = outcome

        if outcome is ScrapeOutcome.SUCCESS:
            self.successful_cycles += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "address": self.address,
            "authenticated": self.authenticated,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "authenticated_at": (
                self.authenticated_at.isoformat() if self.authenticated_at else None
            ),
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "total_cycles": self.total_cycles,
            "successful_cycles": self.successful_cycles,
            "consecutive_failures": self.consecutive_failures,
            "reauth_attempts": self.reauth_attempts,
            "last_error": self.last_error,
        }

    def __repr__(self) -> str:
        return (
            f"DeviceSession("
            f"address={self.address}, "
            f"authenticated={self.authenticated})"
        )
