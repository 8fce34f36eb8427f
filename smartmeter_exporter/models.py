"""
Core value types shared by the polling and metrics layers.

Readings are produced per successful scrape and never persisted;
scrape outcomes drive logging and the error counter.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class ScrapeOutcome(str, Enum):
    """Result of a single scrape cycle."""
    SUCCESS = "success"
    IP_RESOLVE_FAILURE = "ip_resolve"
    AUTH_FAILURE = "auth"
    QUERY_FAILURE = "query"
    PARSE_FAILURE = "parse"

    @property
    def is_failure(self) -> bool:
        """Check if the outcome is a failure kind."""
        return self is not ScrapeOutcome.SUCCESS

    @property
    def error_type(self) -> Optional[str]:
        """Value of the ``type`` label on the error counter."""
        if self is ScrapeOutcome.SUCCESS:
            return None
        return self.value

    @classmethod
    def failures(cls) -> Tuple["ScrapeOutcome", ...]:
        """All failure outcomes, in counter label order."""
        return tuple(outcome for outcome in cls if outcome.is_failure)


@dataclass(frozen=True)
class Reading:
    """
    A named numeric measurement decoded from the meter.

    The key is the metric name plus its label pairs, so the two
    current phases are distinct readings of the same metric.
    """
    name: str
    value: float
    labels: Tuple[Tuple[str, str], ...] = ()

    @property
    def key(self) -> str:
        """Stable key, e.g. ``current_amperes{phase=r}``."""
        if not self.labels:
            return self.name
        rendered = ",".join(f"{k}={v}" for k, v in self.labels)
        return f"{self.name}{{{rendered}}}"

    @property
    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)


POWER_WATTS = "power_watts"
CURRENT_AMPERES = "current_amperes"
PHASE_R = "r"
PHASE_T = "t"
