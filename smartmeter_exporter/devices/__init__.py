"""
Device access for the smart meter.

Exports the client capability, its errors, the session state and
the SKSTACK implementation.
"""
from .client import (
    AddressResolveError,
    AuthenticationError,
    DeviceClient,
    DeviceError,
    QueryError,
)
from .device_session import DeviceSession
from .skstack import PanDescriptor, SKCommandError, SKStackClient

__all__ = [
    "AddressResolveError",
    "AuthenticationError",
    "DeviceClient",
    "DeviceError",
    "QueryError",
    "DeviceSession",
    "PanDescriptor",
    "SKCommandError",
    "SKStackClient",
]
