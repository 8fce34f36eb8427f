"""
Connection handling for the Wi-SUN serial module.
"""
from .serial_connection import ConnectionState, SerialConnection

__all__ = [
    "ConnectionState",
    "SerialConnection",
]
