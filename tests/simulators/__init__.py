"""
Device simulators for exporter testing.

Provides a virtual Wi-SUN module and meter for exercising the SKSTACK
client without hardware.
"""
from .skstack_simulator import SKStackSimulator

__all__ = [
    "SKStackSimulator",
]
