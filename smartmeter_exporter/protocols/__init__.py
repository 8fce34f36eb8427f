"""
Protocol codecs for device communication.
"""
from .echonet import (
    ESV,
    EPC_INSTANTANEOUS_CURRENT,
    EPC_INSTANTANEOUS_POWER,
    Frame,
    FrameError,
    Property,
    build_get_request,
)

__all__ = [
    "ESV",
    "EPC_INSTANTANEOUS_CURRENT",
    "EPC_INSTANTANEOUS_POWER",
    "Frame",
    "FrameError",
    "Property",
    "build_get_request",
]
