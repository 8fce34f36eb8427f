"""
Property decoder for smart meter responses.

Maps the (EPC, EDT) pairs of a Get_Res frame into typed readings.
Pure and side-effect free; unknown properties are ignored.
"""
import logging
import struct
from dataclasses import dataclass, field
from typing import Iterable, List

from ..models import CURRENT_AMPERES, PHASE_R, PHASE_T, POWER_WATTS, Reading
from ..protocols.echonet import (
    EPC_INSTANTANEOUS_CURRENT,
    EPC_INSTANTANEOUS_POWER,
    Property,
)

logger = logging.getLogger(__name__)

CURRENT_SCALE = 10.0


@dataclass
class DecodeResult:
    """Readings decoded from one response, plus how many properties matched."""
    readings: List[Reading] = field(default_factory=list)
    matched: int = 0


def _decode_power(edt: bytes) -> List[Reading]:
    # 4-byte big-endian unsigned, watts, no scaling
    (watts,) = struct.unpack_from(">I", edt)
    return [Reading(POWER_WATTS, float(watts))]


def _decode_current(edt: bytes) -> List[Reading]:
    # R phase then T phase, 2-byte big-endian unsigned each, 0.1 A units
    r_raw, t_raw = struct.unpack_from(">HH", edt)
    return [
        Reading(CURRENT_AMPERES, r_raw / CURRENT_SCALE, (("phase", PHASE_R),)),
        Reading(CURRENT_AMPERES, t_raw / CURRENT_SCALE, (("phase", PHASE_T),)),
    ]


_DECODERS = {
    EPC_INSTANTANEOUS_POWER: _decode_power,
    EPC_INSTANTANEOUS_CURRENT: _decode_current,
}

_MIN_EDT_SIZE = 4


def decode_properties(properties: Iterable[Property]) -> DecodeResult:
    """
    Decode response properties into readings.

    Args:
        properties: Properties from a response frame.

    Returns:
        DecodeResult with all readings and the count of recognized
        properties. A recognized EPC whose EDT is too short to decode
        (e.g. an empty Get_SNA entry) does not count as recognized.
    """
    result = DecodeResult()

    for prop in properties:
        decoder = _DECODERS.get(prop.epc)
        if decoder is None:
            continue

        if len(prop.edt) < _MIN_EDT_SIZE:
            logger.debug(
                f"Ignoring EPC 0x{prop.epc:02X} with short EDT "
                f"({len(prop.edt)} bytes)"
            )
            continue

        result.readings.extend(decoder(prop.edt))
        result.matched += 1

    return result
