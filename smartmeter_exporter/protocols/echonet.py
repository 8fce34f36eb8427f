"""
ECHONET Lite frame codec.

Builds Get requests for the low-voltage smart electric energy meter
and parses the Get_Res frames it returns over the B-route link.
Only format 1 (specified message format) frames are supported.
"""
import itertools
import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

# Header: EHD1 (1) | EHD2 (1) | TID (2)
EHD1_ECHONET_LITE = 0x10
EHD2_FORMAT1 = 0x81

# ECHONET objects (class group, class, instance)
CONTROLLER_EOJ = bytes((0x05, 0xFF, 0x01))
SMART_METER_EOJ = bytes((0x02, 0x88, 0x01))

# Low-voltage smart electric energy meter properties
EPC_INSTANTANEOUS_POWER = 0xE7
EPC_INSTANTANEOUS_CURRENT = 0xE8

# UDP port the meter listens on (hex, as SKSTACK expects it)
ECHONET_LITE_PORT = "0E1A"

_HEADER_SIZE = 12


class FrameError(ValueError):
    """Raised when bytes cannot be parsed as an ECHONET Lite frame."""


class ESV(IntEnum):
    """ECHONET Lite service codes."""
    SETI_SNA = 0x50
    SETC_SNA = 0x51
    GET_SNA = 0x52
    INF_SNA = 0x53
    SETI = 0x60
    SETC = 0x61
    GET = 0x62
    INF_REQ = 0x63
    SET_RES = 0x71
    GET_RES = 0x72
    INF = 0x73
    INFC = 0x74
    INFC_RES = 0x7A


@dataclass(frozen=True)
class Property:
    """A single (EPC, EDT) pair."""
    epc: int
    edt: bytes = b""

    @property
    def pdc(self) -> int:
        return len(self.edt)


@dataclass
class Frame:
    """
    ECHONET Lite format 1 frame.

    Layout:
        EHD1 (1) | EHD2 (1) | TID (2) | SEOJ (3) | DEOJ (3) |
        ESV (1) | OPC (1) | { EPC (1) | PDC (1) | EDT (PDC) } * OPC
    """
    tid: int
    seoj: bytes
    deoj: bytes
    esv: int
    properties: List[Property] = field(default_factory=list)

    def encode(self) -> bytes:
        """
        Serialize the frame to bytes.

        Returns:
            Encoded frame.

        Raises:
            FrameError: If a field is out of range.
        """
        if len(self.seoj) != 3 or len(self.deoj) != 3:
            raise FrameError("EOJ must be exactly 3 bytes")
        if len(self.properties) > 0xFF:
            raise FrameError(f"Too many properties: {len(self.properties)}")

        out = bytearray(
            struct.pack(">BBH", EHD1_ECHONET_LITE, EHD2_FORMAT1, self.tid & 0xFFFF)
        )
        out += self.seoj
        out += self.deoj
        out += struct.pack(">BB", self.esv, len(self.properties))

        for prop in self.properties:
            if prop.pdc > 0xFF:
                raise FrameError(f"EDT too long for EPC 0x{prop.epc:02X}")
            out += struct.pack(">BB", prop.epc, prop.pdc)
            out += prop.edt

        return bytes(out)

    @classmethod
    def decode(cls, data: bytes) -> "Frame":
        """
        Parse a frame from bytes.

        Args:
            data: Raw frame bytes.

        Returns:
            Decoded frame.

        Raises:
            FrameError: If the data is not a valid format 1 frame.
        """
        if len(data) < _HEADER_SIZE:
            raise FrameError(f"Frame too short: {len(data)} bytes")

        ehd1, ehd2, tid = struct.unpack(">BBH", data[:4])
        if ehd1 != EHD1_ECHONET_LITE or ehd2 != EHD2_FORMAT1:
            raise FrameError(f"Unsupported header: {ehd1:02X}{ehd2:02X}")

        seoj = bytes(data[4:7])
        deoj = bytes(data[7:10])
        esv, opc = data[10], data[11]

        properties = []
        offset = _HEADER_SIZE
        for _ in range(opc):
            if offset + 2 > len(data):
                raise FrameError("Truncated property header")
            epc, pdc = data[offset], data[offset + 1]
            offset += 2
            if offset + pdc > len(data):
                raise FrameError(
                    f"Truncated EDT for EPC 0x{epc:02X}: "
                    f"need {pdc} bytes, have {len(data) - offset}"
                )
            properties.append(Property(epc, bytes(data[offset:offset + pdc])))
            offset += pdc

        return cls(tid=tid, seoj=seoj, deoj=deoj, esv=esv, properties=properties)

    def is_response_to(self, request: "Frame") -> bool:
        """Check if this frame answers the given Get request."""
        return self.tid == request.tid and self.esv in (ESV.GET_RES, ESV.GET_SNA)

    def __repr__(self) -> str:
        epcs = ",".join(f"{p.epc:02X}" for p in self.properties)
        return f"Frame(tid={self.tid}, esv=0x{self.esv:02X}, epcs=[{epcs}])"


_transaction_ids = itertools.count(1)


def next_transaction_id() -> int:
    """Get next transaction ID (wraps at 16 bits, never 0)."""
    return (next(_transaction_ids) % 0xFFFF) + 1


def build_get_request(
    epcs: Iterable[int],
    tid: Optional[int] = None,
    deoj: bytes = SMART_METER_EOJ,
) -> Frame:
    """
    Build a Get request for the given properties.

    Args:
        epcs: Property codes to request.
        tid: Transaction ID. Allocated if not provided.
        deoj: Destination object, the smart meter by default.

    Returns:
        Request frame.
    """
    return Frame(
        tid=tid if tid is not None else next_transaction_id(),
        seoj=CONTROLLER_EOJ,
        deoj=deoj,
        esv=ESV.GET,
        properties=[Property(epc) for epc in epcs],
    )
