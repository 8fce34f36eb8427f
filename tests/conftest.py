"""
Shared pytest fixtures for exporter tests.

Provides fixtures for:
- Metrics sink (isolated registry per test)
- Device session
- Device client mock
- Recording sleep for cooldown assertions
- Meter response frames
- Simulated SKSTACK module
"""
import os
import struct
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from smartmeter_exporter.devices.client import DeviceClient
from smartmeter_exporter.devices.device_session import DeviceSession
from smartmeter_exporter.metrics.sink import MetricsSink
from smartmeter_exporter.protocols.echonet import (
    CONTROLLER_EOJ,
    EPC_INSTANTANEOUS_CURRENT,
    EPC_INSTANTANEOUS_POWER,
    ESV,
    Frame,
    Property,
    SMART_METER_EOJ,
)

from simulators import SKStackSimulator

# Keep a developer's .env or shell from leaking into settings tests
for _key in list(os.environ):
    if _key.startswith("SMARTMETER_"):
        del os.environ[_key]


METER_ADDRESS = "FE80:0000:0000:0000:021D:1290:1234:5678"


# ============================================================================
# Metrics Fixtures
# ============================================================================

@pytest.fixture
def sink():
    """Metrics sink with its own registry."""
    return MetricsSink()


# ============================================================================
# Device Fixtures
# ============================================================================

@pytest.fixture
def session():
    """Fresh device session with no address."""
    return DeviceSession()


@pytest.fixture
def meter_address():
    return METER_ADDRESS


def make_response(
    power: int = 1200,
    current_r: int = 100,
    current_t: int = 50,
    tid: int = 1,
) -> Frame:
    """Build a Get_Res carrying power (W) and current (0.1 A units)."""
    return Frame(
        tid=tid,
        seoj=SMART_METER_EOJ,
        deoj=CONTROLLER_EOJ,
        esv=ESV.GET_RES,
        properties=[
            Property(EPC_INSTANTANEOUS_POWER, struct.pack(">I", power)),
            Property(EPC_INSTANTANEOUS_CURRENT, struct.pack(">HH", current_r, current_t)),
        ],
    )


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def meter_response():
    """Get_Res for 1200 W, 10.0 A (R) and 5.0 A (T)."""
    return make_response()


@pytest.fixture
def mock_client(meter_response):
    """
    Mock device client.

    Resolves, authenticates and answers queries successfully by default;
    configure ``side_effect`` per test for failures.
    """
    client = AsyncMock(spec=DeviceClient)
    client.resolve_address = AsyncMock(return_value=METER_ADDRESS)
    client.authenticate = AsyncMock(return_value=None)
    client.query = AsyncMock(return_value=meter_response)
    client.close = AsyncMock()
    client.get_stats = MagicMock(return_value={"connection": {"port": "mock"}})
    return client


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


# ============================================================================
# Simulator Fixtures
# ============================================================================

@pytest.fixture
def simulator_factory():
    """Factory for simulated SKSTACK modules."""
    return SKStackSimulator


@pytest.fixture
def module(simulator_factory):
    """Simulated Dual Stack Edition module with a meter behind it."""
    return simulator_factory()
