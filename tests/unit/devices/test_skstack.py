"""
Unit tests for SKStackClient.

Runs the client against a simulated SKSTACK module to cover scanning,
address resolution, PANA authentication and ECHONET Lite queries.
"""
from unittest.mock import AsyncMock, patch

import pytest

from smartmeter_exporter.config import ExporterSettings
from smartmeter_exporter.devices.client import (
    AddressResolveError,
    AuthenticationError,
    DeviceClient,
    QueryError,
)
from smartmeter_exporter.devices.skstack import (
    SKCommandError,
    SKStackClient,
    parse_erxudp,
)
from smartmeter_exporter.polling.decoder import decode_properties
from smartmeter_exporter.protocols.echonet import (
    EPC_INSTANTANEOUS_CURRENT,
    EPC_INSTANTANEOUS_POWER,
    ESV,
    build_get_request,
)

RBID = "00112233445566778899AABBCCDDEEFF"
PASSWORD = "0123456789AB"


def make_client(module, **overrides):
    options = dict(
        rbid=RBID,
        password=PASSWORD,
        dual_stack=module.dual_stack,
        retry_interval=0,
        command_timeout=0.5,
        response_timeout=0.2,
        scan_timeout=1.0,
        join_timeout=1.0,
    )
    options.update(overrides)
    return SKStackClient(module, **options)


@pytest.fixture
def client(module):
    return make_client(module)


def request_frame():
    return build_get_request([EPC_INSTANTANEOUS_POWER, EPC_INSTANTANEOUS_CURRENT])


def commands(module, keyword):
    return [line for line in module.sent if line.startswith(keyword)]


class TestClientInterface:
    """Test the client capability surface."""

    def test_is_device_client(self, client):
        assert isinstance(client, DeviceClient)

    @pytest.mark.asyncio
    async def test_open_from_settings(self, module):
        settings = ExporterSettings(
            id=RBID, password=PASSWORD, device="/dev/ttyUSB1", channel="3b", dse=False
        )

        with patch(
            "smartmeter_exporter.devices.skstack.SerialConnection.open",
            AsyncMock(return_value=module),
        ) as open_port:
            client = await SKStackClient.open(settings)

        open_port.assert_awaited_once_with("/dev/ttyUSB1", baudrate=115200, trace=False)
        assert client.channel == "3B"
        assert client.dual_stack is False
        assert client.rbid == RBID

    @pytest.mark.asyncio
    async def test_close(self, client, module):
        await client.close()

        assert module.closed is True

    @pytest.mark.asyncio
    async def test_stats_after_scan(self, client, module):
        await client.scan()

        stats = client.get_stats()

        assert stats["channel"] == "33"
        assert stats["pan_id"] == "8888"
        assert stats["connection"]["port"] == "sim"
        assert stats["connection"]["lines_sent"] == 1


class TestScan:
    """Test active scan and address resolution."""

    @pytest.mark.asyncio
    async def test_fixed_address_skips_scan(self, module):
        client = make_client(module, ipaddr="FE80::1234")

        address = await client.resolve_address()

        assert address == "FE80::1234"
        assert module.sent == []

    @pytest.mark.asyncio
    async def test_resolve_by_scan(self, client, module):
        address = await client.resolve_address()

        assert address == module.meter_address
        assert commands(module, "SKSCAN") == ["SKSCAN 2 FFFFFFFF 6 0"]
        assert commands(module, "SKLL64") == [f"SKLL64 {module.mac_address}"]
        assert client.channel == "33"
        assert client.pan_id == "8888"

    @pytest.mark.asyncio
    async def test_scan_descriptor(self, client, module):
        descriptor = await client.scan()

        assert descriptor.mac_address == module.mac_address
        assert descriptor.lqi == "E1"
        assert descriptor.pair_id == "00A1B2C3"

    @pytest.mark.asyncio
    async def test_scan_keeps_first_block_whole(self, client, module):
        module.neighbour_pans = ["001D1290AAAAAAAA"]

        descriptor = await client.scan()

        assert descriptor.mac_address == module.mac_address
        assert descriptor.lqi == "E1"
        assert descriptor.pair_id == "00A1B2C3"
        assert client.channel == "33"

    @pytest.mark.asyncio
    async def test_scan_last_block_ends_at_scan_done(self, client, module):
        module.pan_visible = False
        module.neighbour_pans = ["001D1290AAAAAAAA"]

        descriptor = await client.scan()

        assert descriptor.mac_address == "001D1290AAAAAAAA"
        assert descriptor.lqi == "40"
        assert descriptor.pair_id is None

    @pytest.mark.asyncio
    async def test_scan_single_channel(self, module):
        client = make_client(module, channel="33")

        await client.scan()

        assert commands(module, "SKSCAN") == ["SKSCAN 2 00040000 6 0"]

    @pytest.mark.asyncio
    async def test_scan_without_dual_stack(self, simulator_factory):
        module = simulator_factory(dual_stack=False)
        client = make_client(module)

        await client.scan()

        assert commands(module, "SKSCAN") == ["SKSCAN 2 FFFFFFFF 6"]

    @pytest.mark.asyncio
    async def test_no_pan_found(self, client, module):
        module.pan_visible = False

        with pytest.raises(AddressResolveError, match="No PAN found"):
            await client.resolve_address()

    @pytest.mark.asyncio
    async def test_scan_command_fails(self, client, module):
        module.fail_commands.append("SKSCAN")

        with pytest.raises(AddressResolveError):
            await client.resolve_address()

    @pytest.mark.asyncio
    async def test_scan_reused_for_ll64(self, client, module):
        await client.scan()
        await client.resolve_address()

        assert len(commands(module, "SKSCAN")) == 1


class TestAuthenticate:
    """Test PANA authentication."""

    @pytest.mark.asyncio
    async def test_join_sequence(self, module):
        client = make_client(module, channel="33", pan_id="8888")

        await client.authenticate(module.meter_address)

        assert module.sent == [
            f"SKSETPWD C {PASSWORD}",
            f"SKSETRBID {RBID}",
            "SKSREG S2 33",
            "SKSREG S3 8888",
            f"SKJOIN {module.meter_address}",
        ]

    @pytest.mark.asyncio
    async def test_scans_when_pan_unknown(self, client, module):
        await client.authenticate(module.meter_address)

        assert len(commands(module, "SKSCAN")) == 1
        assert "SKSREG S2 33" in module.sent

    @pytest.mark.asyncio
    async def test_join_rejected(self, client, module):
        module.join_succeeds = False

        with pytest.raises(AuthenticationError, match="rejected"):
            await client.authenticate(module.meter_address)

    @pytest.mark.asyncio
    async def test_command_failure(self, client, module):
        module.fail_commands.append("SKSETPWD")

        with pytest.raises(AuthenticationError) as exc_info:
            await client.authenticate(module.meter_address)

        assert exc_info.value.code == "AUTH_FAILED"
        assert exc_info.value.details["command"] == "SKSETPWD"

    @pytest.mark.asyncio
    async def test_pan_lookup_failure(self, client, module):
        module.pan_visible = False

        with pytest.raises(AuthenticationError, match="PAN lookup failed"):
            await client.authenticate(module.meter_address)


class TestQuery:
    """Test ECHONET Lite request/response over UDP."""

    @pytest.mark.asyncio
    async def test_returns_response(self, client, module):
        request = request_frame()

        response = await client.query(module.meter_address, request)

        assert response.tid == request.tid
        assert response.esv == ESV.GET_RES
        readings = {r.key: r.value for r in decode_properties(response.properties).readings}
        assert readings["power_watts"] == 1200.0
        assert readings["current_amperes{phase=r}"] == 10.0

    @pytest.mark.asyncio
    async def test_sendto_framing(self, client, module):
        request = request_frame()

        await client.query(module.meter_address, request)

        assert commands(module, "SKSENDTO") == [
            f"SKSENDTO 1 {module.meter_address} 0E1A 1 0 0010"
        ]
        assert module.payloads == [request.encode()]

    @pytest.mark.asyncio
    async def test_sendto_framing_without_dual_stack(self, simulator_factory):
        module = simulator_factory(dual_stack=False)
        client = make_client(module)

        response = await client.query(module.meter_address, request_frame())

        assert commands(module, "SKSENDTO") == [
            f"SKSENDTO 1 {module.meter_address} 0E1A 1 0010"
        ]
        assert response.esv == ESV.GET_RES

    @pytest.mark.asyncio
    async def test_retries_after_timeout(self, client, module):
        module.drop_queries = 2

        response = await client.query(module.meter_address, request_frame(), retries=3)

        assert response.esv == ESV.GET_RES
        assert len(module.payloads) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, client, module):
        module.drop_queries = 5

        with pytest.raises(QueryError) as exc_info:
            await client.query(module.meter_address, request_frame(), retries=3)

        assert exc_info.value.attempts == 3
        assert len(module.payloads) == 3

    @pytest.mark.asyncio
    async def test_ignores_other_transactions(self, client, module):
        module.answer_with_wrong_tid = True

        with pytest.raises(QueryError):
            await client.query(module.meter_address, request_frame(), retries=1)

    @pytest.mark.asyncio
    async def test_sendto_fail(self, client, module):
        module.fail_commands.append("SKSENDTO")

        with pytest.raises(QueryError) as exc_info:
            await client.query(module.meter_address, request_frame(), retries=2)

        assert isinstance(exc_info.value.__cause__, SKCommandError)

    @pytest.mark.asyncio
    async def test_response_before_ok(self, client, module):
        request = request_frame()
        pending = [module.erxudp_line(module.build_response(request))]

        response = await client._await_response(request, pending)

        assert response.tid == request.tid

    @pytest.mark.asyncio
    async def test_skips_unrelated_lines(self, client, module):
        request = request_frame()
        module.emit(
            "EVENT 21 FE80::1 0 00",
            "ERXUDP garbage",
            module.erxudp_line(module.build_response(request)),
        )

        response = await client._await_response(request, [])

        assert response.tid == request.tid


class TestParseErxudp:
    """Test ERXUDP line parsing."""

    def test_dual_stack_format(self):
        line = "ERXUDP FE80::1 FE80::2 0E1A 0E1A 001D129012345678 1 0 0004 DEADBEEF"

        datagram = parse_erxudp(line)

        assert datagram.sender == "FE80::1"
        assert datagram.remote_port == "0E1A"
        assert datagram.data == bytes.fromhex("DEADBEEF")

    def test_classic_format(self):
        line = "ERXUDP FE80::1 FE80::2 0E1A 0E1A 001D129012345678 1 0002 BEEF"

        assert parse_erxudp(line).data == b"\xbe\xef"

    def test_length_mismatch(self):
        line = "ERXUDP FE80::1 FE80::2 0E1A 0E1A 001D129012345678 1 0003 BEEF"

        assert parse_erxudp(line) is None

    def test_bad_hex(self):
        line = "ERXUDP FE80::1 FE80::2 0E1A 0E1A 001D129012345678 1 0002 XYZW"

        assert parse_erxudp(line) is None

    def test_too_few_fields(self):
        assert parse_erxudp("ERXUDP FE80::1 0002 BEEF") is None
