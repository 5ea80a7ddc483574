"""Tests for the connection definition builder."""

import pytest

from fleet_orchestrator.builder import build_connection_definition, parse_number


BASE = {
    "control": "start",
    "connectionName": "mock-connection-id",
    "protocol": "OPC_DA",
}


def test_default_parameters() -> None:
    """Only the fields present come out; OPC_DA uses its lowercase wire form."""
    assert build_connection_definition(BASE) == {
        "control": "start",
        "connectionName": "mock-connection-id",
        "protocol": "opcda",
    }


def test_invalid_protocol_passes_through() -> None:
    raw = {**BASE, "control": "deploy", "protocol": "invalid"}
    assert build_connection_definition(raw) == {
        "control": "deploy",
        "connectionName": "mock-connection-id",
        "protocol": "invalid",
    }


def test_opc_da_numeric_text_is_parsed() -> None:
    raw = {
        **BASE,
        "opcDa": {
            "machineIp": "1.2.3.4",
            "serverName": "mock-opcda-server-name",
            "interval": "1",
            "iterations": "1",
            "listTags": ["ListTag.*"],
        },
    }
    result = build_connection_definition(raw)
    assert result["opcDa"] == {
        "machineIp": "1.2.3.4",
        "serverName": "mock-opcda-server-name",
        "interval": 1,
        "iterations": 1,
        "listTags": ["ListTag.*"],
    }
    assert isinstance(result["opcDa"]["interval"], int)


def test_fractional_interval_stays_float() -> None:
    raw = {**BASE, "opcDa": {"interval": "0.5"}}
    assert build_connection_definition(raw)["opcDa"]["interval"] == 0.5


def test_opc_ua_port_is_parsed() -> None:
    raw = {
        "control": "update",
        "connectionName": "mock-connection-id",
        "protocol": "OPC_UA",
        "opcUa": {"machineIp": "1.2.3.4", "serverName": "srv", "port": "1234"},
    }
    assert build_connection_definition(raw) == {
        "control": "update",
        "connectionName": "mock-connection-id",
        "protocol": "OPC_UA",
        "opcUa": {"machineIp": "1.2.3.4", "serverName": "srv", "port": 1234},
    }


@pytest.mark.parametrize("port", ["", "   ", None])
def test_blank_port_is_omitted(port) -> None:
    raw = {
        "control": "update",
        "connectionName": "c",
        "protocol": "OPC_UA",
        "opcUa": {"machineIp": "1.2.3.4", "serverName": "srv", "port": port},
    }
    assert build_connection_definition(raw)["opcUa"] == {
        "machineIp": "1.2.3.4",
        "serverName": "srv",
    }


def test_unparsable_number_passes_through() -> None:
    raw = {**BASE, "opcDa": {"iterations": "ten"}}
    assert build_connection_definition(raw)["opcDa"]["iterations"] == "ten"


def test_only_matching_payload_is_kept() -> None:
    raw = {
        **BASE,
        "protocol": "OPC_UA",
        "opcDa": {"serverName": "da"},
        "opcUa": {"serverName": "ua"},
    }
    result = build_connection_definition(raw)
    assert "opcDa" not in result
    assert result["opcUa"] == {"serverName": "ua"}


def test_destination_flags_only_when_present() -> None:
    raw = {**BASE, "sendDataToTimestream": True, "sendDataToIoTSiteWise": False}
    result = build_connection_definition(raw)
    assert result["sendDataToIoTSiteWise"] is False
    assert result["sendDataToTimestream"] is True
    assert "sendDataToIoTTopic" not in result
    assert "sendDataToKinesisDataStreams" not in result


def test_key_order_is_canonical(ua_request) -> None:
    shuffled = dict(reversed(list(ua_request.items())))
    assert list(build_connection_definition(shuffled)) == [
        "control",
        "connectionName",
        "protocol",
        "siteName",
        "area",
        "process",
        "machineName",
        "greengrassCoreDeviceName",
        "opcUa",
        "sendDataToIoTTopic",
    ]


def test_control_is_normalized_to_wire_form() -> None:
    assert build_connection_definition({**BASE, "control": "START"})["control"] == "start"


@pytest.mark.parametrize("protocol", ["OPC_DA", "opcda", "OpcDa", "OPC_UA", "opcua", "bogus"])
def test_build_is_idempotent(protocol, da_request) -> None:
    raw = {**da_request, "protocol": protocol, "opcUa": {"port": "4840", "serverName": "x"}}
    once = build_connection_definition(raw)
    assert build_connection_definition(once) == once


class TestParseNumber:
    @pytest.mark.parametrize("value, expected", [
        ("1", 1.0),
        (" 2.5 ", 2.5),
        (".5", 0.5),
        ("1e1", 10.0),
        (7, 7.0),
        (0.25, 0.25),
    ])
    def test_numbers(self, value, expected) -> None:
        assert parse_number(value) == expected

    @pytest.mark.parametrize("value", ["", "abc", "1.2.3", "nan", "inf", True, None, [1]])
    def test_non_numbers(self, value) -> None:
        assert parse_number(value) is None
