"""Wire shapes for connection definitions and control requests.

The ``TypedDict`` classes describe the canonical definition produced by
:func:`fleet_orchestrator.builder.build_connection_definition`.
``CONTROL_REQUEST_SCHEMA`` is the structural contract for inbound submit
requests; it checks types only; field rules live in the validator.

Protocol wire forms::

    OPC_DA → "opcda"     (historical wire compatibility)
    OPC_UA → "OPC_UA"

Both the enum value and the wire form parse back to the same member.
"""

from __future__ import annotations

from typing import Any, Optional, TypedDict, Union

from fleet_orchestrator.models import MachineProtocol

PROTOCOL_WIRE_FORMS: dict[MachineProtocol, str] = {
    MachineProtocol.OPC_DA: "opcda",
    MachineProtocol.OPC_UA: MachineProtocol.OPC_UA.value,
}

DESTINATION_FLAGS: tuple[str, ...] = (
    "sendDataToIoTSiteWise",
    "sendDataToIoTTopic",
    "sendDataToKinesisDataStreams",
    "sendDataToTimestream",
)


class OpcDaDefinition(TypedDict, total=False):
    machineIp: str
    serverName: str
    interval: Union[int, float, str]
    iterations: Union[int, str]
    listTags: list[str]
    tags: list[str]


class OpcUaDefinition(TypedDict, total=False):
    machineIp: str
    serverName: str
    port: Union[int, str]


class ConnectionDefinition(TypedDict, total=False):
    control: str
    connectionName: str
    protocol: str
    siteName: str
    area: str
    process: str
    machineName: str
    greengrassCoreDeviceName: str
    opcDa: OpcDaDefinition
    opcUa: OpcUaDefinition
    sendDataToIoTSiteWise: bool
    sendDataToIoTTopic: bool
    sendDataToKinesisDataStreams: bool
    sendDataToTimestream: bool


def parse_protocol(value: Any) -> Optional[MachineProtocol]:
    """Map an enum value or wire form (any case, optional underscore) to a member."""
    if isinstance(value, MachineProtocol):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().replace("_", "").lower()
    for protocol in MachineProtocol:
        if normalized == protocol.value.replace("_", "").lower():
            return protocol
    return None


def protocol_wire_form(value: Any) -> Any:
    """Serialize *value* through :data:`PROTOCOL_WIRE_FORMS`; unknown values pass through."""
    protocol = parse_protocol(value)
    if protocol is None:
        return value
    return PROTOCOL_WIRE_FORMS[protocol]


_NUMBER_OR_TEXT = {"type": ["number", "string"]}

CONTROL_REQUEST_SCHEMA: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["control", "connectionName"],
    "properties": {
        "control": {"type": "string"},
        "connectionName": {"type": "string"},
        "protocol": {"type": "string"},
        "siteName": {"type": "string"},
        "area": {"type": "string"},
        "process": {"type": "string"},
        "machineName": {"type": "string"},
        "greengrassCoreDeviceName": {"type": "string"},
        "opcDa": {
            "type": "object",
            "properties": {
                "machineIp": {"type": "string"},
                "serverName": {"type": "string"},
                "interval": _NUMBER_OR_TEXT,
                "iterations": _NUMBER_OR_TEXT,
                "listTags": {"type": "array", "items": {"type": "string"}},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
        },
        "opcUa": {
            "type": "object",
            "properties": {
                "machineIp": {"type": "string"},
                "serverName": {"type": "string"},
                "port": _NUMBER_OR_TEXT,
            },
        },
        **{flag: {"type": "boolean"} for flag in DESTINATION_FLAGS},
    },
}
