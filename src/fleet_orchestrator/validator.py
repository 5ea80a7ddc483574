"""Protocol- and control-aware validation of connection definitions.

:func:`validate_connection_definition` returns a ``field → message`` map
and never raises; an empty map is the only success signal.  STOP, PULL and
DELETE only need enough of a definition to identify the target, so they
check ``connectionName`` and ``greengrassCoreDeviceName`` alone.
"""

from __future__ import annotations

import re
from typing import Any, Union

from fleet_orchestrator.builder import is_blank, parse_number
from fleet_orchestrator.models import ConnectionControl, MachineProtocol
from fleet_orchestrator.schemas import DESTINATION_FLAGS, parse_protocol

IP_RE = re.compile(r"^(?!0)(?!.*\.$)((?!0\d)(1?\d?\d|25[0-5]|2[0-4]\d)(\.|$)){4}$")
NAME_RE = re.compile(r"[a-zA-Z0-9_-]+")
DEVICE_NAME_RE = re.compile(r"[a-zA-Z0-9_:-]{1,128}")

MAX_CHARACTERS = 30
MIN_ITERATIONS = 1
MAX_ITERATIONS = 30
MIN_TIME_INTERVAL = 0.5
MAX_TIME_INTERVAL = 30
MIN_PORT = 1
MAX_PORT = 65535
MAX_OPCUA_SERVER_NAME_CHARACTERS = 256

IDENTIFY_ONLY_CONTROLS = frozenset({
    ConnectionControl.STOP,
    ConnectionControl.PULL,
    ConnectionControl.DELETE,
})

MESSAGES = {
    "greengrassCoreDeviceName": "Greengrass core device name must not be empty.",
    "connectionName": (
        "Connection name must contain only alphanumeric characters, hyphens and "
        "underscores, and be at most 30 characters."
    ),
    "alphanumeric": (
        "{name} must contain only alphanumeric characters, hyphens and underscores, "
        "and be at most 30 characters."
    ),
    "sendDataTo": "At least one destination must be selected to send data to.",
    "protocol": "Protocol must be OPC_DA or OPC_UA.",
    "iterations": "Iterations must be an integer between 1 and 30.",
    "interval": "Time interval must be a number between 0.5 and 30 seconds.",
    "serverName": "Server name must not be empty.",
    "opcUaServerName": "Server name must not be empty and be at most 256 characters.",
    "machineIp": "Machine IP must be a valid IPv4 address.",
    "tags": "Either list tags or tags must be provided.",
    "port": "Port must be an integer between 1 and 65535.",
}

_LABELED_FIELDS = (
    ("siteName", "Site name"),
    ("area", "Area"),
    ("process", "Process"),
    ("machineName", "Machine name"),
)


def validate_connection_definition(
    definition: dict,
    control: Union[ConnectionControl, str, None] = None,
) -> dict[str, str]:
    """Validate *definition* for *control*.

    Parameters
    ----------
    definition:
        A raw or canonical connection definition.
    control:
        The verb being applied.  Defaults to the definition's own
        ``control`` field.

    Returns
    -------
    dict[str, str]
        Field name to error message; empty when valid.
    """
    errors: dict[str, str] = {}
    verb = ConnectionControl.parse(control if control is not None else definition.get("control"))

    device_name = definition.get("greengrassCoreDeviceName")
    if not isinstance(device_name, str) or not device_name.strip():
        errors["greengrassCoreDeviceName"] = MESSAGES["greengrassCoreDeviceName"]

    if not _is_short_name(definition.get("connectionName")):
        errors["connectionName"] = MESSAGES["connectionName"]

    if verb in IDENTIFY_ONLY_CONTROLS:
        return errors

    for key, label in _LABELED_FIELDS:
        if not _is_short_name(definition.get(key)):
            errors[key] = MESSAGES["alphanumeric"].format(name=label)

    if not any(definition.get(flag) is True for flag in DESTINATION_FLAGS):
        errors["sendDataTo"] = MESSAGES["sendDataTo"]

    protocol = parse_protocol(definition.get("protocol"))
    if protocol is MachineProtocol.OPC_DA:
        _validate_opc_da(definition.get("opcDa"), errors)
    elif protocol is MachineProtocol.OPC_UA:
        _validate_opc_ua(definition.get("opcUa"), errors)
    else:
        errors["protocol"] = MESSAGES["protocol"]

    return errors


def validate_greengrass_core_device_name(name: Any) -> bool:
    """Return whether *name* is acceptable as an onboarded device name."""
    return isinstance(name, str) and DEVICE_NAME_RE.fullmatch(name) is not None


def is_valid_ipv4(value: Any) -> bool:
    """Strict dotted-quad check: no leading zeros, no trailing dot, octets ≤ 255."""
    return isinstance(value, str) and IP_RE.fullmatch(value) is not None


# ── protocol rules ──────────────────────────────────────────────────


def _validate_opc_da(opc_da: Any, errors: dict[str, str]) -> None:
    opc_da = opc_da if isinstance(opc_da, dict) else {}

    iterations = parse_number(opc_da.get("iterations"))
    if (
        iterations is None
        or not iterations.is_integer()
        or not MIN_ITERATIONS <= iterations <= MAX_ITERATIONS
    ):
        errors["iterations"] = MESSAGES["iterations"]

    interval = parse_number(opc_da.get("interval"))
    if interval is None or not MIN_TIME_INTERVAL <= interval <= MAX_TIME_INTERVAL:
        errors["interval"] = MESSAGES["interval"]

    server_name = opc_da.get("serverName")
    if not isinstance(server_name, str) or not server_name.strip():
        errors["opcDa_serverName"] = MESSAGES["serverName"]

    if not is_valid_ipv4(opc_da.get("machineIp")):
        errors["opcDa_machineIp"] = MESSAGES["machineIp"]

    if not opc_da.get("listTags") and not opc_da.get("tags"):
        errors["tags"] = MESSAGES["tags"]


def _validate_opc_ua(opc_ua: Any, errors: dict[str, str]) -> None:
    opc_ua = opc_ua if isinstance(opc_ua, dict) else {}

    server_name = opc_ua.get("serverName")
    if (
        not isinstance(server_name, str)
        or not server_name.strip()
        or len(server_name.strip()) > MAX_OPCUA_SERVER_NAME_CHARACTERS
    ):
        errors["opcUa_serverName"] = MESSAGES["opcUaServerName"]

    if not is_valid_ipv4(opc_ua.get("machineIp")):
        errors["opcUa_machineIp"] = MESSAGES["machineIp"]

    port = opc_ua.get("port")
    if not is_blank(port):
        number = parse_number(port)
        if number is None or not number.is_integer() or not MIN_PORT <= number <= MAX_PORT:
            errors["port"] = MESSAGES["port"]


def _is_short_name(value: Any) -> bool:
    return (
        isinstance(value, str)
        and len(value.strip()) <= MAX_CHARACTERS
        and NAME_RE.fullmatch(value) is not None
    )
