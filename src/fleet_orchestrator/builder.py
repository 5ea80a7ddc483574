"""Normalize raw control requests into canonical connection definitions.

The builder only reshapes; it never rejects.  Anything it cannot
interpret is passed through for the validator to report.

Canonical key order::

    control, connectionName, protocol, siteName, area, process,
    machineName, greengrassCoreDeviceName, opcDa | opcUa, sendDataTo*
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional, Union

from fleet_orchestrator.models import ConnectionControl, MachineProtocol
from fleet_orchestrator.schemas import (
    DESTINATION_FLAGS,
    ConnectionDefinition,
    parse_protocol,
    protocol_wire_form,
)

_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")

_IDENTITY_FIELDS = (
    "connectionName",
    "protocol",
    "siteName",
    "area",
    "process",
    "machineName",
    "greengrassCoreDeviceName",
)
_OPC_DA_FIELDS = ("machineIp", "serverName", "interval", "iterations", "listTags", "tags")
_OPC_UA_FIELDS = ("machineIp", "serverName", "port")
_NUMERIC_FIELDS = frozenset({"interval", "iterations", "port"})


def parse_number(value: Any) -> Optional[float]:
    """Parse a JSON number or decimal text into a finite float.

    Returns ``None`` for booleans, blank text, non-numeric text, and
    non-finite values.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        number = float(value.strip())
    else:
        return None
    return number if math.isfinite(number) else None


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _coerce_numeric(value: Any) -> Union[int, float, Any]:
    number = parse_number(value)
    if number is None:
        return value
    return int(number) if number.is_integer() else number


def _build_payload(raw: Any, fields: tuple[str, ...]) -> dict:
    if not isinstance(raw, dict):
        return {}
    payload: dict = {}
    for name in fields:
        if name not in raw:
            continue
        value = raw[name]
        if name in _NUMERIC_FIELDS:
            if is_blank(value):
                continue
            value = _coerce_numeric(value)
        payload[name] = value
    return payload


def build_connection_definition(raw: dict) -> ConnectionDefinition:
    """Return the canonical form of *raw*.

    ``build_connection_definition(build_connection_definition(x))`` equals
    ``build_connection_definition(x)``.
    """
    definition: dict = {}

    if "control" in raw:
        control = ConnectionControl.parse(raw["control"])
        definition["control"] = control.value if control else raw["control"]

    for name in _IDENTITY_FIELDS:
        value = raw.get(name)
        if value is None:
            continue
        definition[name] = protocol_wire_form(value) if name == "protocol" else value

    protocol = parse_protocol(raw.get("protocol"))
    if protocol is MachineProtocol.OPC_DA and "opcDa" in raw:
        definition["opcDa"] = _build_payload(raw["opcDa"], _OPC_DA_FIELDS)
    elif protocol is MachineProtocol.OPC_UA and "opcUa" in raw:
        definition["opcUa"] = _build_payload(raw["opcUa"], _OPC_UA_FIELDS)

    for flag in DESTINATION_FLAGS:
        if flag in raw:
            definition[flag] = raw[flag]

    return definition  # type: ignore[return-value]
