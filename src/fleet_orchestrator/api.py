"""Request/response boundary for control submissions.

Maps :class:`ConnectionController` outcomes to HTTP-like status codes::

    202  accepted   {connectionName, control, state, jobId}
    400  invalid    {code, message, errors}
    409  conflict   {code, message}
    412  refused    {code, message}
    502  transport  {code, message}
"""

from __future__ import annotations

import logging
from typing import Any

import orjson

from fleet_orchestrator.controller import ConnectionController
from fleet_orchestrator.errors import FleetError, ValidationError

logger = logging.getLogger(__name__)

ACCEPTED = 202


def handle_control_request(
    controller: ConnectionController, body: Any
) -> tuple[int, dict]:
    """Submit *body* (a dict or raw JSON) and return ``(status, response)``."""
    if isinstance(body, (bytes, bytearray, str)):
        try:
            body = orjson.loads(body)
        except orjson.JSONDecodeError as exc:
            error = ValidationError({"request": f"Request body is not valid JSON: {exc}"})
            return error.status, error.to_dict()

    try:
        result = controller.submit(body)
    except FleetError as exc:
        logger.info("Control request refused (%s): %s", exc.code, exc)
        return exc.status, exc.to_dict()

    return ACCEPTED, {
        "connectionName": result.connection_name,
        "control": result.control.value,
        "state": result.state.value,
        "jobId": result.job_id,
    }
