"""Control request handling: from submitted request to dispatched command.

Flow for one request::

    envelope (JSON Schema)
      → read ConnectionRecord
      → merge stored definition under the request
      → build → validate
      → resolve transition
      → gate on target device
      → conditional write of the record (skipped when nothing changes)
      → dispatch

A :class:`ConcurrencyConflict` from the conditional write restarts the
whole flow against a fresh read, with bounded exponential backoff.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import replace
from typing import Any, Callable, Optional

import jsonschema

from fleet_orchestrator.builder import build_connection_definition
from fleet_orchestrator.config import BackoffConfig
from fleet_orchestrator.errors import ConcurrencyConflict, PreconditionFailed, ValidationError
from fleet_orchestrator.models import (
    ConnectionControl,
    ConnectionRecord,
    ConnectionState,
    ControlResult,
)
from fleet_orchestrator.persistence import PersistenceGateway
from fleet_orchestrator.router import FleetMessageRouter
from fleet_orchestrator.schemas import CONTROL_REQUEST_SCHEMA
from fleet_orchestrator.state_machine import resolve_transition
from fleet_orchestrator.validator import IDENTIFY_ONLY_CONTROLS, validate_connection_definition

logger = logging.getLogger(__name__)

_REQUEST_VALIDATOR = jsonschema.Draft202012Validator(CONTROL_REQUEST_SCHEMA)
_IDENTITY_FIELDS = ("connectionName", "greengrassCoreDeviceName")


def check_envelope(request: Any) -> None:
    """Raise :class:`ValidationError` if *request* is structurally wrong."""
    errors: dict[str, str] = {}
    for error in _REQUEST_VALIDATOR.iter_errors(request):
        if error.validator == "required" and isinstance(error.instance, dict):
            for name in error.validator_value:
                if name not in error.instance:
                    errors[name] = f"{name} is required."
            continue
        path = ".".join(str(p) for p in error.absolute_path) or "request"
        errors.setdefault(path, error.message)
    if errors:
        raise ValidationError(errors)


class ConnectionController:
    """Applies control requests to connections.

    Parameters
    ----------
    gateway:
        Persistence gateway holding connection records.
    router:
        Dispatches the command for each accepted request.
    retry:
        Backoff between attempts after a concurrency conflict.
    max_conflict_retries:
        Attempts after the first before the conflict is surfaced.
    sleep, rand:
        Injectable for tests.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        router: FleetMessageRouter,
        retry: Optional[BackoffConfig] = None,
        max_conflict_retries: int = 5,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._gateway = gateway
        self._router = router
        self._retry = retry or BackoffConfig(initial_delay_ms=50, max_delay_ms=2000)
        self._max_conflict_retries = max_conflict_retries
        self._sleep = sleep
        self._rand = rand

    def submit(self, request: dict) -> ControlResult:
        """Validate, transition and dispatch one control request.

        Raises
        ------
        ValidationError
            Malformed envelope or invalid definition; nothing is written.
        PreconditionFailed
            Illegal transition, unprovisioned device or device change.
        ConcurrencyConflict
            Still conflicting after ``max_conflict_retries`` retries.
        TransportError
            The command could not be published.
        """
        check_envelope(request)
        attempt = 0
        while True:
            try:
                return self._submit_once(request)
            except ConcurrencyConflict as exc:
                attempt += 1
                if attempt > self._max_conflict_retries:
                    logger.error("Giving up on %s after %d conflicts", exc.key, attempt)
                    raise
                delay = self._retry.delay_seconds(attempt, self._rand())
                logger.info(
                    "Conflict on %s, retrying in %.3fs (retry %d/%d)",
                    exc.key,
                    delay,
                    attempt,
                    self._max_conflict_retries,
                )
                self._sleep(delay)

    def get_connection(self, connection_name: str) -> Optional[ConnectionRecord]:
        return self._gateway.get_connection(connection_name)

    def list_connections(self, device_name: Optional[str] = None) -> list[ConnectionRecord]:
        return self._gateway.list_connections(device_name=device_name)

    def _submit_once(self, request: dict) -> ControlResult:
        control = ConnectionControl.parse(request["control"])
        if control is None:
            raise ValidationError({
                "control": "Control must be one of: "
                + ", ".join(c.value for c in ConnectionControl) + ".",
            })

        connection_name = request["connectionName"]
        record = self._gateway.get_connection(connection_name)
        current = record.state if record else ConnectionState.UNDEPLOYED

        merged: dict = {}
        if record is not None:
            merged.update(record.definition)
            merged.setdefault("greengrassCoreDeviceName", record.device_name)
        if control in IDENTIFY_ONLY_CONTROLS:
            # these verbs act on the stored definition; other fields are ignored
            merged.update((k, request[k]) for k in _IDENTITY_FIELDS if k in request)
        else:
            merged.update(request)
        merged["control"] = control.value

        definition = build_connection_definition(merged)
        errors = validate_connection_definition(definition, control)
        if errors:
            logger.info("Rejected %s for %s: %s", control.value, connection_name, sorted(errors))
            raise ValidationError(errors)

        transition = resolve_transition(current, control)
        device_name = definition["greengrassCoreDeviceName"]
        self._router.ensure_addressable(device_name)
        if record is not None and record.device_name and record.device_name != device_name:
            raise PreconditionFailed(
                f"Connection {connection_name} targets device {record.device_name}; "
                f"delete it before deploying to {device_name}"
            )

        stored = {k: v for k, v in definition.items() if k != "control"}
        write = not transition.redispatch and (
            record is None or transition.changes_state or control is ConnectionControl.UPDATE
        )
        if write:
            base = record or ConnectionRecord(connection_name=connection_name)
            self._gateway.put_connection(
                replace(base, state=transition.to_state, definition=stored, device_name=device_name),
                expected_version=record.version if record else None,
            )
            logger.info(
                "Connection %s: %s → %s",
                connection_name,
                transition.from_state.value,
                transition.to_state.value,
            )

        job = self._router.dispatch(definition, control)
        return ControlResult(
            connection_name=connection_name,
            control=control,
            previous_state=transition.from_state,
            state=transition.to_state,
            job_id=job.job_id,
            redispatch=transition.redispatch,
        )
