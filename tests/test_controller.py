"""Tests for control request handling end to end over in-memory services."""

from unittest import mock

import orjson
import pytest

from fleet_orchestrator.errors import (
    ConcurrencyConflict,
    PreconditionFailed,
    TransportError,
    ValidationError,
)
from fleet_orchestrator.models import (
    ConnectionControl,
    ConnectionRecord,
    ConnectionState,
    GreengrassCoreDevice,
    JobStatus,
    OnboardingStatus,
)


def _commands(transport, connection_name: str) -> list[dict]:
    return [orjson.loads(m.payload) for m in transport.messages_on(f"fleet/job/{connection_name}")]


# ── worked examples ─────────────────────────────────────────────────


def test_start_on_deployed_runs_and_publishes_once(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    seed_connection(ua_request, ConnectionState.DEPLOYED)
    request = {
        "control": "START",
        "connectionName": "press-01",
        "protocol": "OPC_UA",
        "opcUa": {"machineIp": "10.0.0.5", "serverName": "srv", "port": "4840"},
        "sendDataToIoTTopic": True,
        "greengrassCoreDeviceName": "gw-01",
    }

    result = controller.submit(request)

    assert result.previous_state is ConnectionState.DEPLOYED
    assert result.state is ConnectionState.RUNNING
    assert gateway.get_connection("press-01").state is ConnectionState.RUNNING
    commands = _commands(transport, "press-01")
    assert len(commands) == 1
    assert commands[0]["control"] == "start"
    assert commands[0]["opcUa"]["port"] == 4840
    assert commands[0]["jobId"] == result.job_id
    assert gateway.get_job(result.job_id).status is JobStatus.PENDING


def test_invalid_port_changes_nothing(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    seed_connection(ua_request, ConnectionState.DEPLOYED)
    request = {**ua_request, "control": "start", "opcUa": {**ua_request["opcUa"], "port": "99999"}}

    with pytest.raises(ValidationError) as exc_info:
        controller.submit(request)

    assert "port" in exc_info.value.errors
    assert gateway.get_connection("press-01").state is ConnectionState.DEPLOYED
    assert gateway.get_connection("press-01").version == 1
    assert transport.published == []
    assert gateway.list_jobs() == []


def test_delete_on_running_needs_only_names(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    seed_connection(ua_request, ConnectionState.RUNNING)

    result = controller.submit({"control": "delete", "connectionName": "press-01"})

    assert result.state is ConnectionState.DELETED
    assert gateway.get_connection("press-01").state is ConnectionState.DELETED
    assert _commands(transport, "press-01")[0]["control"] == "delete"


def test_stop_ignores_definition_fields_in_request(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    seed_connection(ua_request, ConnectionState.RUNNING)

    result = controller.submit({
        "control": "stop",
        "connectionName": "press-01",
        "greengrassCoreDeviceName": "gw-01",
        "siteName": "bad name!",
        "opcUa": {"machineIp": "999.1.1.1", "serverName": "", "port": "99999"},
        "sendDataToIoTTopic": False,
    })

    assert result.state is ConnectionState.STOPPED
    record = gateway.get_connection("press-01")
    assert record.definition["siteName"] == "plant-a"
    assert record.definition["opcUa"]["machineIp"] == "10.0.0.5"
    assert record.definition["opcUa"]["port"] == 4840
    assert record.definition["sendDataToIoTTopic"] is True
    stop_command = _commands(transport, "press-01")[0]
    assert stop_command["opcUa"] == record.definition["opcUa"]

    restarted = controller.submit({"control": "start", "connectionName": "press-01"})
    assert restarted.state is ConnectionState.RUNNING
    assert _commands(transport, "press-01")[1]["opcUa"]["machineIp"] == "10.0.0.5"


# ── lifecycle ───────────────────────────────────────────────────────


def test_full_lifecycle(controller, gateway, transport, provisioned, ua_request) -> None:
    name = "press-01"
    assert controller.submit(ua_request).state is ConnectionState.DEPLOYED
    assert controller.submit({"control": "start", "connectionName": name}).state is ConnectionState.RUNNING
    assert controller.submit({"control": "stop", "connectionName": name}).state is ConnectionState.STOPPED
    assert controller.submit({"control": "start", "connectionName": name}).state is ConnectionState.RUNNING
    assert controller.submit({"control": "delete", "connectionName": name}).state is ConnectionState.DELETED

    assert [c["control"] for c in _commands(transport, name)] == [
        "deploy", "start", "stop", "start", "delete"
    ]
    with pytest.raises(PreconditionFailed):
        controller.submit({**ua_request, "control": "deploy"})


def test_deploy_stores_canonical_definition(controller, gateway, provisioned, da_request) -> None:
    controller.submit(da_request)
    record = gateway.get_connection("mixer-02")
    assert record.state is ConnectionState.DEPLOYED
    assert record.version == 1
    assert record.device_name == "gw-01"
    assert record.definition["protocol"] == "opcda"
    assert record.definition["opcDa"]["iterations"] == 10
    assert "control" not in record.definition


def test_update_replaces_definition_keeps_state(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    seed_connection(ua_request, ConnectionState.RUNNING)
    update = {**ua_request, "control": "update", "opcUa": {"machineIp": "10.0.0.9", "serverName": "srv"}}

    result = controller.submit(update)

    record = gateway.get_connection("press-01")
    assert result.state is ConnectionState.RUNNING
    assert record.version == 2
    assert record.definition["opcUa"] == {"machineIp": "10.0.0.9", "serverName": "srv"}
    assert _commands(transport, "press-01")[0]["opcUa"]["machineIp"] == "10.0.0.9"


def test_update_cannot_move_device(
    controller, gateway, transport, provisioned, seed_connection, ua_request
) -> None:
    gateway.put_device(
        GreengrassCoreDevice(device_name="gw-02", status=OnboardingStatus.PROVISIONED), None
    )
    seed_connection(ua_request, ConnectionState.DEPLOYED)

    with pytest.raises(PreconditionFailed, match="gw-01"):
        controller.submit({**ua_request, "control": "update", "greengrassCoreDeviceName": "gw-02"})
    assert transport.published == []


@pytest.mark.parametrize("control", ["push", "pull"])
@pytest.mark.parametrize("state", [ConnectionState.RUNNING, ConnectionState.STOPPED])
def test_probes_dispatch_without_writing(
    controller, gateway, transport, provisioned, seed_connection, ua_request, control, state
) -> None:
    seed_connection(ua_request, state)

    result = controller.submit({"control": control, "connectionName": "press-01"})

    record = gateway.get_connection("press-01")
    assert result.state is state
    assert record.state is state
    assert record.version == 1
    assert len(_commands(transport, "press-01")) == 1


# ── idempotent re-dispatch ──────────────────────────────────────────


@pytest.mark.parametrize("state, control", [
    (ConnectionState.DEPLOYED, "deploy"),
    (ConnectionState.RUNNING, "start"),
    (ConnectionState.STOPPED, "stop"),
])
def test_reissue_redispatches_without_new_record_version(
    controller, gateway, transport, provisioned, seed_connection, ua_request, state, control
) -> None:
    seed_connection(ua_request, state)

    first = controller.submit({**ua_request, "control": control})
    second = controller.submit({**ua_request, "control": control})

    assert first.redispatch and second.redispatch
    assert first.job_id != second.job_id
    assert gateway.get_connection("press-01").version == 1
    assert len(_commands(transport, "press-01")) == 2


# ── preconditions ───────────────────────────────────────────────────


def test_start_on_undeployed_is_refused(controller, transport, provisioned, ua_request) -> None:
    with pytest.raises(PreconditionFailed):
        controller.submit({**ua_request, "control": "start"})
    assert transport.published == []


def test_deploy_to_unprovisioned_device_is_refused(controller, gateway, transport, ua_request) -> None:
    gateway.put_device(GreengrassCoreDevice(device_name="gw-01"), None)
    with pytest.raises(PreconditionFailed, match="not provisioned"):
        controller.submit(ua_request)
    assert gateway.get_connection("press-01") is None
    assert transport.published == []


def test_deploy_to_unknown_device_is_refused(controller, gateway, ua_request) -> None:
    with pytest.raises(PreconditionFailed):
        controller.submit(ua_request)
    assert gateway.list_jobs() == []


# ── envelope ────────────────────────────────────────────────────────


@pytest.mark.parametrize("request_body, field", [
    ({"connectionName": "press-01"}, "control"),
    ({"control": "start"}, "connectionName"),
    ({"control": 3, "connectionName": "press-01"}, "control"),
    ({"control": "start", "connectionName": "press-01", "opcUa": "x"}, "opcUa"),
    ({"control": "launch", "connectionName": "press-01"}, "control"),
])
def test_envelope_errors(controller, request_body, field) -> None:
    with pytest.raises(ValidationError) as exc_info:
        controller.submit(request_body)
    assert field in exc_info.value.errors


def test_non_object_request(controller) -> None:
    with pytest.raises(ValidationError) as exc_info:
        controller.submit(["start"])
    assert "request" in exc_info.value.errors


# ── concurrency ─────────────────────────────────────────────────────


def test_conflict_is_retried_against_fresh_state(
    controller, gateway, provisioned, seed_connection, ua_request
) -> None:
    """A concurrent STOP lands first; our START then sees STOPPED and runs."""
    seed_connection(ua_request, ConnectionState.RUNNING)
    real_put = gateway.put_connection
    raced = []

    def racing_put(record, expected_version):
        if not raced:
            raced.append(True)
            current = gateway.get_connection(record.connection_name)
            real_put(
                ConnectionRecord(
                    connection_name=current.connection_name,
                    state=ConnectionState.STOPPED,
                    definition=current.definition,
                    device_name=current.device_name,
                ),
                current.version,
            )
        return real_put(record, expected_version)

    with mock.patch.object(gateway, "put_connection", side_effect=racing_put):
        result = controller.submit({"control": "update", "connectionName": "press-01"})

    assert result.previous_state is ConnectionState.STOPPED
    record = gateway.get_connection("press-01")
    assert record.state is ConnectionState.STOPPED
    assert record.version == 3


def test_conflict_retries_are_bounded(
    gateway, router, provisioned, seed_connection, ua_request
) -> None:
    from fleet_orchestrator.controller import ConnectionController

    sleeps: list[float] = []
    controller = ConnectionController(
        gateway, router, max_conflict_retries=2, sleep=sleeps.append, rand=lambda: 0.5
    )
    seed_connection(ua_request, ConnectionState.DEPLOYED)

    with mock.patch.object(
        gateway, "put_connection", side_effect=ConcurrencyConflict("connection:press-01", 1)
    ):
        with pytest.raises(ConcurrencyConflict):
            controller.submit({"control": "start", "connectionName": "press-01"})

    assert sleeps == [0.05, 0.1]
    assert gateway.list_jobs() == []


def test_two_controllers_serialize_on_version(
    gateway, router, provisioned, seed_connection, ua_request
) -> None:
    """Whichever write lands second is re-evaluated against the first."""
    from fleet_orchestrator.controller import ConnectionController

    seed_connection(ua_request, ConnectionState.RUNNING)
    a = ConnectionController(gateway, router, sleep=lambda _: None)
    b = ConnectionController(gateway, router, sleep=lambda _: None)

    assert b.submit({"control": "delete", "connectionName": "press-01"}).state is ConnectionState.DELETED
    with pytest.raises(PreconditionFailed):
        a.submit({"control": "stop", "connectionName": "press-01"})


# ── transport failure ───────────────────────────────────────────────


def test_publish_failure_marks_job_failed(
    controller, gateway, transport, provisioned, ua_request
) -> None:
    with mock.patch.object(transport, "publish", side_effect=TransportError("broker down")):
        with pytest.raises(TransportError):
            controller.submit(ua_request)

    (job,) = gateway.list_jobs(connection_name="press-01")
    assert job.status is JobStatus.FAILED
    assert job.control is ConnectionControl.DEPLOY
    assert "broker down" in job.detail
