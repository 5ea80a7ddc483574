"""Shared fixtures: in-memory gateway and transport, a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from fleet_orchestrator.controller import ConnectionController
from fleet_orchestrator.models import (
    ConnectionRecord,
    ConnectionState,
    GreengrassCoreDevice,
    OnboardingStatus,
)
from fleet_orchestrator.persistence import MemoryGateway
from fleet_orchestrator.router import FleetMessageRouter
from fleet_orchestrator.transport import MemoryTransport


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> MemoryGateway:
    return MemoryGateway()


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def router(gateway, transport, clock) -> FleetMessageRouter:
    return FleetMessageRouter(
        gateway, transport, ack_timeout_seconds=60, max_dispatch_attempts=3, clock=clock
    )


@pytest.fixture
def controller(gateway, router) -> ConnectionController:
    return ConnectionController(gateway, router, max_conflict_retries=3, sleep=lambda _: None)


@pytest.fixture
def provisioned(gateway) -> GreengrassCoreDevice:
    """Device ``gw-01`` in PROVISIONED state."""
    return gateway.put_device(
        GreengrassCoreDevice(device_name="gw-01", status=OnboardingStatus.PROVISIONED),
        expected_version=None,
    )


@pytest.fixture
def ua_request() -> dict:
    """A complete, valid OPC UA DEPLOY request for ``press-01`` on ``gw-01``."""
    return {
        "control": "deploy",
        "connectionName": "press-01",
        "protocol": "OPC_UA",
        "siteName": "plant-a",
        "area": "stamping",
        "process": "press",
        "machineName": "press_01",
        "greengrassCoreDeviceName": "gw-01",
        "opcUa": {"machineIp": "10.0.0.5", "serverName": "srv", "port": "4840"},
        "sendDataToIoTTopic": True,
    }


@pytest.fixture
def da_request() -> dict:
    """A complete, valid OPC DA DEPLOY request for ``mixer-02`` on ``gw-01``."""
    return {
        "control": "deploy",
        "connectionName": "mixer-02",
        "protocol": "OPC_DA",
        "siteName": "plant-a",
        "area": "blending",
        "process": "mix",
        "machineName": "mixer_02",
        "greengrassCoreDeviceName": "gw-01",
        "opcDa": {
            "machineIp": "192.168.1.20",
            "serverName": "Matrikon.OPC.Simulation",
            "interval": "1.5",
            "iterations": "10",
            "listTags": ["Random.*"],
        },
        "sendDataToIoTSiteWise": True,
    }


@pytest.fixture
def seed_connection(gateway):
    """Store a ConnectionRecord directly, bypassing the controller."""

    def _seed(definition: dict, state: ConnectionState) -> ConnectionRecord:
        stored = {k: v for k, v in definition.items() if k != "control"}
        return gateway.put_connection(
            ConnectionRecord(
                connection_name=stored["connectionName"],
                state=state,
                definition=stored,
                device_name=stored["greengrassCoreDeviceName"],
            ),
            expected_version=None,
        )

    return _seed
