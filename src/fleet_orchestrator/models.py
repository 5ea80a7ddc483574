"""Dataclass models and enumerations for the fleet orchestrator.

Records are designed to be serializable via ``dataclasses.asdict()``
followed by ``orjson.dumps()``; enum members serialize to their values.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional


class MachineProtocol(str, enum.Enum):
    """Machine protocols an edge gateway can bridge."""

    OPC_DA = "OPC_DA"
    OPC_UA = "OPC_UA"


class ConnectionControl(str, enum.Enum):
    """Operator control verbs.  The value is the wire form."""

    DEPLOY = "deploy"
    START = "start"
    STOP = "stop"
    UPDATE = "update"
    PUSH = "push"
    PULL = "pull"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> Optional["ConnectionControl"]:
        """Return the member for *value* (either case), or ``None``."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class ConnectionState(str, enum.Enum):
    """Lifecycle state of a single connection."""

    UNDEPLOYED = "UNDEPLOYED"
    DEPLOYED = "DEPLOYED"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    DELETED = "DELETED"


class OnboardingStatus(str, enum.Enum):
    """Provisioning status of a Greengrass core device."""

    UNPROVISIONED = "UNPROVISIONED"
    PROVISIONED = "PROVISIONED"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    """Resolution status of a dispatched command."""

    PENDING = "PENDING"
    ACKED = "ACKED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class ConnectionRecord:
    """Persisted lifecycle state of one connection.

    ``version`` is the optimistic-concurrency counter; every accepted
    write increments it by one.
    """

    connection_name: str = ""
    state: ConnectionState = ConnectionState.UNDEPLOYED
    definition: dict = field(default_factory=dict)
    device_name: str = ""
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "ConnectionRecord":
        return cls(
            connection_name=raw.get("connection_name", ""),
            state=ConnectionState(raw.get("state", ConnectionState.UNDEPLOYED.value)),
            definition=dict(raw.get("definition") or {}),
            device_name=raw.get("device_name", ""),
            version=int(raw.get("version", 0)),
            created_at=raw.get("created_at", ""),
            updated_at=raw.get("updated_at", ""),
        )


@dataclass
class GreengrassCoreDevice:
    """A registered edge gateway and the identity provisioned for it.

    ``steps`` holds the result of every completed onboarding step, keyed by
    step name, so a retried onboarding skips work already done.
    """

    device_name: str = ""
    status: OnboardingStatus = OnboardingStatus.UNPROVISIONED
    thing_arn: Optional[str] = None
    certificate_arn: Optional[str] = None
    credentials_role_arn: Optional[str] = None
    role_alias_arn: Optional[str] = None
    resource_bucket: Optional[str] = None
    last_failed_step: Optional[str] = None
    error: Optional[str] = None
    created_by: str = "System"
    steps: dict = field(default_factory=dict)
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "GreengrassCoreDevice":
        return cls(
            device_name=raw.get("device_name", ""),
            status=OnboardingStatus(raw.get("status", OnboardingStatus.UNPROVISIONED.value)),
            thing_arn=raw.get("thing_arn"),
            certificate_arn=raw.get("certificate_arn"),
            credentials_role_arn=raw.get("credentials_role_arn"),
            role_alias_arn=raw.get("role_alias_arn"),
            resource_bucket=raw.get("resource_bucket"),
            last_failed_step=raw.get("last_failed_step"),
            error=raw.get("error"),
            created_by=raw.get("created_by", "System"),
            steps=dict(raw.get("steps") or {}),
            version=int(raw.get("version", 0)),
            created_at=raw.get("created_at", ""),
            updated_at=raw.get("updated_at", ""),
        )


@dataclass
class DeploymentJob:
    """Correlates one dispatched command with its expected acknowledgement."""

    job_id: str = ""
    connection_name: str = ""
    control: ConnectionControl = ConnectionControl.DEPLOY
    device_name: str = ""
    dispatched_at: str = ""
    status: JobStatus = JobStatus.PENDING
    attempt: int = 1
    command: dict = field(default_factory=dict)
    resolved_at: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "DeploymentJob":
        return cls(
            job_id=raw.get("job_id", ""),
            connection_name=raw.get("connection_name", ""),
            control=ConnectionControl(raw.get("control", ConnectionControl.DEPLOY.value)),
            device_name=raw.get("device_name", ""),
            dispatched_at=raw.get("dispatched_at", ""),
            status=JobStatus(raw.get("status", JobStatus.PENDING.value)),
            attempt=int(raw.get("attempt", 1)),
            command=dict(raw.get("command") or {}),
            resolved_at=raw.get("resolved_at"),
            detail=raw.get("detail"),
        )


@dataclass
class LogEntry:
    """An info or error message received from a gateway."""

    connection_name: str = ""
    timestamp: str = ""
    log_type: str = "info"
    message: dict = field(default_factory=dict)


@dataclass
class OnboardingResult:
    """Outcome of :meth:`DeviceOnboardingCoordinator.onboard`."""

    device_name: str = ""
    status: OnboardingStatus = OnboardingStatus.UNPROVISIONED
    certificate_arn: Optional[str] = None
    role_alias_arn: Optional[str] = None
    created: bool = False


@dataclass
class ControlResult:
    """Accepted-transition acknowledgement returned to the caller."""

    connection_name: str = ""
    control: ConnectionControl = ConnectionControl.DEPLOY
    previous_state: ConnectionState = ConnectionState.UNDEPLOYED
    state: ConnectionState = ConnectionState.UNDEPLOYED
    job_id: str = ""
    redispatch: bool = False


@dataclass
class InboundMessage:
    """A well-formed message received on an info or error channel.

    ``control`` and ``dispatched_at`` are set only when the message
    acknowledges (or reports failure of) a specific dispatched command.
    """

    channel: str = "info"
    connection_name: str = ""
    received_at: str = ""
    control: Optional[str] = None
    dispatched_at: Optional[str] = None
    status: Optional[str] = None
    body: dict = field(default_factory=dict)

    @property
    def is_acknowledgement(self) -> bool:
        return self.control is not None and self.dispatched_at is not None


@dataclass
class MalformedMessage:
    """Wrapper for inbound messages that fail classification.

    These are never silently dropped; the router persists them as error
    log entries so operators can see misbehaving gateways.
    """

    topic: str = ""
    connection_name: Optional[str] = None
    received_at: str = ""
    error: dict = field(default_factory=dict)
