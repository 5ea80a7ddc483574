"""Wiring of gateway, transport, router, onboarding and controller from config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fleet_orchestrator.config import AppConfig, OnboardingConfig, PersistenceConfig, TransportConfig
from fleet_orchestrator.controller import ConnectionController
from fleet_orchestrator.dynamodb import DynamoDBGateway
from fleet_orchestrator.onboarding import DeviceOnboardingCoordinator
from fleet_orchestrator.persistence import FileGateway, MemoryGateway, PersistenceGateway
from fleet_orchestrator.provisioning import AwsProvisioningBackend, ProvisioningBackend
from fleet_orchestrator.redactor import SecretRedactingFilter
from fleet_orchestrator.router import FleetMessageRouter
from fleet_orchestrator.secrets import SecretStore
from fleet_orchestrator.topics import FleetTopics
from fleet_orchestrator.transport import FleetTransport, MemoryTransport, MqttTransport

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a command needs, built once per process."""

    gateway: PersistenceGateway
    transport: FleetTransport
    router: FleetMessageRouter
    coordinator: DeviceOnboardingCoordinator
    controller: ConnectionController

    def open(self, timeout: float = 30.0) -> None:
        """Connect the transport if it needs connecting."""
        if isinstance(self.transport, MqttTransport):
            self.transport.connect(timeout)

    def close(self) -> None:
        self.transport.close()


def build_gateway(config: PersistenceConfig) -> PersistenceGateway:
    if config.backend == "memory":
        return MemoryGateway()
    if config.backend == "file":
        return FileGateway(config.directory)
    if config.backend == "dynamodb":
        return DynamoDBGateway(
            connections_table=config.connections_table,
            devices_table=config.devices_table,
            jobs_table=config.jobs_table,
            logs_table=config.logs_table,
            region=config.region,
        )
    raise ValueError(f"Unknown persistence backend: {config.backend}")


def build_transport(config: TransportConfig) -> FleetTransport:
    if config.kind == "memory":
        return MemoryTransport()
    if config.kind == "mqtt":
        if not config.endpoint:
            raise ValueError("transport.endpoint is required for the mqtt transport")
        return MqttTransport(config)
    raise ValueError(f"Unknown transport kind: {config.kind}")


def open_secret_store(config: OnboardingConfig) -> Optional[SecretStore]:
    """Return the configured store, or ``None`` when it is not set up."""
    if not (config.secrets_file and config.key_file):
        return None
    if not Path(config.secrets_file).exists() or not Path(config.key_file).exists():
        logger.warning(
            "Secret store %s is not initialised; generated device keys will not be kept",
            config.secrets_file,
        )
        return None
    return SecretStore(config.secrets_file, config.key_file)


def build_services(
    cfg: AppConfig,
    gateway: Optional[PersistenceGateway] = None,
    transport: Optional[FleetTransport] = None,
    backend: Optional[ProvisioningBackend] = None,
    redactor: Optional[SecretRedactingFilter] = None,
) -> Services:
    """Assemble the service graph described by *cfg*.

    Any of *gateway*, *transport* and *backend* may be supplied to replace
    the configured one. *redactor* is handed to onboarding so freshly
    generated private keys are scrubbed from logs.
    """
    gateway = gateway or build_gateway(cfg.persistence)
    transport = transport or build_transport(cfg.transport)
    topics = FleetTopics(prefix=cfg.fleet.topic_prefix)

    router = FleetMessageRouter(
        gateway,
        transport,
        topics=topics,
        ack_timeout_seconds=cfg.fleet.ack_timeout_seconds,
        max_dispatch_attempts=cfg.fleet.max_dispatch_attempts,
    )
    coordinator = DeviceOnboardingCoordinator(
        gateway,
        backend or AwsProvisioningBackend(cfg.onboarding, topic_prefix=topics.prefix),
        secret_store=open_secret_store(cfg.onboarding),
        redactor=redactor,
        max_conflict_retries=cfg.max_conflict_retries,
    )
    controller = ConnectionController(
        gateway,
        router,
        retry=cfg.retry,
        max_conflict_retries=cfg.max_conflict_retries,
    )
    logger.debug(
        "Built services (persistence=%s, transport=%s, prefix=%s)",
        cfg.persistence.backend,
        cfg.transport.kind,
        topics.prefix,
    )
    return Services(gateway, transport, router, coordinator, controller)
