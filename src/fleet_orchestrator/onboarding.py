"""Idempotent, step-wise onboarding of Greengrass core devices.

Each step is create-or-fetch and its result is committed to the device
record with a conditional write before the next step runs.  A retried
onboarding skips every step that already holds a result::

    UNPROVISIONED ─(thing, certificate, iot_policy, credentials_role,
                    role_alias, resource_bucket)─→ PROVISIONED
          │                         │
          └──── any step fails ─────┴─→ FAILED (last_failed_step) ─(retry)─┐
                                                                           │
          ←────────────────────────────────────────────────────────────────┘

Two concurrent onboardings of the same device race on each commit.  The
loser re-reads the record and adopts the winner's result; if it issued a
certificate of its own in the meantime, that certificate is revoked so the
device ends with exactly one.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Optional

from fleet_orchestrator.errors import (
    ConcurrencyConflict,
    OnboardingFailure,
    PreconditionFailed,
    ValidationError,
)
from fleet_orchestrator.models import (
    ConnectionState,
    GreengrassCoreDevice,
    OnboardingResult,
    OnboardingStatus,
)
from fleet_orchestrator.persistence import PersistenceGateway
from fleet_orchestrator.provisioning import CertificateMaterial, ProvisioningBackend
from fleet_orchestrator.redactor import SecretRedactingFilter
from fleet_orchestrator.secrets import SecretStore, device_key_name
from fleet_orchestrator.validator import validate_greengrass_core_device_name

logger = logging.getLogger(__name__)

STEPS: tuple[str, ...] = (
    "thing",
    "certificate",
    "iot_policy",
    "credentials_role",
    "role_alias",
    "resource_bucket",
)

# step → GreengrassCoreDevice attribute mirroring its result
_STEP_FIELDS = {
    "thing": "thing_arn",
    "certificate": "certificate_arn",
    "credentials_role": "credentials_role_arn",
    "role_alias": "role_alias_arn",
    "resource_bucket": "resource_bucket",
}

_DEVICE_NAME_MESSAGE = (
    "Greengrass core device name must be 1 to 128 characters of letters, "
    "digits, hyphens, underscores and colons."
)


class DeviceOnboardingCoordinator:
    """Provisions and registers the gateways connections may target.

    Parameters
    ----------
    gateway:
        Persistence gateway holding the device registry.
    backend:
        Create-or-fetch provisioning operations.
    secret_store:
        Where newly generated private keys are kept; keys are discarded
        when omitted.
    redactor:
        Log filter told about every newly generated private key.
    max_conflict_retries:
        Bound on re-reads after losing a conditional write.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        backend: ProvisioningBackend,
        secret_store: Optional[SecretStore] = None,
        redactor: Optional[SecretRedactingFilter] = None,
        max_conflict_retries: int = 5,
    ) -> None:
        self._gateway = gateway
        self._backend = backend
        self._secret_store = secret_store
        self._redactor = redactor
        self._max_conflict_retries = max_conflict_retries

    # ── onboarding ──────────────────────────────────────────────────

    def onboard(self, device_name: str) -> OnboardingResult:
        """Provision *device_name*; a no-op for a PROVISIONED device.

        Raises
        ------
        ValidationError
            When the device name is not acceptable.
        OnboardingFailure
            When a step fails; the device is left FAILED and the call may
            be repeated.
        """
        if not validate_greengrass_core_device_name(device_name):
            raise ValidationError({"greengrassCoreDeviceName": _DEVICE_NAME_MESSAGE})

        device = self._get_or_create(device_name)
        if device.status is OnboardingStatus.PROVISIONED:
            logger.info("Device %s is already provisioned", device_name)
            return _result(device, created=False)

        for step in STEPS:
            if step in device.steps:
                continue
            try:
                device = self._run_step(device, step)
            except (ConcurrencyConflict, PreconditionFailed):
                raise
            except Exception as exc:
                self._record_failure(device_name, step, exc)
                raise OnboardingFailure(device_name, step, str(exc)) from exc

        device = self._finish(device)
        logger.info("Device %s provisioned", device_name)
        return _result(device, created=True)

    def _run_step(self, device: GreengrassCoreDevice, step: str) -> GreengrassCoreDevice:
        name = device.device_name
        logger.info("Onboarding %s: %s", name, step)

        if step == "certificate":
            return self._run_certificate_step(device)

        if step == "thing":
            value = self._backend.ensure_thing(name)
        elif step == "iot_policy":
            value = self._backend.ensure_iot_policy(device.steps["certificate"])
        elif step == "credentials_role":
            value = self._backend.ensure_credentials_role()
        elif step == "role_alias":
            value = self._backend.ensure_role_alias(device.steps["credentials_role"])
        else:
            value = self._backend.ensure_resource_bucket()

        device, _ = self._commit_step(device, step, value)
        return device

    def _run_certificate_step(self, device: GreengrassCoreDevice) -> GreengrassCoreDevice:
        name = device.device_name
        material: CertificateMaterial = self._backend.ensure_certificate(name)
        if self._redactor is not None and material.private_key_pem:
            self._redactor.add_secret(material.private_key_pem)
        device, won = self._commit_step(device, "certificate", material.certificate_arn)

        if not material.created:
            return device
        if not won:
            logger.warning(
                "Concurrent onboarding of %s recorded %s; revoking duplicate %s",
                name,
                device.certificate_arn,
                material.certificate_arn,
            )
            self._backend.revoke_certificate(name, material.certificate_arn)
            return device
        if self._secret_store is not None and material.private_key_pem:
            self._secret_store.set(device_key_name(name), material.private_key_pem)
            logger.info("Stored private key for %s in %s", name, self._secret_store.path)
        return device

    def _commit_step(
        self, device: GreengrassCoreDevice, step: str, value: Any
    ) -> tuple[GreengrassCoreDevice, bool]:
        """Record *value* for *step*.

        Returns the stored record and whether *value* is what it holds.
        """
        for _ in range(self._max_conflict_retries + 1):
            updates: dict[str, Any] = {"steps": {**device.steps, step: value}}
            if step in _STEP_FIELDS:
                updates[_STEP_FIELDS[step]] = value
            try:
                return self._gateway.put_device(replace(device, **updates), device.version), True
            except ConcurrencyConflict:
                device = self._reread(device.device_name)
                if step in device.steps:
                    return device, device.steps[step] == value
        raise ConcurrencyConflict(f"device:{device.device_name}", device.version)

    def _finish(self, device: GreengrassCoreDevice) -> GreengrassCoreDevice:
        for _ in range(self._max_conflict_retries + 1):
            if device.status is OnboardingStatus.PROVISIONED:
                return device
            done = replace(
                device,
                status=OnboardingStatus.PROVISIONED,
                last_failed_step=None,
                error=None,
            )
            try:
                return self._gateway.put_device(done, device.version)
            except ConcurrencyConflict:
                device = self._reread(device.device_name)
        raise ConcurrencyConflict(f"device:{device.device_name}", device.version)

    def _record_failure(self, device_name: str, step: str, exc: Exception) -> None:
        logger.error("Onboarding %s failed at %s: %s", device_name, step, exc)
        self._update_with_retry(
            device_name,
            lambda d: replace(
                d,
                status=OnboardingStatus.FAILED,
                last_failed_step=step,
                error=str(exc),
            ) if d.status is not OnboardingStatus.PROVISIONED else None,
        )

    def _get_or_create(self, device_name: str) -> GreengrassCoreDevice:
        device = self._gateway.get_device(device_name)
        if device is not None:
            return device
        try:
            return self._gateway.put_device(
                GreengrassCoreDevice(device_name=device_name), expected_version=None
            )
        except ConcurrencyConflict:
            return self._reread(device_name)

    def _reread(self, device_name: str) -> GreengrassCoreDevice:
        device = self._gateway.get_device(device_name)
        if device is None:
            raise PreconditionFailed(f"Device {device_name} was removed during onboarding")
        return device

    def _update_with_retry(
        self,
        device_name: str,
        change: Callable[[GreengrassCoreDevice], Optional[GreengrassCoreDevice]],
    ) -> Optional[GreengrassCoreDevice]:
        for _ in range(self._max_conflict_retries + 1):
            device = self._reread(device_name)
            updated = change(device)
            if updated is None:
                return device
            try:
                return self._gateway.put_device(updated, device.version)
            except ConcurrencyConflict:
                continue
        raise ConcurrencyConflict(f"device:{device_name}")

    # ── registry ────────────────────────────────────────────────────

    def get_device(self, device_name: str) -> Optional[GreengrassCoreDevice]:
        return self._gateway.get_device(device_name)

    def list_devices(self) -> list[GreengrassCoreDevice]:
        return self._gateway.list_devices()

    def register_existing(self, device_name: str) -> GreengrassCoreDevice:
        """Record a device that was provisioned outside the orchestrator."""
        if not validate_greengrass_core_device_name(device_name):
            raise ValidationError({"greengrassCoreDeviceName": _DEVICE_NAME_MESSAGE})
        try:
            device = self._gateway.put_device(
                GreengrassCoreDevice(
                    device_name=device_name,
                    status=OnboardingStatus.PROVISIONED,
                    created_by="User",
                ),
                expected_version=None,
            )
        except ConcurrencyConflict as exc:
            raise PreconditionFailed(f"Device {device_name} is already registered") from exc
        logger.info("Registered existing device %s", device_name)
        return device

    def deregister(self, device_name: str) -> None:
        """Remove *device_name* from the registry.

        Cloud-side identity is left in place.

        Raises
        ------
        PreconditionFailed
            When the device is unknown or connections still target it.
        """
        device = self._gateway.get_device(device_name)
        if device is None:
            raise PreconditionFailed(f"Unknown device {device_name}")
        live = [
            record.connection_name
            for record in self._gateway.list_connections(device_name=device_name)
            if record.state is not ConnectionState.DELETED
        ]
        if live:
            raise PreconditionFailed(
                f"Device {device_name} is still targeted by: {', '.join(live)}"
            )
        self._gateway.delete_device(device_name, device.version)
        logger.info("Deregistered device %s", device_name)


def _result(device: GreengrassCoreDevice, created: bool) -> OnboardingResult:
    return OnboardingResult(
        device_name=device.device_name,
        status=device.status,
        certificate_arn=device.certificate_arn,
        role_alias_arn=device.role_alias_arn,
        created=created,
    )
