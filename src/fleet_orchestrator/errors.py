"""Error taxonomy for the orchestrator.

Every error carries a stable ``code``, the HTTP-like ``status`` the API
layer maps it to, and whether the caller may retry the operation as-is::

    ValidationError       400  field-annotated, resubmit corrected input
    PreconditionFailed    412  illegal transition or unprovisioned target
    ConcurrencyConflict   409  stale write, re-read and retry
    OnboardingFailure     502  a provisioning step failed, re-run onboarding
    TransportError        502  the command could not be published
    DispatchTimeout       504  no acknowledgement within the bound
"""

from __future__ import annotations

from typing import Optional


class FleetError(Exception):
    """Base class for all orchestrator errors."""

    code = "FLEET_ERROR"
    status = 500
    retryable = False

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self)}


class ValidationError(FleetError):
    """The submitted definition failed field validation."""

    code = "VALIDATION_ERROR"
    status = 400

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        super().__init__(f"Invalid fields: {', '.join(sorted(self.errors))}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": str(self), "errors": self.errors}


class PreconditionFailed(FleetError):
    """The request is well-formed but not allowed in the current state."""

    code = "PRECONDITION_FAILED"
    status = 412

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ConcurrencyConflict(FleetError):
    """A conditional write lost against a concurrent writer."""

    code = "CONCURRENCY_CONFLICT"
    status = 409
    retryable = True

    def __init__(self, key: str, expected_version: Optional[int] = None) -> None:
        self.key = key
        self.expected_version = expected_version
        super().__init__(
            f"Conditional write failed for {key} (expected version {expected_version})"
        )


class OnboardingFailure(FleetError):
    """A provisioning step failed; the device was left FAILED."""

    code = "ONBOARDING_FAILURE"
    status = 502
    retryable = True

    def __init__(self, device_name: str, step: str, cause: str) -> None:
        self.device_name = device_name
        self.step = step
        self.cause = cause
        super().__init__(f"Onboarding {device_name} failed at step {step}: {cause}")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "deviceName": self.device_name,
            "step": self.step,
        }


class TransportError(FleetError):
    """Publishing a command to the fleet transport failed."""

    code = "TRANSPORT_ERROR"
    status = 502
    retryable = True


class DispatchTimeout(FleetError):
    """No acknowledgement arrived for a job within the bound."""

    code = "DISPATCH_TIMEOUT"
    status = 504
    retryable = True

    def __init__(self, job_id: str, attempt: int = 1) -> None:
        self.job_id = job_id
        self.attempt = attempt
        super().__init__(f"Job {job_id} was not acknowledged (attempt {attempt})")

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "jobId": self.job_id,
            "attempt": self.attempt,
        }
