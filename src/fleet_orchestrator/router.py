"""Command dispatch and acknowledgement correlation.

Every command is recorded as a PENDING :class:`DeploymentJob` before it is
published.  The job id is a content hash of
``(connectionName, control, dispatchedAt)``; the device echoes
``control`` and ``dispatchedAt`` in its acknowledgement, so the router can
recompute the key without any in-memory state.  Resolution is a
conditional PENDING → ACKED/FAILED/TIMED_OUT update in the job table,
which makes repeated and stale acknowledgements no-ops.

Command payload (``{prefix}/job/{connectionName}``)::

    {"control": "start", "connectionName": "...", "protocol": "...",
     ...definition fields..., "dispatchedAt": "<iso8601>", "jobId": "<hex>"}

Acknowledgement (``{prefix}/info/{connectionName}``)::

    {"connectionName": "...", "control": "start",
     "dispatchedAt": "<echoed>", "status": "SUCCESS" | "FAILURE", "message": "..."}
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import orjson

from fleet_orchestrator.classifier import classify_inbound
from fleet_orchestrator.errors import (
    ConcurrencyConflict,
    DispatchTimeout,
    PreconditionFailed,
    TransportError,
)
from fleet_orchestrator.models import (
    ConnectionControl,
    DeploymentJob,
    GreengrassCoreDevice,
    JobStatus,
    LogEntry,
    MalformedMessage,
    OnboardingStatus,
)
from fleet_orchestrator.persistence import PersistenceGateway
from fleet_orchestrator.topics import ERROR, FleetTopics
from fleet_orchestrator.transport import FleetTransport

logger = logging.getLogger(__name__)

FAILURE_STATUSES = frozenset({"FAILURE", "FAILED", "ERROR"})
_REPLAY_EXCLUDED = frozenset({"dispatchedAt", "jobId"})
_MAX_KEY_COLLISIONS = 16


def job_key(connection_name: str, control: ConnectionControl, dispatched_at: str) -> str:
    """Content-addressed DeploymentJob id."""
    material = f"{connection_name}\x1f{control.value}\x1f{dispatched_at}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()[:32]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FleetMessageRouter:
    """Publishes commands, correlates acknowledgements, expires silence.

    Parameters
    ----------
    gateway:
        Persistence gateway holding devices, jobs and logs.
    transport:
        Publish/subscribe transport to the fleet.
    topics:
        Topic layout.
    ack_timeout_seconds:
        How long a job may stay PENDING before it is TIMED_OUT.
    max_dispatch_attempts:
        Upper bound on ``attempt`` for :meth:`redispatch`.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        transport: FleetTransport,
        topics: FleetTopics | None = None,
        ack_timeout_seconds: float = 60.0,
        max_dispatch_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._transport = transport
        self._topics = topics or FleetTopics()
        self._ack_timeout = ack_timeout_seconds
        self._max_attempts = max_dispatch_attempts
        self._clock = clock

    @property
    def topics(self) -> FleetTopics:
        return self._topics

    def start(self) -> None:
        """Subscribe to the info and error channels of every connection."""
        for topic_filter in self._topics.subscriptions():
            self._transport.subscribe(topic_filter, self.handle_message)
            logger.info("Subscribed to %s", topic_filter)

    # ── dispatch ────────────────────────────────────────────────────

    def ensure_addressable(self, device_name: Optional[str]) -> GreengrassCoreDevice:
        """Return the device record, or raise if commands may not target it."""
        if not device_name:
            raise PreconditionFailed("No target Greengrass core device")
        device = self._gateway.get_device(device_name)
        if device is None or device.status is not OnboardingStatus.PROVISIONED:
            raise PreconditionFailed(f"Device {device_name} is not provisioned")
        return device

    def dispatch(
        self,
        definition: dict,
        control: ConnectionControl,
        attempt: int = 1,
    ) -> DeploymentJob:
        """Record a PENDING job for *control* and publish its command.

        Raises
        ------
        PreconditionFailed
            When the target device is not provisioned.
        TransportError
            When publishing fails; the job is resolved FAILED first.
        """
        connection_name = definition["connectionName"]
        device_name = definition.get("greengrassCoreDeviceName")
        self.ensure_addressable(device_name)

        job = self._create_job(definition, control, device_name, attempt)
        payload = orjson.dumps(job.command)
        topic = self._topics.job(connection_name)
        try:
            self._transport.publish(topic, payload)
        except TransportError as exc:
            logger.error("Dispatch of job %s to %s failed: %s", job.job_id, topic, exc)
            self._gateway.resolve_job(job.job_id, JobStatus.FAILED, detail=str(exc))
            raise

        logger.info(
            "Dispatched %s for %s to %s (job=%s, attempt=%d)",
            control.value,
            connection_name,
            device_name,
            job.job_id,
            attempt,
        )
        return job

    def redispatch(self, job_id: str) -> DeploymentJob:
        """Replay a TIMED_OUT or FAILED job as a new attempt."""
        job = self._gateway.get_job(job_id)
        if job is None:
            raise PreconditionFailed(f"Unknown job {job_id}")
        if job.status not in (JobStatus.TIMED_OUT, JobStatus.FAILED):
            raise PreconditionFailed(f"Job {job_id} is {job.status.value}, not retryable")
        if job.attempt >= self._max_attempts:
            raise PreconditionFailed(
                f"Job {job_id} already used {job.attempt} of {self._max_attempts} attempts"
            )
        newer = [
            j for j in self._gateway.list_jobs(connection_name=job.connection_name)
            if j.dispatched_at > job.dispatched_at
        ]
        if newer:
            raise PreconditionFailed(
                f"Job {job_id} was superseded by job {newer[-1].job_id}"
            )

        definition = {k: v for k, v in job.command.items() if k not in _REPLAY_EXCLUDED}
        return self.dispatch(definition, job.control, attempt=job.attempt + 1)

    # ── inbound ─────────────────────────────────────────────────────

    def handle_message(self, topic: str, payload: bytes | str) -> Optional[DeploymentJob]:
        """Persist an inbound message and resolve the job it acknowledges.

        Returns
        -------
        DeploymentJob or None
            The job this message resolved, if any.
        """
        result = classify_inbound(topic, payload, self._topics)
        if result is None:
            return None

        if isinstance(result, MalformedMessage):
            logger.warning(
                "Malformed message on %s: %s", topic, result.error.get("message")
            )
            self._gateway.append_log(LogEntry(
                connection_name=result.connection_name or "",
                timestamp=result.received_at,
                log_type=ERROR,
                message={"topic": topic, "malformed": result.error},
            ))
            return None

        self._gateway.append_log(LogEntry(
            connection_name=result.connection_name,
            timestamp=result.received_at,
            log_type=result.channel,
            message=result.body,
        ))
        if not result.is_acknowledgement:
            return None

        control = ConnectionControl.parse(result.control)
        if control is None:
            logger.warning("Acknowledgement on %s names unknown control %r", topic, result.control)
            return None

        failed = result.channel == ERROR or (result.status or "").upper() in FAILURE_STATUSES
        status = JobStatus.FAILED if failed else JobStatus.ACKED
        job_id = job_key(result.connection_name, control, result.dispatched_at)
        message = result.body.get("message")
        try:
            job = self._gateway.resolve_job(
                job_id, status, detail=str(message) if message is not None else None
            )
        except ConcurrencyConflict:
            logger.info("Ignoring duplicate or stale acknowledgement for job %s", job_id)
            return None

        logger.info("Job %s resolved %s", job_id, status.value)
        return job

    # ── timeouts ────────────────────────────────────────────────────

    def expire_pending(self, now: Optional[datetime] = None) -> list[DeploymentJob]:
        """Mark PENDING jobs older than the ack timeout as TIMED_OUT."""
        now = now or self._clock()
        expired: list[DeploymentJob] = []
        for job in self._gateway.list_jobs(status=JobStatus.PENDING):
            age = (now - datetime.fromisoformat(job.dispatched_at)).total_seconds()
            if age < self._ack_timeout:
                continue
            try:
                expired.append(self._gateway.resolve_job(
                    job.job_id,
                    JobStatus.TIMED_OUT,
                    detail=f"No acknowledgement within {self._ack_timeout:g}s",
                ))
            except ConcurrencyConflict:
                continue  # acknowledged while we were sweeping
            logger.warning(
                "Job %s (%s %s) timed out", job.job_id, job.control.value, job.connection_name
            )
        return expired

    async def wait_for_resolution(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.5,
    ) -> DeploymentJob:
        """Poll until *job_id* is resolved.

        Gateway reads and writes run in a worker thread so a slow backend
        does not stall the event loop.

        Raises
        ------
        DispatchTimeout
            If the job is (or becomes) TIMED_OUT.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (self._ack_timeout if timeout is None else timeout)
        while True:
            job = await asyncio.to_thread(self._gateway.get_job, job_id)
            if job is None:
                raise PreconditionFailed(f"Unknown job {job_id}")
            if job.status is JobStatus.TIMED_OUT:
                raise DispatchTimeout(job_id, job.attempt)
            if job.status is not JobStatus.PENDING:
                return job

            remaining = deadline - loop.time()
            if remaining <= 0:
                try:
                    job = await asyncio.to_thread(
                        self._gateway.resolve_job,
                        job_id,
                        JobStatus.TIMED_OUT,
                        detail="Caller wait elapsed",
                    )
                except ConcurrencyConflict:
                    continue  # resolved between the read and the write
                raise DispatchTimeout(job_id, job.attempt)
            await asyncio.sleep(min(poll_interval, remaining))

    # ── helpers ─────────────────────────────────────────────────────

    def _create_job(
        self,
        definition: dict,
        control: ConnectionControl,
        device_name: str,
        attempt: int,
    ) -> DeploymentJob:
        connection_name = definition["connectionName"]
        now = self._clock()
        for offset in range(_MAX_KEY_COLLISIONS):
            stamp = now + timedelta(microseconds=offset)
            dispatched_at = stamp.isoformat(timespec="microseconds")
            job_id = job_key(connection_name, control, dispatched_at)
            command = {"control": control.value}
            command.update((k, v) for k, v in definition.items() if k != "control")
            command["dispatchedAt"] = dispatched_at
            command["jobId"] = job_id
            job = DeploymentJob(
                job_id=job_id,
                connection_name=connection_name,
                control=control,
                device_name=device_name,
                dispatched_at=dispatched_at,
                status=JobStatus.PENDING,
                attempt=attempt,
                command=command,
            )
            try:
                return self._gateway.create_job(job)
            except ConcurrencyConflict:
                continue
        raise ConcurrencyConflict(f"job:{connection_name}:{control.value}")
