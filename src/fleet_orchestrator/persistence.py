"""Persistence gateway: connections, devices, jobs and logs.

All record writes are conditional.  ``expected_version=None`` means the
record must not exist yet; otherwise the stored ``version`` must equal it.
A losing writer gets :class:`ConcurrencyConflict` and is expected to
re-read and retry.  Job resolution is conditional on the job still being
``PENDING``, which is what deduplicates repeated acknowledgements.

MemoryGateway
    Thread-safe in-process tables.  Used by tests and single-process runs.

FileGateway
    Same semantics, persisted under a directory: a JSON snapshot
    (``state.json``, replaced atomically after ``fsync``) and an
    append-only ``logs.ndjson``.  An ``fcntl`` lock serializes
    read-modify-write cycles across processes.
"""

from __future__ import annotations

import copy
import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Protocol

import orjson

from fleet_orchestrator.errors import ConcurrencyConflict
from fleet_orchestrator.models import (
    ConnectionRecord,
    DeploymentJob,
    GreengrassCoreDevice,
    JobStatus,
    LogEntry,
)

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    """Durable store owned outside the orchestrator."""

    def get_connection(self, connection_name: str) -> Optional[ConnectionRecord]: ...

    def put_connection(
        self, record: ConnectionRecord, expected_version: Optional[int]
    ) -> ConnectionRecord: ...

    def list_connections(self, device_name: Optional[str] = None) -> list[ConnectionRecord]: ...

    def get_device(self, device_name: str) -> Optional[GreengrassCoreDevice]: ...

    def put_device(
        self, device: GreengrassCoreDevice, expected_version: Optional[int]
    ) -> GreengrassCoreDevice: ...

    def delete_device(self, device_name: str, expected_version: int) -> None: ...

    def list_devices(self) -> list[GreengrassCoreDevice]: ...

    def create_job(self, job: DeploymentJob) -> DeploymentJob: ...

    def get_job(self, job_id: str) -> Optional[DeploymentJob]: ...

    def resolve_job(
        self, job_id: str, status: JobStatus, detail: Optional[str] = None
    ) -> DeploymentJob: ...

    def list_jobs(
        self,
        connection_name: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[DeploymentJob]: ...

    def append_log(self, entry: LogEntry) -> None: ...

    def list_logs(self, connection_name: str, limit: int = 100) -> list[LogEntry]: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_version(key: str, stored_version: Optional[int], expected: Optional[int]) -> None:
    if stored_version != expected:
        raise ConcurrencyConflict(key, expected)


class MemoryGateway:
    """In-process implementation of :class:`PersistenceGateway`."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._connections: dict[str, ConnectionRecord] = {}
        self._devices: dict[str, GreengrassCoreDevice] = {}
        self._jobs: dict[str, DeploymentJob] = {}
        self._logs: list[LogEntry] = []

    @contextmanager
    def _locked(self, write: bool = False) -> Iterator[None]:
        with self._lock:
            yield

    # ── connections ─────────────────────────────────────────────────

    def get_connection(self, connection_name: str) -> Optional[ConnectionRecord]:
        with self._locked():
            record = self._connections.get(connection_name)
            return copy.deepcopy(record) if record else None

    def put_connection(
        self, record: ConnectionRecord, expected_version: Optional[int]
    ) -> ConnectionRecord:
        key = f"connection:{record.connection_name}"
        with self._locked(write=True):
            existing = self._connections.get(record.connection_name)
            _check_version(key, existing.version if existing else None, expected_version)
            now = _now()
            stored = replace(
                copy.deepcopy(record),
                version=(expected_version or 0) + 1,
                created_at=existing.created_at if existing else (record.created_at or now),
                updated_at=now,
            )
            self._connections[record.connection_name] = stored
            return copy.deepcopy(stored)

    def list_connections(self, device_name: Optional[str] = None) -> list[ConnectionRecord]:
        with self._locked():
            records = sorted(self._connections.values(), key=lambda r: r.connection_name)
            return [
                copy.deepcopy(r) for r in records
                if device_name is None or r.device_name == device_name
            ]

    # ── devices ─────────────────────────────────────────────────────

    def get_device(self, device_name: str) -> Optional[GreengrassCoreDevice]:
        with self._locked():
            device = self._devices.get(device_name)
            return copy.deepcopy(device) if device else None

    def put_device(
        self, device: GreengrassCoreDevice, expected_version: Optional[int]
    ) -> GreengrassCoreDevice:
        key = f"device:{device.device_name}"
        with self._locked(write=True):
            existing = self._devices.get(device.device_name)
            _check_version(key, existing.version if existing else None, expected_version)
            now = _now()
            stored = replace(
                copy.deepcopy(device),
                version=(expected_version or 0) + 1,
                created_at=existing.created_at if existing else (device.created_at or now),
                updated_at=now,
            )
            self._devices[device.device_name] = stored
            return copy.deepcopy(stored)

    def delete_device(self, device_name: str, expected_version: int) -> None:
        key = f"device:{device_name}"
        with self._locked(write=True):
            existing = self._devices.get(device_name)
            _check_version(key, existing.version if existing else None, expected_version)
            del self._devices[device_name]

    def list_devices(self) -> list[GreengrassCoreDevice]:
        with self._locked():
            return [copy.deepcopy(self._devices[k]) for k in sorted(self._devices)]

    # ── jobs ────────────────────────────────────────────────────────

    def create_job(self, job: DeploymentJob) -> DeploymentJob:
        with self._locked(write=True):
            if job.job_id in self._jobs:
                raise ConcurrencyConflict(f"job:{job.job_id}")
            self._jobs[job.job_id] = copy.deepcopy(job)
            return copy.deepcopy(job)

    def get_job(self, job_id: str) -> Optional[DeploymentJob]:
        with self._locked():
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def resolve_job(
        self, job_id: str, status: JobStatus, detail: Optional[str] = None
    ) -> DeploymentJob:
        with self._locked(write=True):
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                raise ConcurrencyConflict(f"job:{job_id}")
            resolved = replace(job, status=status, resolved_at=_now(), detail=detail)
            self._jobs[job_id] = resolved
            return copy.deepcopy(resolved)

    def list_jobs(
        self,
        connection_name: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[DeploymentJob]:
        with self._locked():
            jobs = sorted(self._jobs.values(), key=lambda j: j.dispatched_at)
            return [
                copy.deepcopy(j) for j in jobs
                if (connection_name is None or j.connection_name == connection_name)
                and (status is None or j.status is status)
            ]

    # ── logs ────────────────────────────────────────────────────────

    def append_log(self, entry: LogEntry) -> None:
        with self._locked(write=True):
            self._logs.append(copy.deepcopy(entry))

    def list_logs(self, connection_name: str, limit: int = 100) -> list[LogEntry]:
        with self._locked():
            matching = [e for e in self._logs if e.connection_name == connection_name]
            matching.sort(key=lambda e: e.timestamp, reverse=True)
            return [copy.deepcopy(e) for e in matching[:limit]]


class FileGateway(MemoryGateway):
    """Directory-backed gateway shared by separate CLI invocations.

    Parameters
    ----------
    directory:
        Where ``state.json``, ``logs.ndjson`` and the lock file live.
    """

    def __init__(self, directory: str | Path) -> None:
        super().__init__()
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._state_path = self._dir / "state.json"
        self._logs_path = self._dir / "logs.ndjson"
        self._lock_path = self._dir / ".lock"

    @contextmanager
    def _locked(self, write: bool = False) -> Iterator[None]:
        with self._lock, open(self._lock_path, "a+b") as lock_fh:
            fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX if write else fcntl.LOCK_SH)
            try:
                self._load()
                yield
                if write:
                    self._save()
            finally:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)

    def append_log(self, entry: LogEntry) -> None:
        line = orjson.dumps(asdict(entry), option=orjson.OPT_APPEND_NEWLINE)
        with self._locked(write=True), open(self._logs_path, "ab") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())

    def list_logs(self, connection_name: str, limit: int = 100) -> list[LogEntry]:
        with self._locked():
            if not self._logs_path.exists():
                return []
            entries = []
            for line in self._logs_path.read_bytes().splitlines():
                if not line.strip():
                    continue
                raw = orjson.loads(line)
                if raw.get("connection_name") == connection_name:
                    entries.append(LogEntry(**raw))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    # ── snapshot ────────────────────────────────────────────────────

    def _load(self) -> None:
        if not self._state_path.exists():
            return
        raw = orjson.loads(self._state_path.read_bytes())
        self._connections = {
            k: ConnectionRecord.from_dict(v) for k, v in raw.get("connections", {}).items()
        }
        self._devices = {
            k: GreengrassCoreDevice.from_dict(v) for k, v in raw.get("devices", {}).items()
        }
        self._jobs = {k: DeploymentJob.from_dict(v) for k, v in raw.get("jobs", {}).items()}

    def _save(self) -> None:
        snapshot = {
            "connections": {k: asdict(v) for k, v in self._connections.items()},
            "devices": {k: asdict(v) for k, v in self._devices.items()},
            "jobs": {k: asdict(v) for k, v in self._jobs.items()},
        }
        tmp_path = self._state_path.with_suffix(".json.tmp")
        with open(tmp_path, "wb") as fh:
            fh.write(orjson.dumps(snapshot, option=orjson.OPT_INDENT_2))
            fh.flush()
            os.fsync(fh.fileno())
        os.rename(tmp_path, self._state_path)
        logger.debug("Saved state snapshot to %s", self._state_path)
