"""DynamoDB implementation of the persistence gateway.

Tables and keys::

    connections   connection_name
    devices       device_name
    jobs          job_id
    logs          connection_name (hash) + timestamp (range)

Versioned writes use ``ConditionExpression``; a
``ConditionalCheckFailedException`` becomes :class:`ConcurrencyConflict`.
DynamoDB rejects Python floats, so items are converted to ``Decimal`` on
the way in and back to ``int``/``float`` on the way out.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from fleet_orchestrator.errors import ConcurrencyConflict
from fleet_orchestrator.models import (
    ConnectionRecord,
    DeploymentJob,
    GreengrassCoreDevice,
    JobStatus,
    LogEntry,
)

logger = logging.getLogger(__name__)

_CONDITION_FAILED = "ConditionalCheckFailedException"


def to_item(value: Any) -> Any:
    """Recursively convert floats and enums into DynamoDB-safe values."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_item(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_item(v) for v in value]
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def from_item(value: Any) -> Any:
    """Inverse of :func:`to_item` for numbers."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_item(v) for v in value]
    return value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DynamoDBGateway:
    """Persistence gateway backed by four DynamoDB tables."""

    def __init__(
        self,
        connections_table: str,
        devices_table: str,
        jobs_table: str,
        logs_table: str,
        region: Optional[str] = None,
        resource: Any = None,
    ) -> None:
        dynamodb = resource or boto3.resource("dynamodb", region_name=region)
        self._connections = dynamodb.Table(connections_table)
        self._devices = dynamodb.Table(devices_table)
        self._jobs = dynamodb.Table(jobs_table)
        self._logs = dynamodb.Table(logs_table)

    # ── connections ─────────────────────────────────────────────────

    def get_connection(self, connection_name: str) -> Optional[ConnectionRecord]:
        item = self._connections.get_item(
            Key={"connection_name": connection_name}, ConsistentRead=True
        ).get("Item")
        return ConnectionRecord.from_dict(from_item(item)) if item else None

    def put_connection(
        self, record: ConnectionRecord, expected_version: Optional[int]
    ) -> ConnectionRecord:
        now = _now()
        stored = replace(
            record,
            version=(expected_version or 0) + 1,
            created_at=record.created_at or now,
            updated_at=now,
        )
        self._conditional_put(
            self._connections,
            asdict(stored),
            "connection_name",
            f"connection:{record.connection_name}",
            expected_version,
        )
        return stored

    def list_connections(self, device_name: Optional[str] = None) -> list[ConnectionRecord]:
        kwargs = {}
        if device_name is not None:
            kwargs["FilterExpression"] = Attr("device_name").eq(device_name)
        records = [ConnectionRecord.from_dict(i) for i in self._scan(self._connections, **kwargs)]
        return sorted(records, key=lambda r: r.connection_name)

    # ── devices ─────────────────────────────────────────────────────

    def get_device(self, device_name: str) -> Optional[GreengrassCoreDevice]:
        item = self._devices.get_item(
            Key={"device_name": device_name}, ConsistentRead=True
        ).get("Item")
        return GreengrassCoreDevice.from_dict(from_item(item)) if item else None

    def put_device(
        self, device: GreengrassCoreDevice, expected_version: Optional[int]
    ) -> GreengrassCoreDevice:
        now = _now()
        stored = replace(
            device,
            version=(expected_version or 0) + 1,
            created_at=device.created_at or now,
            updated_at=now,
        )
        self._conditional_put(
            self._devices,
            asdict(stored),
            "device_name",
            f"device:{device.device_name}",
            expected_version,
        )
        return stored

    def delete_device(self, device_name: str, expected_version: int) -> None:
        try:
            self._devices.delete_item(
                Key={"device_name": device_name},
                ConditionExpression=Attr("version").eq(expected_version),
            )
        except ClientError as exc:
            if exc.response["Error"]["Code"] == _CONDITION_FAILED:
                raise ConcurrencyConflict(f"device:{device_name}", expected_version) from exc
            raise

    def list_devices(self) -> list[GreengrassCoreDevice]:
        devices = [GreengrassCoreDevice.from_dict(i) for i in self._scan(self._devices)]
        return sorted(devices, key=lambda d: d.device_name)

    # ── jobs ────────────────────────────────────────────────────────

    def create_job(self, job: DeploymentJob) -> DeploymentJob:
        try:
            self._jobs.put_item(
                Item=to_item(asdict(job)),
                ConditionExpression=Attr("job_id").not_exists(),
            )
        except ClientError as exc:
            if exc.response["Error"]["Code"] == _CONDITION_FAILED:
                raise ConcurrencyConflict(f"job:{job.job_id}") from exc
            raise
        return job

    def get_job(self, job_id: str) -> Optional[DeploymentJob]:
        item = self._jobs.get_item(Key={"job_id": job_id}, ConsistentRead=True).get("Item")
        return DeploymentJob.from_dict(from_item(item)) if item else None

    def resolve_job(
        self, job_id: str, status: JobStatus, detail: Optional[str] = None
    ) -> DeploymentJob:
        try:
            response = self._jobs.update_item(
                Key={"job_id": job_id},
                UpdateExpression="SET #s = :status, resolved_at = :resolved, detail = :detail",
                ConditionExpression=Attr("status").eq(JobStatus.PENDING.value),
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={
                    ":status": status.value,
                    ":resolved": _now(),
                    ":detail": detail,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if exc.response["Error"]["Code"] == _CONDITION_FAILED:
                raise ConcurrencyConflict(f"job:{job_id}") from exc
            raise
        return DeploymentJob.from_dict(from_item(response["Attributes"]))

    def list_jobs(
        self,
        connection_name: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> list[DeploymentJob]:
        condition = None
        if connection_name is not None:
            condition = Attr("connection_name").eq(connection_name)
        if status is not None:
            by_status = Attr("status").eq(status.value)
            condition = by_status if condition is None else condition & by_status
        kwargs = {"FilterExpression": condition} if condition is not None else {}
        jobs = [DeploymentJob.from_dict(i) for i in self._scan(self._jobs, **kwargs)]
        return sorted(jobs, key=lambda j: j.dispatched_at)

    # ── logs ────────────────────────────────────────────────────────

    def append_log(self, entry: LogEntry) -> None:
        self._logs.put_item(Item=to_item(asdict(entry)))

    def list_logs(self, connection_name: str, limit: int = 100) -> list[LogEntry]:
        response = self._logs.query(
            KeyConditionExpression=Key("connection_name").eq(connection_name),
            ScanIndexForward=False,
            Limit=limit,
        )
        return [LogEntry(**from_item(i)) for i in response.get("Items", [])]

    # ── helpers ─────────────────────────────────────────────────────

    def _conditional_put(
        self,
        table: Any,
        item: dict,
        key_name: str,
        key: str,
        expected_version: Optional[int],
    ) -> None:
        if expected_version is None:
            condition = Attr(key_name).not_exists()
        else:
            condition = Attr("version").eq(expected_version)
        try:
            table.put_item(Item=to_item(item), ConditionExpression=condition)
        except ClientError as exc:
            if exc.response["Error"]["Code"] == _CONDITION_FAILED:
                logger.info("Conditional write lost for %s", key)
                raise ConcurrencyConflict(key, expected_version) from exc
            raise

    @staticmethod
    def _scan(table: Any, **kwargs: Any) -> list[dict]:
        items: list[dict] = []
        while True:
            response = table.scan(**kwargs)
            items.extend(from_item(i) for i in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key
