"""Tests for the DynamoDB gateway against mocked boto3 tables."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from fleet_orchestrator.dynamodb import DynamoDBGateway, from_item, to_item
from fleet_orchestrator.errors import ConcurrencyConflict
from fleet_orchestrator.models import (
    ConnectionRecord,
    ConnectionState,
    GreengrassCoreDevice,
    JobStatus,
)


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def tables():
    return {name: MagicMock(name=name) for name in ("conn", "dev", "jobs", "logs")}


@pytest.fixture
def dynamo(tables):
    resource = MagicMock()
    resource.Table.side_effect = lambda name: tables[name]
    return DynamoDBGateway("conn", "dev", "jobs", "logs", resource=resource)


class TestItemConversion:
    def test_floats_become_decimals_and_back(self) -> None:
        item = to_item({"interval": 1.5, "n": 3, "flag": True, "nested": [0.25, None]})
        assert item == {"interval": Decimal("1.5"), "n": 3, "flag": True, "nested": [Decimal("0.25"), None]}
        assert from_item(item) == {"interval": 1.5, "n": 3, "flag": True, "nested": [0.25, None]}

    def test_enums_are_stored_by_value(self) -> None:
        assert to_item({"state": ConnectionState.RUNNING}) == {"state": "RUNNING"}

    def test_integral_decimal_reads_as_int(self) -> None:
        assert from_item(Decimal("4840")) == 4840
        assert isinstance(from_item(Decimal("4840")), int)


class TestConnections:
    def test_create_uses_not_exists_condition(self, dynamo, tables) -> None:
        record = ConnectionRecord(
            connection_name="press-01",
            state=ConnectionState.DEPLOYED,
            definition={"opcDa": {"interval": 1.5}},
            device_name="gw-01",
        )
        stored = dynamo.put_connection(record, expected_version=None)

        assert stored.version == 1
        kwargs = tables["conn"].put_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == Attr("connection_name").not_exists()
        assert kwargs["Item"]["state"] == "DEPLOYED"
        assert kwargs["Item"]["definition"]["opcDa"]["interval"] == Decimal("1.5")

    def test_update_conditions_on_version(self, dynamo, tables) -> None:
        record = ConnectionRecord(connection_name="press-01", created_at="2025-01-01T00:00:00+00:00")
        stored = dynamo.put_connection(record, expected_version=4)

        assert stored.version == 5
        assert stored.created_at == "2025-01-01T00:00:00+00:00"
        kwargs = tables["conn"].put_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == Attr("version").eq(4)

    def test_condition_failure_is_conflict(self, dynamo, tables) -> None:
        tables["conn"].put_item.side_effect = _client_error("ConditionalCheckFailedException")
        with pytest.raises(ConcurrencyConflict) as exc_info:
            dynamo.put_connection(ConnectionRecord(connection_name="press-01"), expected_version=2)
        assert exc_info.value.key == "connection:press-01"

    def test_other_client_errors_propagate(self, dynamo, tables) -> None:
        tables["conn"].put_item.side_effect = _client_error("ProvisionedThroughputExceededException")
        with pytest.raises(ClientError):
            dynamo.put_connection(ConnectionRecord(connection_name="press-01"), expected_version=None)

    def test_get_reads_consistently(self, dynamo, tables) -> None:
        tables["conn"].get_item.return_value = {"Item": {
            "connection_name": "press-01",
            "state": "RUNNING",
            "definition": {"opcUa": {"port": Decimal("4840")}},
            "device_name": "gw-01",
            "version": Decimal("3"),
        }}

        record = dynamo.get_connection("press-01")

        tables["conn"].get_item.assert_called_once_with(
            Key={"connection_name": "press-01"}, ConsistentRead=True
        )
        assert record.state is ConnectionState.RUNNING
        assert record.version == 3
        assert record.definition["opcUa"]["port"] == 4840

    def test_get_missing(self, dynamo, tables) -> None:
        tables["conn"].get_item.return_value = {}
        assert dynamo.get_connection("nope") is None

    def test_list_follows_pagination(self, dynamo, tables) -> None:
        tables["conn"].scan.side_effect = [
            {"Items": [{"connection_name": "b"}], "LastEvaluatedKey": {"connection_name": "b"}},
            {"Items": [{"connection_name": "a"}]},
        ]

        records = dynamo.list_connections(device_name="gw-01")

        assert [r.connection_name for r in records] == ["a", "b"]
        second_call = tables["conn"].scan.call_args_list[1].kwargs
        assert second_call["ExclusiveStartKey"] == {"connection_name": "b"}
        assert second_call["FilterExpression"] == Attr("device_name").eq("gw-01")


class TestDevices:
    def test_delete_conflict(self, dynamo, tables) -> None:
        tables["dev"].delete_item.side_effect = _client_error("ConditionalCheckFailedException", "DeleteItem")
        with pytest.raises(ConcurrencyConflict):
            dynamo.delete_device("gw-01", 2)

    def test_put_device_stores_steps(self, dynamo, tables) -> None:
        device = GreengrassCoreDevice(device_name="gw-01", steps={"thing": "arn:aws:iot:thing/gw-01"})
        dynamo.put_device(device, expected_version=None)
        item = tables["dev"].put_item.call_args.kwargs["Item"]
        assert item["steps"] == {"thing": "arn:aws:iot:thing/gw-01"}
        assert item["status"] == "UNPROVISIONED"


class TestJobs:
    def test_resolve_returns_updated_job(self, dynamo, tables) -> None:
        tables["jobs"].update_item.return_value = {"Attributes": {
            "job_id": "j1",
            "connection_name": "press-01",
            "control": "start",
            "status": "ACKED",
            "attempt": Decimal("1"),
            "resolved_at": "2025-03-01T12:00:01+00:00",
        }}

        job = dynamo.resolve_job("j1", JobStatus.ACKED, detail="ok")

        assert job.status is JobStatus.ACKED
        kwargs = tables["jobs"].update_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == Attr("status").eq("PENDING")
        assert kwargs["ExpressionAttributeValues"][":status"] == "ACKED"
        assert kwargs["ReturnValues"] == "ALL_NEW"

    def test_second_resolution_conflicts(self, dynamo, tables) -> None:
        tables["jobs"].update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")
        with pytest.raises(ConcurrencyConflict):
            dynamo.resolve_job("j1", JobStatus.FAILED)


class TestLogs:
    def test_list_logs_queries_newest_first(self, dynamo, tables) -> None:
        tables["logs"].query.return_value = {"Items": [{
            "connection_name": "press-01",
            "timestamp": "t2",
            "log_type": "error",
            "message": {"code": Decimal("7")},
        }]}

        (entry,) = dynamo.list_logs("press-01", limit=10)

        assert entry.message == {"code": 7}
        kwargs = tables["logs"].query.call_args.kwargs
        assert kwargs["ScanIndexForward"] is False
        assert kwargs["Limit"] == 10
