"""Tests for the classifier module."""

import orjson
import pytest

from fleet_orchestrator.classifier import MAX_RAW_PAYLOAD_BYTES, classify_inbound
from fleet_orchestrator.models import InboundMessage, MalformedMessage
from fleet_orchestrator.topics import FleetTopics

TOPICS = FleetTopics("fleet")


def _ack(**fields) -> bytes:
    return orjson.dumps({
        "connectionName": "press-01",
        "control": "start",
        "dispatchedAt": "2025-03-01T12:00:00.000000+00:00",
        "status": "SUCCESS",
        **fields,
    })


def test_acknowledgement() -> None:
    """A message naming control and dispatchedAt acknowledges a job."""
    result = classify_inbound("fleet/info/press-01", _ack(), TOPICS)
    assert isinstance(result, InboundMessage)
    assert result.is_acknowledgement
    assert result.channel == "info"
    assert result.connection_name == "press-01"
    assert result.control == "start"
    assert result.status == "SUCCESS"
    assert result.received_at


def test_error_channel() -> None:
    result = classify_inbound("fleet/error/press-01", _ack(status="FAILURE"), TOPICS)
    assert result.channel == "error"
    assert result.body["status"] == "FAILURE"


def test_health_message_is_not_an_acknowledgement() -> None:
    result = classify_inbound("fleet/info/press-01", b'{"uptime": 42}', TOPICS)
    assert isinstance(result, InboundMessage)
    assert not result.is_acknowledgement
    assert result.body == {"uptime": 42}


def test_empty_strings_are_not_correlation_fields() -> None:
    result = classify_inbound("fleet/info/press-01", _ack(control="", status=""), TOPICS)
    assert result.control is None
    assert result.status is None


@pytest.mark.parametrize("topic", [
    "fleet/job/press-01",
    "fleet/data/press-01",
    "other/info/press-01",
])
def test_other_channels_are_ignored(topic) -> None:
    """Job echoes, telemetry and foreign topics are not classified."""
    assert classify_inbound(topic, _ack(), TOPICS) is None


def test_invalid_json() -> None:
    """Broken JSON yields a MalformedMessage with ``parse_error``."""
    result = classify_inbound("fleet/info/press-01", "{not valid json!!!", TOPICS)
    assert isinstance(result, MalformedMessage)
    assert result.error["code"] == "parse_error"
    assert result.connection_name == "press-01"


def test_non_object_body() -> None:
    result = classify_inbound("fleet/info/press-01", b"[1, 2]", TOPICS)
    assert isinstance(result, MalformedMessage)
    assert result.error["code"] == "schema_mismatch"


def test_body_naming_another_connection() -> None:
    result = classify_inbound("fleet/info/press-01", _ack(connectionName="press-02"), TOPICS)
    assert isinstance(result, MalformedMessage)
    assert result.error["code"] == "connection_mismatch"


def test_raw_payload_truncation() -> None:
    """Payloads exceeding 4096 bytes are truncated in malformed records."""
    big_str = "x" * (MAX_RAW_PAYLOAD_BYTES + 1000)
    raw = f'{{"not": "{big_str}"'
    result = classify_inbound("fleet/error/press-01", raw, TOPICS)
    assert isinstance(result, MalformedMessage)
    assert result.error["raw_payload_truncated"] is True
    assert len(result.error["raw_payload"]) <= MAX_RAW_PAYLOAD_BYTES
