"""Classify raw gateway messages into inbound records or malformed records.

Classification pipeline::

    (topic, payload)
      │
      ├─ topic not info/error      → None  (job echo, telemetry, foreign)
      ├─ JSON parse failure        → MalformedMessage(code="parse_error")
      ├─ payload not an object     → MalformedMessage(code="schema_mismatch")
      ├─ connectionName ≠ topic    → MalformedMessage(code="connection_mismatch")
      └─ valid                     → InboundMessage
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

import orjson

from fleet_orchestrator.models import InboundMessage, MalformedMessage
from fleet_orchestrator.topics import ERROR, INFO, FleetTopics

# Maximum bytes of raw payload preserved in malformed records.
MAX_RAW_PAYLOAD_BYTES = 4096


def classify_inbound(
    topic: str,
    payload: str | bytes,
    topics: FleetTopics,
) -> Union[InboundMessage, MalformedMessage, None]:
    """Classify a single message received from the fleet transport.

    Parameters
    ----------
    topic:
        The topic the message arrived on.
    payload:
        Raw message body.
    topics:
        Topic layout used to recognise info and error channels.

    Returns
    -------
    InboundMessage
        A JSON object received on an info or error channel.  Messages that
        carry ``control`` and ``dispatchedAt`` are acknowledgements.
    MalformedMessage
        When the body cannot be parsed or contradicts its topic.
    None
        When the topic is not a channel the cloud side consumes.
    """
    parsed = topics.parse(topic)
    if parsed is None or parsed[0] not in (INFO, ERROR):
        return None
    channel, connection_name = parsed
    now = datetime.now(timezone.utc).isoformat()

    try:
        body = orjson.loads(payload)
    except orjson.JSONDecodeError as exc:
        return _malformed("parse_error", str(exc), topic, connection_name, payload, now)

    if not isinstance(body, dict):
        return _malformed(
            "schema_mismatch",
            "Message body must be a JSON object",
            topic,
            connection_name,
            payload,
            now,
        )

    claimed = body.get("connectionName")
    if claimed is not None and claimed != connection_name:
        return _malformed(
            "connection_mismatch",
            f"Body names connection {claimed!r} but arrived on {topic}",
            topic,
            connection_name,
            payload,
            now,
        )

    return InboundMessage(
        channel=channel,
        connection_name=connection_name,
        received_at=now,
        control=_optional_str(body.get("control")),
        dispatched_at=_optional_str(body.get("dispatchedAt")),
        status=_optional_str(body.get("status")),
        body=body,
    )


# ── helpers ─────────────────────────────────────────────────────────


def _optional_str(value: object) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _malformed(
    code: str,
    message: str,
    topic: str,
    connection_name: str,
    raw: str | bytes,
    now: str,
) -> MalformedMessage:
    """Build a :class:`MalformedMessage` with truncation handling."""
    raw_str = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
    truncated = len(raw_str.encode("utf-8")) > MAX_RAW_PAYLOAD_BYTES
    if truncated:
        raw_str = raw_str[:MAX_RAW_PAYLOAD_BYTES]

    return MalformedMessage(
        topic=topic,
        connection_name=connection_name,
        received_at=now,
        error={
            "code": code,
            "message": message,
            "raw_payload": raw_str,
            "raw_payload_truncated": truncated,
        },
    )
