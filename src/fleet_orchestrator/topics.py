"""Topic layout of the cloud ↔ edge protocol::

    {prefix}/job/{connectionName}     cloud → device   one command per accepted control
    {prefix}/info/{connectionName}    device → cloud   acknowledgements, health
    {prefix}/error/{connectionName}   device → cloud   structured failure reports
    {prefix}/data/{connectionName}    device → cloud   telemetry (consumed elsewhere)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

JOB = "job"
INFO = "info"
ERROR = "error"
DATA = "data"

CHANNELS = (JOB, INFO, ERROR, DATA)


@dataclass(frozen=True)
class FleetTopics:
    """Builds and parses topics under a single prefix."""

    prefix: str = "fleet"

    def job(self, connection_name: str) -> str:
        return f"{self.prefix}/{JOB}/{connection_name}"

    def info(self, connection_name: str) -> str:
        return f"{self.prefix}/{INFO}/{connection_name}"

    def error(self, connection_name: str) -> str:
        return f"{self.prefix}/{ERROR}/{connection_name}"

    def data(self, connection_name: str) -> str:
        return f"{self.prefix}/{DATA}/{connection_name}"

    def subscriptions(self) -> list[str]:
        """Wildcard filters the cloud side listens on."""
        return [f"{self.prefix}/{INFO}/+", f"{self.prefix}/{ERROR}/+"]

    def parse(self, topic: str) -> Optional[tuple[str, str]]:
        """Return ``(channel, connectionName)`` or ``None`` for foreign topics."""
        head = f"{self.prefix}/"
        if not topic.startswith(head):
            return None
        parts = topic[len(head):].split("/")
        if len(parts) != 2 or parts[0] not in CHANNELS or not parts[1]:
            return None
        return parts[0], parts[1]


def topic_matches(topic_filter: str, topic: str) -> bool:
    """MQTT topic-filter matching with ``+`` and ``#`` wildcards."""
    filter_parts = topic_filter.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(filter_parts):
        if part == "#":
            return True
        if index >= len(topic_parts):
            return False
        if part != "+" and part != topic_parts[index]:
            return False
    return len(filter_parts) == len(topic_parts)
