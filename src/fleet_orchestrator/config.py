"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class BackoffConfig:
    """Exponential backoff parameters."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: int = 2
    jitter_pct: int = 20

    def delay_seconds(self, attempt: int, rand: float = 0.5) -> float:
        """Delay before retry number *attempt* (1-based); *rand* in [0, 1)."""
        base = self.initial_delay_ms / 1000.0
        max_delay = self.max_delay_ms / 1000.0
        delay = min(base * (self.backoff_multiplier ** (attempt - 1)), max_delay)
        jitter = delay * (self.jitter_pct / 100.0) * (2 * rand - 1)
        return max(0.0, delay + jitter)


@dataclass
class FleetConfig:
    """Command/acknowledgement protocol settings."""

    topic_prefix: str = "fleet"
    ack_timeout_seconds: float = 60.0
    max_dispatch_attempts: int = 3
    sweep_interval_seconds: float = 5.0


@dataclass
class TransportConfig:
    """Fleet transport settings.  ``kind`` is ``memory`` or ``mqtt``."""

    kind: str = "mqtt"
    endpoint: str = ""
    port: int = 8883
    client_id: str = "fleet-orchestrator"
    ca_path: Optional[str] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    websockets: bool = False
    keepalive_seconds: int = 60
    qos: int = 1
    reconnect: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass
class PersistenceConfig:
    """Persistence gateway settings.  ``backend`` is ``memory``, ``file`` or ``dynamodb``."""

    backend: str = "file"
    directory: str = "/var/lib/fleet-orchestrator"
    region: Optional[str] = None
    connections_table: str = "fleet-connections"
    devices_table: str = "fleet-devices"
    jobs_table: str = "fleet-jobs"
    logs_table: str = "fleet-logs"


@dataclass
class OnboardingConfig:
    """Identity and permission names used when provisioning gateways."""

    region: str = "us-east-1"
    account_id: str = ""
    iot_policy_name: str = "fleet-gateway-policy"
    credentials_role_name: str = "fleet-gateway-credentials-role"
    role_alias_name: str = "fleet-gateway-role-alias"
    resource_bucket: str = ""
    kinesis_stream_name: str = ""
    secrets_file: Optional[str] = None
    key_file: Optional[str] = None


@dataclass
class LogFileConfig:
    """Optional log file output settings.

    When ``enabled`` is True the application writes operational logs to a
    rotating file in addition to stderr.
    """

    enabled: bool = False
    path: str = "/var/log/fleet-orchestrator/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*key*", "*token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    instance_id: str = "orchestrator-01"
    fleet: FleetConfig = field(default_factory=FleetConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    onboarding: OnboardingConfig = field(default_factory=OnboardingConfig)
    retry: BackoffConfig = field(
        default_factory=lambda: BackoffConfig(
            initial_delay_ms=50, max_delay_ms=2000, backoff_multiplier=2, jitter_pct=20
        )
    )
    max_conflict_retries: int = 5
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no ``:-`` present

        if overrides and var_name in overrides:
            return overrides[var_name]
        env_val = os.environ.get(var_name)
        if env_val is not None:
            return env_val
        if secrets and var_name in secrets:
            return secrets[var_name]
        if default is not None:
            return default

        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _section(cls: type, raw: dict[str, Any], nested: dict[str, Any] | None = None) -> Any:
    """Build dataclass *cls* from the known keys of *raw*."""
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in known and k not in (nested or {})}
    kwargs.update(nested or {})
    return cls(**kwargs)


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    transport_raw = raw.get("transport", {})
    logging_raw = raw.get("logging", {})
    defaults = AppConfig()

    retry = (
        _section(BackoffConfig, raw["retry"]) if "retry" in raw else defaults.retry
    )

    return AppConfig(
        instance_id=raw.get("instance_id", defaults.instance_id),
        fleet=_section(FleetConfig, raw.get("fleet", {})),
        transport=_section(
            TransportConfig,
            transport_raw,
            {"reconnect": _section(BackoffConfig, transport_raw.get("reconnect", {}))},
        ),
        persistence=_section(PersistenceConfig, raw.get("persistence", {})),
        onboarding=_section(OnboardingConfig, raw.get("onboarding", {})),
        retry=retry,
        max_conflict_retries=raw.get("max_conflict_retries", defaults.max_conflict_retries),
        logging=_section(
            LoggingConfig,
            logging_raw,
            {"file": _section(LogFileConfig, logging_raw.get("file", {}))},
        ),
    )


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to the JSON config file.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Returns
    -------
    AppConfig
        Fully resolved and validated configuration.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
