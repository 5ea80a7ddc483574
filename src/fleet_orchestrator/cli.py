"""Click CLI for the fleet orchestrator.

Entry point registered in ``pyproject.toml`` as ``fleet-orchestrator``.

Subcommands::

    fleet-orchestrator validate-config          # load + schema-check config
    fleet-orchestrator submit request.json      # apply a control request
    fleet-orchestrator onboard gw-01            # provision a gateway
    fleet-orchestrator devices list|show|register|remove
    fleet-orchestrator connections list|show|logs
    fleet-orchestrator jobs list|retry|expire
    fleet-orchestrator listen                   # correlate acks, expire jobs
    fleet-orchestrator secrets init|set|list|rekey
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, NoReturn, Optional

import click
import orjson

from fleet_orchestrator import __version__
from fleet_orchestrator.api import ACCEPTED, handle_control_request
from fleet_orchestrator.config import AppConfig, LogFileConfig, load_config
from fleet_orchestrator.errors import FleetError
from fleet_orchestrator.models import JobStatus
from fleet_orchestrator.redactor import SecretRedactingFilter, collect_secret_values
from fleet_orchestrator.runtime import Services, build_services
from fleet_orchestrator.secrets import SecretStore, load_secrets

logger = logging.getLogger("fleet_orchestrator")

DEFAULT_CONFIG = "/etc/fleet-orchestrator/config.json"
DEFAULT_SECRETS_FILE = "/etc/fleet-orchestrator/.secrets.enc"


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON to stderr."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    fmt: str = "json",
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> SecretRedactingFilter:
    """Configure the root logger: stderr, optional rotating file, redaction.

    Returns the redaction filter shared by every installed handler.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_fleet_orchestrator", False):
            root.removeHandler(handler)
    level_name = "WARNING" if level.lower() == "warn" else level.upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = (
        _JsonFormatter()
        if fmt == "json"
        else logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    redactor = SecretRedactingFilter(secret_values)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        # Filters on the root logger do not see records from child loggers.
        handler.addFilter(redactor)
        handler._fleet_orchestrator = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    return redactor


# ── helpers ─────────────────────────────────────────────────────────


def _echo_json(obj: Any) -> None:
    click.echo(orjson.dumps(obj, option=orjson.OPT_INDENT_2).decode())


def _fail(exc: FleetError) -> NoReturn:
    click.echo(orjson.dumps(exc.to_dict()).decode(), err=True)
    raise SystemExit(1)


def _env_secrets_file() -> str:
    return os.environ.get("FLEET_SECRETS_FILE", DEFAULT_SECRETS_FILE)


def _load_app_config(ctx: click.Context) -> AppConfig:
    """Load config once per invocation and set up logging from it."""
    obj = ctx.ensure_object(dict)
    if "config" in obj:
        return obj["config"]

    cfg_path = obj.get("config_path") or os.environ.get("FLEET_CONFIG", DEFAULT_CONFIG)

    # --- load encrypted secrets if key file is available ---
    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("FLEET_KEY_FILE")
    secrets_file = _env_secrets_file()
    if key_file and Path(key_file).exists() and Path(secrets_file).exists():
        secrets_dict = load_secrets(secrets_file, key_file)

    try:
        cfg = load_config(cfg_path, overrides=obj.get("overrides"), secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    effective_level = (
        obj.get("log_level")
        or os.environ.get("FLEET_LOG_LEVEL")
        or cfg.logging.level
    )
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    secret_values.extend(secrets_dict.values())
    obj["redactor"] = _setup_logging(
        effective_level, cfg.logging.format, secret_values, cfg.logging.file
    )

    obj["config"] = cfg
    return cfg


def _services(ctx: click.Context, connect: bool = False) -> Services:
    obj = ctx.ensure_object(dict)
    if "services" not in obj:
        cfg = _load_app_config(ctx)
        try:
            services = build_services(cfg, redactor=obj.get("redactor"))
        except ValueError as exc:
            click.echo(f"Config error: {exc}", err=True)
            raise SystemExit(1) from exc
        obj["services"] = services
        ctx.call_on_close(services.close)
    services = obj["services"]
    if connect:
        try:
            services.open()
        except FleetError as exc:
            _fail(exc)
    return services


def _parse_overrides(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--var")
        overrides[name] = value
    return overrides


# ── main CLI group ──────────────────────────────────────────────────


@click.group()
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path (default: $FLEET_CONFIG or /etc/fleet-orchestrator/config.json).")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--var", "variables", multiple=True, metavar="NAME=VALUE",
              help="Override a ${NAME} config variable. Repeatable.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    variables: tuple[str, ...],
) -> None:
    """Fleet orchestrator: connection lifecycle and gateway onboarding."""
    ctx.ensure_object(dict).update(
        config_path=config_path,
        log_level=log_level,
        overrides=_parse_overrides(variables),
    )


@main.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate config and exit."""
    _load_app_config(ctx)
    click.echo("Configuration is valid.", err=True)


@main.command()
@click.argument("request_file", type=click.File("rb"))
@click.option("--wait/--no-wait", default=False,
              help="Wait for the gateway to acknowledge the command.")
@click.option("--timeout", type=float, default=None,
              help="Seconds to wait (default: fleet.ack_timeout_seconds).")
@click.pass_context
def submit(ctx: click.Context, request_file, wait: bool, timeout: Optional[float]) -> None:
    """Apply the control request in REQUEST_FILE ('-' for stdin)."""
    services = _services(ctx, connect=True)
    if wait:
        services.router.start()

    status, response = handle_control_request(services.controller, request_file.read())
    _echo_json({"status": status, **response})
    if status != ACCEPTED:
        raise SystemExit(1)

    if wait:
        try:
            job = asyncio.run(
                services.router.wait_for_resolution(response["jobId"], timeout=timeout)
            )
        except FleetError as exc:
            _fail(exc)
        _echo_json(job)
        if job.status is not JobStatus.ACKED:
            raise SystemExit(1)


@main.command()
@click.argument("device_name")
@click.pass_context
def onboard(ctx: click.Context, device_name: str) -> None:
    """Provision DEVICE_NAME so connections may target it."""
    services = _services(ctx)
    try:
        result = services.coordinator.onboard(device_name)
    except FleetError as exc:
        _fail(exc)
    _echo_json(result)


# ── devices ─────────────────────────────────────────────────────────


@main.group()
def devices() -> None:
    """Inspect and administer the device registry."""


@devices.command("list")
@click.pass_context
def devices_list(ctx: click.Context) -> None:
    """List registered devices."""
    _echo_json(_services(ctx).coordinator.list_devices())


@devices.command("show")
@click.argument("device_name")
@click.pass_context
def devices_show(ctx: click.Context, device_name: str) -> None:
    """Show one device record."""
    device = _services(ctx).coordinator.get_device(device_name)
    if device is None:
        click.echo(f"Unknown device: {device_name}", err=True)
        raise SystemExit(1)
    _echo_json(device)


@devices.command("register")
@click.argument("device_name")
@click.pass_context
def devices_register(ctx: click.Context, device_name: str) -> None:
    """Record a device provisioned outside the orchestrator."""
    try:
        device = _services(ctx).coordinator.register_existing(device_name)
    except FleetError as exc:
        _fail(exc)
    _echo_json(device)


@devices.command("remove")
@click.argument("device_name")
@click.pass_context
def devices_remove(ctx: click.Context, device_name: str) -> None:
    """Remove a device that no live connection targets."""
    try:
        _services(ctx).coordinator.deregister(device_name)
    except FleetError as exc:
        _fail(exc)
    click.echo(f"Removed: {device_name}")


# ── connections ─────────────────────────────────────────────────────


@main.group()
def connections() -> None:
    """Inspect connection records and gateway logs."""


@connections.command("list")
@click.option("--device", "device_name", default=None, help="Only connections on this device.")
@click.pass_context
def connections_list(ctx: click.Context, device_name: Optional[str]) -> None:
    """List connections and their states."""
    records = _services(ctx).controller.list_connections(device_name=device_name)
    _echo_json([
        {
            "connectionName": r.connection_name,
            "state": r.state,
            "greengrassCoreDeviceName": r.device_name,
            "version": r.version,
            "updatedAt": r.updated_at,
        }
        for r in records
    ])


@connections.command("show")
@click.argument("connection_name")
@click.pass_context
def connections_show(ctx: click.Context, connection_name: str) -> None:
    """Show one connection record."""
    record = _services(ctx).controller.get_connection(connection_name)
    if record is None:
        click.echo(f"Unknown connection: {connection_name}", err=True)
        raise SystemExit(1)
    _echo_json(record)


@connections.command("logs")
@click.argument("connection_name")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def connections_logs(ctx: click.Context, connection_name: str, limit: int) -> None:
    """Show the newest info/error messages from a connection's gateway."""
    _echo_json(_services(ctx).gateway.list_logs(connection_name, limit=limit))


# ── jobs ────────────────────────────────────────────────────────────


@main.group()
def jobs() -> None:
    """Inspect and retry dispatched commands."""


@jobs.command("list")
@click.option("--connection", "connection_name", default=None)
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None)
@click.pass_context
def jobs_list(ctx: click.Context, connection_name: Optional[str], status: Optional[str]) -> None:
    """List deployment jobs, oldest first."""
    found = _services(ctx).gateway.list_jobs(
        connection_name=connection_name,
        status=JobStatus(status) if status else None,
    )
    _echo_json(found)


@jobs.command("retry")
@click.argument("job_id")
@click.pass_context
def jobs_retry(ctx: click.Context, job_id: str) -> None:
    """Re-dispatch a TIMED_OUT or FAILED job."""
    services = _services(ctx, connect=True)
    try:
        job = services.router.redispatch(job_id)
    except FleetError as exc:
        _fail(exc)
    _echo_json(job)


@jobs.command("expire")
@click.pass_context
def jobs_expire(ctx: click.Context) -> None:
    """Mark PENDING jobs past the acknowledgement timeout as TIMED_OUT."""
    _echo_json(_services(ctx).router.expire_pending())


# ── listener ────────────────────────────────────────────────────────


@main.command()
@click.option("--once", is_flag=True, help="Run a single timeout sweep and exit.")
@click.pass_context
def listen(ctx: click.Context, once: bool) -> None:
    """Consume gateway info/error messages and expire silent jobs."""
    cfg = _load_app_config(ctx)
    services = _services(ctx, connect=True)
    logger.info(
        "Starting fleet-orchestrator %s listener (instance=%s, prefix=%s)",
        __version__,
        cfg.instance_id,
        cfg.fleet.topic_prefix,
    )
    asyncio.run(_listen(services, cfg.fleet.sweep_interval_seconds, once))


async def _listen(services: Services, sweep_interval: float, once: bool = False) -> None:
    """Subscribe, then sweep for timed-out jobs until signalled."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    # --- signal handling ---
    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    services.router.start()
    sweeps = 0
    try:
        while not stop.is_set():
            expired = await asyncio.to_thread(services.router.expire_pending)
            sweeps += 1
            if expired:
                logger.info("Sweep %d timed out %d job(s)", sweeps, len(expired))
            if once:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=sweep_interval)
            except asyncio.TimeoutError:
                continue
    finally:
        logger.info("Listener shut down after %d sweep(s)", sweeps)


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
@click.option("--secrets-file", default=None,
              help="Encrypted secrets file (default: $FLEET_SECRETS_FILE).")
@click.pass_context
def secrets(ctx: click.Context, secrets_file: Optional[str]) -> None:
    """Manage the encrypted secrets file."""
    ctx.ensure_object(dict)["secrets_file"] = secrets_file or _env_secrets_file()


@secrets.command("init")
@click.option("--key-file", required=True, help="Path for the master key.")
@click.pass_context
def secrets_init(ctx: click.Context, key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    output = ctx.obj["secrets_file"]
    SecretStore.init(output, key_file)
    click.echo(f"Initialized: {output} (key: {key_file})")


@secrets.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
@click.pass_context
def secrets_set(ctx: click.Context, name: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    SecretStore(ctx.obj["secrets_file"], key_file).set(name, value)
    click.echo(f"Set: {name}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
@click.pass_context
def secrets_list(ctx: click.Context, key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    for name in SecretStore(ctx.obj["secrets_file"], key_file).names():
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
@click.pass_context
def secrets_rekey(ctx: click.Context, key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    SecretStore(ctx.obj["secrets_file"], key_file).rekey(new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
