"""Click CLI for geomessage-net.

Entry point registered in ``pyproject.toml`` as ``geomessage-net``.

Subcommands::

    geomessage-net                           # receive, replay location, send position reports
    geomessage-net listen [--count N]        # print inbound traffic as NDJSON
    geomessage-net send-chemlight X Y        # broadcast one chem light
    geomessage-net send-remove ID TYPE       # ask peers to remove a record
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import click
import orjson

from geomessage_net import __version__
from geomessage_net.config import AppConfig, LogFileConfig, load_config
from geomessage_net.errors import GeomessageError
from geomessage_net.locations import LocationController
from geomessage_net.models import Geomessage
from geomessage_net.output import NdjsonRecorder, StdoutSink
from geomessage_net.policy import SelfSuppressionPolicy
from geomessage_net.position_report import PositionReporter
from geomessage_net.reports import ChemLightReporter, build_removal, parse_color
from geomessage_net.symbols import SymbolRouter
from geomessage_net.transport import BroadcastTransport

logger = logging.getLogger("geomessage_net")

DEFAULT_CONFIG = "/etc/geomessage-net/config.json"


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
    log_format: str = "json",
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger with output on stderr + optional rotating file."""
    root = logging.getLogger()
    if level.lower() == "warn":
        level = "warning"
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_format == "text":
        formatter: logging.Formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
    else:
        formatter = _JsonFormatter()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file_config and log_file_config.enabled:
        from logging.handlers import RotatingFileHandler

        log_dir = Path(log_file_config.path).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# ── renderer that logs ──────────────────────────────────────────────


class _LoggingRenderer:
    """Renderer for headless runs: every map update becomes a log line."""

    def display_spot_report(
        self, x: float, y: float, wkid: int, existing_graphic_id: Any, message: Geomessage
    ) -> Any:
        verb = "Moved" if existing_graphic_id is not None else "Placed"
        logger.info("%s spot report %s at %s,%s (wkid %d)", verb, message.id, x, y, wkid)
        return existing_graphic_id if existing_graphic_id is not None else message.id

    def remove_spot_report_graphic(self, graphic_id: Any) -> None:
        logger.info("Removed spot report %s", graphic_id)

    def process_message(self, message: Geomessage) -> bool:
        logger.info(
            "%s %s from %s: %s",
            message.action or "UPDATE",
            message.type,
            message.get("uniquedesignation", "?"),
            message.get("_control_points", ""),
        )
        return True

    def process_highlight(self, message_id: str, message_type: str, highlight: bool) -> bool:
        logger.warning(
            "%s %s %s", "Emergency from" if highlight else "Emergency cleared for",
            message_type, message_id,
        )
        return True

    def process_remove(self, message_id: str, message_type: str) -> None:
        logger.info("Removed %s %s", message_type, message_id)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None,
              help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("-p", "--port", type=int, default=None, help="Override UDP port.")
@click.option("--sender-identity", default=None,
              help="Override this client's unique designation.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    port: Optional[int],
    sender_identity: Optional[str],
    validate_only: bool,
) -> None:
    """geomessage-net: UDP broadcast Geomessage exchange."""
    # --- resolve config path ---
    explicit_path = config_path or os.environ.get("GEOMESSAGE_CONFIG")
    cfg_path = explicit_path or DEFAULT_CONFIG

    # --- load + validate config ---
    try:
        if explicit_path or Path(cfg_path).exists():
            cfg = load_config(cfg_path)
        else:
            cfg = AppConfig()
    except (OSError, GeomessageError) as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    # --- resolve runtime overrides ---
    effective_level = (
        log_level
        or os.environ.get("GEOMESSAGE_LOG_LEVEL")
        or cfg.logging.level
    )
    env_port = os.environ.get("GEOMESSAGE_PORT")
    if port is not None:
        cfg.messaging.port = port
    elif env_port:
        try:
            cfg.messaging.port = int(env_port)
        except ValueError:
            click.echo(f"Config error: GEOMESSAGE_PORT={env_port!r} is not a port", err=True)
            raise SystemExit(1)
    if sender_identity:
        cfg.messaging.sender_identity = sender_identity
    elif os.environ.get("GEOMESSAGE_SENDER_IDENTITY"):
        cfg.messaging.sender_identity = os.environ["GEOMESSAGE_SENDER_IDENTITY"]

    _setup_logging(effective_level, cfg.logging.format, cfg.logging.file)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    ctx.obj = cfg
    if ctx.invoked_subcommand is not None:
        return  # defer to subcommand

    logger.info(
        "Starting geomessage-net %s (port=%d, identity=%s)",
        __version__,
        cfg.messaging.port,
        cfg.messaging.sender_identity,
    )
    try:
        asyncio.run(_run_node(cfg))
    except GeomessageError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc


def _build_transport(cfg: AppConfig) -> BroadcastTransport:
    policy = SelfSuppressionPolicy(
        sender_identity=cfg.messaging.sender_identity or cfg.position_report.callsign or None,
        self_ignore_types=cfg.messaging.self_ignore_types,
    )
    return BroadcastTransport(
        cfg.messaging.port,
        policy=policy,
        destinations=cfg.messaging.broadcast_addresses,
    )


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows


# ── async node ──────────────────────────────────────────────────────


async def _run_node(cfg: AppConfig) -> None:
    """Receive and render inbound traffic while reporting our own position."""
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    transport = _build_transport(cfg)
    router = SymbolRouter(
        _LoggingRenderer(),
        transport=transport,
        show_labels=cfg.symbols.show_labels,
        removeall_scope=cfg.symbols.removeall_scope,
    )
    transport.add_listener(router)

    pr = cfg.position_report
    reporter = PositionReporter(
        transport,
        callsign=pr.callsign,
        vehicle_type=pr.vehicle_type,
        unique_id=pr.unique_id,
        symbol_code=pr.symbol_code,
        period_ms=pr.period_ms,
        emergency=pr.emergency,
    )
    locations = LocationController(
        mode=cfg.location.mode,
        gpx_file=cfg.location.gpx_file,
        speed_multiplier=cfg.location.speed_multiplier,
    )
    reporter.attach(locations)

    try:
        transport.start_receiving()
        locations.start()
        if pr.enabled:
            reporter.enabled = True
        await stop.wait()
    finally:
        reporter.close()
        locations.stop()
        await transport.close()
        logger.info("Shut down (sent %d position reports)", reporter.reports_sent)


# ── subcommands ─────────────────────────────────────────────────────


@main.command("listen")
@click.option("--count", type=int, default=None,
              help="Exit after this many datagrams.")
@click.pass_obj
def listen(cfg: AppConfig, count: Optional[int]) -> None:
    """Print inbound datagrams and records to stdout as NDJSON."""
    asyncio.run(_listen(cfg, count))


async def _listen(cfg: AppConfig, count: Optional[int]) -> None:
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    transport = _build_transport(cfg)
    recorder = NdjsonRecorder(StdoutSink(), max_datagrams=count)
    transport.add_listener(recorder)
    transport.start_receiving()

    waiters = [asyncio.ensure_future(stop.wait()), asyncio.ensure_future(recorder.done.wait())]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await transport.close()
        logger.info(
            "Listened to %d datagrams (%d records)",
            recorder.datagram_count,
            recorder.geomessage_count,
        )


@main.command("send-chemlight")
@click.argument("x", type=float)
@click.argument("y", type=float)
@click.option("--wkid", type=int, default=4326, show_default=True,
              help="Spatial reference of X and Y.")
@click.option("--color", default="red", show_default=True,
              help="red, green, blue, yellow or #RRGGBB.")
@click.pass_obj
def send_chemlight(cfg: AppConfig, x: float, y: float, wkid: int, color: str) -> None:
    """Broadcast a chem light at X, Y."""
    try:
        argb = parse_color(color)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--color") from exc

    async def _send() -> Geomessage:
        transport = _build_transport(cfg)
        try:
            return ChemLightReporter(transport).send_chem_light(x, y, wkid, argb)
        finally:
            await transport.close()

    message = _run_send(_send())
    click.echo(message.id)


@main.command("send-remove")
@click.argument("message_id")
@click.argument("message_type")
@click.pass_obj
def send_remove(cfg: AppConfig, message_id: str, message_type: str) -> None:
    """Ask peers to remove record MESSAGE_ID of MESSAGE_TYPE."""

    async def _send() -> Geomessage:
        transport = _build_transport(cfg)
        try:
            message = build_removal(message_id, message_type)
            transport.send_geomessages([message])
            return message
        finally:
            await transport.close()

    _run_send(_send())


def _run_send(coro: Any) -> Geomessage:
    try:
        return asyncio.run(coro)
    except (GeomessageError, OSError) as exc:
        click.echo(f"Send failed: {exc}", err=True)
        raise SystemExit(1) from exc
