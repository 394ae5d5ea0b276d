"""Click CLI for operating the webhook receiver."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import NoReturn

import click
import uvicorn

from finhook.config import FileConfigProvider
from finhook.connection.selector import ConnectionModeSelector
from finhook.credentials import save_relay_credentials
from finhook.errors import FinhookError
from finhook.events.log import EventLog, validate_event_chain
from finhook.models import ConnectionPurpose
from finhook.webhook.deduplication import FileDeduplicationCache


@click.group()
@click.option(
    "--config",
    "config_path",
    default=lambda: os.environ.get("FINHOOK_CONFIG_PATH", "~/.finhook/config.json"),
    help="Path to the finhook config JSON.",
)
@click.option("--data-dir", default=None, help="Override the configured data directory.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, data_dir: str | None, verbose: bool) -> None:
    """Financial webhook receiver CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    provider = FileConfigProvider(config_path)
    ctx.obj["provider"] = provider
    ctx.obj["config_path"] = config_path
    ctx.obj["data_dir"] = data_dir


def _cache(ctx: click.Context) -> FileDeduplicationCache:
    data_dir = ctx.obj["data_dir"] or ctx.obj["provider"].load().data_path
    return FileDeduplicationCache.in_data_dir(data_dir)


def _fail(error: FinhookError) -> NoReturn:
    click.echo(json.dumps(error.to_dict(), indent=2), err=True)
    raise SystemExit(1)


@cli.command()
@click.option(
    "--purpose",
    type=click.Choice([p.value for p in ConnectionPurpose]),
    default=ConnectionPurpose.WEBHOOK.value,
    help="What the connection is for.",
)
@click.pass_context
def mode(ctx: click.Context, purpose: str) -> None:
    """Show which connection mode would be selected."""
    selector = ConnectionModeSelector(ctx.obj["provider"])
    try:
        result = asyncio.run(selector.select(ConnectionPurpose(purpose)))
    except FinhookError as exc:
        _fail(exc)
    click.echo(result.model_dump_json(indent=2))


@cli.group("cache")
def cache_group() -> None:
    """Inspect the webhook deduplication cache."""


@cache_group.command("stats")
@click.pass_context
def cache_stats(ctx: click.Context) -> None:
    """Show nonce count and last cleanup time."""
    click.echo(json.dumps(dataclasses.asdict(_cache(ctx).stats()), indent=2))


@cache_group.command("cleanup")
@click.pass_context
def cache_cleanup(ctx: click.Context) -> None:
    """Remove expired nonces now."""
    try:
        removed = _cache(ctx).cleanup()
    except FinhookError as exc:
        _fail(exc)
    click.echo(f"Removed {removed} expired nonces")


@cli.group("relay")
def relay_group() -> None:
    """Manage relay credentials."""


@relay_group.command("set")
@click.option("--webhook-id", required=True, help="Relay webhook ID.")
@click.option("--api-key", required=True, help="Relay API key.")
@click.option("--api-url", default=None, help="Relay API base URL.")
@click.pass_context
def relay_set(ctx: click.Context, webhook_id: str, api_key: str, api_url: str | None) -> None:
    """Store relay credentials and enable relay mode."""
    try:
        asyncio.run(save_relay_credentials(
            ctx.obj["provider"], webhook_id, api_key, api_url=api_url,
        ))
    except FinhookError as exc:
        _fail(exc)
    click.echo(f"Relay credentials saved for webhook {webhook_id}")


@cli.group("events")
@click.option(
    "--log",
    "log_path",
    default=lambda: os.environ.get("FINHOOK_EVENT_LOG_PATH"),
    type=click.Path(dir_okay=False),
    help="Event log file (defaults to FINHOOK_EVENT_LOG_PATH).",
)
@click.pass_context
def events_group(ctx: click.Context, log_path: str | None) -> None:
    """Inspect the persisted event log."""
    if not log_path:
        raise click.UsageError("No event log configured; pass --log or set FINHOOK_EVENT_LOG_PATH")
    ctx.obj["event_log"] = Path(log_path)


@events_group.command("verify")
@click.pass_context
def events_verify(ctx: click.Context) -> None:
    """Check the event log hash chain."""
    result = validate_event_chain(ctx.obj["event_log"])
    if not result.valid:
        click.echo(f"Chain broken at line {result.broken_at_line}", err=True)
        raise SystemExit(1)
    click.echo(f"Chain valid ({result.records} records)")


@events_group.command("tail")
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--type", "event_type", default=None, help="Only events of this type.")
@click.pass_context
def events_tail(ctx: click.Context, limit: int, event_type: str | None) -> None:
    """Print the most recent events as JSON Lines."""
    for entry in EventLog(ctx.obj["event_log"]).recent(limit, event_type):
        click.echo(json.dumps(entry))


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to connect.host).")
@click.option("--port", type=int, default=None, help="Bind port (defaults to connect.port).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the webhook receiver."""
    connect = ctx.obj["provider"].load().connect
    os.environ["FINHOOK_CONFIG_PATH"] = ctx.obj["config_path"]
    if ctx.obj["data_dir"]:
        os.environ["FINHOOK_DATA_DIR"] = ctx.obj["data_dir"]
    uvicorn.run(
        "finhook.server.app:create_app_from_env",
        factory=True,
        host=host or connect.host,
        port=port or connect.port,
    )
