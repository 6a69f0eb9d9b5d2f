"""Command line interface for billsync."""

import sys
import json
import signal
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import click

from .config import setup_logging, load_environment, SyncSettings
from .bootstrap import SyncRuntime, create_watermark_store
from ..engine.expressions import canonical_text, evaluate as evaluate_formula
from ..engine.templates import render as render_template
from ..exceptions import BillSyncError, ConfigurationError, EvaluationError, PersistenceError
from ..models.config import SyncConfig
from ..models.records import position_from_text, position_to_text
from ..models.sync import CycleStatus


@click.group()
@click.option('--log-level', default='INFO', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Set the logging level')
@click.option('--env-file', type=click.Path(exists=True), help='Path to .env file')
def cli(log_level: str, env_file: Optional[str]) -> None:
    """Practice-management to time-tracking billing sync."""
    setup_logging(log_level)
    load_environment(env_file)


def _load_settings() -> SyncSettings:
    try:
        return SyncSettings.from_env()
    except ConfigurationError as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)


def _load_runtime() -> SyncRuntime:
    settings = _load_settings()
    try:
        return SyncRuntime.from_settings(settings)
    except (ConfigurationError, ValueError) as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)


def _parse_values(pairs: Tuple[str, ...]) -> Dict[str, Any]:
    """Parse name=value pairs; numbers become decimals, true/false booleans, null None."""
    values: Dict[str, Any] = {}
    for pair in pairs:
        if '=' not in pair:
            raise click.BadParameter(f"expected name=value, got '{pair}'")
        name, raw = pair.split('=', 1)
        if raw in ('true', 'false'):
            values[name] = raw == 'true'
        elif raw == 'null':
            values[name] = None
        else:
            try:
                values[name] = Decimal(raw)
            except InvalidOperation:
                values[name] = raw
    return values


@cli.command()
def run() -> None:
    """Run the sync loop until interrupted."""
    runtime = _load_runtime()
    coordinator = runtime.coordinator

    def _stop(signum, frame):
        logging.info(f"Received signal {signum}, stopping after the in-flight delivery")
        coordinator.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    try:
        coordinator.run_forever()
    except PersistenceError as e:
        click.echo(f"Fatal: watermark could not be persisted: {e}", err=True)
        sys.exit(2)
    finally:
        runtime.close()


@cli.command('sync-once')
def sync_once() -> None:
    """Run a single sync cycle and print its result."""
    runtime = _load_runtime()
    try:
        result = runtime.coordinator.run_cycle(triggered_by="cli")
    except PersistenceError as e:
        click.echo(f"Fatal: watermark could not be persisted: {e}", err=True)
        sys.exit(2)
    finally:
        runtime.close()

    click.echo(json.dumps(result.get_summary(), indent=2))
    for skipped in result.skipped:
        click.echo(f"Skipped {skipped.position}: {skipped.message}", err=True)
    if result.status in (CycleStatus.BACKOFF, CycleStatus.ABORTED, CycleStatus.FAILED):
        sys.exit(1)


@cli.command('refresh-once')
def refresh_once() -> None:
    """Run a single tag refresh batch."""
    runtime = _load_runtime()
    try:
        if runtime.refresher is None:
            click.echo("Tag refresh is disabled in the sync configuration", err=True)
            sys.exit(1)
        result = runtime.refresher.run()
    except PersistenceError as e:
        click.echo(f"Fatal: refresh cursor could not be persisted: {e}", err=True)
        sys.exit(2)
    finally:
        runtime.close()

    click.echo(result.model_dump_json(indent=2))
    if result.status == "failed":
        sys.exit(1)


@cli.group()
def watermark() -> None:
    """Inspect or move the persisted watermark."""
    pass


def _watermark_store(refresh: bool):
    settings = _load_settings()
    try:
        config = SyncConfig.from_file(settings.config_file)
        return config, create_watermark_store(settings, config, refresh=refresh)
    except BillSyncError as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)


@watermark.command('show')
@click.option('--refresh', is_flag=True, help='Show the tag refresh cursor instead')
def watermark_show(refresh: bool) -> None:
    """Print the persisted watermark."""
    config, store = _watermark_store(refresh)
    try:
        stored = store.read()
    except PersistenceError as e:
        click.echo(f"Watermark Error: {e}", err=True)
        sys.exit(2)

    if stored is None:
        click.echo(f"{store.location}: nothing persisted, default {position_to_text(store.default)}")
    else:
        click.echo(f"{store.location}: {position_to_text(stored.position)} "
                   f"({stored.position_type.value}, updated {stored.updated_at.isoformat()})")


@watermark.command('set')
@click.argument('position')
@click.option('--force', is_flag=True, help='Allow moving the watermark backwards')
@click.option('--refresh', is_flag=True, help='Set the tag refresh cursor instead')
def watermark_set(position: str, force: bool, refresh: bool) -> None:
    """Set the watermark to POSITION. Stop the sync loop first."""
    config, store = _watermark_store(refresh)
    try:
        parsed = position_from_text(position, config.source.position_type)
    except ValueError as e:
        click.echo(f"Invalid position '{position}': {e}", err=True)
        sys.exit(1)

    try:
        if force:
            store.force(parsed)
        else:
            store.commit(parsed)
    except PersistenceError as e:
        click.echo(f"Watermark Error: {e}", err=True)
        if not force:
            click.echo("Use --force to move the watermark backwards (records will be re-sent).", err=True)
        sys.exit(2)
    click.echo(f"{store.location}: {position_to_text(parsed)}")


@cli.command()
@click.option('--offline', is_flag=True, help='Only validate formulas and templates')
def check(offline: bool) -> None:
    """Validate the sync configuration and test both connections."""
    runtime = _load_runtime()
    try:
        result = runtime.coordinator.validate_config(check_connections=not offline)
    finally:
        runtime.close()

    for warning in result["warnings"]:
        click.echo(f"Warning: {warning}")
    for error in result["errors"]:
        click.echo(f"Error: {error}", err=True)

    if result["valid"]:
        click.echo("Configuration is valid.")
    else:
        sys.exit(1)


@cli.command()
@click.argument('formula')
@click.option('--value', '-v', 'values', multiple=True, help='Input value as name=value')
def evaluate(formula: str, values: Tuple[str, ...]) -> None:
    """Evaluate FORMULA against the given values."""
    try:
        result = evaluate_formula(formula, _parse_values(values))
    except EvaluationError as e:
        click.echo(f"Evaluation Error: {e}", err=True)
        sys.exit(1)
    click.echo(canonical_text(result))


@cli.command()
@click.argument('template')
@click.option('--value', '-v', 'values', multiple=True, help='Input value as name=value')
@click.option('--max-length', type=int, help='Truncate the result to this many characters')
def render(template: str, values: Tuple[str, ...], max_length: Optional[int]) -> None:
    """Render TEMPLATE against the given values."""
    try:
        result = render_template(template, _parse_values(values), max_length=max_length)
    except EvaluationError as e:
        click.echo(f"Template Error: {e}", err=True)
        sys.exit(1)
    click.echo(result)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind address')
@click.option('--port', default=8080, type=int, help='Port to listen on')
def serve(host: str, port: int) -> None:
    """Run the sync loop behind the operations HTTP API."""
    import uvicorn
    from ..api.app import app

    uvicorn.run(app, host=host, port=port, log_level="info")


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == '__main__':
    main()
