"""Command-line interface for the file retrieval scheduler."""

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import click
import yaml

from .configuration.lifecycle import ConfigurationLifecycleManager
from .errors import ValidationError
from .scheduling.cron import CronValidationError, ScheduleEvaluator
from .scheduling.options import SchedulerOptions
from .scheduling.service import SchedulerService, create_memory_service, create_sql_service


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_specs(path: str) -> List[Dict[str, Any]]:
    """Read configuration specs from YAML.

    The file may hold a single spec, a list of specs, or a mapping with a
    ``configurations`` list.
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f)

    if data is None:
        return []
    if isinstance(data, dict) and "configurations" in data:
        data = data["configurations"]
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return data
    raise click.ClickException(f"{path} must contain a configuration mapping or a list of them")


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO-8601 timestamp")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _build_options(options_file: Optional[str], overrides: Dict[str, Any]) -> SchedulerOptions:
    base = SchedulerOptions.from_yaml(options_file) if options_file else SchedulerOptions.from_environment()
    changes = {name: value for name, value in overrides.items() if value is not None}
    if not changes:
        return base
    return SchedulerOptions.from_mapping({**base.model_dump(), **changes})


@click.group()
@click.option('--log-level', default='INFO', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
def cli(log_level: str):
    """File retrieval scheduler."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@cli.command('next-run')
@click.argument('cron_expression')
@click.option('--timezone', '-z', 'timezone_id', default='UTC', show_default=True, help='IANA timezone')
@click.option('--after', help='ISO-8601 instant to start from (default: now)')
@click.option('--count', '-n', default=5, show_default=True, type=click.IntRange(1, 100),
              help='Number of runs to show')
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
def next_run(cron_expression: str, timezone_id: str, after: Optional[str], count: int, output_json: bool):
    """Preview upcoming runs of CRON_EXPRESSION."""
    evaluator = ScheduleEvaluator()
    try:
        evaluator.validate_expression(cron_expression)
        tz = evaluator.validate_timezone(timezone_id)
    except CronValidationError as e:
        raise click.ClickException(str(e))

    runs = evaluator.upcoming_runs(cron_expression, timezone_id, after=_parse_instant(after), count=count)

    if output_json:
        click.echo(json.dumps({
            "cron_expression": cron_expression,
            "timezone": timezone_id,
            "runs": [run.isoformat() for run in runs],
        }, indent=2))
        return

    if not runs:
        click.echo("No upcoming runs")
        return
    for run in runs:
        click.echo(f"{run.isoformat()}  ({run.astimezone(tz).isoformat()} {timezone_id})")


@cli.command()
@click.argument('config_file', type=click.Path(exists=True, dir_okay=False))
def validate(config_file: str):
    """Validate the configuration specs in CONFIG_FILE."""
    specs = load_specs(config_file)
    if not specs:
        raise click.ClickException(f"No configurations found in {config_file}")

    failures = 0
    for index, spec in enumerate(specs, start=1):
        label = spec.get("name") or f"#{index}"
        try:
            ConfigurationLifecycleManager.validate_spec(spec)
            click.echo(f"✅ {label}")
        except ValidationError as e:
            failures += 1
            click.echo(f"❌ {label}")
            for message in e.errors or [str(e)]:
                click.echo(f"   - {message}")

    click.echo(f"\n{len(specs) - failures}/{len(specs)} configurations valid")
    if failures:
        sys.exit(1)


@cli.command()
@click.option('--database-url', envvar='FILE_RETRIEVAL_DATABASE_URL', help='SQLAlchemy async database URL')
@click.option('--memory', is_flag=True, help='Use in-memory stores instead of a database')
@click.option('--options', 'options_file', type=click.Path(exists=True, dir_okay=False),
              help='YAML file with scheduler options')
@click.option('--poll-interval', type=int, help='Seconds between ticks')
@click.option('--window', 'execution_window_minutes', type=int, help='Execution window in minutes')
@click.option('--max-concurrent', 'max_concurrent_checks', type=int, help='Maximum concurrent checks')
@click.option('--seed', 'seed_file', type=click.Path(exists=True, dir_okay=False),
              help='YAML file with configurations to create at startup')
@click.option('--tenant', default='default', show_default=True, help='Tenant for seeded configurations')
@click.option('--duration', type=float, help='Stop after this many seconds (default: run until interrupted)')
def run(
    database_url: Optional[str],
    memory: bool,
    options_file: Optional[str],
    poll_interval: Optional[int],
    execution_window_minutes: Optional[int],
    max_concurrent_checks: Optional[int],
    seed_file: Optional[str],
    tenant: str,
    duration: Optional[float]
):
    """Run the scheduler until interrupted."""
    try:
        options = _build_options(options_file, {
            "poll_interval_seconds": poll_interval,
            "execution_window_minutes": execution_window_minutes,
            "max_concurrent_checks": max_concurrent_checks,
        })
    except ValidationError as e:
        raise click.ClickException(str(e))

    specs = load_specs(seed_file) if seed_file else []
    if memory:
        service = create_memory_service(options=options)
    else:
        service = create_sql_service(database_url, options=options)

    try:
        asyncio.run(_run_service(service, specs, tenant, duration))
    except ValidationError as e:
        raise click.ClickException(str(e))


async def _run_service(
    service: SchedulerService,
    specs: List[Dict[str, Any]],
    tenant: str,
    duration: Optional[float]
) -> None:
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable off the main thread and on Windows
            pass

    click.echo("Starting scheduler service...")
    await service.start()
    try:
        if specs:
            created = await service.seed(tenant, specs, actor="cli")
            click.echo(f"Seeded {len(created)} configurations for tenant {tenant}")

        click.echo(f"Status: {service.get_status().value}")
        try:
            await asyncio.wait_for(stop_requested.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
    finally:
        click.echo("Stopping scheduler service...")
        await service.stop()

    stats = service.get_loop_stats()
    click.echo(
        f"Stopped after {stats.total_ticks} ticks: {stats.total_triggered} checks triggered, "
        f"{stats.checks_failed} failed"
    )


if __name__ == '__main__':
    cli()
