"""
Brokerz CLI - Operator commands

Usage:
    brokerz drivers                       List drivers and whether they are installed
    brokerz health [--driver NAME]        Probe a driver and report its health
    brokerz publish TOPIC PAYLOAD         Publish one message
    brokerz enqueue QUEUE HANDLER [DATA]  Enqueue one job

The broker is configured from MESSAGE_BROKER_* and the backend variables
(a .env file in the working directory is loaded on first use).
"""

import asyncio
import sys

import click

from brokerz import __version__
from brokerz.core.exceptions import BrokerError
from brokerz.core.types import Job, Message
from brokerz.drivers.factory import _DRIVER_CHECKS, DRIVER_ALIASES, get_available_drivers
from brokerz.health import HealthCheckResult
from brokerz.manager import BrokerManager

try:
    from rich.console import Console
    from rich.markup import escape
    from rich.table import Table

    console = Console()
    HAS_RICH = True
except ImportError:
    console = None
    HAS_RICH = False


@click.group()
@click.version_option(version=__version__, prog_name="brokerz")
def cli():
    """
    Brokerz - Unified message broker and job queue.

    \b
    Commands:
        drivers   List drivers
        health    Check driver health
        publish   Publish a message
        enqueue   Enqueue a job
    """


def _parse_headers(header: tuple[str, ...]) -> dict[str, str]:
    """Parse key=value header options."""
    headers = {}
    for item in header:
        if "=" not in item:
            msg = f"Invalid header format: {item}. Use key=value"
            raise click.BadParameter(msg, param_hint="--header")
        key, value = item.split("=", 1)
        headers[key.strip()] = value
    return headers


def _make_manager(driver: str | None, **kwargs) -> BrokerManager:
    manager = BrokerManager.from_env(**kwargs)
    if driver:
        manager.config.driver = driver
    return manager


def _fail(error: Exception) -> None:
    if HAS_RICH and console:
        console.print(f"[red]Error: {escape(str(error))}[/red]")
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _say(text: str, style: str = "green") -> None:
    if HAS_RICH and console:
        console.print(f"[{style}]{escape(text)}[/{style}]")
    else:
        click.echo(text)


# ============================================================================
# drivers
# ============================================================================


@cli.command("drivers")
def drivers_cmd():
    """List drivers, their aliases and whether their client library is installed."""
    available = set(get_available_drivers())
    rows = [("memory", "In-memory (for testing)", "")]
    rows += [(name, desc, install) for _, _, name, desc, install in _DRIVER_CHECKS]

    if HAS_RICH and console:
        table = Table(title="Broker Drivers")
        table.add_column("Driver", style="cyan")
        table.add_column("Aliases")
        table.add_column("Backend")
        table.add_column("Status")
        for name, desc, install in rows:
            status = "[green]installed[/green]" if name in available else f"[red]missing[/red] ({install})"
            table.add_row(name, ", ".join(_aliases(name)), desc, status)
        console.print(table)
        return

    for name, desc, install in rows:
        mark = "✓" if name in available else "✗"
        suffix = "" if name in available else f" (install: {install})"
        click.echo(f"{mark} {name:<8} {desc}{suffix}")


def _aliases(name: str) -> list[str]:
    return sorted(alias for alias, canonical in DRIVER_ALIASES.items() if canonical == name and alias != name)


# ============================================================================
# health
# ============================================================================


async def _check_health(driver: str | None, timeout: float) -> dict[str, HealthCheckResult | None]:
    async with _make_manager(driver, health_timeout=timeout) as manager:
        await manager.refresh_health()
        return manager.health_results()


@cli.command("health")
@click.option("--driver", "-d", help="Driver to check (default: MESSAGE_BROKER_DRIVER)")
@click.option("--timeout", "-t", default=5.0, type=float, show_default=True, help="Probe timeout in seconds")
def health_cmd(driver: str | None, timeout: float):
    """Connect to a driver, probe it once and report the result."""
    try:
        results = asyncio.run(_check_health(driver, timeout))
    except BrokerError as e:
        _fail(e)

    healthy = True
    for name, result in results.items():
        if result is None:
            continue
        healthy = healthy and result.is_healthy
        style = "green" if result.is_healthy else "red"
        _say(f"{name}: {result.status.value} ({result.latency_ms:.1f} ms) {result.message}", style)

    if not healthy:
        sys.exit(1)


# ============================================================================
# publish / enqueue
# ============================================================================


async def _publish(
    driver: str | None, topic: str, payload: str, delay: float | None, headers: dict[str, str]
) -> Message:
    async with _make_manager(driver) as manager:
        if delay:
            return await manager.send_delayed_message(topic, payload, delay, headers=headers)
        return await manager.send_message(topic, payload, headers=headers)


@cli.command("publish")
@click.argument("topic")
@click.argument("payload")
@click.option("--driver", "-d", help="Driver to publish through")
@click.option("--delay", type=float, help="Deliver after this many seconds")
@click.option("--header", "-H", multiple=True, help="Header as key=value (repeatable)")
def publish_cmd(topic: str, payload: str, driver: str | None, delay: float | None, header: tuple[str, ...]):
    """Publish PAYLOAD (sent as UTF-8 text) to TOPIC."""
    headers = _parse_headers(header)
    try:
        message = asyncio.run(_publish(driver, topic, payload, delay, headers))
    except BrokerError as e:
        _fail(e)

    when = f" in {delay:g}s" if delay else ""
    _say(f"Published message {message.id} to {topic}{when}")


async def _enqueue(
    driver: str | None, queue: str, handler: str, payload: str, priority: int, delay: float | None
) -> Job:
    async with _make_manager(driver) as manager:
        job = Job.create(queue, handler, payload).with_priority(priority)
        if delay:
            job = job.with_delay(delay)
        await manager.enqueue_job(queue, job, timeout=30.0)
        return job


@cli.command("enqueue")
@click.argument("queue")
@click.argument("handler")
@click.argument("payload", default="")
@click.option("--driver", "-d", help="Driver to enqueue through")
@click.option("--priority", "-p", default=0, type=int, help="Job priority (higher runs first)")
@click.option("--delay", type=float, help="Run no earlier than this many seconds from now")
def enqueue_cmd(queue: str, handler: str, payload: str, driver: str | None, priority: int, delay: float | None):
    """Enqueue a job for HANDLER on QUEUE."""
    try:
        job = asyncio.run(_enqueue(driver, queue, handler, payload, priority, delay))
    except BrokerError as e:
        _fail(e)

    _say(f"Enqueued job {job.id} ({handler}) on {queue}")


def main():
    cli()


if __name__ == "__main__":
    main()
