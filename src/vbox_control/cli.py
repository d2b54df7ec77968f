"""Command-line interface for vbox-control.

Usage:
    vboxctl --url http://vbox:18083 -u builder -p secret --transport mypkg.soap:connect machines
    vboxctl ... snapshots win10
    vboxctl ... start win10 --snapshot clean --display-type gui
    vboxctl ... stop win10 --stop-mode powerdown --snapshot clean
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import NoReturn

import click
from pydantic import SecretStr, ValidationError

from vbox_control import __version__
from vbox_control._logging import LogSink, configure_logging
from vbox_control.config import HostConfig, LifecycleConfig
from vbox_control.exceptions import OperationTimeoutError, VBoxControlError
from vbox_control.models import DisplayType, MachineRef, OperationResult, StopMode
from vbox_control.service import ControlService
from vbox_control.settings import Settings
from vbox_control.transport import TransportFactory, load_transport_factory

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_CONTROL_ERROR = 125

_CONNECTION_SUGGESTIONS = [
    "Check that vboxwebsrv is running on the host",
    "Check --url, --username and --password",
]


@dataclass(frozen=True)
class CliContext:
    """Resolved global options shared by every command."""

    host: HostConfig
    transport_factory: TransportFactory
    config: LifecycleConfig
    quiet: bool


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _narrate(cli: CliContext) -> LogSink | None:
    if cli.quiet:
        return None
    return lambda line: click.echo(line, err=True)


def result_exit_code(result: OperationResult, transition: str) -> int:
    """Map a start/stop result to an exit code, printing the failure."""
    if result.ok:
        return EXIT_SUCCESS
    if result.error == OperationTimeoutError.__name__:
        click.echo(
            format_error(
                f"Could not {transition} machine: timed out",
                result.reason or "",
                ["The remote action may still be running; check the machine state before retrying"],
            ),
            err=True,
        )
        return EXIT_TIMEOUT
    click.echo(format_error(f"Could not {transition} machine", result.reason or ""), err=True)
    return EXIT_CONTROL_ERROR


async def execute(cli: CliContext, action: Callable[[ControlService], Awaitable[int]]) -> int:
    """Run ``action`` against a ControlService for the configured host.

    Returns:
        Exit code to return from CLI
    """
    try:
        async with ControlService([cli.host], cli.transport_factory, cli.config) as service:
            return await action(service)

    except OperationTimeoutError as e:
        click.echo(format_error("Operation timed out", e.message), err=True)
        return EXIT_TIMEOUT

    except VBoxControlError as e:
        click.echo(
            format_error("VirtualBox control error", e.message, _CONNECTION_SUGGESTIONS),
            err=True,
        )
        return EXIT_CONTROL_ERROR


def _run(ctx: click.Context, action: Callable[[ControlService], Awaitable[int]]) -> NoReturn:
    sys.exit(asyncio.run(execute(ctx.find_object(CliContext), action)))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--url", envvar="VBOX_CONTROL_URL", required=True, help="Web service URL, e.g. http://host:18083")
@click.option("-u", "--username", envvar="VBOX_CONTROL_USERNAME", default="", help="Web service user")
@click.option("-p", "--password", envvar="VBOX_CONTROL_PASSWORD", default="", help="Web service password")
@click.option("--host-id", default="default", show_default=True, help="Name for the host in log output")
@click.option("--transport", "transport_path", help="Transport factory as module:attribute")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.version_option(__version__, "-V", "--version", prog_name="vbox-control")
@click.pass_context
def main(
    ctx: click.Context,
    url: str,
    username: str,
    password: str,
    host_id: str,
    transport_path: str | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Start, stop and inspect VirtualBox machines on a remote host.

    Examples:

    \b
      vboxctl --url http://vbox:18083 --transport mypkg.soap:connect machines
      vboxctl ... snapshots win10
      vboxctl ... start win10 --snapshot clean
      vboxctl ... stop win10 --stop-mode powerdown --snapshot clean
    """
    settings = Settings()
    path = transport_path or settings.transport
    if not path:
        raise click.UsageError("No transport configured. Use --transport or set VBOX_CONTROL_TRANSPORT.")

    try:
        transport_factory = load_transport_factory(path)
    except VBoxControlError as exc:
        raise click.UsageError(exc.message) from exc

    try:
        host = HostConfig(host_id=host_id, url=url, username=username, password=SecretStr(password))
        config = settings.lifecycle_config()
    except ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    configure_logging(level=logging.DEBUG if verbose else logging.WARNING, quiet=quiet)
    ctx.obj = CliContext(host=host, transport_factory=transport_factory, config=config, quiet=quiet)


@main.command()
@click.pass_context
def machines(ctx: click.Context) -> NoReturn:
    """List machines registered on the host."""
    cli = ctx.find_object(CliContext)

    async def action(service: ControlService) -> int:
        for machine in await service.list_machines(cli.host.host_id):
            click.echo(machine.name)
        return EXIT_SUCCESS

    _run(ctx, action)


@main.command()
@click.argument("name")
@click.pass_context
def snapshots(ctx: click.Context, name: str) -> NoReturn:
    """List snapshots of machine NAME, depth-first from the root."""
    cli = ctx.find_object(CliContext)

    async def action(service: ControlService) -> int:
        for snapshot in await service.list_snapshots(cli.host.host_id, name):
            click.echo(snapshot)
        return EXIT_SUCCESS

    _run(ctx, action)


@main.command()
@click.argument("name")
@click.option("--slot", default=0, show_default=True, help="Network adapter slot")
@click.pass_context
def mac(ctx: click.Context, name: str, slot: int) -> NoReturn:
    """Print the MAC address of machine NAME."""
    cli = ctx.find_object(CliContext)

    async def action(service: ControlService) -> int:
        click.echo(await service.get_mac_address(MachineRef(host_id=cli.host.host_id, name=name), slot))
        return EXIT_SUCCESS

    _run(ctx, action)


@main.command()
@click.argument("name")
@click.option("-s", "--snapshot", help="Snapshot to revert to before starting")
@click.option(
    "--display-type",
    type=click.Choice([t.value for t in DisplayType]),
    default=DisplayType.HEADLESS.value,
    show_default=True,
    help="Front-end to launch the machine with",
)
@click.pass_context
def start(ctx: click.Context, name: str, snapshot: str | None, display_type: str) -> NoReturn:
    """Start machine NAME (no-op if already running)."""
    cli = ctx.find_object(CliContext)

    async def action(service: ControlService) -> int:
        result = await service.start(
            MachineRef(host_id=cli.host.host_id, name=name),
            snapshot,
            DisplayType(display_type),
            log_sink=_narrate(cli),
        )
        return result_exit_code(result, "start")

    _run(ctx, action)


@main.command()
@click.argument("name")
@click.option("-s", "--snapshot", help="Snapshot to revert to after powering down")
@click.option(
    "--stop-mode",
    type=click.Choice([m.value for m in StopMode]),
    default=StopMode.PAUSE_AND_SAVE.value,
    show_default=True,
    help="powerdown: hard power off; pause: save machine state",
)
@click.pass_context
def stop(ctx: click.Context, name: str, snapshot: str | None, stop_mode: str) -> NoReturn:
    """Stop machine NAME (no-op if already halted)."""
    cli = ctx.find_object(CliContext)

    async def action(service: ControlService) -> int:
        result = await service.stop(
            MachineRef(host_id=cli.host.host_id, name=name),
            snapshot,
            StopMode(stop_mode),
            log_sink=_narrate(cli),
        )
        return result_exit_code(result, "stop")

    _run(ctx, action)


if __name__ == "__main__":
    main()
