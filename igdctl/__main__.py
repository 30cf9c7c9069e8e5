"""Command line host for the NAT traversal controller."""

from __future__ import annotations

import asyncio
import ipaddress
import logging

import click
from rich.console import Console

from igdctl.config import init_config
from igdctl.exceptions import ConfigurationError
from igdctl.logging_config import set_correlation_id, setup_logging
from igdctl.models import Config, LogLevel, UPnPConfig
from igdctl.nat.controller import ControllerState, NATTraversalController
from igdctl.nat.port_mapping import ForwardPort, ForwardStatus
from igdctl.nat.upnp import SSDPDiscoverySource

logger = logging.getLogger(__name__)

STATUS_MARKUP = {
    ForwardStatus.MAYBE_SUCCESS: "[green]forwarded (maybe)[/green]",
    ForwardStatus.PROBABLE_FAILURE: "[yellow]probably not forwarded[/yellow]",
    ForwardStatus.DEFINITE_FAILURE: "[red]cannot be forwarded[/red]",
}

# Seconds between controller polls while waiting for a gateway
POLL_INTERVAL = 0.5


def _build_controller(
    config: UPnPConfig, console: Console | None = None
) -> NATTraversalController:
    def on_status(statuses: dict[ForwardPort, ForwardStatus]) -> None:
        if console is None:
            return
        for port, status in statuses.items():
            console.print(f"{port}: {STATUS_MARKUP[status]}")

    return NATTraversalController(SSDPDiscoverySource(config), config, on_status)


async def _run_forwarding(
    config: UPnPConfig, ports: list[ForwardPort], console: Console
) -> ControllerState:
    """Forward ``ports`` until interrupted or until UPnP gets disabled."""
    controller = _build_controller(config, console)
    await controller.start()
    try:
        await controller.set_desired_ports(ports)
        announced = False
        while controller.state is not ControllerState.DISABLED:
            if controller.is_nat_present():
                if not announced:
                    announced = True
                    status = await controller.get_status()
                    console.print(f"[bold]Gateway:[/bold] {status['gateway']}")
                    address = await controller.query_external_address()
                    if address is not None:
                        console.print(f"[green]External address:[/green] {address}")
            elif announced:
                announced = False
                console.print("[yellow]Gateway lost, searching again[/yellow]")
            await asyncio.sleep(POLL_INTERVAL)

        console.print("[red]UPnP disabled, see the log for the reason[/red]")
        return controller.state
    finally:
        await controller.stop()


async def _detect_external_address(
    config: UPnPConfig, wait: float
) -> ipaddress.IPv4Address | None:
    controller = _build_controller(config)
    await controller.start()
    try:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while not controller.is_nat_present():
            if controller.state is ControllerState.DISABLED or loop.time() >= deadline:
                return None
            await asyncio.sleep(POLL_INTERVAL)
        return await controller.query_external_address()
    finally:
        await controller.stop()


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.pass_context
def cli(ctx, config, verbose):
    """Igdctl - forward ports through a UPnP Internet Gateway Device."""
    ctx.ensure_object(dict)
    try:
        config_manager = init_config(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    cfg = config_manager.config
    if verbose:
        cfg.observability.log_level = LogLevel.DEBUG if verbose > 1 else LogLevel.INFO
        setup_logging(cfg.observability)
    if cfg.observability.log_correlation_id:
        set_correlation_id()

    ctx.obj["config_manager"] = config_manager
    ctx.obj["config"] = cfg


@cli.command("run")
@click.option(
    "--port",
    "-p",
    "ports",
    multiple=True,
    required=True,
    help="Port to forward as protocol:port[:name], e.g. tcp:4711:fnp (repeatable)",
)
@click.pass_context
def run(ctx, ports) -> None:
    """Forward ports until interrupted, then remove the mappings."""
    console = Console()
    try:
        forward_ports = [ForwardPort.parse(value) for value in ports]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--port") from e

    cfg: Config = ctx.obj["config"]
    console.print(
        f"[bold]Searching for a UPnP gateway to forward {len(forward_ports)} port(s)[/bold]"
    )
    try:
        state = asyncio.run(_run_forwarding(cfg.nat, forward_ports, console))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, port mappings removed[/yellow]")
        return
    if state is ControllerState.DISABLED:
        ctx.exit(1)


@cli.command("external-ip")
@click.option(
    "--wait",
    type=float,
    default=10.0,
    show_default=True,
    help="Seconds to wait for a gateway",
)
@click.pass_context
def external_ip(ctx, wait) -> None:
    """Print the external address reported by the gateway."""
    console = Console()
    cfg: Config = ctx.obj["config"]
    address = asyncio.run(_detect_external_address(cfg.nat, wait))
    if address is None:
        msg = "No external address detected (no usable UPnP gateway found)"
        raise click.ClickException(msg)
    console.print(str(address))


@cli.command("show-config")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["toml", "json"]),
    default="toml",
    show_default=True,
    help="Output format",
)
@click.pass_context
def show_config(ctx, fmt) -> None:
    """Print the effective configuration."""
    console = Console()
    console.print(ctx.obj["config_manager"].export(fmt), markup=False, highlight=False)


def main() -> None:
    """Entry point for the ``igdctl`` script."""
    cli(obj={})


if __name__ == "__main__":
    main()
