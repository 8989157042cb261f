"""azfleet command line interface.

Inspect and operate on Azure scale sets through the fleet manager:
- Read and write scale set capacity
- Resolve the scale set owning a VM
- Delete VMs that belong to one scale set
- Show or continuously refresh the membership cache
"""

import logging
import time

import click
from azure.core.exceptions import AzureError
from rich.console import Console
from rich.table import Table

from azfleet.click_group import FleetGroup
from azfleet.config_manager import ConfigError, ConfigManager
from azfleet.credential_factory import CredentialFactoryError
from azfleet.fleet_client import FleetClientError
from azfleet.fleet_manager import FleetManager, FleetManagerError
from azfleet.models import FleetDescriptor, InstanceRef

logger = logging.getLogger(__name__)
console = Console()

HANDLED_ERRORS = (
    AzureError,
    ConfigError,
    CredentialFactoryError,
    FleetClientError,
    FleetManagerError,
)


def _get_manager(ctx: click.Context) -> FleetManager:
    """Return the manager for this invocation, building it on first use."""
    obj = ctx.ensure_object(dict)
    if obj.get("manager") is None:
        try:
            config = ConfigManager.get_config(obj.get("config_path"))
            obj["manager"] = FleetManager.from_config(config)
        except (ConfigError, CredentialFactoryError) as e:
            raise click.ClickException(str(e)) from e
    return obj["manager"]


def _resolve_fleet(manager: FleetManager, name: str) -> FleetDescriptor:
    """Registered descriptor named ``name``, or an unregistered one."""
    for descriptor in manager.registered_fleets():
        if descriptor.name.lower() == name.lower():
            return descriptor
    return FleetDescriptor(name=name)


@click.group(cls=FleetGroup)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    envvar="AZFLEET_CONFIG",
    help="TOML config file (default: ARM_* environment variables)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """Azure scale set fleet manager.

    \b
    EXAMPLES:
        $ azfleet size get pool-a
        $ azfleet size set pool-a 5
        $ azfleet owner /subscriptions/.../virtualMachines/3
        $ azfleet delete ID1 ID2 --yes
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    obj = ctx.ensure_object(dict)
    obj.setdefault("config_path", config_path)


@main.group(name="size")
def size_group():
    """Read or change scale set capacity."""
    pass


@size_group.command(name="get")
@click.argument("fleet")
@click.pass_context
def size_get(ctx: click.Context, fleet: str):
    """Print the capacity of FLEET."""
    manager = _get_manager(ctx)
    try:
        capacity = manager.get_size(_resolve_fleet(manager, fleet))
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Failed to get size of {fleet}: {e}") from e
    click.echo(str(capacity))


@size_group.command(name="set")
@click.argument("fleet")
@click.argument("target", type=click.IntRange(min=0))
@click.pass_context
def size_set(ctx: click.Context, fleet: str, target: int):
    """Set the capacity of FLEET to TARGET and wait for Azure."""
    manager = _get_manager(ctx)
    descriptor = _resolve_fleet(manager, fleet)

    min_size, max_size = descriptor.size_bounds
    if max_size and not min_size <= target <= max_size:
        console.print(
            f"[yellow]Warning: {target} is outside the registered bounds "
            f"{min_size}..{max_size} of {fleet}[/yellow]"
        )

    try:
        manager.set_size(descriptor, target)
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Failed to set size of {fleet}: {e}") from e
    console.print(f"[green]{fleet} capacity set to {target}[/green]")


@main.command(name="owner")
@click.argument("instance_id")
@click.pass_context
def owner_command(ctx: click.Context, instance_id: str):
    """Print the registered scale set owning INSTANCE_ID."""
    manager = _get_manager(ctx)
    try:
        owner = manager.find_owner(InstanceRef(instance_id))
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Failed to look up {instance_id}: {e}") from e
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="INSTANCE_ID") from e

    click.echo(owner.name if owner is not None else "unmanaged")


@main.command(name="members")
@click.argument("fleet")
@click.pass_context
def members_command(ctx: click.Context, fleet: str):
    """List the VMs of FLEET as reported by Azure."""
    manager = _get_manager(ctx)
    try:
        refs = manager.fleet_instances(_resolve_fleet(manager, fleet))
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Failed to list VMs of {fleet}: {e}") from e

    if not refs:
        console.print(f"No VMs in {fleet}")
        return
    for ref in refs:
        click.echo(ref.key)


@main.command(name="delete")
@click.argument("instance_ids", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete_command(ctx: click.Context, instance_ids: tuple[str, ...], yes: bool):
    """Delete VMs that all belong to one registered scale set."""
    manager = _get_manager(ctx)
    try:
        refs = [InstanceRef(instance_id) for instance_id in instance_ids]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="INSTANCE_IDS") from e

    if not yes:
        click.confirm(f"Delete {len(refs)} VM(s)?", abort=True)

    try:
        manager.delete_instances(refs)
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Delete failed: {e}") from e
    console.print(f"[green]Deleted {len(refs)} VM(s)[/green]")


@main.command(name="cache")
@click.pass_context
def cache_command(ctx: click.Context):
    """Rebuild the membership cache once and print it."""
    manager = _get_manager(ctx)
    try:
        snapshot = manager.refresh()
    except HANDLED_ERRORS as e:
        raise click.ClickException(f"Cache rebuild failed: {e}") from e

    table = Table(title=f"Scale set membership ({len(snapshot)} VMs)")
    table.add_column("Scale set", style="cyan")
    table.add_column("Instance ID", justify="right")
    table.add_column("VM")
    for ref in snapshot:
        table.add_row(snapshot.owners[ref].name, snapshot.instance_ids[ref], ref.key)
    console.print(table)


@main.command(name="watch")
@click.option(
    "--duration",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds (default: until Ctrl-C)",
)
@click.pass_context
def watch_command(ctx: click.Context, duration: float | None):
    """Keep the membership cache fresh with scheduled rebuilds."""
    manager = _get_manager(ctx)
    try:
        manager.start()
    except FleetManagerError as e:
        raise click.ClickException(str(e)) from e

    console.print(
        f"Refreshing {len(manager.registered_fleets())} scale set(s) every "
        f"{manager.refresh_interval:.0f}s. Press Ctrl-C to stop."
    )
    deadline = time.monotonic() + duration if duration is not None else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.1)
    except KeyboardInterrupt:
        logger.debug("Interrupted")
    finally:
        manager.shutdown()

    refresher = manager.refresher
    console.print(f"Stopped after {refresher.ticks} refresh(es)")
    if refresher.last_error is not None:
        raise click.ClickException(f"Last refresh failed: {refresher.last_error}")


if __name__ == "__main__":
    main()
