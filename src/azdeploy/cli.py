"""CLI entry point for azdeploy.

Commands:
    azdeploy plan FILE           # Show the execution plan for a declaration
    azdeploy apply FILE          # Create or update every declared resource
    azdeploy destroy FILE        # Delete declared resources in reverse order
    azdeploy vm show NAME        # Inspect a VM
    azdeploy vm start|stop|deallocate NAME
    azdeploy vm resize NAME SIZE
    azdeploy vm attach-disk NAME --size-gb N
    azdeploy config show|set

Exit codes: 0 on full success, 1 otherwise.
"""

import logging
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from azdeploy import __version__
from azdeploy.azure_provider import AzureProviderClient
from azdeploy.config_manager import AzdeployConfig, ConfigError, ConfigManager
from azdeploy.declaration import Declaration, load_declaration
from azdeploy.executor import ApplyExecutor, ApplyReport, DestroyExecutor, DestroyReport
from azdeploy.models import (
    DeclarationError,
    PartialApplyError,
    PartialDestroyError,
    RemoteError,
    ResourceId,
    ResourceState,
)
from azdeploy.planner import ExecutionPlan, plan
from azdeploy.state_store import StateStore, StateStoreError
from azdeploy.vm_lifecycle_control import (
    LifecycleResult,
    VMLifecycleControlError,
    VMLifecycleController,
)

logger = logging.getLogger(__name__)

console = Console()

STATE_STYLES = {
    ResourceState.CREATED: "green",
    ResourceState.DELETED: "green",
    ResourceState.FAILED: "red",
    ResourceState.NOT_CREATED: "yellow",
    ResourceState.CREATING: "cyan",
    ResourceState.DELETING: "cyan",
}


# ============================================================================
# HELPERS
# ============================================================================


def _load(file: str, cfg: AzdeployConfig) -> tuple[Declaration, ExecutionPlan]:
    declaration = load_declaration(file, default_location=cfg.default_region)
    return declaration, plan(declaration.graph())


def _get_provider(subscription: str | None, config: str | None) -> AzureProviderClient:
    subscription_id = ConfigManager.get_subscription_id(subscription, config)
    return AzureProviderClient(subscription_id=subscription_id)


def _get_state_store(cfg: AzdeployConfig) -> StateStore:
    return StateStore(cfg.resolved_state_dir())


def _print_state_change(resource_id: ResourceId, state: ResourceState) -> None:
    style = STATE_STYLES.get(state, "white")
    console.print(f"  [{style}]{state.value:<12}[/{style}] {escape(str(resource_id))}")


@contextmanager
def _cancel_on_interrupt(cancel_event: threading.Event) -> Iterator[None]:
    """Turn Ctrl-C into a graceful cancel: in-flight requests finish."""

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        click.echo("\nCancelling after in-flight operations finish (Ctrl-C again to abort)...", err=True)
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _report_table(title: str, report: ApplyReport | DestroyReport) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Resource")
    table.add_column("State")
    table.add_column("Detail")

    blocked = set(getattr(report, "blocked", []))
    for rid in report.order:
        state = report.states[rid]
        style = STATE_STYLES.get(state, "white")
        if rid in blocked:
            detail = "blocked by a failed dependent"
        else:
            detail = report.errors.get(rid, "")
        table.add_row(escape(str(rid)), f"[{style}]{state.value}[/{style}]", escape(detail))
    return table


# ============================================================================
# MAIN GROUP
# ============================================================================


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", help="Config file path", type=click.Path())
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool, config: str | None) -> None:
    """azdeploy - declarative Azure VM deployments.

    Declare resources and their dependencies in a YAML file; azdeploy plans
    a dependency-first order, applies it idempotently and tears it down in
    reverse.

    \b
    CONFIGURATION:
        Config file: ~/.azdeploy/config.toml
        Subscription: AZURE_SUBSCRIPTION_ID or subscription_id in config
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


def _load_config(ctx: click.Context) -> AzdeployConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# ============================================================================
# PLAN / APPLY / DESTROY
# ============================================================================


@main.command(name="plan")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def plan_command(ctx: click.Context, file: str) -> None:
    """Show the execution plan for a declaration file."""
    cfg = _load_config(ctx)
    try:
        declaration, execution_plan = _load(file, cfg)
    except DeclarationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    graph = declaration.graph()
    table = Table(title=f"Execution plan: {declaration.name}", show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Level", justify="right")
    table.add_column("Resource")
    table.add_column("Depends on")

    level_of = {rid: i for i, level in enumerate(execution_plan.levels) for rid in level}
    for i, rid in enumerate(execution_plan.order, 1):
        deps = ", ".join(str(d) for d in graph.dependencies_of(rid))
        table.add_row(str(i), str(level_of.get(rid, "")), escape(str(rid)), escape(deps))

    console.print(table)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--subscription", help="Azure subscription id", type=str)
@click.option("--max-workers", type=click.IntRange(min=1), help="Parallel operations per level")
@click.pass_context
def apply(ctx: click.Context, file: str, subscription: str | None, max_workers: int | None) -> None:
    """Create or update every resource in FILE.

    Safe to re-run: every request is an idempotent create-or-update.

    \b
    Examples:
        azdeploy apply examples/windows_vm.yaml
        azdeploy apply deploy.yaml --max-workers 4
    """
    cfg = _load_config(ctx)
    try:
        declaration, execution_plan = _load(file, cfg)
        provider = _get_provider(subscription, ctx.obj.get("config"))
    except (DeclarationError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    cancel_event = threading.Event()
    executor = ApplyExecutor(
        provider,
        max_workers=max_workers or cfg.max_workers,
        cancel_event=cancel_event,
        state_store=_get_state_store(cfg),
        deployment=declaration.name,
        on_state_change=_print_state_change,
    )

    click.echo(f"Applying '{declaration.name}' ({len(execution_plan)} resources)...")
    try:
        with _cancel_on_interrupt(cancel_event):
            report = executor.apply(declaration.graph(), execution_plan)
    except PartialApplyError as e:
        console.print(_report_table("Apply incomplete", e.report))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except StateStoreError as e:
        click.echo(f"Resources applied, but the apply record could not be saved: {e}", err=True)
        sys.exit(1)

    click.echo(f"Success! {len(report.succeeded)} resources created or updated.")


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--subscription", help="Azure subscription id", type=str)
@click.option("--max-workers", type=click.IntRange(min=1), help="Parallel operations per level")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def destroy(
    ctx: click.Context, file: str, subscription: str | None, max_workers: int | None, yes: bool
) -> None:
    """Delete every resource in FILE in reverse dependency order.

    Deleting an already-absent resource counts as success, so destroy can be
    re-run after a partial failure.

    \b
    Examples:
        azdeploy destroy examples/windows_vm.yaml
        azdeploy destroy deploy.yaml --yes
    """
    cfg = _load_config(ctx)
    try:
        declaration, _ = _load(file, cfg)
        store = _get_state_store(cfg)
        provider = _get_provider(subscription, ctx.obj.get("config"))
    except (DeclarationError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    cancel_event = threading.Event()
    executor = DestroyExecutor(
        provider,
        max_workers=max_workers or cfg.max_workers,
        cancel_event=cancel_event,
        state_store=store,
        deployment=declaration.name,
        on_state_change=_print_state_change,
    )

    graph = declaration.graph()
    try:
        order = executor.destroy_order(graph)
    except StateStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not yes:
        click.echo(f"The following {len(order)} resources will be DELETED:")
        for rid in order:
            click.echo(f"  - {rid}")
        if not click.confirm("Are you sure you want to continue?", default=False):
            click.echo("Cancelled.")
            return

    click.echo(f"Destroying '{declaration.name}'...")
    try:
        with _cancel_on_interrupt(cancel_event):
            report = executor.destroy(graph)
    except PartialDestroyError as e:
        console.print(_report_table("Destroy incomplete", e.report))
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except StateStoreError as e:
        click.echo(f"Resources deleted, but the apply record could not be removed: {e}", err=True)
        sys.exit(1)

    absent = len(report.already_absent)
    suffix = f" ({absent} already absent)" if absent else ""
    click.echo(f"Success! {len(report.deleted)} resources deleted{suffix}.")


# ============================================================================
# VM COMMANDS
# ============================================================================


@main.group()
def vm() -> None:
    """Lifecycle operations on a single VM."""


def _vm_controller(ctx: click.Context, subscription: str | None) -> VMLifecycleController:
    try:
        provider = _get_provider(subscription, ctx.obj.get("config"))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    return VMLifecycleController(provider)


def _finish(result: LifecycleResult) -> None:
    if result.success:
        click.echo(f"Success! {result.message}")
    else:
        click.echo(f"Error: {result.message}", err=True)
        sys.exit(1)


def _flag(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def _status_text(status: dict) -> str:
    return f"{status.get('code')} ({status.get('display_status')})"


def vm_options(fn):
    fn = click.option("--subscription", help="Azure subscription id", type=str)(fn)
    fn = click.option("--resource-group", "--rg", required=True, help="Resource group", type=str)(fn)
    fn = click.argument("vm_name", type=str)(fn)
    return fn


@vm.command(name="show")
@vm_options
@click.pass_context
def vm_show(ctx: click.Context, vm_name: str, resource_group: str, subscription: str | None) -> None:
    """Show hardware, storage, network and instance status of a VM."""
    controller = _vm_controller(ctx, subscription)
    try:
        info = controller.get_vm_info(vm_name, resource_group)
    except RemoteError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if info is None:
        click.echo(f"Error: VM '{vm_name}' not found in {resource_group}", err=True)
        sys.exit(1)

    table = Table(title=f"VM {info.name}", show_header=False)
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Type", escape(info.vm_type or "-"))
    table.add_row("Size", info.vm_size or "-")
    table.add_row("Power state", info.power_state.value)
    table.add_row("Provisioning", info.provisioning_state or "-")
    table.add_row("Location", info.location or "-")
    if info.image:
        image = info.image
        table.add_row(
            "Image",
            escape(f"{image.get('publisher')}:{image.get('offer')}:{image.get('sku')}:{image.get('version')}"),
        )
    if info.os_disk:
        table.add_row(
            "OS disk",
            escape(f"{info.os_disk.get('name')} ({info.os_disk.get('os_type')}, caching {info.os_disk.get('caching')})"),
        )
    table.add_row("Computer name", info.computer_name or "-")
    table.add_row("Admin user", info.admin_username or "-")
    table.add_row("Provision VM agent", _flag(info.provision_vm_agent))
    table.add_row("Automatic updates", _flag(info.enable_automatic_updates))
    for nic_id in info.network_interface_ids:
        table.add_row("NIC", escape(nic_id))
    for disk in info.data_disks:
        table.add_row("Data disk", escape(f"LUN {disk.get('lun')}: {disk.get('name')} {disk.get('size_gb')}GB"))
    for status in info.statuses:
        table.add_row("Status", escape(_status_text(status)))
    if info.vm_agent:
        table.add_row("VM agent", escape(info.vm_agent.get("version") or "-"))
        for status in info.vm_agent.get("statuses") or []:
            table.add_row("VM agent status", escape(_status_text(status)))
    for disk in info.disk_statuses:
        for status in disk.get("statuses") or []:
            table.add_row("Disk status", escape(f"{disk.get('name')}: {_status_text(status)}"))
    table.add_row("Id", escape(info.id or "-"))
    console.print(table)


@vm.command(name="start")
@vm_options
@click.pass_context
def vm_start(ctx: click.Context, vm_name: str, resource_group: str, subscription: str | None) -> None:
    """Start a stopped or deallocated VM."""
    click.echo(f"Starting VM '{vm_name}'...")
    _finish(_vm_controller(ctx, subscription).start_vm(vm_name, resource_group))


@vm.command(name="stop")
@vm_options
@click.pass_context
def vm_stop(ctx: click.Context, vm_name: str, resource_group: str, subscription: str | None) -> None:
    """Power off a VM (compute stays allocated; use deallocate to stop billing)."""
    click.echo(f"Stopping VM '{vm_name}'...")
    _finish(_vm_controller(ctx, subscription).stop_vm(vm_name, resource_group))


@vm.command(name="deallocate")
@vm_options
@click.pass_context
def vm_deallocate(ctx: click.Context, vm_name: str, resource_group: str, subscription: str | None) -> None:
    """Deallocate a VM, releasing compute but keeping its disks."""
    click.echo(f"Deallocating VM '{vm_name}'...")
    _finish(_vm_controller(ctx, subscription).deallocate_vm(vm_name, resource_group))


@vm.command(name="resize")
@vm_options
@click.argument("size", type=str)
@click.pass_context
def vm_resize(
    ctx: click.Context, vm_name: str, resource_group: str, subscription: str | None, size: str
) -> None:
    """Resize a VM.

    \b
    Examples:
        azdeploy vm resize myVM Standard_DS2 --rg myResourceGroup
    """
    click.echo(f"Resizing VM '{vm_name}' to {size}...")
    try:
        result = _vm_controller(ctx, subscription).resize_vm(vm_name, resource_group, size)
    except VMLifecycleControlError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    _finish(result)


@vm.command(name="attach-disk")
@vm_options
@click.option("--size-gb", required=True, type=click.IntRange(min=1), help="Disk size in GB")
@click.option("--lun", type=int, help="Logical unit number (next free if omitted)")
@click.option(
    "--caching",
    type=click.Choice(["None", "ReadOnly", "ReadWrite"]),
    default="ReadWrite",
    show_default=True,
)
@click.pass_context
def vm_attach_disk(
    ctx: click.Context,
    vm_name: str,
    resource_group: str,
    subscription: str | None,
    size_gb: int,
    lun: int | None,
    caching: str,
) -> None:
    """Attach a new empty data disk to a VM."""
    click.echo(f"Attaching {size_gb}GB data disk to VM '{vm_name}'...")
    try:
        result = _vm_controller(ctx, subscription).attach_data_disk(
            vm_name, resource_group, size_gb=size_gb, lun=lun, caching=caching
        )
    except VMLifecycleControlError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    _finish(result)


# ============================================================================
# CONFIG COMMANDS
# ============================================================================


@main.group(name="config")
def config_group() -> None:
    """Show or change azdeploy configuration."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the current configuration."""
    cfg = _load_config(ctx)
    click.echo(f"subscription_id = {cfg.subscription_id or '(not set)'}")
    click.echo(f"default_region  = {cfg.default_region}")
    click.echo(f"max_workers     = {cfg.max_workers}")
    click.echo(f"state_dir       = {cfg.resolved_state_dir()}")


@config_group.command(name="set")
@click.argument("key", type=click.Choice(["subscription_id", "default_region", "max_workers", "state_dir"]))
@click.argument("value", type=str)
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value."""
    converted: str | int = value
    if key == "max_workers":
        try:
            converted = int(value)
        except ValueError:
            click.echo("Error: max_workers must be an integer", err=True)
            sys.exit(1)
        if converted <= 0:
            click.echo("Error: max_workers must be positive", err=True)
            sys.exit(1)

    try:
        ConfigManager.update_config(ctx.obj.get("config"), **{key: converted})
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Set {key} = {converted}")


if __name__ == "__main__":
    main()
