"""Command-line interface for kvm-borg."""

import sys
import click
from typing import Optional

from .backup_engine import BackupOrchestrator
from .config import Config
from .disk_tools import DiskInspector
from .exceptions import KvmBorgError, PreconditionError, RepositoryError
from .repository import BorgRepository
from .storage_manager import StorageClassifier
from .strategy import needs_zero_free_space, select_strategy
from .utils import NotificationManager
from .vm_manager import VirshPlatform


EXIT_PRECONDITION = 1
EXIT_PARTIAL_FAILURE = 3


def initialize_config(config_file: Optional[str] = None) -> tuple:
    """Initialize configuration and notification manager."""
    try:
        config = Config(config_file)
        notifier = NotificationManager(config)
        return config, notifier
    except Exception as e:
        click.echo(f"Error: Failed to initialize configuration: {str(e)}", err=True)
        sys.exit(1)


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True,
              help='Enable verbose output')
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """kvm-borg - Borg backups of KVM virtual machines.

    Shuts each machine down, archives its definition, disk images and
    pass-through devices into a borg repository, prunes old archives and
    starts it again.
    """
    ctx.ensure_object(dict)

    config_obj, notifier_obj = initialize_config(config)

    if verbose:
        config_obj.set('notifications.level', 'DEBUG')
        notifier_obj = NotificationManager(config_obj)

    ctx.obj['config'] = config_obj
    ctx.obj['notifier'] = notifier_obj


@cli.command()
@click.argument('repository')
@click.argument('vm_name', required=False)
@click.option('--strict', is_flag=True,
              help='Exit non-zero when any archive or VM failed')
@click.pass_context
def orchestrate(ctx, repository: str, vm_name: Optional[str], strict: bool):
    """Back up VM_NAME, or every VM, into REPOSITORY."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    try:
        orchestrator = BackupOrchestrator(config_obj, notifier_obj)
        summary = orchestrator.run(repository, vm_name)
    except PreconditionError as e:
        notifier_obj.error(f"Error: {e}")
        sys.exit(EXIT_PRECONDITION)

    if (strict or config_obj.strict_exit) and not summary.ok:
        sys.exit(EXIT_PARTIAL_FAILURE)


@cli.command()
@click.argument('vm_name', required=False)
@click.pass_context
def plan(ctx, vm_name: Optional[str]):
    """Show how each VM's storage would be archived, without touching it."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    hypervisor = VirshPlatform(config_obj, notifier_obj)
    classifier = StorageClassifier(hypervisor, DiskInspector(config_obj, notifier_obj), notifier_obj)

    try:
        if vm_name:
            if not hypervisor.machine_exists(vm_name):
                click.echo(f"VM not found: {vm_name}", err=True)
                sys.exit(EXIT_PRECONDITION)
            machines = [vm_name]
        else:
            machines = hypervisor.list_machines()
    except KvmBorgError as e:
        notifier_obj.error(f"Failed to list VMs: {e}")
        sys.exit(EXIT_PRECONDITION)

    for name in machines:
        if name in config_obj.exclude_vms:
            click.echo(f"\n{name}: excluded")
            continue
        click.echo(f"\n{name}:")
        try:
            items = classifier.classify(name)
        except KvmBorgError as e:
            click.echo(f"  storage unavailable: {e}")
            continue
        if not items:
            click.echo("  (no storage)")
        for item in items:
            strategy = select_strategy(item).value
            if needs_zero_free_space(item):
                strategy += " + zerofree"
            fstype = f" [{item.fstype}]" if item.fstype else ""
            click.echo(f"  {item.category.value:<18} {item.path}{fstype} -> {strategy}")


@cli.command()
@click.argument('repository')
@click.option('--encryption', '-e', help='Borg encryption method (default from config)')
@click.pass_context
def init(ctx, repository: str, encryption: Optional[str]):
    """Initialize a new borg REPOSITORY."""
    config_obj = ctx.obj['config']
    notifier_obj = ctx.obj['notifier']

    try:
        BorgRepository(config_obj, notifier_obj).init(repository, encryption)
    except RepositoryError as e:
        notifier_obj.error(str(e))
        sys.exit(1)
    notifier_obj.success(f"Repository initialized: {repository}")


def main():
    """Main entry point for CLI."""
    cli()


if __name__ == '__main__':
    main()
