#!/usr/bin/env python3
"""
multissh - CLI interface.
"""

import os
import sys
import json
from typing import List, Optional
import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from . import __version__
from .config import RunConfig, load_inventory, parse_host_string
from .errors import ConfigurationError
from .logger import StructuredLogger
from .models import (
    AgentAuth, CommandJob, Direction, KeyAuth, OutcomeKind, PasswordAuth, Target, TransferJob
)
from .scheduler import MultiSSH

# Author: Vamsi


def common_options(func):
    """Options shared by every run command."""
    options = [
        click.option('--config', '-c', 'inventory', help='Inventory file (YAML or JSON)'),
        click.option('--hosts', '-h', help='Comma-separated list of [user@]host[:port] (overrides inventory)'),
        click.option('--user', '-u', help='Default SSH username for --hosts'),
        click.option('--password', '-p', help='SSH password for --hosts'),
        click.option('--key-file', '-k', help='SSH private key file for --hosts'),
        click.option('--port', type=int, default=22, help='Default SSH port for --hosts'),
        click.option('--parallel', type=click.IntRange(min=1), help='Maximum hosts in flight'),
        click.option('--connect-timeout', type=float, help='Connect timeout in seconds'),
        click.option('--timeout', type=float, help='Command/transfer timeout in seconds'),
        click.option('--deadline', type=float, help='Global run deadline in seconds'),
        click.option('--fail-fast', is_flag=True, help='Stop starting new hosts after the first failure'),
        click.option('--output', '-o', type=click.Path(dir_okay=False), help='Export results as JSON'),
        click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging'),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__)
def cli():
    """multissh - run a command or copy a file on many hosts over SSH."""
    pass


@cli.command()
@common_options
@click.argument('command')
@click.pass_context
def execute(ctx, command, **options):
    """Execute a command on multiple hosts."""
    _run(ctx, CommandJob(command), options)


@cli.command()
@common_options
@click.argument('local_file')
@click.argument('remote_path')
@click.pass_context
def upload(ctx, local_file, remote_path, **options):
    """Upload a file to multiple hosts."""
    _run(ctx, TransferJob(Direction.UPLOAD, local_file, remote_path), options)


@cli.command()
@common_options
@click.argument('remote_path')
@click.argument('local_dir')
@click.pass_context
def download(ctx, remote_path, local_dir, **options):
    """Download a file from multiple hosts into LOCAL_DIR, one file per host."""
    _run(ctx, TransferJob(Direction.DOWNLOAD, local_dir, remote_path), options)


def build_targets(hosts: str, user: Optional[str], password: Optional[str],
                  key_file: Optional[str], port: int) -> List[Target]:
    """
    Build targets from a comma-separated host list.

    :return: List of targets
    :raises ConfigurationError: If a host has no username
    """
    auth = []
    if key_file:
        auth.append(KeyAuth(os.path.expanduser(key_file)))
    if password:
        auth.append(PasswordAuth(password))
    if not auth:
        auth.append(AgentAuth())

    targets = []
    for entry in hosts.split(','):
        entry = entry.strip()
        if not entry:
            continue
        host_user, address, host_port = parse_host_string(entry)
        host_user = host_user or user
        if not host_user:
            raise ConfigurationError(f"No username specified for {address}")
        targets.append(Target(address=address, username=host_user,
                              port=host_port or port, auth=auth))
    return targets


def _run(ctx, job, options):
    console = Console()
    verbose = options['verbose']

    try:
        # Load inventory
        if options['inventory']:
            inventory = load_inventory(options['inventory'])
            targets, cfg = inventory.targets, inventory.config
        else:
            targets, cfg = [], RunConfig()

        # Override with CLI arguments
        if options['hosts']:
            targets = build_targets(options['hosts'], options['user'], options['password'],
                                    options['key_file'], options['port'])
            if not options['inventory']:
                cfg.concurrency = max(len(targets), 1)

        cfg.merge_cli_args(
            concurrency=options['parallel'],
            connect_timeout=options['connect_timeout'],
            job_timeout=options['timeout'],
            run_timeout=options['deadline'],
            continue_on_error=False if options['fail_fast'] else None,
        )

        if not targets:
            console.print("[red]Error: No hosts specified[/red]")
            sys.exit(1)

        logger = StructuredLogger(level="debug" if verbose else "warning")
        engine = MultiSSH(cfg, logger, connector=(ctx.obj or {}).get('connector'))

        counts = {'success': 0, 'warning': 0, 'failure': 0}
        with engine.stream(targets, job) as handle:
            for target, outcome in handle:
                display_outcome(console, target, outcome, counts)
            report = handle.wait()

        display_summary(console, counts)

        if options['output']:
            export_report(report, options['output'])
            console.print(f"[green]Results exported to:[/green] {options['output']}")

    except (ConfigurationError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not report.ok:
        sys.exit(1)


def display_outcome(console, target, outcome, counts):
    """Print one host's outcome as soon as it arrives."""
    host = escape(f"[{target.label}]")
    if outcome.ok:
        counts['success'] += 1
        console.print(f"{host}: [green]success[/green]", highlight=False)
    elif outcome.kind is OutcomeKind.COMMAND_FAILED and outcome.exit_code is not None:
        counts['warning'] += 1
        console.print(f"{host}: [yellow]warning: exit status = {outcome.exit_code}[/yellow]",
                      highlight=False)
    else:
        counts['failure'] += 1
        console.print(f"{host}: [red]failure: {outcome.kind.value}: {escape(outcome.reason)}[/red]",
                      highlight=False)

    stdout = getattr(outcome, 'stdout', '')
    stderr = getattr(outcome, 'stderr', '')
    if stdout:
        console.print(stdout.rstrip(), style="cyan", markup=False, highlight=False)
    if stderr:
        console.print(stderr.rstrip(), style="magenta", markup=False, highlight=False)


def display_summary(console, counts):
    """Display run summary."""
    def noun(count):
        return "host" if count == 1 else "hosts"

    summary = Panel(
        f"[green]success: {counts['success']} {noun(counts['success'])}[/green] | "
        f"[yellow]warning: {counts['warning']} {noun(counts['warning'])}[/yellow] | "
        f"[red]failure: {counts['failure']} {noun(counts['failure'])}[/red]",
        title="Summary"
    )
    console.print(summary)


def export_report(report, filename):
    """
    Export a run report to a JSON file.

    :param report: RunReport to export
    :param filename: Output filename
    """
    directory = os.path.dirname(filename)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(filename, 'w', encoding='utf-8') as f:
        json.dump(report.to_dict(), f, indent=2)


if __name__ == '__main__':
    cli()
