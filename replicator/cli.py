"""
Command line interface for running replication jobs from cron.

    flask --app replicator replicate run nightly
    flask --app replicator replicate list
    flask --app replicator replicate unlock nightly
"""

import os
import sys

import click
from flask import current_app
from flask.cli import AppGroup

from replicator.models import ReplicationJob
from replicator.replication.executor import ReplicationExecutor, lock_path_for
from replicator.replication.lock import RunLock


# Exit status of `replicate run` when another run holds the lock
EXIT_ALREADY_RUNNING = 2

replicate_cli = AppGroup('replicate', help='Run and inspect replication jobs.')


@replicate_cli.command('run')
@click.argument('name')
@click.option('--allow-disabled', is_flag=True, help='Run the job even if it is disabled.')
def run_command(name, allow_disabled):
    """Run replication job NAME in the foreground."""
    job = ReplicationJob.query.filter_by(name=name).first()
    if not job:
        raise click.ClickException(f"Replication job not found: {name}")

    if not job.enabled and not allow_disabled:
        raise click.ClickException(f"Replication job is disabled: {name}")

    executor = ReplicationExecutor(job)
    run = executor.execute()

    for result in run.source_results:
        target = result.snapshot_path or result.destination
        click.echo(f"{result.status:8} {result.source_path} -> {target}")

    if executor.lock_contended:
        click.echo(f"Skipped: {run.error_message}", err=True)
        sys.exit(EXIT_ALREADY_RUNNING)

    if run.status != 'success':
        click.echo(f"Replication failed: {run.error_message}", err=True)
        sys.exit(1)

    click.echo(f"Replication of {name} completed successfully.")


@replicate_cli.command('list')
def list_command():
    """List configured replication jobs."""
    jobs = ReplicationJob.query.order_by(ReplicationJob.name).all()
    if not jobs:
        click.echo('No replication jobs configured.')
        return

    for job in jobs:
        state = 'enabled' if job.enabled else 'disabled'
        schedule = job.schedule_cron or 'manual'
        click.echo(
            f"{job.name}\t{job.transfer_mode}/{job.replication_type}\t"
            f"{state}\t{schedule}\t{len(job.source_path_list)} sources"
        )


@replicate_cli.command('unlock')
@click.argument('name')
def unlock_command(name):
    """Remove a stale run lock left behind by job NAME."""
    path = lock_path_for(name, current_app.config['LOCK_DIR'])
    if not os.path.exists(path):
        click.echo(f"No lock held for {name}.")
        return

    owner = RunLock(path).read_owner()
    os.unlink(path)
    click.echo(f"Removed lock {path} (was held by pid {owner or 'unknown'}).")
