"""
Command line interface for Arclift.

    arclift                  run scheduled backups (blocking)
    arclift backup [add]     run a backup now
    arclift backup list      list stored backups
    arclift backup purge     delete backups beyond the retention count
    arclift config init      write a default config file
"""

import logging

import click

from arclift import __version__, configure_logging, create_backup_manager
from arclift.config import load_config, generate_config_file, ConfigError

logger = logging.getLogger(__name__)


def _load(ctx):
    """Load config and build the backup manager once per invocation."""
    obj = ctx.ensure_object(dict)
    if 'manager' not in obj:
        configure_logging()
        try:
            config = load_config(obj.get('config_path'), validate=False)
            configure_logging(config.logger.level, config.logger.mode, config.logger.file or None)
            # Corrections made here are logged through the configured handlers
            config.validate()
        except (ConfigError, OSError) as e:
            raise click.ClickException(str(e))

        try:
            obj['manager'] = create_backup_manager(config)
        except Exception as e:
            logger.error(f"Failed to initialize: {e}")
            raise click.ClickException(str(e))
        obj['config'] = config
    return obj['manager']


def _run_backup(manager):
    try:
        summary = manager.backup()
    except Exception as e:
        logger.error(f"Error backing up: {e}")
        raise click.ClickException(str(e))

    if summary.all_failed:
        raise click.ClickException(f"Backup failed for all {len(summary.failed)} directories")


@click.group(invoke_without_command=True)
@click.option('-c', '--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Path to config file')
@click.version_option(__version__, prog_name='arclift')
@click.pass_context
def cli(ctx, config_path):
    """Back up directories to S3 on a schedule."""
    ctx.ensure_object(dict)['config_path'] = config_path

    if ctx.invoked_subcommand is None:
        from arclift.scheduler import init_scheduler, start_scheduler, stop_scheduler

        manager = _load(ctx)
        config = ctx.obj['config']
        try:
            init_scheduler(manager, config.backup.cron)
        except ValueError as e:
            raise click.ClickException(f"Invalid cron expression {config.backup.cron!r}: {e}")

        try:
            start_scheduler()
        except (KeyboardInterrupt, SystemExit):
            stop_scheduler()


@cli.group(invoke_without_command=True)
@click.pass_context
def backup(ctx):
    """Perform backups & related operations."""
    if ctx.invoked_subcommand is None:
        _run_backup(_load(ctx))


@backup.command('add')
@click.pass_context
def backup_add(ctx):
    """Perform a backup."""
    _run_backup(_load(ctx))


@backup.command('list')
@click.pass_context
def backup_list(ctx):
    """List backups."""
    manager = _load(ctx)
    try:
        backups = manager.list_backups()
    except Exception as e:
        logger.error(f"Error listing backups: {e}")
        raise click.ClickException(str(e))

    if not backups:
        click.echo("No backups found")
        return

    width = max(len('Backup Key'), *(len(key) for key in backups))
    number_width = max(1, len(str(len(backups))))

    click.echo(f"\nTotal backups {len(backups)}")
    click.echo(f"{'#':>{number_width}}  {'Backup Key':<{width}}")
    click.echo(f"{'-' * number_width}  {'-' * width}")
    for i, key in enumerate(backups, start=1):
        click.echo(f"{i:>{number_width}}  {key:<{width}}")


@backup.command('purge')
@click.pass_context
def backup_purge(ctx):
    """Purge old backups."""
    manager = _load(ctx)
    try:
        summary = manager.purge_old_backups()
    except Exception as e:
        logger.error(f"Error purging old backups: {e}")
        raise click.ClickException(str(e))

    click.echo(f"Deleted {len(summary['deleted'])} backups, {len(summary['failed'])} failed")


@cli.group()
def config():
    """Manage the configuration file."""


@config.command('init')
@click.option('--force', is_flag=True, help='Overwrite an existing config file')
@click.pass_context
def config_init(ctx, force):
    """Initialize application config."""
    try:
        path = generate_config_file(ctx.obj.get('config_path'), force=force)
    except ConfigError as e:
        raise click.ClickException(str(e))

    click.echo(f"\nConfig file path: {path}")
    click.echo("Default config file is written at above location. Edit config as per your needs.\n")


def main():
    cli(obj={})
