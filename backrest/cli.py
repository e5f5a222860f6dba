"""
CLI entry point for pg_backrest.

Backup flags may be given before or after the operation:
    pg_backrest --stanza=main --type=full backup
    pg_backrest --stanza=main backup --type=full
"""

from dataclasses import replace

import click

from backrest import __version__, configure_logging
from backrest.config import BACKUP_TYPE_INCR, BACKUP_TYPES, CONFIG_DEFAULT_PATH, load_config
from backrest.errors import BackrestError
from backrest.orchestrator import (
    OP_ARCHIVE_GET,
    OP_ARCHIVE_PUSH,
    OP_BACKUP,
    OP_EXPIRE,
    Orchestrator,
    RunOptions,
)


@click.group()
@click.version_option(__version__, prog_name='pg_backrest', message='%(prog)s %(version)s')
@click.option('--stanza', required=True, help='Stanza (cluster) to operate on.')
@click.option('--config', 'config_path', default=CONFIG_DEFAULT_PATH, show_default=True,
              help='Alternate path for pg_backrest.conf.')
@click.option('--type', 'backup_type', type=click.Choice(BACKUP_TYPES), default=BACKUP_TYPE_INCR,
              show_default=True, help='Type of backup to perform.')
@click.option('--no-start-stop', is_flag=True,
              help='Do not call pg_start/stop_backup(). Postmaster should not be running.')
@click.option('--force', is_flag=True,
              help='Force backup when --no-start-stop passed and postmaster.pid exists. '
                   'Use with extreme caution as this will produce an inconsistent backup!')
@click.option('--test-no-fork', is_flag=True, hidden=True)
@click.pass_context
def cli(ctx, stanza, config_path, backup_type, no_start_stop, force, test_no_fork):
    """pg_backrest - Simple Postgres Backup and Restore."""
    ctx.obj = {
        'stanza': stanza,
        'config_path': config_path,
        'options': RunOptions(
            backup_type=backup_type,
            no_start_stop=no_start_stop,
            force=force,
            test_no_fork=test_no_fork
        ),
    }


def _run(ctx, operation, *args):
    configure_logging()

    try:
        config = load_config(ctx.obj['config_path'], ctx.obj['stanza'])
    except BackrestError as e:
        click.echo(f"ERROR: {e}", err=True)
        ctx.exit(e.exit_code)

    configure_logging(config.log.level_console)

    orchestrator = Orchestrator(config, ctx.obj['options'])
    ctx.exit(orchestrator.run(operation, [arg for arg in args if arg is not None]))


@cli.command('archive-get')
@click.argument('segment', required=False)
@click.argument('destination', required=False)
@click.pass_context
def archive_get(ctx, segment, destination):
    """Retrieve an archive file from backup."""
    _run(ctx, OP_ARCHIVE_GET, segment, destination)


@cli.command('archive-push')
@click.argument('segment', required=False)
@click.pass_context
def archive_push(ctx, segment):
    """Push an archive file to backup."""
    _run(ctx, OP_ARCHIVE_PUSH, segment)


@cli.command('backup')
@click.option('--type', 'backup_type', type=click.Choice(BACKUP_TYPES), default=None,
              help='Type of backup to perform (overrides the group option).')
@click.option('--no-start-stop', is_flag=True,
              help='Do not call pg_start/stop_backup().')
@click.option('--force', is_flag=True,
              help='Force backup when --no-start-stop passed and postmaster.pid exists.')
@click.pass_context
def backup(ctx, backup_type, no_start_stop, force):
    """Backup a cluster."""
    options = ctx.obj['options']
    if backup_type is not None:
        options = replace(options, backup_type=backup_type)
    if no_start_stop:
        options = replace(options, no_start_stop=True)
    if force:
        options = replace(options, force=True)
    ctx.obj['options'] = options

    _run(ctx, OP_BACKUP)


@cli.command('expire')
@click.pass_context
def expire(ctx):
    """Expire old backups (automatically run after backup)."""
    _run(ctx, OP_EXPIRE)


def main():
    cli(prog_name='pg_backrest')


if __name__ == '__main__':
    main()
