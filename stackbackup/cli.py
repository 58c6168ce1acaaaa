"""CLI entrypoint for backup, restore, retention and migration.

Usage:
  docker-stack-backup [--yes] [--non-interactive] [--config-file PATH] backup [--name NAME]
  docker-stack-backup restore [SELECTOR]
  docker-stack-backup list
  docker-stack-backup prune [--keep N] [--keep-days D] [--dry-run]
  docker-stack-backup migrate [--portainer-path P] [--npm-path P] [--tools-path P] [--backup-path P]
  docker-stack-backup rollback SNAPSHOT

Exit codes: 0 success, 1 failed or aborted, 2 usage/configuration error, 3 partial.
"""
import argparse
import sys

from stackbackup import __version__
from stackbackup.config import Config
from stackbackup.errors import BackupManagerError, ConfigError, LockError
from stackbackup.executor import BackupExecutor, RestoreExecutor, list_snapshots
from stackbackup.locking import OperationLock
from stackbackup.migration import MigrationController, rollback_to_snapshot
from stackbackup.prompts import Prompter
from stackbackup.retention import prune
from stackbackup.utils import format_bytes, get_display_timezone, get_logger, setup_logging

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 3

STATUS_EXIT = {
    'success': EXIT_SUCCESS,
    'partial': EXIT_PARTIAL,
    'failed': EXIT_FAILED,
    'aborted': EXIT_FAILED,
}


def build_parser():
    parser = argparse.ArgumentParser(
        prog='docker-stack-backup',
        description='Backup, restore and migrate a Portainer + nginx-proxy-manager Docker host.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-y', '--yes', action='store_true', help='Answer yes to all confirmations')
    parser.add_argument('-n', '--non-interactive', action='store_true', help='Never prompt; use safe defaults')
    parser.add_argument('--config-file', type=str, help='Configuration file (default /etc/docker-backup-manager.conf)')
    parser.add_argument('--timeout', type=int, help='Prompt timeout in seconds')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('backup', help='Create a snapshot')
    p.add_argument('--name', type=str, help='Custom name appended to the snapshot id')
    p.add_argument('--no-retention', action='store_true', help='Skip retention after the backup')

    p = sub.add_parser('restore', help='Restore a snapshot (default: latest)')
    p.add_argument('selector', nargs='?', default='latest',
                   help='Backup number from "list", snapshot id, file name, path or "latest"')

    sub.add_parser('list', help='List snapshots, newest first')

    p = sub.add_parser('prune', help='Apply retention to the backup directory')
    p.add_argument('--keep', type=int, help='Keep the newest N snapshots')
    p.add_argument('--keep-days', type=int, help='Keep snapshots younger than D days')
    p.add_argument('--dry-run', action='store_true')

    p = sub.add_parser('migrate', help='Move data directories to new paths')
    p.add_argument('--portainer-path', type=str)
    p.add_argument('--npm-path', type=str)
    p.add_argument('--tools-path', type=str)
    p.add_argument('--backup-path', type=str)

    p = sub.add_parser('rollback', help='Restore a pre-migration snapshot with its original paths')
    p.add_argument('snapshot', help='Snapshot selector (as for restore)')

    return parser


def load_config(args, environ=None):
    config = Config.load(args.config_file, environ=environ)
    if args.yes:
        config.auto_yes = True
    if args.non_interactive:
        config.non_interactive = True
    if args.timeout is not None:
        config.prompt_timeout = args.timeout
    return config


def print_report(report):
    print(report.summary())
    if report.recovery_file:
        print(f"Recovery information: {report.recovery_file}")


def cmd_list(config):
    snapshots = list_snapshots(config, with_details=True)
    if not snapshots:
        print(f"No backups found in {config.backup_path}")
        return EXIT_SUCCESS
    tz = get_display_timezone()
    for index, snap in enumerate(snapshots, start=1):
        created = snap.created.astimezone(tz).strftime('%Y-%m-%d %H:%M:%S') if snap.created else '?'
        stacks = '-'
        if snap.stack_state is not None:
            stacks = f"{len(snap.stack_state.stacks)} stacks"
            if snap.stack_state.is_legacy:
                stacks += ' (legacy)'
        arch = snap.metadata.system.architecture if snap.metadata else '?'
        print(f"{index:>3}. {snap.id}  {created}  {format_bytes(snap.size_bytes):>9}  {arch:<8} {stacks}")
    return EXIT_SUCCESS


def cmd_prune(config, args):
    keep = args.keep
    keep_days = args.keep_days
    if keep is None and keep_days is None:
        keep = config.backup_retention
        keep_days = config.backup_retention_days
    if keep is not None and keep < 1:
        raise ConfigError("--keep must be at least 1")
    with OperationLock(config.lock_dir, 'prune'):
        summary = prune(config.host_path(config.backup_path), keep_count=keep, keep_days=keep_days, dry_run=args.dry_run)
    verb = 'Would remove' if args.dry_run else 'Removed'
    print(f"{verb} {len(summary.removed)} snapshot(s), kept {len(summary.kept)}, "
          f"{format_bytes(summary.reclaimed_bytes)} reclaimed")
    return EXIT_SUCCESS


def cmd_migrate(config, args):
    changes = {
        'portainer_path': args.portainer_path,
        'npm_path': args.npm_path,
        'tools_path': args.tools_path,
        'backup_path': args.backup_path,
    }
    controller = MigrationController(config)
    report = controller.run(changes, confirmed=config.auto_yes)
    print_report(report)
    if report.status == 'failed' and report.rollback_snapshot and report.moved:
        print(f"Rollback snapshot: {report.rollback_snapshot}")
        if Prompter.from_config(config).confirm("Migration failed. Roll back now?", default=False):
            result = controller.rollback(report)
            print_report(result)
            return STATUS_EXIT.get(result.status, EXIT_FAILED)
    return STATUS_EXIT.get(report.status, EXIT_FAILED)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    try:
        config = load_config(args)
    except ConfigError as e:
        setup_logging(level_name='DEBUG' if args.verbose else None)
        logger.error("%s", e)
        return EXIT_USAGE

    setup_logging(log_file=config.log_file, level_name='DEBUG' if args.verbose else None)

    try:
        if args.command == 'list':
            return cmd_list(config)
        if args.command == 'prune':
            return cmd_prune(config, args)
        if args.command == 'backup':
            report = BackupExecutor(config).run(custom_name=args.name, run_retention=not args.no_retention)
        elif args.command == 'restore':
            report = RestoreExecutor(config).run(args.selector, confirmed=config.auto_yes)
        elif args.command == 'migrate':
            return cmd_migrate(config, args)
        elif args.command == 'rollback':
            report = rollback_to_snapshot(config, args.snapshot, confirmed=config.auto_yes)
        else:
            parser.error(f"unknown command {args.command}")
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except LockError as e:
        logger.error("%s", e)
        return EXIT_FAILED
    except BackupManagerError as e:
        logger.error("%s failed: %s", args.command, e)
        return EXIT_FAILED

    print_report(report)
    return STATUS_EXIT.get(report.status, EXIT_FAILED)


if __name__ == '__main__':
    sys.exit(main())
