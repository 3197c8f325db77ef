"""
Command line for s3backup.

Maps sub-commands to the backup executor. Configuration comes from the
environment (see s3backup.config); SIGINT/SIGTERM and the configured
timeout cancel the run.
"""

import argparse
import logging
import platform
import signal
import sys

from s3backup import __version__, configure_logging
from s3backup.backup.executor import BackupExecutor
from s3backup.backup.orchestrator import CancellationToken
from s3backup.backup.retention import Grouping, KeepAgePolicy, KeepCountPolicy
from s3backup.backup.storage import S3Storage, StorageError
from s3backup.config import ConfigError, load_settings


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog='s3backup', description="Backup a directory to S3")
    p.add_argument('--env', default=None, help="Configuration name: development or production")
    p.add_argument('--debug', action='store_true', help="Enable debug logging")

    sub = p.add_subparsers(dest='command', required=True)

    sub.add_parser('upload', help="Upload directory contents to S3")

    backup_db = sub.add_parser('backup-db', help="Backup databases and upload to S3")
    backup_db.add_argument('--no-upload', action='store_true', help="Don't upload to S3")
    _add_retention_arguments(backup_db)

    rotate = sub.add_parser('rotate', help="Delete old backups locally and from S3")
    _add_retention_arguments(rotate)

    sub.add_parser('check', help="Check bucket access")
    sub.add_parser('version', help="Print the version number")
    return p


def _add_retention_arguments(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--keep-last', type=int, default=None,
                       help="Keep the newest N backups (file ends with the backup pattern)")
    group.add_argument('--delete-days', type=int, default=None,
                       help="Delete backups older than N days")
    parser.add_argument('--group-by-name', action='store_true',
                        help="Apply --keep-last per database instead of across all backups")


def build_policy(args):
    """Retention policy from --keep-last / --delete-days, or None."""
    keep_last = getattr(args, 'keep_last', None)
    delete_days = getattr(args, 'delete_days', None)

    if keep_last is not None:
        return KeepCountPolicy(count=keep_last)
    if delete_days is not None and delete_days >= 0:
        return KeepAgePolicy.older_than_days(delete_days)
    return None


def install_signal_handlers(token: CancellationToken):
    def on_signal(signum, frame):
        logger.warning(f"Signal caught: {signal.Signals(signum).name}, cancelling...")
        token.cancel('interrupted')

    for name in ('SIGINT', 'SIGTERM', 'SIGQUIT', 'SIGHUP'):
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), on_signal)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == 'version':
        print(f"Version: {__version__}")
        print(f"Runtime: Python {platform.python_version()}")
        return 0

    try:
        settings = load_settings(args.env)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    configure_logging(debug=args.debug or settings.debug, log_dir=settings.log_dir)

    try:
        storage = S3Storage(
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            bucket_name=settings.bucket,
            region=settings.region,
            endpoint_url=settings.endpoint,
            max_pool_connections=max(10, settings.file_concurrency * settings.part_concurrency),
        )
    except StorageError as e:
        logger.error(f"Error: {e}")
        return 1

    if args.command == 'check':
        try:
            storage.test_connection()
        except StorageError as e:
            logger.error(f"Error: {e}")
            return 1
        logger.info(f"Bucket {settings.bucket} is reachable")
        return 0

    token = CancellationToken.with_timeout(settings.timeout_seconds)
    install_signal_handlers(token)

    grouping = Grouping.BY_DERIVED_NAME if getattr(args, 'group_by_name', False) else Grouping.NONE
    executor = BackupExecutor(settings, storage, token)

    if args.command == 'upload':
        summary = executor.execute(dump=False, policy=None, upload=True)
    elif args.command == 'backup-db':
        summary = executor.execute(dump=True, policy=build_policy(args), grouping=grouping,
                                   upload=not args.no_upload)
    else:
        policy = build_policy(args)
        if policy is None:
            logger.error("rotate needs --keep-last or --delete-days")
            return 2
        summary = executor.execute(dump=False, policy=policy, grouping=grouping, upload=False)

    counters = summary.counters
    logger.info(
        f"Finished with status {summary.status}: uploaded: {counters.uploaded} | "
        f"skipped: {counters.skipped} | deleted: {counters.deleted}"
    )
    return 0 if summary.status == 'success' else 1


if __name__ == '__main__':
    sys.exit(main())
