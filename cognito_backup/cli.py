#!/usr/bin/env python3
"""
Command line entry point for cognito-backup.

    cognito-backup backup-users <user-pool-id>     Backup/export all users in a single user pool
    cognito-backup backup-groups <user-pool-id>    Backup/export all groups in a single user pool
    cognito-backup backup-all-users                Backup all users in all user pools for this account
    cognito-backup restore-users <user-pool-id> <temp-password>
    cognito-backup restore-groups <user-pool-id>

AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY and AWS_REGION can be specified in
env variables or ~/.aws/credentials.
"""

import asyncio
import logging
import os
import sys
import time
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser

from cognito_backup.cognito_backup import CognitoBackup, get_filename, get_groups_filename
from cognito_backup.pipeline import DEFAULT_CONCURRENCY


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(level: str, log_file: str) -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True)


def parse_arguments(argv=None):
    """Parse command line arguments."""
    common = ArgumentParser(add_help=False)
    common.add_argument("--region", type=str, default=None, help="AWS region (defaults to the boto3 configuration)")
    common.add_argument("--profile", type=str, default=None, help="Named profile from ~/.aws/credentials")
    common.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Maximum number of concurrent API calls per operation")
    common.add_argument("--max-retries", type=int, default=CognitoBackup.MAX_RETRIES, help="Maximum number of retry attempts for rate-limited requests")
    common.add_argument("--base-delay", type=float, default=CognitoBackup.BASE_DELAY, help="Base delay in seconds for exponential backoff")
    common.add_argument("--stack-trace", action="store_true", help="Log stack trace upon error")
    common.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], default="INFO", help="Set the logging level")
    common.add_argument("--log-file", type=str, default="cognito_backup.log", help="Log file (empty to disable)")

    s3 = ArgumentParser(add_help=False)
    s3.add_argument("--s3-bucket", type=str, default=None, help="S3 bucket to upload the backup to")
    s3.add_argument("--s3-key", type=str, default=None, help="S3 object key for upload (defaults to filename)")
    s3.add_argument("--compress", action="store_true", help="Compress the backup before uploading to S3")

    parser = ArgumentParser(description="Backup and restore AWS Cognito User Pool users and groups", formatter_class=ArgumentDefaultsHelpFormatter)
    commands = parser.add_subparsers(dest="command", metavar="command", required=True)

    def add_command(name, help_text, parents):
        return commands.add_parser(name, help=help_text, parents=parents, formatter_class=ArgumentDefaultsHelpFormatter)

    backup_users = add_command("backup-users", "Backup/export all users in a single user pool", [common, s3])
    backup_users.add_argument("user_pool_id", help="The user pool ID")
    backup_users.add_argument("--file", type=str, default=None, help="File to export to (defaults to <user-pool-id>.json)")

    backup_groups = add_command("backup-groups", "Backup/export all groups in a single user pool", [common, s3])
    backup_groups.add_argument("user_pool_id", help="The user pool ID")
    backup_groups.add_argument("--file", type=str, default=None, help="File to export to (defaults to <user-pool-id>_groups.json)")

    backup_all = add_command("backup-all-users", "Backup all users in all user pools for this account", [common, s3])
    backup_all.add_argument("--dir", type=str, default=".", help="Directory to export all pools to")

    restore_users = add_command("restore-users", "Restore/import users to a single user pool", [common])
    restore_users.add_argument("user_pool_id", help="The user pool ID")
    restore_users.add_argument("temp_password", help="Temporary password given to every restored user")
    restore_users.add_argument("--file", type=str, default=None, help="File to import from (defaults to <user-pool-id>.json)")

    restore_groups = add_command("restore-groups", "Restore/import groups to a single user pool", [common])
    restore_groups.add_argument("user_pool_id", help="The user pool ID")
    restore_groups.add_argument("--file", type=str, default=None, help="File to import from (defaults to <user-pool-id>_groups.json)")

    for restore in (restore_users, restore_groups):
        restore.add_argument("--rate", type=float, default=1 / CognitoBackup.RESTORE_MIN_INTERVAL, help="Maximum create calls per second")
        restore.add_argument("--allow-failures", action="store_true", help="Exit successfully even if some records failed to restore")

    args = parser.parse_args(argv)
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    if getattr(args, "rate", 1) <= 0:
        parser.error("--rate must be positive")
    return args


def build_backup(args) -> CognitoBackup:
    rate = getattr(args, "rate", None)
    return CognitoBackup(
        region=args.region,
        profile=args.profile,
        concurrency=args.concurrency,
        max_retries=args.max_retries,
        base_delay=args.base_delay,
        restore_min_interval=1.0 / rate if rate else None,
    )


def upload(backup: CognitoBackup, args, path: str, key=None) -> None:
    if args.s3_bucket:
        backup.upload_to_s3(path, args.s3_bucket, key, compress=args.compress)


def check_report(report, args, what: str) -> int:
    if report.failures:
        logger.error(f"{report.failures} of {report.total} {what} failed to restore")
        if not args.allow_failures:
            return 1
    return 0


def run(args, backup: CognitoBackup) -> int:
    """Dispatch one parsed command. Returns the process exit code."""
    start_time = time.time()
    command = args.command

    if command == "backup-users":
        output_file = args.file or get_filename(args.user_pool_id)
        total = asyncio.run(backup.backup_users(args.user_pool_id, output_file))
        logger.info(f"Exported {total} users to {output_file}")
        upload(backup, args, output_file, args.s3_key)
        exit_code = 0

    elif command == "backup-groups":
        output_file = args.file or get_groups_filename(args.user_pool_id)
        total = asyncio.run(backup.backup_groups(args.user_pool_id, output_file))
        logger.info(f"Exported {total} groups to {output_file}")
        upload(backup, args, output_file, args.s3_key)
        exit_code = 0

    elif command == "backup-all-users":
        exported = asyncio.run(backup.backup_all_users(args.dir))
        logger.info(f"Exported {len(exported)} user pools to {os.path.abspath(args.dir)}")
        for output_file in exported.values():
            # one object per pool, so a single --s3-key cannot apply
            upload(backup, args, output_file)
        exit_code = 0

    elif command == "restore-users":
        input_file = args.file or get_filename(args.user_pool_id)
        report = asyncio.run(backup.restore_users(args.user_pool_id, input_file, args.temp_password))
        exit_code = check_report(report, args, "users")

    elif command == "restore-groups":
        input_file = args.file or get_groups_filename(args.user_pool_id)
        report = asyncio.run(backup.restore_groups(args.user_pool_id, input_file))
        exit_code = check_report(report, args, "groups")

    else:
        raise ValueError(f"Unknown command: {command}")

    logger.info(f"Duration: {time.time() - start_time:.2f} seconds")
    return exit_code


def main(argv=None):
    """Main entry point for the script."""
    args = parse_arguments(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        return run(args, build_backup(args))
    except KeyboardInterrupt:
        logger.info("Operation interrupted by user.")
        return 130  # Standard exit code for Ctrl+C
    except Exception as e:
        if args.stack_trace:
            logger.error(f"Error: {e}", exc_info=True)
        else:
            logger.error(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
