"""
=====================================================
 S3 + CloudFront Static Site Backup & Rollback Tool
=====================================================

Project Explanation:
--------------------
Once the website is live in an S3 bucket behind CloudFront, every new deploy
replaces the files in that bucket. If a deploy goes wrong, you want a quick
way back to the version that worked. This script keeps copies ("backups") of
the live site inside the same bucket and can put any of them back online.

Where do backups live?
----------------------
Inside the website bucket itself, under a reserved folder:
- `deployment-metadata.json`                        describes the live site
- `backups/<backup-id>/deployment-metadata.json`     describes one backup
- `backups/<backup-id>/<original-key>`               the backed-up files
Only the newest backups are kept (10 by default); older ones are deleted
automatically each time a new backup is made.

Commands:
---------
  backup [type]           Create a backup (type: manual, auto, pre-deploy, pre-rollback)
  list [--output FILE]    List all backups, newest first (optionally save them as JSON)
  rollback <backup-id>    Restore the live site from a backup
  emergency               Roll back to the newest backup that is not a pre-rollback backup
  delete <backup-id>      Delete a backup and free its storage
  verify <backup-id>      Check a backup's integrity fingerprint
  plan <backup-id>        Show what a rollback would change, without changing anything

Examples:
  python rollback.py backup pre-deploy
  python rollback.py list
  python rollback.py rollback backup-2024-01-01T12-00-00-000Z
  python rollback.py emergency

Environment Variables:
----------------------
  S3_BUCKET_NAME              Required: the website bucket
  CLOUDFRONT_DISTRIBUTION_ID  Optional: distribution to invalidate after a rollback
  AWS_REGION                  Optional: bucket region (default: us-east-1)
  ENVIRONMENT                 Optional: environment label (default: production)
  ROLLBACK_MAX_BACKUPS        Optional: how many backups to keep (default: 10)
  ROLLBACK_DELETE_BATCH_SIZE  Optional: parallel deletes per batch (default: 100)
  AWS_ENDPOINT_URL            Optional: custom S3 endpoint (e.g. LocalStack)

Requirements:
-------------
- Python 3 and `boto3` (`pip install boto3`).
- AWS credentials with S3 read/write on the bucket and, if a distribution is
  configured, `cloudfront:CreateInvalidation`.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from aws_storage import CacheInvalidator, ObjectStore, create_aws_clients
from backup_models import BackupMetadata, RollbackPlan, format_bytes
from rollback_config import RollbackConfig
from rollback_errors import BackupNotFoundError, RollbackError
from rollback_manager import RollbackManager

logger = logging.getLogger(__name__)

LOG_FORMAT: str = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Progress goes to stdout; fatal errors are printed to stderr separately."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    # boto3 is chatty at DEBUG.
    for noisy in ("boto3", "botocore", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_manager(config: RollbackConfig) -> RollbackManager:
    s3_client, cf_client = create_aws_clients(config)
    return RollbackManager(
        config,
        ObjectStore(s3_client, config.bucket_name),
        CacheInvalidator(cf_client, config.distribution_id),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="site-rollback",
        description="Backup and rollback manager for an S3 + CloudFront static site.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every S3 call.")
    commands = parser.add_subparsers(dest="command", metavar="<command>")
    commands.required = True

    backup = commands.add_parser("backup", help="Create a backup of the live site.")
    backup.add_argument("type", nargs="?", default="manual", help="manual, auto, pre-deploy or pre-rollback")

    list_cmd = commands.add_parser("list", help="List backups, newest first.")
    list_cmd.add_argument("--output", help="Also write the backup list to this JSON file.")

    rollback = commands.add_parser("rollback", help="Restore the live site from a backup.")
    rollback.add_argument("backup_id")

    commands.add_parser("emergency", help="Roll back to the last known good backup.")

    delete = commands.add_parser("delete", help="Delete a backup.")
    delete.add_argument("backup_id")

    verify = commands.add_parser("verify", help="Verify a backup's integrity fingerprint.")
    verify.add_argument("backup_id")

    plan = commands.add_parser("plan", help="Show what a rollback would do.")
    plan.add_argument("backup_id")
    plan.add_argument("--output", help="Also write the plan to this JSON file.")
    return parser


def write_json_report(path: str, data: object) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
        handle.write("\n")
    logger.info(f"Report written to {path}")


def display_backups(backups: List[BackupMetadata]) -> None:
    if not backups:
        print("No backups found")
        return

    print("\n" + "=" * 80)
    print("          AVAILABLE BACKUPS")
    print("=" * 80)
    for backup in backups:
        print(f" ID:     {backup.id}")
        print(f" Date:   {backup.timestamp}")
        print(f" Type:   {backup.type}")
        print(f" Files:  {backup.file_count}")
        print(f" Size:   {format_bytes(backup.total_size)}")
        if backup.git.short_commit:
            print(f" Git:    {backup.git.short_commit} - {backup.git.message}")
        print("-" * 60)


def display_plan(plan: RollbackPlan) -> None:
    print("\n" + "=" * 60)
    print("          ROLLBACK PLAN")
    print("=" * 60)
    print(f" Target:          {plan.backup.id} ({plan.backup.type})")
    print(f" Created:         {plan.backup.timestamp}")
    if plan.backup.git.short_commit:
        print(f" Target Commit:   {plan.backup.git.short_commit} - {plan.backup.git.message}")
    print(f" Live Files:      {plan.live_file_count} ({format_bytes(plan.live_total_size)})")
    print(f" Files Restored:  {len(plan.files_to_restore)}")
    print(f" Files Removed:   {len(plan.files_to_remove)}")
    print(f" Files Changed:   {len(plan.files_changed)}")
    print("-" * 60)
    print(" Actions:")
    for number, action in enumerate(plan.actions, start=1):
        print(f"   {number}. {action}")
    if plan.risks:
        print(" Risks:")
        for risk in plan.risks:
            print(f"   - {risk}")
    if plan.recommendations:
        print(" Recommendations:")
        for recommendation in plan.recommendations:
            print(f"   - {recommendation}")
    print("=" * 60 + "\n")


def run_command(args: argparse.Namespace, manager: RollbackManager) -> None:
    if args.command == "backup":
        metadata = manager.create_backup(args.type)
        if metadata is None:
            print("Nothing to back up: the live site has no files.")

    elif args.command == "list":
        backups = manager.list_backups()
        display_backups(backups)
        if args.output:
            write_json_report(args.output, [backup.to_dict() for backup in backups])

    elif args.command == "rollback":
        manager.rollback_to_backup(args.backup_id)

    elif args.command == "emergency":
        manager.emergency_rollback()

    elif args.command == "delete":
        if manager.delete_backup(args.backup_id) == 0:
            raise BackupNotFoundError(args.backup_id)
        print(f"✅ Backup deleted: {args.backup_id}")

    elif args.command == "verify":
        manager.verify_backup_integrity(args.backup_id)
        print(f"✅ Backup integrity verified: {args.backup_id}")

    elif args.command == "plan":
        plan = manager.plan_rollback(args.backup_id)
        display_plan(plan)
        if args.output:
            write_json_report(args.output, plan.to_dict())


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parses the command line, reads the configuration and runs one command.

    Returns:
        int: Process exit code. 0 on success, 1 if the command failed.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = RollbackConfig.from_env()
        logger.info("📋 Rollback Configuration:")
        for line in config.describe():
            logger.info(f"   {line}")

        manager = build_manager(config)
        run_command(args, manager)
    except (RollbackError, ClientError, BotoCoreError, OSError) as e:
        print(f"❌ Operation failed: {e}", file=sys.stderr)
        return 1

    return 0


# --- Script Entry Point ---

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Aborted by user. Exiting.", file=sys.stderr)
        sys.exit(130)
