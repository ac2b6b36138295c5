"""
Backup and rollback manager for a static site hosted on S3 behind CloudFront.

Simple Explanation:
The live website is just a pile of files in an S3 bucket. A "backup" is a copy
of that pile, made inside the same bucket under `backups/<backup-id>/`, plus a
small JSON document describing it (when it was taken, how many files, which git
commit, and an integrity fingerprint).

Rolling back means:
1. Take one more backup of whatever is live right now ("pre-rollback"), so the
   rollback itself can be undone.
2. Check that the backup we want to restore has not been tampered with.
3. Delete the live files.
4. Copy the backed-up files back to their original keys.
5. Record where the live site came from and ask CloudFront to drop its cache.

Steps 3 and 4 are not atomic: for a short while the live site is empty or only
partly restored. Nothing here locks the bucket either, so two runs of this tool
(or a deploy running at the same time) can interleave.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from aws_storage import CacheInvalidator, ObjectStore
from backup_models import (
    BackupMetadata,
    GitState,
    RollbackPlan,
    StoredObject,
    format_bytes,
    iso_timestamp,
    make_backup_id,
    manifest_fingerprint,
)
from git_state import capture_git_state, count_commits_between
from rollback_config import RollbackConfig
from rollback_errors import (
    BackupNotFoundError,
    IntegrityError,
    InvalidMetadataError,
    NoSuitableBackupError,
    ObjectNotFoundError,
    RollbackError,
)

logger = logging.getLogger(__name__)

# --- Constants ---

PRE_ROLLBACK_TYPE: str = "pre-rollback"
PROGRESS_EVERY: int = 10
INVALIDATE_ALL_PATHS: List[str] = ["/*"]

AWS_ERRORS = (ClientError, BotoCoreError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_age(delta: timedelta) -> str:
    seconds = max(0, int(delta.total_seconds()))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60
    if days:
        return f"{days}d {hours}h ago"
    if hours:
        return f"{hours}h {minutes}m ago"
    return f"{minutes}m ago"


class RollbackManager:
    """Creates, lists, verifies, restores and prunes backups of the live site."""

    def __init__(
        self,
        config: RollbackConfig,
        store: ObjectStore,
        invalidator: CacheInvalidator,
        clock: Optional[Callable[[], datetime]] = None,
        git_capture: Optional[Callable[[], GitState]] = None,
        commit_counter: Optional[Callable[[Optional[str], Optional[str]], int]] = None,
    ):
        self.config = config
        self.store = store
        self.invalidator = invalidator
        self.clock = clock or _utc_now
        self.git_capture = git_capture or capture_git_state
        self.commit_counter = commit_counter or count_commits_between
        self._last_backup_moment: Optional[datetime] = None

    # --- Keys and listings ---

    def backup_prefix_for(self, backup_id: str) -> str:
        return f"{self.config.backup_prefix}{backup_id}/"

    def _check_backup_id(self, backup_id: str) -> None:
        # An empty id or one with a slash would address more than one backup.
        if not backup_id or "/" in backup_id:
            raise RollbackError(f"Invalid backup id: '{backup_id}'")

    def _next_backup_moment(self) -> datetime:
        moment = self.clock()
        moment = moment.replace(microsecond=(moment.microsecond // 1000) * 1000)
        if self._last_backup_moment is not None and moment <= self._last_backup_moment:
            moment = self._last_backup_moment + timedelta(milliseconds=1)
        self._last_backup_moment = moment
        return moment

    def get_current_files(self) -> List[StoredObject]:
        """Every live object: anything outside the backup prefix except the live metadata file."""
        return [
            obj
            for obj in self.store.list_objects()
            if not obj.key.startswith(self.config.backup_prefix) and obj.key != self.config.metadata_file
        ]

    def get_backup_files(self, backup_id: str) -> List[StoredObject]:
        """Objects stored under a backup's prefix, minus the backup's own metadata document."""
        prefix = self.backup_prefix_for(backup_id)
        metadata_key = prefix + self.config.metadata_file
        return [obj for obj in self.store.list_objects(prefix) if obj.key != metadata_key]

    def get_current_deployment_metadata(self) -> Dict[str, Any]:
        try:
            data = self.store.get_json(self.config.metadata_file)
            if isinstance(data, dict):
                return data
            logger.warning(f"{self.config.metadata_file} is not a JSON object. Ignoring it.")
        except ObjectNotFoundError:
            pass
        except ValueError as e:
            logger.warning(f"Could not parse {self.config.metadata_file}: {e}")
        return {
            "timestamp": iso_timestamp(self.clock()),
            "environment": self.config.environment,
            "note": "No previous deployment metadata found",
        }

    # --- Backup creation ---

    def create_backup(self, backup_type: str = "manual", protected_ids: Iterable[str] = ()) -> Optional[BackupMetadata]:
        """
        Copies every live object into a new backup and records its metadata.

        Simple Explanation:
        This makes a "snapshot" of the website. It finds every file that is live
        right now, copies each one (inside S3, nothing is downloaded) to
        `backups/<backup-id>/<same-key>`, computes a fingerprint of what was copied,
        and writes a JSON document describing the backup. Afterwards it deletes
        the oldest backups if there are now more than the configured maximum.

        Copies happen one after another. If one of them fails, the error is raised
        and the files copied so far are left where they are.

        Args:
            backup_type (str): Free-form label: manual, auto, pre-deploy, pre-rollback...
            protected_ids (Iterable[str]): Backups that retention pruning must not delete.
                The new backup itself is always kept.

        Returns:
            Optional[BackupMetadata]: The new backup, or None if the live site is empty.
        """
        logger.info(f"💾 Creating {backup_type} backup...")
        moment = self._next_backup_moment()
        backup_id = make_backup_id(moment)
        backup_prefix = self.backup_prefix_for(backup_id)

        try:
            deployment = self.get_current_deployment_metadata()
            current_files = self.get_current_files()

            if not current_files:
                logger.warning("⚠️  No files found to backup")
                return None

            total = len(current_files)
            logger.info(f"📦 Backing up {total} files to {backup_prefix}")
            for index, obj in enumerate(current_files, start=1):
                self.store.copy_object(obj.key, backup_prefix + obj.key)
                if index % PROGRESS_EVERY == 0 or index == total:
                    logger.info(f"   Backed up {index}/{total} files")

            # Fingerprint the copies themselves, which is what verification lists later.
            captured = [obj.relative_to(backup_prefix) for obj in self.get_backup_files(backup_id)]

            metadata = BackupMetadata(
                id=backup_id,
                timestamp=iso_timestamp(moment),
                type=backup_type,
                environment=self.config.environment,
                file_count=total,
                total_size=sum(obj.size for obj in current_files),
                git=self.git_capture(),
                deployment=deployment,
                s3={
                    "bucketName": self.config.bucket_name,
                    "backupPrefix": backup_prefix,
                    "region": self.config.region,
                },
                cloudfront={"distributionId": self.config.distribution_id},
                integrity=manifest_fingerprint(captured),
            )

            self.store.put_json(
                backup_prefix + self.config.metadata_file,
                metadata.to_dict(),
                metadata={
                    "backup-id": backup_id,
                    "backup-type": backup_type,
                    "created-at": metadata.timestamp,
                },
            )

            self.cleanup_old_backups(set(protected_ids) | {backup_id})
        except AWS_ERRORS as e:
            logger.error(f"❌ Backup creation failed: {e}")
            raise

        logger.info("✅ Backup created successfully")
        logger.info(f"   Backup ID: {backup_id}")
        logger.info(f"   Files: {metadata.file_count}")
        logger.info(f"   Size: {format_bytes(metadata.total_size)}")
        return metadata

    # --- Listing and inspection ---

    def list_backups(self) -> List[BackupMetadata]:
        """
        Reads the metadata of every backup, newest first.

        Backups whose metadata document is missing or unreadable are skipped with a
        warning; they are not an error.
        """
        logger.info("📋 Listing available backups...")
        prefixes = self.store.list_common_prefixes(self.config.backup_prefix)
        if not prefixes:
            logger.info("📁 No backups found")
            return []

        backups: List[BackupMetadata] = []
        for prefix in prefixes:
            backup_id = prefix[len(self.config.backup_prefix):].rstrip("/")
            try:
                data = self.store.get_json(prefix + self.config.metadata_file)
                backups.append(BackupMetadata.from_dict(data))
            except (ObjectNotFoundError, ValueError, ClientError) as e:
                logger.warning(f"⚠️  Could not read metadata for backup: {backup_id} ({e})")

        backups.sort(key=lambda backup: backup.created_at, reverse=True)
        return backups

    def get_backup_metadata(self, backup_id: str) -> Optional[BackupMetadata]:
        """
        Returns a backup's metadata, or None if the backup does not exist.

        Raises:
            InvalidMetadataError: If the metadata object is not JSON or has no id.
        """
        self._check_backup_id(backup_id)
        try:
            data = self.store.get_json(self.backup_prefix_for(backup_id) + self.config.metadata_file)
            return BackupMetadata.from_dict(data)
        except ObjectNotFoundError:
            return None
        except ValueError as e:
            raise InvalidMetadataError(backup_id, str(e)) from e

    def verify_backup_integrity(self, backup_id: str, metadata: Optional[BackupMetadata] = None) -> str:
        """
        Recomputes a backup's fingerprint from what is stored and compares it.

        Args:
            backup_id (str): Backup to check.
            metadata (Optional[BackupMetadata]): Its metadata, fetched if not given.

        Returns:
            str: The verified fingerprint.

        Raises:
            BackupNotFoundError: If metadata was not given and the backup does not exist.
            IntegrityError: If the stored objects no longer match the recorded fingerprint.
        """
        logger.info(f"🔍 Verifying backup integrity: {backup_id}")
        if metadata is None:
            metadata = self.get_backup_metadata(backup_id)
            if metadata is None:
                raise BackupNotFoundError(backup_id)

        prefix = self.backup_prefix_for(backup_id)
        stored = [obj.relative_to(prefix) for obj in self.get_backup_files(backup_id)]
        actual = manifest_fingerprint(stored)

        if actual != metadata.integrity:
            stored_size = sum(obj.size for obj in stored)
            logger.error("❌ Backup integrity verification failed")
            logger.error(f"   Recorded: {metadata.file_count} files, {format_bytes(metadata.total_size)}")
            logger.error(f"   Stored:   {len(stored)} files, {format_bytes(stored_size)}")
            raise IntegrityError(backup_id, metadata.integrity, actual)

        logger.info("✅ Backup integrity verified")
        return actual

    # --- Rollback ---

    def _log_backup_details(self, metadata: BackupMetadata) -> None:
        age = _format_age(self.clock() - metadata.created_at)
        logger.info("📋 Backup Details:")
        logger.info(f"   Created: {metadata.timestamp} ({age})")
        logger.info(f"   Type: {metadata.type}")
        logger.info(f"   Files: {metadata.file_count}")
        logger.info(f"   Size: {format_bytes(metadata.total_size)}")
        if metadata.git.short_commit:
            logger.info(f"   Git Commit: {metadata.git.short_commit} - {metadata.git.message}")

    def rollback_to_backup(self, backup_id: str) -> BackupMetadata:
        """
        Replaces the live site with the contents of a backup.

        Simple Explanation:
        This puts an older version of the website back online. The order matters
        and is always the same:
        1. Look up the backup (fail with "Backup not found" if it isn't there).
        2. Back up the current live site as a `pre-rollback` backup.
        3. Check the target backup's integrity fingerprint.
        4. List the files in the target backup.
        5. Delete every live file.
        6. Copy the backup's files back to their live keys.
        7. Rewrite `deployment-metadata.json`, noting which backup it came from.
        8. Ask CloudFront to invalidate `/*` (skipped without a distribution id).

        Between steps 5 and 6 visitors can see a missing or half-restored site.
        If a copy fails during step 6 the error is raised and the live site stays
        partly restored; the pre-rollback backup from step 2 is the way back.

        Args:
            backup_id (str): The backup to restore.

        Returns:
            BackupMetadata: Metadata of the restored backup.
        """
        logger.info(f"🔄 Rolling back to backup: {backup_id}")
        try:
            metadata = self.get_backup_metadata(backup_id)
            if metadata is None:
                raise BackupNotFoundError(backup_id)

            self._log_backup_details(metadata)

            logger.info("💾 Creating pre-rollback backup...")
            self.create_backup(PRE_ROLLBACK_TYPE, protected_ids=(backup_id,))

            self.verify_backup_integrity(backup_id, metadata)

            backup_files = self.get_backup_files(backup_id)
            self.clear_current_deployment()
            restored = self.restore_files_from_backup(backup_id, backup_files)
            self.update_deployment_metadata(metadata)
            self.invalidate_cache()
        except (RollbackError,) + AWS_ERRORS as e:
            logger.error(f"❌ Rollback failed: {e}")
            raise

        logger.info("✅ Rollback completed successfully")
        logger.info(f"   Restored: {restored} files")
        logger.info(f"   Backup ID: {backup_id}")
        return metadata

    def clear_current_deployment(self) -> int:
        """
        Deletes every live object.

        Deletes go out in batches of `delete_batch_size`. Requests inside a batch run
        in parallel and all of them finish before the next batch starts.

        Returns:
            int: Number of objects deleted.
        """
        logger.info("🧹 Clearing current deployment...")
        current_files = self.get_current_files()
        if not current_files:
            logger.info("   No files to clear")
            return 0

        total = len(current_files)
        batch_size = self.config.delete_batch_size
        logger.info(f"   Deleting {total} files...")
        with ThreadPoolExecutor(max_workers=min(batch_size, total)) as executor:
            for start in range(0, total, batch_size):
                batch = [obj.key for obj in current_files[start:start + batch_size]]
                # Consuming the results waits for the whole batch and re-raises the first failure.
                list(executor.map(self.store.delete_object, batch))
                logger.info(f"   Deleted {min(start + batch_size, total)}/{total} files")

        logger.info("✅ Current deployment cleared")
        return total

    def restore_files_from_backup(self, backup_id: str, backup_files: List[StoredObject]) -> int:
        """Copies each backed-up object back to its live key, one at a time."""
        prefix = self.backup_prefix_for(backup_id)
        total = len(backup_files)
        logger.info(f"📤 Restoring {total} files from backup...")
        for index, obj in enumerate(backup_files, start=1):
            self.store.copy_object(obj.key, obj.relative_to(prefix).key)
            if index % PROGRESS_EVERY == 0 or index == total:
                logger.info(f"   Restored {index}/{total} files")
        logger.info("✅ Files restored from backup")
        return total

    def update_deployment_metadata(self, metadata: BackupMetadata) -> Dict[str, Any]:
        """Writes the backup's deployment descriptor back as the live one, stamped with `restoredFrom`."""
        deployment = dict(metadata.deployment)
        deployment["restoredFrom"] = {
            "backupId": metadata.id,
            "backupTimestamp": metadata.timestamp,
            "restoredAt": iso_timestamp(self.clock()),
        }
        self.store.put_json(self.config.metadata_file, deployment)
        return deployment

    def invalidate_cache(self) -> Optional[str]:
        """Invalidates `/*` on CloudFront. Failures are logged, never raised."""
        if not self.invalidator.enabled:
            logger.warning("⚠️  Skipping cache invalidation (no distribution ID configured)")
            return None

        logger.info("🔄 Invalidating CloudFront cache...")
        try:
            invalidation_id = self.invalidator.invalidate(INVALIDATE_ALL_PATHS)
        except AWS_ERRORS as e:
            logger.warning(f"❌ Cache invalidation failed: {e}")
            logger.warning("   Rollback succeeded but cache may not be updated")
            return None

        logger.info("✅ Cache invalidation started")
        logger.info(f"   Invalidation ID: {invalidation_id}")
        logger.info("   Changes may take 5-15 minutes to propagate globally")
        return invalidation_id

    def emergency_rollback(self) -> BackupMetadata:
        """Rolls back to the newest backup that is not a pre-rollback backup and has files."""
        logger.info("🚨 Performing emergency rollback...")
        backups = self.list_backups()
        if not backups:
            raise NoSuitableBackupError("No backups available for emergency rollback")

        last_good = next(
            (b for b in backups if b.type != PRE_ROLLBACK_TYPE and b.file_count > 0),
            None,
        )
        if last_good is None:
            raise NoSuitableBackupError("No suitable backup found for emergency rollback")

        logger.info(f"🔄 Emergency rollback to: {last_good.id}")
        logger.info(f"   Created: {last_good.timestamp}")
        return self.rollback_to_backup(last_good.id)

    # --- Retention ---

    def cleanup_old_backups(self, protected_ids: Iterable[str] = ()) -> List[str]:
        """
        Deletes the oldest backups beyond `max_backups`.

        A failure to delete one backup is logged and the rest are still attempted.

        Args:
            protected_ids (Iterable[str]): Backups that must survive, e.g. a rollback target.

        Returns:
            List[str]: Ids of the backups that were deleted.
        """
        protected = set(protected_ids)
        backups = self.list_backups()
        if len(backups) <= self.config.max_backups:
            return []

        excess = len(backups) - self.config.max_backups
        oldest_first = [b for b in reversed(backups) if b.id not in protected]
        to_delete = oldest_first[:excess]
        if len(to_delete) < excess:
            logger.warning(
                f"⚠️  Keeping {len(backups) - len(to_delete)} backups (limit {self.config.max_backups}): "
                "protected backups are not pruned"
            )
        if not to_delete:
            return []
        logger.info(f"🗑️  Cleaning up {len(to_delete)} old backups...")

        deleted: List[str] = []
        for backup in to_delete:
            try:
                self.delete_backup(backup.id)
                deleted.append(backup.id)
            except AWS_ERRORS as e:
                logger.warning(f"⚠️  Failed to delete backup {backup.id}: {e}")
        return deleted

    def delete_backup(self, backup_id: str) -> int:
        """
        Removes every object under a backup's prefix, metadata included.

        Returns:
            int: Number of objects deleted (0 if the backup did not exist).
        """
        self._check_backup_id(backup_id)
        objects = self.store.list_objects(self.backup_prefix_for(backup_id))
        if not objects:
            logger.warning(f"⚠️  Nothing stored for backup {backup_id}")
            return 0

        for obj in objects:
            self.store.delete_object(obj.key)
        logger.info(f"   Deleted backup: {backup_id} ({len(objects)} objects)")
        return len(objects)

    # --- Planning ---

    def plan_rollback(self, backup_id: str) -> RollbackPlan:
        """
        Works out what `rollback_to_backup` would change, without changing anything.

        Compares the live files with the backup's files by key, size and ETag, and
        looks at the local git checkout for uncommitted work or newer commits.

        Raises:
            BackupNotFoundError: If the backup does not exist.
        """
        metadata = self.get_backup_metadata(backup_id)
        if metadata is None:
            raise BackupNotFoundError(backup_id)

        prefix = self.backup_prefix_for(backup_id)
        live = {obj.key: obj for obj in self.get_current_files()}
        stored = {obj.key: obj for obj in (o.relative_to(prefix) for o in self.get_backup_files(backup_id))}
        current_git = self.git_capture()

        plan = RollbackPlan(
            backup=metadata,
            live_file_count=len(live),
            live_total_size=sum(obj.size for obj in live.values()),
            current_git=current_git,
            files_to_remove=sorted(key for key in live if key not in stored),
            files_to_restore=sorted(stored),
            files_changed=sorted(
                key
                for key, obj in stored.items()
                if key in live and (live[key].size != obj.size or live[key].etag != obj.etag)
            ),
        )

        plan.actions = [
            "Create pre-rollback backup of the live site",
            f"Verify integrity of {backup_id}",
            f"Delete {plan.live_file_count} live files",
            f"Restore {len(plan.files_to_restore)} files from {backup_id}",
            f"Update {self.config.metadata_file} with restoredFrom",
        ]
        if self.invalidator.enabled:
            plan.actions.append(f"Invalidate /* on CloudFront distribution {self.config.distribution_id}")
        else:
            plan.risks.append("No CloudFront distribution configured; cached pages will stay stale")
            plan.recommendations.append("Set CLOUDFRONT_DISTRIBUTION_ID or invalidate the cache manually")

        if plan.live_file_count:
            plan.risks.append("The live site is empty or partly restored between the delete and restore steps")
        if plan.files_to_remove:
            plan.risks.append(f"{len(plan.files_to_remove)} live files are not in the backup and will be removed")
            plan.recommendations.append("Review the files that will be removed")
        if current_git.is_dirty:
            plan.risks.append("Uncommitted changes in the working tree")
            plan.recommendations.append("Commit or stash current changes before rollback")

        commits = self.commit_counter(metadata.git.commit, current_git.commit)
        if commits > 0:
            plan.risks.append(f"Rolling back {commits} commits")
            plan.recommendations.append("Review changes that will be lost")

        return plan
