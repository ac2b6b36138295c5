"""
Exceptions raised by the backup and rollback tooling.

Everything the manager raises on purpose derives from `RollbackError`, so the
command line entry point can report it cleanly. Errors coming straight from
AWS (`botocore.exceptions.ClientError`) are not wrapped: they propagate as-is
and abort whatever multi-step operation was running.
"""

from typing import Optional


class RollbackError(Exception):
    """Base class for backup/rollback failures."""


class ConfigurationError(RollbackError):
    """Required configuration is missing or invalid."""


class BackupNotFoundError(RollbackError):
    """No metadata object exists for the requested backup id."""

    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup not found: {backup_id}")


class InvalidMetadataError(RollbackError):
    """A backup's metadata object exists but is not a readable descriptor."""

    def __init__(self, backup_id: str, reason: str):
        self.backup_id = backup_id
        super().__init__(f"Backup metadata is unreadable: {backup_id} ({reason})")


class IntegrityError(RollbackError):
    """
    The fingerprint recomputed over a backup's stored objects does not match
    the one recorded when the backup was created.
    """

    def __init__(self, backup_id: str, expected: Optional[str], actual: str):
        self.backup_id = backup_id
        self.expected = expected
        self.actual = actual
        super().__init__("Backup integrity check failed - backup may be corrupted")


class NoSuitableBackupError(RollbackError):
    """Emergency rollback could not find a backup worth restoring."""


class ObjectNotFoundError(RollbackError):
    """A get request hit a key that does not exist in the bucket."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Object not found: {key}")
