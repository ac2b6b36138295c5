"""
Configuration for the backup and rollback tooling.

Simple Explanation:
All the settings the rollback script needs (which S3 bucket holds the site,
which CloudFront distribution sits in front of it, how many backups to keep)
come from environment variables. They are read exactly once when the script
starts and packed into a `RollbackConfig` object that is handed to whoever
needs it. Nothing re-reads the environment later on.
"""

import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from rollback_errors import ConfigurationError

# --- Constants ---

# Key prefix under which every backup gets its own "folder".
BACKUP_PREFIX: str = "backups/"
# Descriptor of the live deployment, kept at the bucket root and inside each backup.
METADATA_FILE: str = "deployment-metadata.json"

DEFAULT_REGION: str = "us-east-1"
DEFAULT_ENVIRONMENT: str = "production"
DEFAULT_MAX_BACKUPS: int = 10
DEFAULT_DELETE_BATCH_SIZE: int = 100


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class RollbackConfig:
    """Immutable settings for one run of the rollback tooling."""

    bucket_name: str
    distribution_id: Optional[str] = None
    region: str = DEFAULT_REGION
    environment: str = DEFAULT_ENVIRONMENT
    max_backups: int = DEFAULT_MAX_BACKUPS
    delete_batch_size: int = DEFAULT_DELETE_BATCH_SIZE
    endpoint_url: Optional[str] = None
    backup_prefix: str = BACKUP_PREFIX
    metadata_file: str = METADATA_FILE

    def __post_init__(self) -> None:
        if not self.bucket_name:
            raise ConfigurationError("S3_BUCKET_NAME environment variable is required")
        if self.max_backups <= 0:
            raise ConfigurationError("max_backups must be positive")
        if self.delete_batch_size <= 0:
            raise ConfigurationError("delete_batch_size must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RollbackConfig":
        """
        Builds the configuration from environment variables.

        Args:
            environ (Optional[Mapping[str, str]]): Variables to read. Defaults to `os.environ`.

        Returns:
            RollbackConfig: The parsed configuration.

        Raises:
            ConfigurationError: If `S3_BUCKET_NAME` is missing or a numeric setting is invalid.
        """
        if environ is None:
            environ = os.environ

        bucket_name = environ.get("S3_BUCKET_NAME", "").strip()
        if not bucket_name:
            raise ConfigurationError("S3_BUCKET_NAME environment variable is required")

        return cls(
            bucket_name=bucket_name,
            distribution_id=environ.get("CLOUDFRONT_DISTRIBUTION_ID", "").strip() or None,
            region=environ.get("AWS_REGION", "").strip() or DEFAULT_REGION,
            environment=environ.get("ENVIRONMENT", "").strip() or DEFAULT_ENVIRONMENT,
            max_backups=_positive_int(environ, "ROLLBACK_MAX_BACKUPS", DEFAULT_MAX_BACKUPS),
            delete_batch_size=_positive_int(
                environ, "ROLLBACK_DELETE_BATCH_SIZE", DEFAULT_DELETE_BATCH_SIZE
            ),
            endpoint_url=environ.get("AWS_ENDPOINT_URL", "").strip() or None,
        )

    def describe(self) -> List[str]:
        """Lines for the configuration banner printed at startup."""
        return [
            f"Environment: {self.environment}",
            f"S3 Bucket: {self.bucket_name}",
            f"CloudFront Distribution: {self.distribution_id or 'Not configured'}",
            f"Region: {self.region}",
            f"Max Backups: {self.max_backups}",
        ]
