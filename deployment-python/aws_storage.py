"""
Thin wrappers around the S3 and CloudFront clients used by the rollback tooling.

Simple Explanation:
The rollback manager only needs a handful of things from AWS: list files in the
bucket, read and write small JSON documents, copy a file from one key to another
inside the same bucket, delete a file, and ask CloudFront to forget its cached
copies. This module puts those calls behind two small classes so the manager
reads as a list of steps instead of a wall of boto3 parameters.

Errors from S3 are not swallowed here. The only one translated is "that key does
not exist" on a read, which becomes `ObjectNotFoundError` so callers can tell a
missing backup apart from a broken request.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from backup_models import StoredObject
from rollback_config import RollbackConfig
from rollback_errors import ObjectNotFoundError

logger = logging.getLogger(__name__)

# --- Constants ---

# CloudFront is a global service; its API lives in us-east-1.
CLOUDFRONT_REGION: str = "us-east-1"
# Error codes S3 uses for "this key is not there".
NOT_FOUND_CODES: Tuple[str, ...] = ("NoSuchKey", "404", "NotFound")
LIST_PAGE_SIZE: int = 1000


def create_aws_clients(config: RollbackConfig) -> Tuple[Any, Any]:
    """
    Creates the boto3 S3 and CloudFront clients for the given configuration.

    The S3 connection pool is sized to the delete batch size, since a batch of
    deletes is sent in parallel while clearing the live site.

    Args:
        config (RollbackConfig): Settings for this run.

    Returns:
        Tuple[Any, Any]: The S3 client and the CloudFront client.
    """
    client_config = Config(
        max_pool_connections=max(10, config.delete_batch_size),
        retries={"mode": "standard", "max_attempts": 3},
    )
    s3_kwargs: Dict[str, Any] = {"region_name": config.region, "config": client_config}
    if config.endpoint_url:
        s3_kwargs["endpoint_url"] = config.endpoint_url
        logger.info(f"Using custom S3 endpoint: {config.endpoint_url}")

    s3_client = boto3.client("s3", **s3_kwargs)
    cf_client = boto3.client("cloudfront", region_name=CLOUDFRONT_REGION)
    return s3_client, cf_client


def is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES


class ObjectStore:
    """A single S3 bucket seen as a key/value blob store."""

    def __init__(self, s3_client: Any, bucket_name: str):
        self.s3_client = s3_client
        self.bucket_name = bucket_name

    def list_objects(self, prefix: str = "") -> List[StoredObject]:
        """
        Lists every object whose key starts with `prefix`, following pagination.

        Args:
            prefix (str): Key prefix to filter on. Empty means the whole bucket.

        Returns:
            List[StoredObject]: All matching objects in listing order.
        """
        paginator = self.s3_client.get_paginator("list_objects_v2")
        params: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "PaginationConfig": {"PageSize": LIST_PAGE_SIZE},
        }
        if prefix:
            params["Prefix"] = prefix

        objects: List[StoredObject] = []
        for page in paginator.paginate(**params):
            for entry in page.get("Contents", []):
                objects.append(StoredObject.from_listing(entry))
        return objects

    def list_common_prefixes(self, prefix: str, delimiter: str = "/") -> List[str]:
        """Lists the immediate "sub-folders" under `prefix` (one level deep)."""
        paginator = self.s3_client.get_paginator("list_objects_v2")
        prefixes: List[str] = []
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter=delimiter):
            for common in page.get("CommonPrefixes", []):
                prefixes.append(common["Prefix"])
        return prefixes

    def get_json(self, key: str) -> Any:
        """
        Downloads an object and parses it as JSON.

        Raises:
            ObjectNotFoundError: If the key does not exist.
            ClientError: For any other S3 failure.
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFoundError(key) from e
            raise
        body = response["Body"].read()
        return json.loads(body.decode("utf-8"))

    def put_json(self, key: str, data: Any, metadata: Optional[Dict[str, str]] = None) -> None:
        params: Dict[str, Any] = {
            "Bucket": self.bucket_name,
            "Key": key,
            "Body": json.dumps(data, indent=2).encode("utf-8"),
            "ContentType": "application/json",
        }
        if metadata:
            params["Metadata"] = metadata
        self.s3_client.put_object(**params)
        logger.debug(f"Wrote s3://{self.bucket_name}/{key}")

    def copy_object(self, source_key: str, dest_key: str) -> None:
        """Server-side copy inside the bucket, keeping the source object's metadata."""
        self.s3_client.copy_object(
            Bucket=self.bucket_name,
            CopySource={"Bucket": self.bucket_name, "Key": source_key},
            Key=dest_key,
            MetadataDirective="COPY",
        )
        logger.debug(f"Copied {source_key} -> {dest_key}")

    def delete_object(self, key: str) -> None:
        self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        logger.debug(f"Deleted s3://{self.bucket_name}/{key}")


class CacheInvalidator:
    """Sends fire-and-forget invalidation requests to one CloudFront distribution."""

    def __init__(self, cf_client: Any, distribution_id: Optional[str]):
        self.cf_client = cf_client
        self.distribution_id = distribution_id

    @property
    def enabled(self) -> bool:
        return bool(self.distribution_id)

    def invalidate(self, paths: Sequence[str], caller_prefix: str = "rollback") -> Optional[str]:
        """
        Asks CloudFront to purge the given paths.

        Simple Explanation:
        CloudFront keeps copies of the site at edge locations around the world.
        After the files in S3 change, those copies are stale. This tells CloudFront
        to drop them. It does not wait for CloudFront to finish, which usually takes
        a few minutes.

        Args:
            paths (Sequence[str]): Path patterns such as `/*`.
            caller_prefix (str): Prefix of the unique CallerReference for the request.

        Returns:
            Optional[str]: The invalidation id, or None when no distribution is configured.
        """
        if not self.distribution_id:
            return None
        response = self.cf_client.create_invalidation(
            DistributionId=self.distribution_id,
            InvalidationBatch={
                "CallerReference": f"{caller_prefix}-{int(time.time() * 1000)}",
                "Paths": {"Quantity": len(paths), "Items": list(paths)},
            },
        )
        return response["Invalidation"]["Id"]
