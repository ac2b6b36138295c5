"""
Typed records for backups and the helpers that describe them.

Simple Explanation:
Each backup is described by a small JSON document stored next to the backed-up
files (`backups/<id>/deployment-metadata.json`). The classes here are the Python
view of that document. Keys written to S3 stay camelCase (`fileCount`,
`totalSize`, ...) so backups created by older tooling can still be read.

The "integrity" value is a manifest fingerprint: a SHA-256 hash over the sorted
list of (key, ETag, size, last-modified) entries of the backed-up objects. It
catches files that were added, removed, replaced or touched, but it never reads
the bytes of the files themselves.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

# Fallback used when a stored timestamp cannot be parsed, so such backups sort last.
_EPOCH: datetime = datetime(1970, 1, 1, tzinfo=timezone.utc)


def iso_timestamp(moment: datetime) -> str:
    """Renders an aware datetime as UTC ISO-8601 with milliseconds and a trailing `Z`."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parses an ISO-8601 timestamp (with or without `Z`). Returns None if it can't."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def make_backup_id(moment: datetime) -> str:
    """
    Builds a backup id such as `backup-2024-01-01T12-00-00-000Z`.

    Colons and dots are swapped for dashes so the id is safe to use as a key segment.
    """
    return "backup-" + iso_timestamp(moment).replace(":", "-").replace(".", "-")


def format_bytes(size: int) -> str:
    """Formats a byte count for humans, e.g. `1.5 KB`."""
    if not size:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[index]}"


@dataclass(frozen=True)
class StoredObject:
    """One entry from an S3 `list_objects_v2` listing."""

    key: str
    etag: str
    size: int
    last_modified: Union[datetime, str, None]

    @classmethod
    def from_listing(cls, entry: Dict[str, Any]) -> "StoredObject":
        return cls(
            key=entry["Key"],
            etag=entry.get("ETag", ""),
            size=int(entry.get("Size", 0) or 0),
            last_modified=entry.get("LastModified"),
        )

    def relative_to(self, prefix: str) -> "StoredObject":
        """Same object, with `prefix` stripped from the front of its key."""
        key = self.key[len(prefix):] if self.key.startswith(prefix) else self.key
        return StoredObject(key=key, etag=self.etag, size=self.size, last_modified=self.last_modified)

    def manifest_entry(self) -> Dict[str, Any]:
        last_modified = self.last_modified
        if isinstance(last_modified, datetime):
            last_modified = iso_timestamp(last_modified)
        return {
            "key": self.key,
            "etag": self.etag,
            "size": self.size,
            "lastModified": last_modified,
        }


def manifest_fingerprint(objects: Iterable[StoredObject]) -> str:
    """
    Computes the manifest fingerprint of a set of objects.

    The entries are sorted by key first, so listing order never changes the result.

    Args:
        objects (Iterable[StoredObject]): Objects to fingerprint, keyed relative to
                                          the tree they belong to.

    Returns:
        str: Hex encoded SHA-256 digest.
    """
    entries = sorted((obj.manifest_entry() for obj in objects), key=lambda entry: entry["key"])
    payload = json.dumps(entries, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class GitState:
    """Best-effort snapshot of the source checkout the tool was run from."""

    branch: Optional[str] = None
    commit: Optional[str] = None
    short_commit: Optional[str] = None
    message: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_dirty(self) -> bool:
        return bool(self.status)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "branch": self.branch,
            "commit": self.commit,
            "shortCommit": self.short_commit,
            "message": self.message,
            "author": self.author,
            "date": self.date,
            "status": self.status,
            "error": self.error,
        }
        return {key: value for key, value in data.items() if value is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GitState":
        data = data or {}
        return cls(
            branch=data.get("branch"),
            commit=data.get("commit"),
            short_commit=data.get("shortCommit"),
            message=data.get("message"),
            author=data.get("author"),
            date=data.get("date"),
            status=data.get("status"),
            error=data.get("error"),
        )


def _as_dict(value: Any) -> Dict[str, Any]:
    # Sections written by hand or by other tools may be null or the wrong shape.
    return value if isinstance(value, dict) else {}


_KNOWN_KEYS = {
    "id",
    "timestamp",
    "type",
    "environment",
    "fileCount",
    "totalSize",
    "git",
    "deployment",
    "s3",
    "cloudfront",
    "integrity",
}


@dataclass
class BackupMetadata:
    """The descriptor stored at `backups/<id>/deployment-metadata.json`."""

    id: str
    timestamp: str
    type: str = "manual"
    environment: Optional[str] = None
    file_count: int = 0
    total_size: int = 0
    git: GitState = field(default_factory=GitState)
    deployment: Dict[str, Any] = field(default_factory=dict)
    s3: Dict[str, Any] = field(default_factory=dict)
    cloudfront: Dict[str, Any] = field(default_factory=dict)
    integrity: Optional[str] = None
    # Keys written by other tooling that we don't model but must not drop.
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.timestamp) or _EPOCH

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "timestamp": self.timestamp,
                "type": self.type,
                "environment": self.environment,
                "fileCount": self.file_count,
                "totalSize": self.total_size,
                "git": self.git.to_dict(),
                "deployment": self.deployment,
                "s3": self.s3,
                "cloudfront": self.cloudfront,
                "integrity": self.integrity,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        if not isinstance(data, dict) or "id" not in data:
            raise ValueError("Backup metadata must be a JSON object with an 'id'")
        return cls(
            id=data["id"],
            timestamp=data.get("timestamp", ""),
            type=data.get("type", "manual"),
            environment=data.get("environment"),
            file_count=int(data.get("fileCount", 0) or 0),
            total_size=int(data.get("totalSize", 0) or 0),
            git=GitState.from_dict(_as_dict(data.get("git"))),
            deployment=_as_dict(data.get("deployment")),
            s3=_as_dict(data.get("s3")),
            cloudfront=_as_dict(data.get("cloudfront")),
            integrity=data.get("integrity"),
            extra={key: value for key, value in data.items() if key not in _KNOWN_KEYS},
        )


@dataclass
class RollbackPlan:
    """What a rollback to a given backup would do, computed without touching anything."""

    backup: BackupMetadata
    live_file_count: int
    live_total_size: int
    current_git: GitState
    files_to_remove: List[str] = field(default_factory=list)
    files_to_restore: List[str] = field(default_factory=list)
    files_changed: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollbackTarget": {
                "id": self.backup.id,
                "timestamp": self.backup.timestamp,
                "type": self.backup.type,
                "fileCount": self.backup.file_count,
                "commit": self.backup.git.short_commit,
                "message": self.backup.git.message,
            },
            "currentState": {
                "fileCount": self.live_file_count,
                "totalSize": self.live_total_size,
                "branch": self.current_git.branch,
                "commit": self.current_git.short_commit,
                "hasUncommittedChanges": self.current_git.is_dirty,
            },
            "filesToRemove": self.files_to_remove,
            "filesToRestore": self.files_to_restore,
            "filesChanged": self.files_changed,
            "actions": self.actions,
            "risks": self.risks,
            "recommendations": self.recommendations,
        }
