"""Tests for backup records and fingerprinting."""

from datetime import datetime, timezone

import pytest

from backup_models import (
    BackupMetadata,
    GitState,
    StoredObject,
    format_bytes,
    iso_timestamp,
    make_backup_id,
    manifest_fingerprint,
    parse_timestamp,
)

MOMENT = datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


def sample_objects():
    return [
        StoredObject(key="index.html", etag='"aaa"', size=10, last_modified=MOMENT),
        StoredObject(key="css/site.css", etag='"bbb"', size=20, last_modified=MOMENT),
    ]


def test_backup_id_format():
    assert make_backup_id(MOMENT) == "backup-2024-01-01T12-00-00-123Z"


def test_iso_timestamp_uses_milliseconds_and_z():
    assert iso_timestamp(MOMENT) == "2024-01-01T12:00:00.123Z"


def test_parse_timestamp_accepts_z_suffix():
    assert parse_timestamp("2024-01-01T12:00:00.123Z") == datetime(2024, 1, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_fingerprint_ignores_listing_order():
    objects = sample_objects()
    assert manifest_fingerprint(objects) == manifest_fingerprint(list(reversed(objects)))


@pytest.mark.parametrize(
    "changed",
    [
        StoredObject(key="index.html", etag='"changed"', size=10, last_modified=MOMENT),
        StoredObject(key="index.html", etag='"aaa"', size=11, last_modified=MOMENT),
        StoredObject(key="index.html", etag='"aaa"', size=10, last_modified=datetime(2024, 2, 1, tzinfo=timezone.utc)),
        StoredObject(key="home.html", etag='"aaa"', size=10, last_modified=MOMENT),
    ],
)
def test_fingerprint_changes_with_any_manifest_field(changed):
    original = sample_objects()
    modified = [changed, original[1]]
    assert manifest_fingerprint(original) != manifest_fingerprint(modified)


def test_fingerprint_of_known_input():
    # sha256 of '[]'
    assert manifest_fingerprint([]) == "4f53cda18c2baa0c0354bb5f9a3ecbe5ed12ab4d8e11ba873c2f11161202b945"


def test_stored_object_relative_key():
    obj = StoredObject.from_listing(
        {"Key": "backups/backup-1/about/index.html", "ETag": '"e"', "Size": 3, "LastModified": MOMENT}
    )
    assert obj.relative_to("backups/backup-1/").key == "about/index.html"
    assert obj.relative_to("elsewhere/").key == obj.key


@pytest.mark.parametrize(
    "size, expected",
    [(0, "0 Bytes"), (512, "512 Bytes"), (1536, "1.5 KB"), (2 * 1024 * 1024, "2 MB"), (5 * 1024 ** 4, "5120 GB")],
)
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected


def test_metadata_round_trip_keeps_unknown_keys():
    data = {
        "id": "backup-2024-01-01T12-00-00-000Z",
        "timestamp": "2024-01-01T12:00:00.000Z",
        "type": "pre-deploy",
        "environment": "staging",
        "fileCount": 4,
        "totalSize": 2048,
        "git": {"branch": "main", "shortCommit": "abc1234", "message": "Fix nav"},
        "deployment": {"version": "2.0.0"},
        "s3": {"bucketName": "site", "backupPrefix": "backups/backup-2024-01-01T12-00-00-000Z/", "region": "eu-west-1"},
        "cloudfront": {"distributionId": None},
        "integrity": "deadbeef",
        "notes": "migrated from old tooling",
    }

    metadata = BackupMetadata.from_dict(data)

    assert metadata.file_count == 4
    assert metadata.git.short_commit == "abc1234"
    assert metadata.created_at == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert metadata.to_dict() == data


def test_metadata_requires_id():
    with pytest.raises(ValueError):
        BackupMetadata.from_dict({"timestamp": "2024-01-01T12:00:00.000Z"})


def test_metadata_ignores_malformed_sections():
    metadata = BackupMetadata.from_dict(
        {"id": "backup-x", "git": "abc1234", "deployment": ["1.0.0"], "s3": None, "cloudfront": "E1ABCDEF"}
    )

    assert metadata.git == GitState()
    assert metadata.deployment == {}
    assert metadata.s3 == {}
    assert metadata.cloudfront == {}


def test_git_state_drops_missing_fields():
    state = GitState(error="not a git repository")
    assert state.to_dict() == {"error": "not a git repository"}
    assert not state.is_dirty
    assert GitState(status=" M index.html").is_dirty
