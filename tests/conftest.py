"""Shared fixtures: an in-memory S3 bucket, a CloudFront mock and a fake clock."""

import hashlib
import io
import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from aws_storage import CacheInvalidator, ObjectStore
from backup_models import GitState
from rollback_config import RollbackConfig
from rollback_manager import RollbackManager

BUCKET = "site-bucket"


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": f"{code} (test)"}}, operation)


class FakePaginator:
    """Mimics the `list_objects_v2` paginator, with a small page size to force pagination."""

    def __init__(self, client, page_size=3):
        self.client = client
        self.page_size = page_size

    def paginate(self, Bucket, Prefix="", Delimiter=None, PaginationConfig=None):
        keys = sorted(key for key in self.client.objects if key.startswith(Prefix))
        contents = []
        common = []
        for key in keys:
            rest = key[len(Prefix):]
            if Delimiter and Delimiter in rest:
                folder = Prefix + rest.split(Delimiter, 1)[0] + Delimiter
                if folder not in common:
                    common.append(folder)
            else:
                obj = self.client.objects[key]
                contents.append(
                    {"Key": key, "ETag": obj["ETag"], "Size": len(obj["Body"]), "LastModified": obj["LastModified"]}
                )

        entries = [("Contents", item) for item in contents] + [("CommonPrefixes", {"Prefix": p}) for p in common]
        if not entries:
            yield {"KeyCount": 0}
            return
        for start in range(0, len(entries), self.page_size):
            page = {}
            for kind, item in entries[start:start + self.page_size]:
                page.setdefault(kind, []).append(item)
            yield page


class FakeS3Client:
    """
    The slice of the boto3 S3 client used by ObjectStore, backed by a dict.

    Copies keep the source ETag but get a fresh LastModified, like real S3.
    """

    def __init__(self):
        self.objects = {}
        self.failures = set()
        self.calls = []
        self._lock = threading.Lock()
        self._tick = 0
        self._base = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self):
        self._tick += 1
        return self._base + timedelta(seconds=self._tick)

    def _maybe_fail(self, operation, key):
        if (operation, key) in self.failures:
            raise client_error("InternalError", operation)

    def put_file(self, key, body):
        if isinstance(body, str):
            body = body.encode("utf-8")
        with self._lock:
            self.objects[key] = {
                "Body": body,
                "ETag": f'"{hashlib.md5(body).hexdigest()}"',
                "LastModified": self._now(),
                "Metadata": {},
                "ContentType": "binary/octet-stream",
            }

    def read(self, key):
        return self.objects[key]["Body"]

    def read_json(self, key):
        return json.loads(self.read(key))

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def get_object(self, Bucket, Key):
        self.calls.append(("get_object", Key))
        self._maybe_fail("get_object", Key)
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key]["Body"])}

    def put_object(self, Bucket, Key, Body, ContentType=None, Metadata=None):
        self.calls.append(("put_object", Key))
        self._maybe_fail("put_object", Key)
        self.put_file(Key, Body)
        self.objects[Key]["ContentType"] = ContentType
        self.objects[Key]["Metadata"] = Metadata or {}

    def copy_object(self, Bucket, CopySource, Key, MetadataDirective="COPY"):
        self.calls.append(("copy_object", Key))
        self._maybe_fail("copy_object", Key)
        source = self.objects.get(CopySource["Key"])
        if source is None:
            raise client_error("NoSuchKey", "CopyObject")
        with self._lock:
            self.objects[Key] = dict(source, LastModified=self._now())

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete_object", Key))
        self._maybe_fail("delete_object", Key)
        with self._lock:
            self.objects.pop(Key, None)


class FakeClock:
    """Advances one second every time it is read."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def cf_client():
    client = MagicMock()
    client.create_invalidation.return_value = {"Invalidation": {"Id": "I2J3K4L5"}}
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def git_state():
    return GitState(
        branch="main",
        commit="0123456789abcdef0123456789abcdef01234567",
        short_commit="0123456",
        message="Update homepage",
        author="Site Bot",
        date="2024-06-01 12:00:00 +0000",
        status="",
    )


@pytest.fixture
def config():
    return RollbackConfig(
        bucket_name=BUCKET,
        distribution_id="E1ABCDEF",
        max_backups=3,
        delete_batch_size=2,
    )


@pytest.fixture
def make_manager(fake_s3, cf_client, clock, git_state):
    def factory(config, commit_counter=None):
        return RollbackManager(
            config,
            ObjectStore(fake_s3, config.bucket_name),
            CacheInvalidator(cf_client, config.distribution_id),
            clock=clock,
            git_capture=lambda: git_state,
            commit_counter=commit_counter or (lambda older, newer: 0),
        )

    return factory


@pytest.fixture
def manager(make_manager, config):
    return make_manager(config)


@pytest.fixture
def live_site(fake_s3):
    """A small deployed site plus its live metadata document."""
    files = {
        "index.html": "<h1>Home</h1>",
        "about/index.html": "<h1>About</h1>",
        "css/site.css": "body { color: black; }",
        "js/app.js": "console.log('hi');",
        "images/logo.svg": "<svg></svg>",
    }
    for key, body in files.items():
        fake_s3.put_file(key, body)
    fake_s3.put_file("deployment-metadata.json", json.dumps({"version": "1.4.0", "commit": "0123456"}))
    return files
