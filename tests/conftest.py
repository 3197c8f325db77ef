"""
Shared pytest fixtures for s3backup tests.

This module provides fixtures for:
- Mocked S3 bucket (moto) and an S3Storage bound to it
- An in-memory object store that records every call
- Backup directories with files of known size and modification time
"""

import os
import threading
from datetime import datetime

import pytest
import boto3
from moto import mock_aws

from s3backup.backup.scanner import FileDescriptor
from s3backup.backup.storage import S3Storage, StorageError


class FakeStorage:
    """
    Thread-safe in-memory object store.

    Records every call in `calls` as (method, key, ...) tuples. Set
    `fail_on` to a dict of method name -> predicate(key, *args) to make a
    call raise StorageError.
    """

    def __init__(self, existing=None):
        self.objects = dict.fromkeys(existing or [], b'')
        self.calls = []
        self.uploads = {}
        self.fail_on = {}
        self.part_delay = None
        self._lock = threading.Lock()
        self._next_upload = 0

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)
        predicate = self.fail_on.get(call[0])
        if predicate is not None and predicate(*call[1:]):
            raise StorageError(f"{call[0]} failed for {call[1]}")

    def calls_to(self, method):
        with self._lock:
            return [c for c in self.calls if c[0] == method]

    def exists(self, key):
        self._record('exists', key)
        with self._lock:
            return key in self.objects

    def delete(self, key):
        self._record('delete', key)
        with self._lock:
            self.objects.pop(key, None)

    def put_object(self, key, body):
        self._record('put_object', key)
        data = body if isinstance(body, bytes) else body.read()
        with self._lock:
            self.objects[key] = data

    def initiate_multipart(self, key):
        self._record('initiate_multipart', key)
        with self._lock:
            self._next_upload += 1
            upload_id = f'upload-{self._next_upload}'
            self.uploads[upload_id] = {}
        return upload_id

    def upload_part(self, key, upload_id, part_number, body):
        self._record('upload_part', key, upload_id, part_number)
        if self.part_delay is not None:
            self.part_delay(part_number)
        with self._lock:
            self.uploads[upload_id][part_number] = bytes(body)
        return f'"etag-{part_number}"'

    def complete_multipart(self, key, upload_id, parts):
        self._record('complete_multipart', key, upload_id, list(parts))
        with self._lock:
            data = self.uploads.pop(upload_id)
            self.objects[key] = b''.join(data[number] for number, _ in parts)

    def abort_multipart(self, key, upload_id):
        self._record('abort_multipart', key, upload_id)
        with self._lock:
            self.uploads.pop(upload_id, None)


@pytest.fixture
def fake_storage():
    """In-memory object store recording every call."""
    return FakeStorage()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage bound to the mocked 'test-bucket'."""
    return S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket_name='test-bucket',
        region='us-east-1'
    )


def write_file(path, data=b'data', modified_at=None):
    """Create a file (and its parents) with optional modification time."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if modified_at is not None:
        timestamp = modified_at.timestamp()
        os.utime(path, (timestamp, timestamp))
    return path


def descriptor(path, modified_at=None):
    """FileDescriptor for an existing path."""
    if modified_at is None:
        modified_at = datetime.fromtimestamp(os.stat(path).st_mtime)
    return FileDescriptor(name=os.path.basename(path), absolute_path=str(path), modified_at=modified_at)


@pytest.fixture
def backup_dir(tmp_path):
    """
    Create a backup directory.

    Creates:
    - shop_2024-01-10_02-00-00.sql.gz
    - nested/report.csv
    - empty.log (zero bytes)
    """
    root = tmp_path / 'backup'
    root.mkdir()
    write_file(root / 'shop_2024-01-10_02-00-00.sql.gz', b'dump data' * 10)
    write_file(root / 'nested' / 'report.csv', b'a,b,c\n1,2,3\n')
    write_file(root / 'empty.log', b'')
    return root


@pytest.fixture
def make_file():
    """Factory fixture: make_file(path, data=b'data', modified_at=None)."""
    return write_file


@pytest.fixture
def make_descriptor():
    """Factory fixture: make_descriptor(path, modified_at=None)."""
    return descriptor
