"""
Unit tests for storage adapters (dumpkeeper/dumps/storage.py).

Tests LocalStorage and S3Storage against the interface the catalog and
retention engine rely on.
"""

import os
from datetime import datetime, timezone

import pytest
import boto3
from moto import mock_aws

from dumpkeeper.config import DiskConfig, DiskMisconfigured
from dumpkeeper.dumps.storage import (
    BackendUnavailable,
    DeleteFailed,
    LocalStorage,
    S3Storage,
    StorageError,
    create_storage,
    join_path
)


def test_join_path():
    assert join_path('dumps', '2024/01', 'a.sql') == 'dumps/2024/01/a.sql'
    assert join_path('', '/dumps/', '') == 'dumps'


class TestLocalStorage:
    """Test LocalStorage for local filesystem operations."""

    def _populate(self, root):
        (root / 'dumps' / '2024' / '01').mkdir(parents=True)
        (root / 'dumps' / '2024' / '02').mkdir(parents=True)
        (root / 'dumps' / 'empty').mkdir()
        (root / 'dumps' / '2024' / '01' / 'a.sql').write_bytes(b'a')
        (root / 'dumps' / '2024' / '02' / 'b.sql').write_bytes(b'b')
        (root / 'other.sql').write_bytes(b'x')

    def test_creates_base_directory(self, tmp_path):
        base = tmp_path / 'new' / 'disk'

        LocalStorage(str(base))

        assert base.is_dir()

    def test_list_files_recursive(self, tmp_path):
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))

        files = storage.list_files('dumps')

        assert files == ['dumps/2024/01/a.sql', 'dumps/2024/02/b.sql']

    def test_list_files_missing_prefix(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        assert storage.list_files('nothing') == []

    def test_list_directories(self, tmp_path):
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))

        directories = storage.list_directories('dumps')

        assert directories == ['dumps/2024', 'dumps/2024/01', 'dumps/2024/02', 'dumps/empty']

    def test_get_modified_time(self, tmp_path):
        self._populate(tmp_path)
        path = tmp_path / 'dumps' / '2024' / '01' / 'a.sql'
        os.utime(path, (1700000000, 1700000000))
        storage = LocalStorage(str(tmp_path))

        assert storage.get_modified_time('dumps/2024/01/a.sql') == 1700000000

    def test_get_modified_time_missing(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageError):
            storage.get_modified_time('dumps/missing.sql')

    def test_delete(self, tmp_path):
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))

        storage.delete('dumps/2024/01/a.sql')

        assert not (tmp_path / 'dumps' / '2024' / '01' / 'a.sql').exists()

    def test_delete_twice_fails(self, tmp_path):
        """Deleting an already deleted file surfaces a backend error."""
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))
        storage.delete('dumps/2024/01/a.sql')

        with pytest.raises(DeleteFailed):
            storage.delete('dumps/2024/01/a.sql')

    def test_delete_directory_empty(self, tmp_path):
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))

        storage.delete_directory('dumps/empty')

        assert not (tmp_path / 'dumps' / 'empty').exists()

    def test_delete_directory_not_empty(self, tmp_path):
        self._populate(tmp_path)
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(DeleteFailed):
            storage.delete_directory('dumps/2024')

        assert (tmp_path / 'dumps' / '2024' / '01' / 'a.sql').exists()

    def test_create_directory_and_exists(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        assert not storage.exists('dumps/2024/10')
        storage.create_directory('dumps/2024/10')

        assert storage.exists('dumps/2024/10')

    def test_put(self, tmp_path):
        source = tmp_path / 'source.sql'
        source.write_bytes(b'dump data' * 10)
        storage = LocalStorage(str(tmp_path / 'disk'))

        storage.put(str(source), 'dumps/2024/10/2024-10-19_12-00-00.sql')

        stored = tmp_path / 'disk' / 'dumps' / '2024' / '10' / '2024-10-19_12-00-00.sql'
        assert stored.read_bytes() == source.read_bytes()

    def test_put_missing_source(self, tmp_path):
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageError):
            storage.put('/nonexistent/file.sql', 'dumps/x.sql')


class TestS3Storage:
    """Test S3Storage for AWS S3 operations."""

    def _storage(self, **kwargs):
        return S3Storage(
            bucket_name='test-bucket',
            access_key='test_key',
            secret_key='test_secret',
            **kwargs
        )

    def _populate(self, bucket):
        bucket.put_object(Key='dumps/2024/01/a.sql', Body=b'a')
        bucket.put_object(Key='dumps/2024/02/b.sql', Body=b'b')
        bucket.put_object(Key='dumps/empty/', Body=b'')
        bucket.put_object(Key='other/c.sql', Body=b'c')

    def test_list_files_excludes_markers(self, mock_s3):
        self._populate(mock_s3.Bucket('test-bucket'))
        storage = self._storage()

        files = storage.list_files('dumps')

        assert sorted(files) == ['dumps/2024/01/a.sql', 'dumps/2024/02/b.sql']

    def test_list_directories(self, mock_s3):
        self._populate(mock_s3.Bucket('test-bucket'))
        storage = self._storage()

        directories = storage.list_directories('dumps')

        assert directories == ['dumps/2024', 'dumps/2024/01', 'dumps/2024/02', 'dumps/empty']

    def test_root_prefix(self, mock_s3):
        """Paths are relative to the disk root prefix."""
        bucket = mock_s3.Bucket('test-bucket')
        bucket.put_object(Key='prod/dumps/2024/01/a.sql', Body=b'a')
        storage = self._storage(root='prod')

        assert storage.list_files('dumps') == ['dumps/2024/01/a.sql']
        assert storage.list_directories('dumps') == ['dumps/2024', 'dumps/2024/01']

    def test_get_modified_time(self, mock_s3):
        self._populate(mock_s3.Bucket('test-bucket'))
        storage = self._storage()

        modified = storage.get_modified_time('dumps/2024/01/a.sql')

        now = datetime.now(timezone.utc).timestamp()
        assert abs(now - modified) < 3600

    def test_get_modified_time_missing(self, mock_s3):
        storage = self._storage()

        with pytest.raises(StorageError):
            storage.get_modified_time('dumps/missing.sql')

    def test_delete(self, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        self._populate(bucket)
        storage = self._storage()

        storage.delete('dumps/2024/01/a.sql')

        keys = [obj.key for obj in bucket.objects.all()]
        assert 'dumps/2024/01/a.sql' not in keys
        assert 'dumps/2024/02/b.sql' in keys

    def test_delete_directory_marker(self, mock_s3):
        bucket = mock_s3.Bucket('test-bucket')
        self._populate(bucket)
        storage = self._storage()

        storage.delete_directory('dumps/empty')

        assert 'dumps/empty/' not in [obj.key for obj in bucket.objects.all()]

    def test_delete_directory_not_empty(self, mock_s3):
        self._populate(mock_s3.Bucket('test-bucket'))
        storage = self._storage()

        with pytest.raises(DeleteFailed):
            storage.delete_directory('dumps/2024')

    def test_create_directory_and_exists(self, mock_s3):
        storage = self._storage()

        assert not storage.exists('dumps/2024/10')
        storage.create_directory('dumps/2024/10')

        assert storage.exists('dumps/2024/10')
        assert storage.list_directories('dumps') == ['dumps/2024', 'dumps/2024/10']

    def test_put(self, mock_s3, tmp_path):
        source = tmp_path / 'source.sql'
        source.write_bytes(b'dump data')
        storage = self._storage()

        storage.put(str(source), 'dumps/2024/10/2024-10-19_12-00-00.sql')

        obj = mock_s3.Object('test-bucket', 'dumps/2024/10/2024-10-19_12-00-00.sql')
        assert obj.get()['Body'].read() == b'dump data'
        assert storage.exists('dumps/2024/10/2024-10-19_12-00-00.sql')

    def test_put_missing_source(self, mock_s3):
        storage = self._storage()

        with pytest.raises(StorageError):
            storage.put('/nonexistent/file.sql', 'dumps/x.sql')

    def test_missing_bucket_listing_fails(self, mock_s3):
        storage = S3Storage(bucket_name='no-such-bucket', access_key='k', secret_key='s')

        with pytest.raises(BackendUnavailable):
            storage.list_files('dumps')


class TestCreateStorage:
    """Test storage factory."""

    def test_local(self, tmp_path):
        storage = create_storage(DiskConfig(name='local', driver='local', root=str(tmp_path)))

        assert isinstance(storage, LocalStorage)

    @mock_aws
    def test_s3(self):
        boto3.client('s3', region_name='us-east-1').create_bucket(Bucket='dumps-bucket')

        storage = create_storage(DiskConfig(name='s3', driver='s3', bucket='dumps-bucket', root='prod'))

        assert isinstance(storage, S3Storage)
        assert storage.root == 'prod'

    def test_unsupported_driver(self):
        with pytest.raises(DiskMisconfigured):
            create_storage(DiskConfig(name='ftp', driver='ftp'))
