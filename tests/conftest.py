"""
Shared pytest fixtures for dumpkeeper tests.

This module provides fixtures for:
- Flask app and test client with in-memory SQLite
- Local disk with a 'local' storage target
- Dump file factories
- Mock fixtures for S3 (moto)
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from dumpkeeper import create_app, db as _db
from dumpkeeper.config import load_dump_settings
from dumpkeeper.dumps.artifact import DumpArtifact
from dumpkeeper.dumps.storage import BaseStorage


NOW = datetime(2024, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def dump_name(moment: datetime, extension: str = '.sql') -> str:
    return moment.strftime('%Y-%m-%d_%H-%M-%S') + extension


def dump_path(moment: datetime, extension: str = '.sql') -> str:
    """Path the way dumps are placed: dumps/YYYY/MM/<timestamp>.sql"""
    return f"dumps/{moment:%Y}/{moment:%m}/{dump_name(moment, extension)}"


@pytest.fixture
def disk_root(tmp_path):
    """Root directory of the local test disk."""
    root = tmp_path / 'disk'
    root.mkdir()
    return root


@pytest.fixture
def dump_config(disk_root):
    """Raw config with a local target 'local' at <disk>/dumps."""
    return {
        'DUMP_DISKS': {'local': {'driver': 'local', 'root': str(disk_root)}},
        'DUMP_STORAGES': {'local': {'disk': 'local', 'path': 'dumps'}},
        'DUMP_RETENTION': {},
        'DUMP_COMPRESS': False,
        'DUMP_USE_UTC': True,
    }


@pytest.fixture
def settings(dump_config):
    """Validated DumpSettings for the local test disk."""
    return load_dump_settings(dump_config)


@pytest.fixture
def make_dump(disk_root):
    """
    Create a dump file on the local disk for a given moment.

    Returns the relative storage path.
    """
    def _make(moment: datetime, extension: str = '.sql', path: str = None) -> str:
        relative = path or dump_path(moment, extension)
        full = disk_root / relative
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(b'-- dump\n')
        return relative

    return _make


@pytest.fixture
def memory_artifacts():
    """
    Build artifacts whose timestamps come from their names only.

    The backing storage is a mock, so nothing touches disk.
    """
    storage = MagicMock(spec=BaseStorage)

    def _build(moments):
        return [DumpArtifact(storage, dump_path(moment)) for moment in moments]

    _build.storage = storage
    return _build


@pytest.fixture(scope='function')
def app(dump_config):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and a temporary local disk.
    """
    app = create_app('testing', dump_config)
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3
