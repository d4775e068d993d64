"""
Storage adapters for dump files.

Supports:
- LocalStorage: dumps in a local directory tree
- S3Storage: dumps in an AWS S3 bucket (or any S3-compatible endpoint)

Both expose the same narrow interface (BaseStorage). Paths are always
'/'-separated and relative to the disk root.
"""

import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from dumpkeeper.config import DiskConfig, DiskMisconfigured


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class BackendUnavailable(StorageError):
    """Raised when the backend cannot be reached or listed."""
    pass


class DeleteFailed(StorageError):
    """Raised when a file or directory cannot be deleted."""
    pass


def join_path(*parts: str) -> str:
    """Join storage path segments with '/', skipping empty ones."""
    return '/'.join(p.strip('/') for p in parts if p and p.strip('/'))


class BaseStorage(ABC):
    """Interface the dump catalog and retention engine rely on."""

    @abstractmethod
    def list_files(self, prefix: str) -> List[str]:
        """Recursively list file paths under prefix."""

    @abstractmethod
    def list_directories(self, prefix: str) -> List[str]:
        """Recursively list directory paths under prefix (prefix excluded)."""

    @abstractmethod
    def get_modified_time(self, path: str) -> float:
        """Backend-reported modification time as a Unix timestamp."""

    @abstractmethod
    def delete(self, path: str):
        """Delete a file."""

    @abstractmethod
    def delete_directory(self, path: str):
        """Delete an empty directory. Fails if it is not empty."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether a file or directory exists."""

    @abstractmethod
    def create_directory(self, path: str):
        """Create a directory (and parents)."""

    @abstractmethod
    def put(self, local_path: str, path: str):
        """Copy a local file to path on this storage."""


class LocalStorage(BaseStorage):
    """
    Handler for dumps stored in the local filesystem.

    All paths are relative to base_path.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Root directory of the disk
        """
        self.base_path = Path(base_path)

        # Create base directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise BackendUnavailable(f"Failed to create local storage directory: {e}")

    def _full_path(self, relative_path: str) -> Path:
        return self.base_path / relative_path.strip('/')

    def _relative(self, full_path: Path) -> str:
        return full_path.relative_to(self.base_path).as_posix()

    def list_files(self, prefix: str) -> List[str]:
        """
        List all files under prefix.

        Args:
            prefix: Directory relative to base_path

        Returns:
            Sorted list of relative file paths (empty if prefix doesn't exist)

        Raises:
            BackendUnavailable: If listing fails
        """
        root = self._full_path(prefix)

        if not root.exists():
            return []

        try:
            return sorted(
                self._relative(p) for p in root.rglob('*') if p.is_file()
            )
        except Exception as e:
            raise BackendUnavailable(f"Failed to list local files: {e}")

    def list_directories(self, prefix: str) -> List[str]:
        """
        List all directories under prefix.

        Raises:
            BackendUnavailable: If listing fails
        """
        root = self._full_path(prefix)

        if not root.exists():
            return []

        try:
            return sorted(
                self._relative(p) for p in root.rglob('*') if p.is_dir()
            )
        except Exception as e:
            raise BackendUnavailable(f"Failed to list local directories: {e}")

    def get_modified_time(self, path: str) -> float:
        """
        Get file modification time.

        Raises:
            StorageError: If the file cannot be stat'ed
        """
        try:
            return self._full_path(path).stat().st_mtime
        except FileNotFoundError:
            raise StorageError(f"File not found: {path}")
        except Exception as e:
            raise BackendUnavailable(f"Failed to stat {path}: {e}")

    def delete(self, path: str):
        """
        Delete a file from local storage.

        Raises:
            DeleteFailed: If the file is missing or cannot be removed
        """
        full_path = self._full_path(path)

        try:
            full_path.unlink()
        except FileNotFoundError:
            raise DeleteFailed(f"File not found: {full_path}")
        except PermissionError as e:
            raise DeleteFailed(f"Permission denied deleting {full_path}: {e}")
        except Exception as e:
            raise DeleteFailed(f"Failed to delete local file: {e}")

    def delete_directory(self, path: str):
        """
        Remove an empty directory.

        Raises:
            DeleteFailed: If the directory is not empty or cannot be removed
        """
        full_path = self._full_path(path)

        try:
            full_path.rmdir()
        except OSError as e:
            raise DeleteFailed(f"Failed to remove directory {full_path}: {e}")

    def exists(self, path: str) -> bool:
        return self._full_path(path).exists()

    def create_directory(self, path: str):
        try:
            self._full_path(path).mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create directory {path}: {e}")

    def put(self, local_path: str, path: str):
        """
        Copy a local file into storage.

        Raises:
            StorageError: If the source is missing or the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Source file not found: {local_path}")

        dest_path = self._full_path(path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to store locally: {e}")


class S3Storage(BaseStorage):
    """
    Handler for dumps stored in AWS S3.

    Keys are {root}/{path}. Directories are key prefixes; empty ones exist
    only as zero-byte marker objects whose key ends with '/'.
    """

    def __init__(self, bucket_name: str, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, region: str = 'us-east-1',
                 root: str = '', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: AWS access key ID (default credential chain when None)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            root: Key prefix all paths are relative to
            endpoint_url: Custom endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.region = region
        self.root = root.strip('/')
        self._modified_cache: Dict[str, float] = {}

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise BackendUnavailable(f"Failed to initialize S3 client: {e}")

    def _key(self, path: str) -> str:
        return join_path(self.root, path)

    def _relative(self, key: str) -> str:
        if self.root:
            return key[len(self.root) + 1:]
        return key

    def _iter_objects(self, prefix: str):
        key_prefix = self._key(prefix)
        if key_prefix:
            key_prefix += '/'

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix):
                for obj in page.get('Contents', []):
                    yield obj
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise BackendUnavailable(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackendUnavailable(f"Failed to list S3 objects: {e}")

    def list_files(self, prefix: str) -> List[str]:
        """
        List object keys under prefix, excluding directory markers.

        Modification times from the listing are cached for get_modified_time.

        Raises:
            BackendUnavailable: If listing fails
        """
        files = []

        for obj in self._iter_objects(prefix):
            if obj['Key'].endswith('/'):
                continue
            path = self._relative(obj['Key'])
            self._modified_cache[path] = obj['LastModified'].timestamp()
            files.append(path)

        return files

    def list_directories(self, prefix: str) -> List[str]:
        """
        List directory prefixes under prefix.

        Derived from the parents of every key plus explicit marker objects.

        Raises:
            BackendUnavailable: If listing fails
        """
        base = prefix.strip('/')
        directories = set()

        for obj in self._iter_objects(prefix):
            path = self._relative(obj['Key']).rstrip('/')
            if obj['Key'].endswith('/'):
                directories.add(path)
            parent = path.rsplit('/', 1)[0] if '/' in path else ''
            while parent and parent != base and parent.startswith(base):
                directories.add(parent)
                parent = parent.rsplit('/', 1)[0] if '/' in parent else ''

        directories.discard(base)
        return sorted(directories)

    def get_modified_time(self, path: str) -> float:
        """
        Get object LastModified as a Unix timestamp.

        Raises:
            StorageError: If the object cannot be read
        """
        if path in self._modified_cache:
            return self._modified_cache[path]

        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(path))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise BackendUnavailable(f"Failed to read S3 object metadata: {e}")

        modified = response['LastModified'].timestamp()
        self._modified_cache[path] = modified
        return modified

    def delete(self, path: str):
        """
        Delete an object from S3.

        Raises:
            DeleteFailed: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(path)
            )
            self._modified_cache.pop(path, None)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeleteFailed(f"S3 delete failed ({error_code}): {e}")
        except Exception as e:
            raise DeleteFailed(f"Failed to delete from S3: {e}")

    def delete_directory(self, path: str):
        """
        Delete a directory marker.

        Raises:
            DeleteFailed: If any object other than the marker remains under path
        """
        marker = self._key(path) + '/'
        leftovers = [obj['Key'] for obj in self._iter_objects(path) if obj['Key'] != marker]
        if leftovers:
            raise DeleteFailed(f"Directory not empty: {path}")

        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=marker)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeleteFailed(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DeleteFailed(f"Failed to delete S3 directory marker: {e}")

    def exists(self, path: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(path))
            return True
        except ClientError:
            pass

        return any(True for _ in self._iter_objects(path))

    def create_directory(self, path: str):
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=self._key(path) + '/', Body=b'')
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to create S3 directory {path}: {e}")

    def put(self, local_path: str, path: str):
        """
        Upload a local file to S3.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            self.s3_client.upload_file(local_path, self.bucket_name, self._key(path))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")


def create_storage(disk: DiskConfig) -> BaseStorage:
    """
    Factory function to create a storage handler for a disk.

    Args:
        disk: Validated disk definition

    Returns:
        LocalStorage or S3Storage

    Raises:
        DiskMisconfigured: If the driver is unsupported
    """
    if disk.driver == 'local':
        return LocalStorage(disk.root)
    elif disk.driver == 's3':
        return S3Storage(
            bucket_name=disk.bucket,
            access_key=disk.access_key,
            secret_key=disk.secret_key,
            region=disk.region,
            root=disk.root,
            endpoint_url=disk.endpoint_url
        )
    else:
        raise DiskMisconfigured(f"Unsupported storage driver: {disk.driver}")
