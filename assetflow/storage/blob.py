"""
Blob storage abstraction for AssetFlow.

Provides a bucket-scoped interface over local disk and S3-compatible object
stores. Every destructive or skip decision in the pipeline is preceded by an
``exists``/``head`` check through this interface.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any, List
import mimetypes
import shutil
from datetime import datetime
import logging
from dataclasses import dataclass

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, EndpointConnectionError

logger = logging.getLogger(__name__)


@dataclass
class BlobInfo:
    """Metadata for a stored object."""
    key: str
    size: int = 0
    modified: Optional[datetime] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None

    def __post_init__(self):
        if self.modified is None:
            self.modified = datetime.utcnow()


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageNotFoundError(StorageError):
    """Raised when a storage object is not found."""
    pass


class StoragePermissionError(StorageError):
    """Raised when storage operation lacks permissions."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage backend connection fails."""
    pass


class BlobStore(ABC):
    """Abstract bucket-scoped blob store."""

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        """Check if an object exists."""
        pass

    @abstractmethod
    def get(self, bucket: str, key: str) -> bytes:
        """Read an object's bytes. Raises StorageNotFoundError if missing."""
        pass

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes,
            content_type: Optional[str] = None) -> BlobInfo:
        """Write an object, replacing any existing one."""
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str) -> bool:
        """Delete an object. Returns True if something was deleted."""
        pass

    @abstractmethod
    def list(self, bucket: str, prefix: str = "") -> List[str]:
        """List keys under a prefix, sorted."""
        pass

    @abstractmethod
    def head(self, bucket: str, key: str) -> BlobInfo:
        """Get object metadata. Raises StorageNotFoundError if missing."""
        pass

    @abstractmethod
    def copy(self, bucket: str, source_key: str, destination_key: str) -> BlobInfo:
        """Copy an object within a bucket."""
        pass

    def move(self, bucket: str, source_key: str, destination_key: str) -> BlobInfo:
        """
        Move an object: copy, confirm the copy exists, then delete the source.

        The source is left untouched if the copy cannot be confirmed.
        """
        self.copy(bucket, source_key, destination_key)
        if not self.exists(bucket, destination_key):
            raise StorageError(
                f"Copy verification failed: {destination_key} missing after copy from {source_key}"
            )
        self.delete(bucket, source_key)
        return self.head(bucket, destination_key)

    @staticmethod
    def guess_content_type(key: str) -> str:
        return mimetypes.guess_type(key)[0] or 'application/octet-stream'


class LocalBlobStore(BlobStore):
    """Local filesystem blob store. Buckets are directories under base_path."""

    def __init__(self, base_path: str):
        """
        Initialize local storage.

        Args:
            base_path: Base directory holding one directory per bucket
        """
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _full_path(self, bucket: str, key: str) -> Path:
        """Get full path for a bucket/key pair."""
        bucket_root = (self.base_path / bucket).resolve()
        full_path = (bucket_root / key).resolve()
        # Ensure path is within the bucket directory
        try:
            bucket_root.relative_to(self.base_path)
            full_path.relative_to(bucket_root)
        except ValueError:
            raise StoragePermissionError(f"Key '{key}' is outside bucket '{bucket}'")
        return full_path

    def exists(self, bucket: str, key: str) -> bool:
        return self._full_path(bucket, key).is_file()

    def get(self, bucket: str, key: str) -> bytes:
        full_path = self._full_path(bucket, key)
        if not full_path.is_file():
            raise StorageNotFoundError(f"Object not found: {bucket}/{key}")
        return full_path.read_bytes()

    def put(self, bucket: str, key: str, data: bytes,
            content_type: Optional[str] = None) -> BlobInfo:
        full_path = self._full_path(bucket, key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return BlobInfo(key=key, size=len(data),
                        content_type=content_type or self.guess_content_type(key))

    def delete(self, bucket: str, key: str) -> bool:
        full_path = self._full_path(bucket, key)
        if full_path.is_file():
            full_path.unlink()
            return True
        return False

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        bucket_root = self._full_path(bucket, '')
        if not bucket_root.exists():
            return []
        keys = []
        for path in bucket_root.rglob('*'):
            if path.is_file():
                rel_key = path.relative_to(bucket_root).as_posix()
                if rel_key.startswith(prefix):
                    keys.append(rel_key)
        return sorted(keys)

    def head(self, bucket: str, key: str) -> BlobInfo:
        full_path = self._full_path(bucket, key)
        if not full_path.is_file():
            raise StorageNotFoundError(f"Object not found: {bucket}/{key}")
        stat = full_path.stat()
        return BlobInfo(
            key=key,
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime),
            content_type=self.guess_content_type(key),
        )

    def copy(self, bucket: str, source_key: str, destination_key: str) -> BlobInfo:
        src = self._full_path(bucket, source_key)
        if not src.is_file():
            raise StorageNotFoundError(f"Object not found: {bucket}/{source_key}")
        dst = self._full_path(bucket, destination_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        return self.head(bucket, destination_key)


class S3BlobStore(BlobStore):
    """S3 (or S3-compatible) blob store."""

    def __init__(self, region: str = 'us-east-1', endpoint_url: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 max_attempts: int = 3):
        """
        Initialize S3 storage.

        Args:
            region: AWS region
            endpoint_url: Custom endpoint for S3-compatible services (MinIO etc.)
            access_key: AWS access key (uses environment/IAM if not provided)
            secret_key: AWS secret key (uses environment/IAM if not provided)
            max_attempts: botocore retry attempts per request
        """
        self.region = region
        client_kwargs: Dict[str, Any] = {
            'region_name': region,
            'config': BotoConfig(retries={'max_attempts': max_attempts, 'mode': 'standard'}),
        }
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        self.s3_client = boto3.client('s3', **client_kwargs)

    @staticmethod
    def _translate(error: ClientError, bucket: str, key: str) -> StorageError:
        code = str(error.response.get('Error', {}).get('Code', ''))
        message = f"{bucket}/{key}: {error}"
        if code in ('404', 'NoSuchKey', 'NotFound'):
            return StorageNotFoundError(f"Object not found: {message}")
        if code in ('403', 'AccessDenied'):
            return StoragePermissionError(f"Access denied: {message}")
        return StorageError(message)

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            error = self._translate(e, bucket, key)
            if isinstance(error, StorageNotFoundError):
                return False
            raise error from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(str(e)) from e

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            return response['Body'].read()
        except ClientError as e:
            raise self._translate(e, bucket, key) from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(str(e)) from e

    def put(self, bucket: str, key: str, data: bytes,
            content_type: Optional[str] = None) -> BlobInfo:
        content_type = content_type or self.guess_content_type(key)
        try:
            response = self.s3_client.put_object(
                Bucket=bucket, Key=key, Body=data, ContentType=content_type
            )
        except ClientError as e:
            raise self._translate(e, bucket, key) from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(str(e)) from e
        return BlobInfo(key=key, size=len(data), content_type=content_type,
                        etag=response.get('ETag', '').strip('"') or None)

    def delete(self, bucket: str, key: str) -> bool:
        if not self.exists(bucket, key):
            return False
        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise self._translate(e, bucket, key) from e
        return True

    def list(self, bucket: str, prefix: str = "") -> List[str]:
        paginator = self.s3_client.get_paginator('list_objects_v2')
        keys = []
        try:
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])
        except ClientError as e:
            raise self._translate(e, bucket, prefix) from e
        return sorted(keys)

    def head(self, bucket: str, key: str) -> BlobInfo:
        try:
            response = self.s3_client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise self._translate(e, bucket, key) from e
        except EndpointConnectionError as e:
            raise StorageConnectionError(str(e)) from e
        return BlobInfo(
            key=key,
            size=response['ContentLength'],
            modified=response.get('LastModified'),
            content_type=response.get('ContentType'),
            etag=response.get('ETag', '').strip('"') or None,
        )

    def copy(self, bucket: str, source_key: str, destination_key: str) -> BlobInfo:
        try:
            self.s3_client.copy_object(
                CopySource={'Bucket': bucket, 'Key': source_key},
                Bucket=bucket,
                Key=destination_key,
            )
        except ClientError as e:
            raise self._translate(e, bucket, source_key) from e
        return self.head(bucket, destination_key)


def create_blob_store(config: Dict[str, Any]) -> BlobStore:
    """
    Create a blob store from the ``storage`` config section.

    Args:
        config: Storage configuration dictionary

    Returns:
        BlobStore instance
    """
    storage_type = config.get('type', 'local')

    if storage_type == 'local':
        return LocalBlobStore(config.get('base_path') or './storage')
    elif storage_type == 's3':
        return S3BlobStore(
            region=config.get('region') or 'us-east-1',
            endpoint_url=config.get('endpoint_url') or None,
            access_key=config.get('access_key') or None,
            secret_key=config.get('secret_key') or None,
        )
    else:
        raise ValueError(f"Unknown storage type: {storage_type}")
