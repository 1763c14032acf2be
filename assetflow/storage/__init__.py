"""
Storage backends for AssetFlow.
"""

from .blob import (
    BlobStore, BlobInfo, LocalBlobStore, S3BlobStore, create_blob_store,
    StorageError, StorageNotFoundError, StoragePermissionError, StorageConnectionError
)

__all__ = [
    'BlobStore', 'BlobInfo', 'LocalBlobStore', 'S3BlobStore', 'create_blob_store',
    'StorageError', 'StorageNotFoundError', 'StoragePermissionError', 'StorageConnectionError',
]
