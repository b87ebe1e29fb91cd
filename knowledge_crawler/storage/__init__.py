"""
Storage layer for the knowledge crawler.
"""

from .database import (
    DatabaseManager, StorageError, StorageBackend, FileStorageBackend, MongoStorageBackend
)

__all__ = ['DatabaseManager', 'StorageError', 'StorageBackend',
           'FileStorageBackend', 'MongoStorageBackend']
