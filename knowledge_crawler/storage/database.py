"""
Article storage layer.
Supports MongoDB and file-based storage, both keyed by article URL.
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import asdict
from datetime import datetime, timezone

from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from ..crawler.extractor import Article
from ..utils.config import DatabaseConfig


class StorageError(Exception):
    """Raised when an article cannot be written or verified."""

    def __init__(self, message: str, connection_lost: bool = False):
        super().__init__(message)
        self.connection_lost = connection_lost


class StorageBackend:
    """Abstract base class for storage backends."""

    async def connect(self):
        """Open (or reopen) the backend connection."""
        raise NotImplementedError

    async def upsert(self, document: Dict[str, Any]):
        """Replace the document sharing ``document['url']``, or insert it."""
        raise NotImplementedError

    async def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        """Retrieve a stored document by URL."""
        raise NotImplementedError

    async def count_articles(self) -> int:
        """Number of stored documents."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


class FileStorageBackend(StorageBackend):
    """File-based storage backend for development and tests."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
        }

    async def connect(self):
        """Create data directory structure."""
        try:
            (self.data_directory / 'articles').mkdir(parents=True, exist_ok=True)
            self.logger.info(f"File storage initialized at {self.data_directory}")
        except OSError as e:
            raise StorageError(f"Failed to initialize file storage: {e}", connection_lost=True) from e

    def _get_file_path(self, url: str) -> Path:
        """Generate file path for URL."""
        url_hash = hashlib.sha256(url.encode('utf-8')).hexdigest()
        return self.data_directory / 'articles' / url_hash[:2] / f"{url_hash}.json"

    async def upsert(self, document: Dict[str, Any]):
        """Write the document, replacing any previous version for its URL."""
        file_path = self._get_file_path(document['url'])
        tmp_path = file_path.with_suffix('.tmp')
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, ensure_ascii=False, indent=2, default=str)
            os.replace(tmp_path, file_path)
        except OSError as e:
            self.stats['storage_errors'] += 1
            raise StorageError(f"Error storing article {document['url']}: {e}") from e

        self.stats['total_stored'] += 1
        self.logger.debug(f"Stored article to {file_path}")

    async def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        """Retrieve an article from file."""
        file_path = self._get_file_path(url)
        if not file_path.exists():
            return None

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Error reading article {url}: {e}") from e

    async def count_articles(self) -> int:
        return sum(1 for _ in (self.data_directory / 'articles').rglob('*.json'))

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        return {**self.stats, 'articles': await self.count_articles()}

    async def close(self):
        pass


class MongoStorageBackend(StorageBackend):
    """MongoDB storage backend with a unique index on ``url``."""

    def __init__(self, config: Dict[str, Any]):
        self.uri = config.get('uri', 'mongodb://localhost:27017')
        self.database_name = config.get('database', 'crawler_data')
        self.collection_name = config.get('collection', 'jiandan_articles')
        self.client: Optional[AsyncMongoClient] = None
        self.collection = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
        }

    async def connect(self):
        """Connect, ping and make sure the unique index exists."""
        if self.client is not None:
            await self.client.close()

        self.logger.info(f"Connecting to MongoDB {self.database_name}.{self.collection_name}")
        try:
            self.client = AsyncMongoClient(self.uri, serverSelectionTimeoutMS=5000)
            database = self.client[self.database_name]
            await database.command('ping')

            self.collection = database[self.collection_name]
            await self.collection.create_index('url', unique=True)
        except PyMongoError as e:
            self.collection = None
            raise StorageError(f"Failed to connect to MongoDB: {e}", connection_lost=True) from e

        self.logger.info(f"MongoDB connected: {self.database_name}.{self.collection_name}")

    async def upsert(self, document: Dict[str, Any]):
        """Replace all fields of the document sharing this URL, or insert."""
        if self.collection is None:
            raise StorageError("MongoDB collection not initialized", connection_lost=True)

        try:
            try:
                result = await self.collection.replace_one(
                    {'url': document['url']}, document, upsert=True
                )
            except DuplicateKeyError:
                # a concurrent upsert inserted the same URL first
                result = await self.collection.replace_one({'url': document['url']}, document)
        except ConnectionFailure as e:
            self.stats['storage_errors'] += 1
            raise StorageError(f"MongoDB connection lost: {e}", connection_lost=True) from e
        except PyMongoError as e:
            self.stats['storage_errors'] += 1
            raise StorageError(f"MongoDB write failed for {document['url']}: {e}") from e

        self.stats['total_stored'] += 1
        self.logger.debug(
            f"MongoDB upsert {document['url']}: matched={result.matched_count}, "
            f"modified={result.modified_count}, upserted={result.upserted_id}"
        )

    async def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        """Retrieve an article from MongoDB."""
        if self.collection is None:
            raise StorageError("MongoDB collection not initialized", connection_lost=True)

        try:
            document = await self.collection.find_one({'url': url})
        except ConnectionFailure as e:
            raise StorageError(f"MongoDB connection lost: {e}", connection_lost=True) from e
        except PyMongoError as e:
            raise StorageError(f"MongoDB read failed for {url}: {e}") from e

        if document is not None:
            document['_id'] = str(document['_id'])
        return document

    async def count_articles(self) -> int:
        if self.collection is None:
            raise StorageError("MongoDB collection not initialized", connection_lost=True)

        try:
            return await self.collection.count_documents({})
        except ConnectionFailure as e:
            raise StorageError(f"MongoDB connection lost: {e}", connection_lost=True) from e
        except PyMongoError as e:
            raise StorageError(f"MongoDB count failed: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        try:
            return {**self.stats, 'articles': await self.count_articles()}
        except StorageError as e:
            self.logger.error(f"Error getting stats: {e}")
            return self.stats.copy()

    async def close(self):
        """Close MongoDB connections."""
        if self.client is not None:
            await self.client.close()
            self.client = None
            self.collection = None
            self.logger.info("MongoDB connection closed")


class DatabaseManager:
    """
    Idempotent article persistence on top of a storage backend.

    Tracks the connection state: a write attempted while the connection is
    down triggers one reconnect first.
    """

    def __init__(self, config: DatabaseConfig, backend: Optional[StorageBackend] = None):
        self.config = config
        self.backend = backend
        self.connected = False
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Create the configured backend and connect it."""
        if self.backend is None:
            backend_type = self.config.type.lower()
            if backend_type == 'mongodb':
                self.backend = MongoStorageBackend(self.config.mongodb)
            elif backend_type == 'file':
                self.backend = FileStorageBackend(self.config.file['data_directory'])
            else:
                raise StorageError(f"Unknown database type: {backend_type}")

        await self.backend.connect()
        self.connected = True
        self.logger.info(f"Database manager initialized with {type(self.backend).__name__}")

    async def _ensure_connected(self):
        if self.connected:
            return
        if self.backend is None:
            raise StorageError("Database not initialized")

        self.logger.warning("Storage connection is down, reconnecting")
        try:
            await self.backend.connect()
        except Exception as e:
            raise StorageError(f"Reconnect failed: {e}", connection_lost=True) from e
        self.connected = True

    async def upsert_article(self, article: Article) -> Dict[str, Any]:
        """
        Insert or replace the article keyed by URL and return the stored
        document as read back from the store.
        """
        await self._ensure_connected()

        document = asdict(article)
        document['last_updated'] = datetime.now(timezone.utc)

        self.logger.info(f"Saving article: {article.title} ({article.url}, {len(article.content)} chars)")
        try:
            await self.backend.upsert(document)
            saved = await self.backend.get_article(article.url)
        except StorageError as e:
            if e.connection_lost:
                self.connected = False
            self.logger.error(f"Failed to save article {article.url}: {e}")
            raise

        if saved is None:
            raise StorageError(f"Article missing after write: {article.url}")

        self.logger.info(f"Article saved: {article.title}")
        return saved

    async def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        """Retrieve a stored article by URL."""
        await self._ensure_connected()
        return await self.backend.get_article(url)

    async def count_articles(self) -> int:
        await self._ensure_connected()
        return await self.backend.count_articles()

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        if not self.backend:
            raise StorageError("Database not initialized")
        return await self.backend.get_stats()

    async def close(self):
        """Close database connections."""
        if self.backend:
            await self.backend.close()
        self.connected = False
