"""
Crawl controller: builds the shared connections once, seeds the queue and
owns the start/stop lifecycle exposed to the CLI and the trigger server.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .extractor import Article
from .fetcher import WebFetcher
from .job_queue import Job, JobKind, JobQueue
from .providers import RandomPoolProvider, build_user_agent_provider
from .scheduler import CrawlerScheduler
from ..storage.database import DatabaseManager
from ..utils.config import Config


class CrawlController:
    """
    Owns the redis client, the HTTP session and the store connection.

    Usable as an async context manager; ``close`` waits for active jobs
    before releasing the connections.
    """

    def __init__(self, config: Config,
                 redis_client: Optional[redis.Redis] = None,
                 fetcher: Optional[WebFetcher] = None,
                 database: Optional[DatabaseManager] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.redis_client = redis_client
        self.fetcher = fetcher
        self.database = database
        self.job_queue: Optional[JobQueue] = None
        self.scheduler: Optional[CrawlerScheduler] = None
        self._background: Optional[asyncio.Task] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Connect to the broker and the store and build the scheduler."""
        crawler_config = self.config.crawler

        if self.redis_client is None:
            self.redis_client = redis.Redis(
                host=self.config.redis.host,
                port=self.config.redis.port,
                db=self.config.redis.db,
                password=self.config.redis.password,
                decode_responses=True
            )
        await self.redis_client.ping()
        self.logger.info("Redis connection established")

        self.job_queue = JobQueue(
            self.redis_client,
            name=self.config.redis.queue_name,
            max_attempts=crawler_config.max_attempts,
            backoff_base_delay=crawler_config.backoff_base_delay
        )
        # finished jobs from a previous run are discarded, not resumed
        await self.job_queue.clean()

        if self.fetcher is None:
            self.fetcher = WebFetcher(
                request_timeout=crawler_config.request_timeout,
                user_agent_provider=build_user_agent_provider(crawler_config.user_agents),
                cookie_provider=RandomPoolProvider(crawler_config.cookies),
                referer=crawler_config.referer,
                jitter_range=(crawler_config.jitter_min, crawler_config.jitter_max),
                max_attempts=crawler_config.fetch_retry_attempts,
                retry_delay=crawler_config.fetch_retry_delay
            )
        await self.fetcher.start()

        if self.database is None:
            self.database = DatabaseManager(self.config.database)
        await self.database.initialize()

        self.scheduler = CrawlerScheduler(
            crawler_config, self.job_queue, self.fetcher, self.database
        )
        self.logger.info("Crawl controller initialized")

    async def start_crawl(self) -> Job:
        """Seed the queue with the root listing page."""
        job = await self.job_queue.enqueue(
            Job(url=self.config.crawler.start_url, kind=JobKind.LISTING)
        )
        self.logger.info(f"Added initial crawl job to queue: {job.id}")
        self.logger.info(f"Queue status: {await self.job_queue.get_counts()}")
        return job

    async def run(self, max_duration: Optional[float] = None, exit_when_idle: bool = True):
        """Run the workers in the foreground."""
        await self.scheduler.start_crawling(max_duration=max_duration, exit_when_idle=exit_when_idle)

    def start_workers(self) -> asyncio.Task:
        """Run the workers in the background until ``stop`` is called."""
        if self._background is None or self._background.done():
            self._background = asyncio.create_task(
                self.scheduler.start_crawling(exit_when_idle=False)
            )
        return self._background

    async def test_storage(self) -> Dict[str, Any]:
        """Write a synthetic article and read it back."""
        now = datetime.now(timezone.utc).isoformat()
        article = Article(
            title=f"Storage test {now}",
            url=f"http://test.com/{int(time.time() * 1000)}",
            summary="Storage test summary",
            tags=["test"],
            category="test",
            content="<p>Storage test content</p>",
            content_text="Storage test content",
            author="crawler",
            publish_time=now,
            word_count=3,
        )
        stored = await self.database.upsert_article(article)
        self.logger.info(f"Storage test article saved: {article.url}")
        return stored

    async def stop(self):
        """Stop the workers, letting active jobs finish."""
        if self.scheduler and self.scheduler.is_running:
            await self.scheduler.stop_crawling()
        if self._background is not None:
            await asyncio.gather(self._background, return_exceptions=True)
            self._background = None

    async def close(self):
        """Stop crawling and release all connections."""
        try:
            await self.stop()
        finally:
            if self.fetcher:
                await self.fetcher.close()
            if self.database:
                await self.database.close()
            if self.redis_client:
                await self.redis_client.aclose()
            self.logger.info("Crawl controller closed")
