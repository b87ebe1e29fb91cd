"""
Crawler scheduler: runs the worker pool that drains the job queue and the
listing/detail handlers each job is dispatched to.
"""

import asyncio
import logging
import random
import time
from typing import Dict, List, Optional
from dataclasses import dataclass

from .job_queue import JobQueue, Job, JobKind, JobState
from .fetcher import WebFetcher
from .extractor import ListingExtractor, DetailExtractor, classify_page
from ..storage.database import DatabaseManager
from ..utils.config import CrawlerConfig
from ..utils.logger import get_crawler_logger


@dataclass
class CrawlStats:
    """Statistics for crawl operations."""
    start_time: float
    jobs_processed: int = 0
    listings_crawled: int = 0
    articles_stored: int = 0
    retries: int = 0
    dead_lettered: int = 0
    errors: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class CrawlerScheduler:
    """
    Coordinates the queue, fetcher, extractors and storage.

    Each worker runs one job end-to-end before taking the next; stopping lets
    active jobs finish.
    """

    def __init__(self, config: CrawlerConfig, job_queue: JobQueue, fetcher: WebFetcher,
                 database: DatabaseManager,
                 listing_extractor: Optional[ListingExtractor] = None,
                 detail_extractor: Optional[DetailExtractor] = None):
        self.config = config
        self.job_queue = job_queue
        self.fetcher = fetcher
        self.database = database
        self.listing_extractor = listing_extractor or ListingExtractor()
        self.detail_extractor = detail_extractor or DetailExtractor()
        self.logger = logging.getLogger(__name__)

        self.stats = CrawlStats(start_time=time.time())
        self.is_running = False
        self.workers: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

        self.job_queue.on('retrying', self._on_retrying)
        self.job_queue.on('dead_lettered', self._on_dead_lettered)

    def _on_retrying(self, job: Job, error: BaseException, delay: float):
        self.stats.retries += 1
        self.logger.warning(
            f"Job {job.id} ({job.url}) failed on attempt {job.attempt + 1}, "
            f"retrying in {delay:.1f}s: {error}"
        )

    def _on_dead_lettered(self, job: Job, error: BaseException):
        self.stats.dead_lettered += 1
        self.logger.error(
            f"Job {job.id} ({job.url}) dead-lettered after {job.attempt + 1} attempts: {error}"
        )

    def jitter_delay(self) -> float:
        """Delay for newly discovered jobs, in [jitter_min, jitter_max)."""
        return self.config.jitter_min + random.random() * (self.config.jitter_max - self.config.jitter_min)

    async def start_crawling(self, max_duration: Optional[float] = None,
                             exit_when_idle: bool = True):
        """
        Run the worker pool.

        Args:
            max_duration: Stop after this many seconds (None for unlimited)
            exit_when_idle: Stop once the queue holds no waiting, delayed or
                active jobs
        """
        if self.is_running:
            self.logger.warning("Crawler is already running")
            return

        self.is_running = True
        self._stop_event.clear()
        self.stats = CrawlStats(start_time=time.time())

        self.workers = [
            asyncio.create_task(self.dispatch(f"worker-{i}", max_duration, exit_when_idle))
            for i in range(self.config.concurrency)
        ]
        stats_task = asyncio.create_task(self._stats_reporter())
        self.logger.info(f"Started crawling with {len(self.workers)} workers")

        try:
            await asyncio.gather(*self.workers)
        finally:
            stats_task.cancel()
            self.is_running = False
            self.workers = []
            try:
                await self._log_final_stats()
            except Exception as e:
                self.logger.error(f"Could not log final stats: {e}")

    async def dispatch(self, worker_id: str, max_duration: Optional[float] = None,
                       exit_when_idle: bool = False):
        """
        Worker loop: pull the next eligible job and process it.
        """
        log = get_crawler_logger(__name__, worker_id=worker_id)
        log.debug(f"Worker {worker_id} started")

        while not self._stop_event.is_set():
            if max_duration and self.stats.elapsed_time >= max_duration:
                log.info(f"Reached max duration: {max_duration} seconds")
                break

            try:
                job = await self.job_queue.next_job()
                if job is None:
                    if exit_when_idle and await self.job_queue.is_idle():
                        log.info(f"Queue drained, worker {worker_id} exiting")
                        break
                    await self._idle_wait()
                    continue

                log.log_job_event(logging.INFO, job, f"Processing {job.kind.value} job: {job.url}")
                await self.process_job(job)

            except Exception as e:
                # queue broker errors; keep the worker alive
                log.error(f"Worker {worker_id} error: {e}", exc_info=True)
                self.stats.errors += 1
                await self._idle_wait()

        log.debug(f"Worker {worker_id} finished")

    async def _idle_wait(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def process_job(self, job: Job) -> JobState:
        """Run the handler for an active job and report the outcome to the queue."""
        self.stats.jobs_processed += 1
        error: Optional[Exception] = None
        try:
            if job.kind == JobKind.LISTING:
                await self.crawl_listing(job.url)
            else:
                await self.crawl_detail(job.url)
        except Exception as e:
            self.stats.errors += 1
            self.logger.error(f"Job {job.id} failed: {type(e).__name__}: {e}")
            error = e

        try:
            if error is not None:
                return await self.job_queue.fail(job, error)
            await self.job_queue.complete(job)
            return JobState.COMPLETED
        except Exception:
            self.logger.error(f"Could not record the outcome of job {job.id}", exc_info=True)
            await self.job_queue.release(job)
            raise

    async def crawl_listing(self, url: str):
        """
        Fetch a listing page and enqueue its articles and next page.

        Fetch and parse failures are logged and swallowed unless
        ``retry_failed_listings`` is set; enqueue failures always propagate.
        """
        self.logger.info(f"Crawling listing page: {url}")
        try:
            response = await self.fetcher.fetch(url)
            self.logger.info(f"Got response from {url}, status: {response.status_code}")
            listing = self.listing_extractor.extract(response.content, url)
        except Exception as e:
            self.logger.error(f"Failed to crawl listing page {url}: {e}", exc_info=True)
            if self.config.retry_failed_listings:
                raise
            return

        self.stats.listings_crawled += 1
        for link in listing.links:
            self.logger.info(f"Found article: {link.title} at {link.url}")
            await self.job_queue.enqueue(Job(url=link.url, kind=JobKind.DETAIL), self.jitter_delay())

        if listing.next_page_url:
            self.logger.info(f"Found next page: {listing.next_page_url}")
            await self.job_queue.enqueue(
                Job(url=listing.next_page_url, kind=JobKind.LISTING), self.jitter_delay()
            )

    async def crawl_detail(self, url: str):
        """Fetch a detail page, extract the article and upsert it."""
        self.logger.info(f"Crawling detail page: {url}")
        page_type = classify_page(url)

        response = await self.fetcher.fetch(url)
        article = self.detail_extractor.extract(response.content, url, page_type)

        await self.database.upsert_article(article)
        self.stats.articles_stored += 1
        self.logger.info(f"Saved article: {article.title}")

    async def stop_crawling(self):
        """Stop the workers once their current jobs finish."""
        self.logger.info("Stopping crawler...")
        self._stop_event.set()
        if self.workers:
            await asyncio.gather(*self.workers, return_exceptions=True)

    async def _stats_reporter(self, interval: float = 30.0):
        """Periodically log crawl progress."""
        while True:
            await asyncio.sleep(interval)
            try:
                counts = await self.job_queue.get_counts()
            except Exception as e:
                self.logger.error(f"Error in stats reporter: {e}")
                continue

            self.logger.info(
                f"Crawl Progress: "
                f"Processed={self.stats.jobs_processed}, "
                f"Stored={self.stats.articles_stored}, "
                f"Waiting={counts['waiting']}, "
                f"Delayed={counts['delayed']}, "
                f"Retries={self.stats.retries}, "
                f"DeadLettered={self.stats.dead_lettered}"
            )

    async def _log_final_stats(self):
        """Log final crawl statistics."""
        counts = await self.job_queue.get_counts()

        self.logger.info("=== CRAWL FINISHED ===")
        self.logger.info(f"Jobs processed: {self.stats.jobs_processed}")
        self.logger.info(f"Listing pages crawled: {self.stats.listings_crawled}")
        self.logger.info(f"Articles stored: {self.stats.articles_stored}")
        self.logger.info(f"Retries scheduled: {self.stats.retries}")
        self.logger.info(f"Dead-lettered jobs: {self.stats.dead_lettered}")
        self.logger.info(f"Errors: {self.stats.errors}")
        self.logger.info(f"Total time: {self.stats.elapsed_time:.2f} seconds")
        self.logger.info(f"Queue status: {counts}")
        self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")

    def get_stats(self) -> Dict:
        """Get current crawl statistics."""
        return {
            'jobs_processed': self.stats.jobs_processed,
            'listings_crawled': self.stats.listings_crawled,
            'articles_stored': self.stats.articles_stored,
            'retries': self.stats.retries,
            'dead_lettered': self.stats.dead_lettered,
            'errors': self.stats.errors,
            'elapsed_time': self.stats.elapsed_time,
            'is_running': self.is_running
        }
