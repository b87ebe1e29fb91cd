"""Tests for the scheduler's job handlers and worker loop."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from knowledge_crawler.crawler.fetcher import FetchResult, WebFetcher
from knowledge_crawler.crawler.job_queue import Job, JobKind, JobQueue, JobState
from knowledge_crawler.crawler.providers import CyclingProvider
from knowledge_crawler.crawler.scheduler import CrawlerScheduler
from knowledge_crawler.utils.config import CrawlerConfig

from .helpers import EMPTY_LISTING_HTML, LISTING_HTML, MATERIAL_HTML, POST_HTML, FakeSession

START_URL = "https://www.jiandanxinli.com/knowledge"
POST_URL = "https://www.jiandanxinli.com/knowledge/posts/101"
MATERIAL_URL = "https://www.jiandanxinli.com/knowledge/materials/202"


def _mock_fetcher(pages: dict) -> MagicMock:
    """A fetcher whose ``fetch`` serves ``pages`` by URL."""
    fetcher = MagicMock(spec=WebFetcher)

    async def fetch(url):
        return FetchResult(url=url, status_code=200, content=pages[url])

    fetcher.fetch = AsyncMock(side_effect=fetch)
    fetcher.get_stats.return_value = {}
    return fetcher


def _scheduler(job_queue, fetcher, database, **overrides) -> CrawlerScheduler:
    config = CrawlerConfig(poll_interval=0.01, **overrides)
    return CrawlerScheduler(config, job_queue, fetcher, database)


async def _delays(redis_client, job_queue, clock) -> dict:
    """Map each delayed job's URL and kind to its remaining delay."""
    entries = await redis_client.zrange(job_queue.delayed_key, 0, -1, withscores=True)
    delays = {}
    for job_id, score in entries:
        job = await job_queue.get_job(job_id)
        delays[(job.url, job.kind)] = score - clock.now
    return delays


@pytest.mark.asyncio
class TestListingJobs:
    async def test_listing_enqueues_details_and_next_page(self, job_queue, redis_client,
                                                          clock, database) -> None:
        fetcher = _mock_fetcher({START_URL: LISTING_HTML})
        scheduler = _scheduler(job_queue, fetcher, database)
        job = await job_queue.enqueue(Job(url=START_URL, kind=JobKind.LISTING))

        state = await scheduler.process_job(await job_queue.next_job())

        assert state is JobState.COMPLETED
        assert (await job_queue.get_job(job.id)).state is JobState.COMPLETED

        delays = await _delays(redis_client, job_queue, clock)
        assert set(delays) == {
            (POST_URL, JobKind.DETAIL),
            (MATERIAL_URL, JobKind.DETAIL),
            ("https://www.jiandanxinli.com/knowledge?page=2", JobKind.LISTING),
        }
        assert all(2.0 <= d < 5.0 for d in delays.values())
        assert scheduler.get_stats()["listings_crawled"] == 1

    async def test_listing_without_articles_is_logged_and_completed(self, job_queue, database,
                                                                    caplog) -> None:
        fetcher = _mock_fetcher({START_URL: EMPTY_LISTING_HTML})
        scheduler = _scheduler(job_queue, fetcher, database)
        await job_queue.enqueue(Job(url=START_URL, kind=JobKind.LISTING))

        with caplog.at_level(logging.ERROR):
            state = await scheduler.process_job(await job_queue.next_job())

        assert state is JobState.COMPLETED
        assert f"No articles found on {START_URL}" in caplog.text
        counts = await job_queue.get_counts()
        assert counts["waiting"] == 0
        assert counts["delayed"] == 0

    async def test_listing_failures_can_be_retried(self, job_queue, database) -> None:
        fetcher = _mock_fetcher({START_URL: EMPTY_LISTING_HTML})
        scheduler = _scheduler(job_queue, fetcher, database, retry_failed_listings=True)
        await job_queue.enqueue(Job(url=START_URL, kind=JobKind.LISTING))

        state = await scheduler.process_job(await job_queue.next_job())

        assert state is JobState.RETRYING
        assert (await job_queue.get_counts())["delayed"] == 1


@pytest.mark.asyncio
class TestDetailJobs:
    async def test_detail_is_extracted_and_stored(self, job_queue, database) -> None:
        fetcher = _mock_fetcher({POST_URL: POST_HTML})
        scheduler = _scheduler(job_queue, fetcher, database)
        await job_queue.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))

        state = await scheduler.process_job(await job_queue.next_job())

        assert state is JobState.COMPLETED
        stored = await database.get_article(POST_URL)
        assert stored["title"] == "Coping with stress"
        assert stored["read_count"] == 1234
        assert stored["last_updated"]

    async def test_unknown_page_type_fails_before_fetching(self, job_queue, database) -> None:
        fetcher = _mock_fetcher({})
        scheduler = _scheduler(job_queue, fetcher, database)
        url = "https://www.jiandanxinli.com/knowledge/courses/3"
        job = await job_queue.enqueue(Job(url=url, kind=JobKind.DETAIL))

        state = await scheduler.process_job(await job_queue.next_job())

        assert state is JobState.RETRYING
        assert "UnknownPageTypeError" in (await job_queue.get_job(job.id)).last_error
        fetcher.fetch.assert_not_awaited()
        assert await database.count_articles() == 0

    async def test_blocked_detail_is_retried_then_dead_lettered(self, job_queue, redis_client,
                                                                clock, database) -> None:
        session = FakeSession([(200, "<html>请输入验证码</html>")])
        fetcher = WebFetcher(session=session, sleep=AsyncMock(),
                             user_agent_provider=CyclingProvider(["ua"]))
        scheduler = _scheduler(job_queue, fetcher, database)
        job = await job_queue.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))

        assert await scheduler.process_job(await job_queue.next_job()) is JobState.RETRYING
        assert await redis_client.zscore(job_queue.delayed_key, job.id) == clock.now + 2.0

        clock.advance(2.0)
        assert await scheduler.process_job(await job_queue.next_job()) is JobState.RETRYING
        assert await redis_client.zscore(job_queue.delayed_key, job.id) == clock.now + 4.0

        clock.advance(4.0)
        assert await scheduler.process_job(await job_queue.next_job()) is JobState.DEAD_LETTERED

        # three queue attempts of three inline fetch attempts each
        assert len(session.calls) == 9
        assert (await job_queue.get_job(job.id)).state is JobState.DEAD_LETTERED
        assert await database.count_articles() == 0

        stats = scheduler.get_stats()
        assert stats["retries"] == 2
        assert stats["dead_lettered"] == 1


@pytest.mark.asyncio
class TestWorkers:
    async def test_workers_drain_the_queue(self, job_queue, database) -> None:
        fetcher = _mock_fetcher({
            START_URL: LISTING_HTML,
            POST_URL: POST_HTML,
            MATERIAL_URL: MATERIAL_HTML,
            "https://www.jiandanxinli.com/knowledge?page=2": EMPTY_LISTING_HTML,
        })
        scheduler = _scheduler(job_queue, fetcher, database,
                               concurrency=2, jitter_min=0.0, jitter_max=0.0)
        await job_queue.enqueue(Job(url=START_URL, kind=JobKind.LISTING))

        await asyncio.wait_for(scheduler.start_crawling(exit_when_idle=True), timeout=5)

        assert await database.count_articles() == 2
        counts = await job_queue.get_counts()
        assert counts["completed"] == 4
        assert counts["failed"] == 0
        assert await job_queue.is_idle()
        assert scheduler.is_running is False

    async def test_stop_waits_for_the_active_job(self, job_queue, database) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_fetch(url):
            started.set()
            await release.wait()
            return FetchResult(url=url, status_code=200, content=POST_HTML)

        fetcher = MagicMock(spec=WebFetcher)
        fetcher.fetch = AsyncMock(side_effect=slow_fetch)
        fetcher.get_stats.return_value = {}
        scheduler = _scheduler(job_queue, fetcher, database)
        await job_queue.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))

        run = asyncio.create_task(scheduler.start_crawling(exit_when_idle=False))
        await asyncio.wait_for(started.wait(), timeout=5)

        stopping = asyncio.create_task(scheduler.stop_crawling())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        release.set()
        await asyncio.wait_for(stopping, timeout=5)
        await asyncio.wait_for(run, timeout=5)

        assert await database.count_articles() == 1
        assert (await job_queue.get_counts())["completed"] == 1

    async def test_restart_after_interrupted_run_drains(self, redis_client, clock, database) -> None:
        interrupted = JobQueue(redis_client, name="restart", clock=clock)
        await interrupted.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))
        assert await interrupted.next_job() is not None

        job_queue = JobQueue(redis_client, name="restart", clock=clock)
        await job_queue.clean()
        fetcher = _mock_fetcher({})
        scheduler = _scheduler(job_queue, fetcher, database)

        await asyncio.wait_for(scheduler.start_crawling(exit_when_idle=True), timeout=5)

        fetcher.fetch.assert_not_awaited()
        assert await job_queue.is_idle()

    async def test_final_stats_failure_keeps_the_worker_error(self, job_queue, database, caplog) -> None:
        scheduler = _scheduler(job_queue, _mock_fetcher({}), database)

        with patch.object(scheduler, "dispatch", AsyncMock(side_effect=RuntimeError("worker crashed"))), \
                patch.object(job_queue, "get_counts", AsyncMock(side_effect=ConnectionError("broker down"))):
            with pytest.raises(RuntimeError, match="worker crashed"):
                await scheduler.start_crawling()

        assert "Could not log final stats: broker down" in caplog.text
        assert scheduler.is_running is False


@pytest.mark.asyncio
class TestOutcomeBookkeeping:
    async def test_failed_completion_releases_the_job(self, job_queue, database) -> None:
        scheduler = _scheduler(job_queue, _mock_fetcher({POST_URL: POST_HTML}), database)
        await job_queue.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))
        job = await job_queue.next_job()

        with patch.object(job_queue, "complete", AsyncMock(side_effect=ConnectionError("broker down"))):
            with pytest.raises(ConnectionError):
                await scheduler.process_job(job)

        assert (await job_queue.get_counts())["active"] == 0
        assert await job_queue.is_idle()

    async def test_failed_retry_bookkeeping_releases_the_job(self, job_queue, database) -> None:
        scheduler = _scheduler(job_queue, _mock_fetcher({}), database)
        await job_queue.enqueue(Job(url=POST_URL, kind=JobKind.DETAIL))
        job = await job_queue.next_job()

        with patch.object(job_queue, "fail", AsyncMock(side_effect=ConnectionError("broker down"))):
            with pytest.raises(ConnectionError):
                await scheduler.process_job(job)

        assert (await job_queue.get_counts())["active"] == 0
