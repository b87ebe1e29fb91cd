"""
Redis-backed job queue with delayed jobs and exponential backoff retries.

Layout under ``<prefix>``:
    jobs       hash of job id -> serialized job
    delayed    sorted set of job ids scored by the instant they become eligible
    wait       list of eligible job ids, FIFO
    active     list of job ids owned by a worker
    completed  list of finished job ids
    failed     list of dead-lettered job ids
"""

import inspect
import json
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError


class JobKind(Enum):
    """Page shape a job targets."""
    LISTING = 'listing'
    DETAIL = 'detail'


class JobState(Enum):
    """Lifecycle states of a job."""
    WAITING = 'waiting'
    ACTIVE = 'active'
    RETRYING = 'retrying'
    COMPLETED = 'completed'
    DEAD_LETTERED = 'dead_lettered'


@dataclass
class Job:
    """A scheduled unit of crawl work."""
    url: str
    kind: JobKind
    attempt: int = 0
    scheduled_delay: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.WAITING
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'url': self.url,
            'kind': self.kind.value,
            'attempt': self.attempt,
            'scheduled_delay': self.scheduled_delay,
            'state': self.state.value,
            'created_at': self.created_at,
            'last_error': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Job':
        """Create Job from dictionary."""
        return cls(
            id=data['id'],
            url=data['url'],
            kind=JobKind(data['kind']),
            attempt=data.get('attempt', 0),
            scheduled_delay=data.get('scheduled_delay', 0.0),
            state=JobState(data.get('state', JobState.WAITING.value)),
            created_at=data.get('created_at', time.time()),
            last_error=data.get('last_error'),
        )


JOB_EVENTS = ('waiting', 'active', 'completed', 'retrying', 'dead_lettered')


class JobQueue:
    """
    Delayed FIFO queue of crawl jobs.

    A job handed out by ``next_job`` sits on the active list until the owner
    reports ``complete`` or ``fail``; ``LMOVE`` guarantees only one worker
    receives it.
    """

    def __init__(self, redis_client: redis.Redis, name: str = 'crawler-queue',
                 max_attempts: int = 3, backoff_base_delay: float = 2.0,
                 clock: Callable[[], float] = time.time):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.redis_client = redis_client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_base_delay = backoff_base_delay
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)

        prefix = f"crawler:{name}"
        self.jobs_key = f"{prefix}:jobs"
        self.delayed_key = f"{prefix}:delayed"
        self.wait_key = f"{prefix}:wait"
        self.active_key = f"{prefix}:active"
        self.completed_key = f"{prefix}:completed"
        self.failed_key = f"{prefix}:failed"

    def on(self, event: str, callback: Callable):
        """Register ``callback(job, ...)`` for a lifecycle event."""
        if event not in JOB_EVENTS:
            raise ValueError(f"Unknown job event: {event}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, job: Job, *args):
        for callback in self._listeners[event]:
            try:
                result = callback(job, *args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"Listener for '{event}' failed on job {job.id}")

    async def _save(self, job: Job):
        await self.redis_client.hset(self.jobs_key, job.id, json.dumps(job.to_dict()))

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying a job whose ``attempt``-th dispatch failed."""
        return self.backoff_base_delay * (2 ** attempt)

    async def enqueue(self, job: Job, delay: float = 0.0) -> Job:
        """
        Admit a job, eligible for dispatch no earlier than ``delay`` seconds
        from now.
        """
        job.scheduled_delay = max(0.0, delay)
        job.state = JobState.WAITING
        await self._save(job)

        if job.scheduled_delay > 0:
            await self.redis_client.zadd(
                self.delayed_key, {job.id: self.clock() + job.scheduled_delay}
            )
        else:
            await self.redis_client.rpush(self.wait_key, job.id)

        self.logger.debug(f"Enqueued {job.kind.value} job {job.id} ({job.url}) delay={job.scheduled_delay:.2f}s")
        await self._emit('waiting', job)
        return job

    async def _promote_due_jobs(self) -> int:
        """Move delayed jobs whose delay elapsed onto the wait list."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                # ZREM and RPUSH commit together; a concurrent change to the
                # delayed set aborts this promotion and the next poll retries
                await pipe.watch(self.delayed_key)
                due = await pipe.zrangebyscore(self.delayed_key, '-inf', self.clock())
                if not due:
                    return 0
                pipe.multi()
                pipe.zrem(self.delayed_key, *due)
                pipe.rpush(self.wait_key, *due)
                await pipe.execute()
            except WatchError:
                return 0
        return len(due)

    async def next_job(self) -> Optional[Job]:
        """
        Take the next eligible job and mark it active.
        Returns None when nothing is eligible yet.
        """
        await self._promote_due_jobs()

        job_id = await self.redis_client.lmove(self.wait_key, self.active_key, 'LEFT', 'RIGHT')
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            self.logger.warning(f"Dropping job {job_id} with no stored payload")
            await self.redis_client.lrem(self.active_key, 1, job_id)
            return None

        job.state = JobState.ACTIVE
        await self._save(job)
        await self._emit('active', job)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Load a job by id."""
        raw = await self.redis_client.hget(self.jobs_key, job_id)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return Job.from_dict(json.loads(raw))

    async def complete(self, job: Job):
        """Mark an active job as completed."""
        job.state = JobState.COMPLETED
        await self.redis_client.lrem(self.active_key, 1, job.id)
        await self._save(job)
        await self.redis_client.rpush(self.completed_key, job.id)
        await self._emit('completed', job)

    async def fail(self, job: Job, error: BaseException) -> JobState:
        """
        Record a handler failure.

        Retries with exponential backoff while attempts remain, otherwise
        dead-letters the job. Returns RETRYING or DEAD_LETTERED.
        """
        job.last_error = f"{type(error).__name__}: {error}"

        # the job leaves the active list only once it sits on another one
        next_attempt = job.attempt + 1
        if next_attempt < self.max_attempts:
            delay = self.backoff_delay(job.attempt)
            job.state = JobState.RETRYING
            await self._emit('retrying', job, error, delay)
            job.attempt = next_attempt
            await self.enqueue(job, delay)
            await self.redis_client.lrem(self.active_key, 1, job.id)
            return JobState.RETRYING

        job.state = JobState.DEAD_LETTERED
        await self._save(job)
        await self.redis_client.rpush(self.failed_key, job.id)
        await self.redis_client.lrem(self.active_key, 1, job.id)
        await self._emit('dead_lettered', job, error)
        return job.state

    async def release(self, job: Job):
        """
        Drop an active job whose outcome could not be recorded, so it no
        longer counts as in flight.
        """
        self.logger.warning(f"Releasing job {job.id} ({job.url}) without an outcome")
        await self.redis_client.lrem(self.active_key, 1, job.id)

    async def clean(self) -> int:
        """
        Reset the queue for a new run: purge completed and dead-lettered jobs
        and drop jobs left active by a run that did not finish them.
        """
        removed = 0
        for key in (self.completed_key, self.failed_key, self.active_key):
            job_ids = await self.redis_client.lrange(key, 0, -1)
            if job_ids:
                await self.redis_client.hdel(self.jobs_key, *job_ids)
                removed += len(job_ids)
            await self.redis_client.delete(key)

        if removed:
            self.logger.info(f"Cleaned {removed} finished or orphaned jobs from queue {self.name}")
        return removed

    async def get_counts(self) -> Dict[str, int]:
        """Get queue statistics."""
        return {
            'waiting': await self.redis_client.llen(self.wait_key),
            'delayed': await self.redis_client.zcard(self.delayed_key),
            'active': await self.redis_client.llen(self.active_key),
            'completed': await self.redis_client.llen(self.completed_key),
            'failed': await self.redis_client.llen(self.failed_key),
        }

    async def is_idle(self) -> bool:
        """True when no job is waiting, delayed or active."""
        counts = await self.get_counts()
        return counts['waiting'] == 0 and counts['delayed'] == 0 and counts['active'] == 0
