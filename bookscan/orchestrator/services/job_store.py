"""
Job storage backends for the OCR processing queue.

A store keeps the job records plus, per channel, the FIFO of waiting job
ids, the delayed (backoff) set, the active set and the bounded lists of
terminal jobs. ``InMemoryJobStore`` serves tests and single-process use;
``RedisJobStore`` is the durable backend shared by queue and worker
processes.

Every active job carries a lease that its worker renews while the job
runs. Only jobs whose lease has expired are handed back to the waiting
queue, so a starting worker never steals work from a live one.
"""

import asyncio
import json
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, List, Optional

import structlog
from redis import asyncio as aioredis

from bookscan.orchestrator.core.jobs import Job, JobState

logger = structlog.get_logger(__name__)

DEFAULT_LEASE_SECONDS = 60.0


class JobStore:
    """Interface shared by the queue and the worker."""

    async def add(self, job: Job) -> None:
        """Persist a new job and make it eligible after all earlier jobs."""
        raise NotImplementedError

    async def save(self, job: Job) -> None:
        raise NotImplementedError

    async def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def pop_waiting(
        self, channel: str, timeout: float, lease_seconds: float = DEFAULT_LEASE_SECONDS
    ) -> Optional[Job]:
        """
        Take the oldest waiting job of ``channel``, mark it active and lease
        it for ``lease_seconds``.

        Waits up to ``timeout`` seconds for one to arrive.
        """
        raise NotImplementedError

    async def renew_leases(
        self,
        channel: str,
        job_ids: Iterable[str],
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> None:
        """Extend the leases of jobs still active; expired ones stay expired."""
        raise NotImplementedError

    async def schedule_delayed(self, job: Job, due_at: float) -> None:
        """Move an active job into the backoff set until ``due_at``."""
        raise NotImplementedError

    async def promote_due(self, channel: str, now: Optional[float] = None) -> int:
        """Return due delayed jobs to the waiting queue; returns how many."""
        raise NotImplementedError

    async def requeue(self, job: Job) -> None:
        """Return an active job to the head of the waiting queue."""
        raise NotImplementedError

    async def recover_active(
        self,
        channel: str,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> List[str]:
        """
        Requeue active jobs whose lease expired, keeping their order.

        An active job without any lease gets one of ``lease_seconds`` first,
        since its worker may not have recorded it yet.

        Returns:
            Ids returned to the waiting queue
        """
        raise NotImplementedError

    async def finish(self, job: Job, keep: int) -> None:
        """Record a terminal job, evicting the oldest beyond ``keep``."""
        raise NotImplementedError

    async def counts(self, channel: str) -> Dict[str, int]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryJobStore(JobStore):
    """Process-local store; records are copied in and out like a real backend."""

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._waiting: Dict[str, Deque[str]] = defaultdict(deque)
        self._active: Dict[str, List[str]] = defaultdict(list)
        self._leases: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._delayed: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._terminal: Dict[str, Deque[str]] = defaultdict(deque)
        self._events: Dict[str, asyncio.Event] = {}

    def _event(self, channel: str) -> asyncio.Event:
        if channel not in self._events:
            self._events[channel] = asyncio.Event()
        return self._events[channel]

    def _load(self, job_id: str) -> Optional[Job]:
        record = self._records.get(job_id)
        return Job.from_dict(record) if record else None

    def _push_waiting(self, job: Job, front: bool = False) -> None:
        queue = self._waiting[job.channel]
        if front:
            queue.appendleft(job.id)
        else:
            queue.append(job.id)
        self._event(job.channel).set()

    def _discard_active(self, channel: str, job_id: str) -> None:
        active = self._active[channel]
        if job_id in active:
            active.remove(job_id)
        self._leases[channel].pop(job_id, None)

    async def add(self, job: Job) -> None:
        await self.save(job)
        self._push_waiting(job)

    async def save(self, job: Job) -> None:
        self._records[job.id] = job.to_dict()

    async def get(self, job_id: str) -> Optional[Job]:
        return self._load(job_id)

    async def pop_waiting(
        self, channel: str, timeout: float, lease_seconds: float = DEFAULT_LEASE_SECONDS
    ) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            queue = self._waiting[channel]
            while queue:
                job_id = queue.popleft()
                job = self._load(job_id)
                if job is not None:
                    self._active[channel].append(job_id)
                    self._leases[channel][job_id] = time.time() + lease_seconds
                    return job

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None

            event = self._event(channel)
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    async def renew_leases(
        self,
        channel: str,
        job_ids: Iterable[str],
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> None:
        now = time.time() if now is None else now
        leases = self._leases[channel]
        for job_id in job_ids:
            if job_id in leases:
                leases[job_id] = now + lease_seconds

    async def schedule_delayed(self, job: Job, due_at: float) -> None:
        job.available_at = due_at
        await self.save(job)
        self._discard_active(job.channel, job.id)
        self._delayed[job.channel][job.id] = due_at

    async def promote_due(self, channel: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        delayed = self._delayed[channel]
        due = sorted((at, job_id) for job_id, at in delayed.items() if at <= now)

        for _, job_id in due:
            del delayed[job_id]
            job = self._load(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            job.available_at = None
            await self.save(job)
            self._push_waiting(job)
        return len(due)

    async def requeue(self, job: Job) -> None:
        await self.save(job)
        self._discard_active(job.channel, job.id)
        self._push_waiting(job, front=True)

    async def recover_active(
        self,
        channel: str,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> List[str]:
        now = time.time() if now is None else now
        leases = self._leases[channel]

        expired = []
        for job_id in self._active[channel]:
            if job_id not in leases:
                leases[job_id] = now + lease_seconds
            elif leases[job_id] <= now:
                expired.append(job_id)

        recovered = []
        for job_id in reversed(expired):
            job = self._load(job_id)
            if job is None or job.is_terminal:
                self._discard_active(channel, job_id)
                continue
            job.state = JobState.WAITING
            job.worker_id = None
            await self.requeue(job)
            recovered.append(job_id)
        recovered.reverse()
        return recovered

    async def finish(self, job: Job, keep: int) -> None:
        await self.save(job)
        self._discard_active(job.channel, job.id)

        retained = self._terminal[f"{job.channel}:{job.state.value}"]
        retained.append(job.id)
        while len(retained) > max(keep, 0):
            evicted = retained.popleft()
            self._records.pop(evicted, None)

    async def counts(self, channel: str) -> Dict[str, int]:
        return {
            JobState.WAITING.value: len(self._waiting[channel]),
            JobState.ACTIVE.value: len(self._active[channel]),
            JobState.DELAYED.value: len(self._delayed[channel]),
            JobState.COMPLETED.value: len(self._terminal[f"{channel}:completed"]),
            JobState.FAILED.value: len(self._terminal[f"{channel}:failed"]),
        }


class RedisJobStore(JobStore):
    """
    Redis backed store.

    Keys (``prefix`` defaults to ``bookscan``):
      {prefix}:job:{id}            JSON job record
      {prefix}:{channel}:waiting   list, FIFO of eligible ids
      {prefix}:{channel}:active    list of ids owned by a worker
      {prefix}:{channel}:leases    sorted set of active ids scored by lease expiry
      {prefix}:{channel}:delayed   sorted set scored by due time
      {prefix}:{channel}:completed / :failed   newest first, bounded
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "bookscan"):
        self.redis = client
        self.prefix = prefix
        self.logger = logger.bind(component="RedisJobStore")

    @classmethod
    def from_url(cls, url: str, prefix: str = "bookscan") -> "RedisJobStore":
        return cls(aioredis.from_url(url, decode_responses=True), prefix=prefix)

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _key(self, channel: str, name: str) -> str:
        return f"{self.prefix}:{channel}:{name}"

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self.redis.get(self._job_key(job_id))
        return Job.from_dict(json.loads(raw)) if raw else None

    async def _discard_active(self, channel: str, job_id: str) -> None:
        await self.redis.lrem(self._key(channel, "active"), 1, job_id)
        await self.redis.zrem(self._key(channel, "leases"), job_id)

    async def add(self, job: Job) -> None:
        await self.save(job)
        await self.redis.rpush(self._key(job.channel, "waiting"), job.id)

    async def save(self, job: Job) -> None:
        await self.redis.set(self._job_key(job.id), json.dumps(job.to_dict()))

    async def get(self, job_id: str) -> Optional[Job]:
        return await self._load(job_id)

    async def pop_waiting(
        self, channel: str, timeout: float, lease_seconds: float = DEFAULT_LEASE_SECONDS
    ) -> Optional[Job]:
        job_id = await self.redis.blmove(
            self._key(channel, "waiting"), self._key(channel, "active"), timeout, "LEFT", "RIGHT"
        )
        if job_id is None:
            return None

        await self.redis.zadd(self._key(channel, "leases"), {job_id: time.time() + lease_seconds})
        job = await self._load(job_id)
        if job is None:
            # Record evicted or deleted while the id was still queued
            await self._discard_active(channel, job_id)
            self.logger.warning("Dropped queued id without record", job_id=job_id)
        return job

    async def renew_leases(
        self,
        channel: str,
        job_ids: Iterable[str],
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> None:
        now = time.time() if now is None else now
        mapping = {job_id: now + lease_seconds for job_id in job_ids}
        if mapping:
            # xx: a lease already reclaimed by another worker is not revived
            await self.redis.zadd(self._key(channel, "leases"), mapping, xx=True)

    async def schedule_delayed(self, job: Job, due_at: float) -> None:
        job.available_at = due_at
        await self.save(job)
        await self._discard_active(job.channel, job.id)
        await self.redis.zadd(self._key(job.channel, "delayed"), {job.id: due_at})

    async def promote_due(self, channel: str, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        delayed_key = self._key(channel, "delayed")
        promoted = 0

        for job_id in await self.redis.zrangebyscore(delayed_key, "-inf", now):
            # zrem is the claim; another worker may have promoted it already
            if not await self.redis.zrem(delayed_key, job_id):
                continue
            job = await self._load(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            job.available_at = None
            await self.save(job)
            await self.redis.rpush(self._key(channel, "waiting"), job_id)
            promoted += 1
        return promoted

    async def requeue(self, job: Job) -> None:
        await self.save(job)
        await self._discard_active(job.channel, job.id)
        await self.redis.lpush(self._key(job.channel, "waiting"), job.id)

    async def recover_active(
        self,
        channel: str,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        now: Optional[float] = None,
    ) -> List[str]:
        now = time.time() if now is None else now
        leases_key = self._key(channel, "leases")

        expired = []
        for job_id in await self.redis.lrange(self._key(channel, "active"), 0, -1):
            if await self.redis.zadd(leases_key, {job_id: now + lease_seconds}, nx=True):
                continue
            expires_at = await self.redis.zscore(leases_key, job_id)
            if expires_at is None or expires_at > now:
                continue
            # zrem is the claim; another worker may be recovering it too
            if await self.redis.zrem(leases_key, job_id):
                expired.append(job_id)

        recovered = []
        for job_id in reversed(expired):
            job = await self._load(job_id)
            if job is None or job.is_terminal:
                await self._discard_active(channel, job_id)
                continue
            job.state = JobState.WAITING
            job.worker_id = None
            await self.requeue(job)
            recovered.append(job_id)
        recovered.reverse()
        return recovered

    async def finish(self, job: Job, keep: int) -> None:
        terminal_key = self._key(job.channel, job.state.value)
        keep = max(keep, 0)

        await self.save(job)
        await self._discard_active(job.channel, job.id)
        await self.redis.lpush(terminal_key, job.id)

        evicted = await self.redis.lrange(terminal_key, keep, -1)
        if evicted:
            await self.redis.delete(*[self._job_key(job_id) for job_id in evicted])
            if keep:
                await self.redis.ltrim(terminal_key, 0, keep - 1)
            else:
                await self.redis.delete(terminal_key)

    async def counts(self, channel: str) -> Dict[str, int]:
        return {
            JobState.WAITING.value: await self.redis.llen(self._key(channel, "waiting")),
            JobState.ACTIVE.value: await self.redis.llen(self._key(channel, "active")),
            JobState.DELAYED.value: await self.redis.zcard(self._key(channel, "delayed")),
            JobState.COMPLETED.value: await self.redis.llen(self._key(channel, "completed")),
            JobState.FAILED.value: await self.redis.llen(self._key(channel, "failed")),
        }

    async def close(self) -> None:
        await self.redis.aclose()


def create_job_store(settings) -> JobStore:
    """Build the store selected by ``settings.store_backend``."""
    if settings.uses_redis:
        return RedisJobStore.from_url(settings.redis_url, prefix=settings.redis_key_prefix)
    return InMemoryJobStore()
