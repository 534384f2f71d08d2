"""Durable job queue feeding the generation worker.

Semantics shared by both backends:

* A job id is the session id; enqueueing an id that is already known is a no-op
  that returns the existing job, unless that job is parked as failed, in which
  case it is replaced by a fresh one.
* ``dequeue`` hands a job to one worker under a lease of ``lease_seconds`` and
  bumps ``attempts_made``.
* ``fail`` re-schedules with exponential backoff (``backoff * 2**(attempts_made-1)``)
  until ``max_attempts`` is reached, then parks the job as failed.
* ``reap_expired`` treats every job whose lease ran out (its worker died between
  dequeue and complete/fail) as a failed attempt and returns the ones it parked.
* Finished jobs are kept for ``retention_seconds`` so duplicates stay suppressed
  and counts stay meaningful.
* Backend errors surface as ``QueueError``.
"""

from __future__ import annotations

import heapq
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

import redis

from landing.config import Settings
from landing.errors import QueueError

log = logging.getLogger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)

LEASE_EXPIRED = "job lease expired before it finished"


@dataclass
class Job:
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    state: str = WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    error: Optional[str] = None
    run_at: float = 0.0
    finished_at: float = 0.0
    lease_until: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "attemptsMade": self.attempts_made,
            "maxAttempts": self.max_attempts,
            "error": self.error,
        }


def backoff_delay(base_seconds: float, attempts_made: int) -> float:
    return float(base_seconds) * (2 ** max(0, attempts_made - 1))


class MemoryTaskQueue:
    """In-process queue for single-process deployments and tests."""

    backend = "memory"

    def __init__(
        self,
        attempts: int = 3,
        backoff_seconds: float = 2.0,
        retention_seconds: int = 86400,
        lease_seconds: float = 300,
    ) -> None:
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = backoff_seconds
        self.retention_seconds = retention_seconds
        self.lease_seconds = lease_seconds
        self._jobs: Dict[str, Job] = {}
        self._waiting: Deque[str] = deque()
        self._delayed: List[Tuple[float, str]] = []
        self._cond = threading.Condition()
        self._closed = False

    def _prune(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        stale = [
            jid for jid, job in self._jobs.items()
            if job.state in (COMPLETED, FAILED) and job.finished_at < cutoff
        ]
        for jid in stale:
            del self._jobs[jid]

    def _promote(self, now: float) -> int:
        moved = 0
        while self._delayed and self._delayed[0][0] <= now:
            run_at, jid = heapq.heappop(self._delayed)
            job = self._jobs.get(jid)
            if job is None or job.state != DELAYED or job.run_at != run_at:
                continue
            job.state = WAITING
            self._waiting.append(jid)
            moved += 1
        return moved

    def _settle_failure(self, job: Job, error: str, now: float) -> bool:
        job.error = error
        job.lease_until = 0.0
        if job.attempts_made < job.max_attempts:
            job.state = DELAYED
            job.run_at = now + backoff_delay(self.backoff_seconds, job.attempts_made)
            heapq.heappush(self._delayed, (job.run_at, job.id))
            self._cond.notify_all()
            return True
        job.state = FAILED
        job.finished_at = now
        return False

    def enqueue(self, job_id: str, data: Dict[str, Any]) -> Job:
        with self._cond:
            if self._closed:
                raise QueueError("task queue is closed")
            now = time.time()
            self._prune(now)
            existing = self._jobs.get(job_id)
            if existing is not None and existing.state != FAILED:
                log.info("queue.enqueue: duplicate job=%s state=%s", job_id, existing.state)
                return existing
            job = Job(id=job_id, data=dict(data), max_attempts=self.attempts, run_at=now)
            self._jobs[job_id] = job
            self._waiting.append(job_id)
            self._cond.notify()
            log.info("queue.enqueue: job=%s waiting=%d", job_id, len(self._waiting))
            return job

    def promote_delayed(self) -> int:
        with self._cond:
            moved = self._promote(time.time())
            if moved:
                self._cond.notify_all()
            return moved

    def reap_expired(self) -> List[Job]:
        """Fail every active job whose lease has run out; returns the jobs parked for good."""
        parked: List[Job] = []
        with self._cond:
            now = time.time()
            for job in list(self._jobs.values()):
                if job.state != ACTIVE or job.lease_until > now:
                    continue
                log.warning("queue.reap: job=%s lease expired attempt=%d", job.id, job.attempts_made)
                if not self._settle_failure(job, LEASE_EXPIRED, now):
                    parked.append(job)
        return parked

    def dequeue(self, timeout: float = 0.0) -> Optional[Job]:
        deadline = time.time() + max(0.0, timeout)
        with self._cond:
            while True:
                if self._closed:
                    return None
                now = time.time()
                self._promote(now)
                if self._waiting:
                    job = self._jobs[self._waiting.popleft()]
                    job.state = ACTIVE
                    job.attempts_made += 1
                    job.lease_until = now + self.lease_seconds
                    return job
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, max(0.0, self._delayed[0][0] - now))
                self._cond.wait(timeout=remaining or 0.01)

    def complete(self, job: Job) -> None:
        with self._cond:
            stored = self._jobs.get(job.id, job)
            stored.state = COMPLETED
            stored.error = None
            stored.lease_until = 0.0
            stored.finished_at = time.time()

    def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt; True when the job was re-scheduled."""
        with self._cond:
            stored = self._jobs.get(job.id, job)
            stored.attempts_made = max(stored.attempts_made, job.attempts_made)
            return self._settle_failure(stored, error, time.time())

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cond:
            return self._jobs.get(job_id)

    def job_counts(self) -> Dict[str, int]:
        with self._cond:
            counts = {state: 0 for state in STATES}
            for job in self._jobs.values():
                counts[job.state] += 1
            return counts

    def ping(self) -> bool:
        return not self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class RedisTaskQueue:
    """Redis-backed queue shared by the API process and any number of workers.

    Layout under ``<name>:``: a hash per job, a ``wait`` list, a ``delayed``
    zset scored by run-at time, an ``active`` list fed by LMOVE from ``wait``,
    a ``leases`` zset scored by lease expiry, and ``completed`` / ``failed``
    zsets scored by finish time.
    """

    backend = "redis"

    def __init__(
        self,
        redis_url: str = "",
        name: str = "landing-generation",
        attempts: int = 3,
        backoff_seconds: float = 2.0,
        retention_seconds: int = 86400,
        lease_seconds: float = 300,
        client: Optional[Any] = None,
    ) -> None:
        self.name = name
        self.attempts = max(1, int(attempts))
        self.backoff_seconds = backoff_seconds
        self.retention_seconds = retention_seconds
        self.lease_seconds = lease_seconds
        self._client = client if client is not None else redis.from_url(redis_url, decode_responses=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisTaskQueue":
        return cls(
            settings.redis_url,
            name=settings.queue_name,
            attempts=settings.queue_attempts,
            backoff_seconds=settings.queue_backoff_seconds,
            retention_seconds=settings.queue_retention_seconds,
            lease_seconds=settings.queue_lease_seconds,
        )

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _load(self, job_id: str) -> Optional[Job]:
        raw = self._client.hgetall(self._job_key(job_id))
        if not raw:
            return None
        try:
            data = json.loads(raw.get("data") or "{}")
        except ValueError:
            data = {}
        return Job(
            id=job_id,
            data=data if isinstance(data, dict) else {},
            state=raw.get("state", WAITING),
            attempts_made=int(raw.get("attempts_made", 0) or 0),
            max_attempts=int(raw.get("max_attempts", self.attempts) or self.attempts),
            error=raw.get("error") or None,
            run_at=float(raw.get("run_at", 0) or 0),
            finished_at=float(raw.get("finished_at", 0) or 0),
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(self._key(COMPLETED), 0, cutoff)
        pipe.zremrangebyscore(self._key(FAILED), 0, cutoff)
        pipe.execute()

    def _release(self, pipe, job_id: str) -> None:
        pipe.lrem(self._key(ACTIVE), 0, job_id)
        pipe.zrem(self._key("leases"), job_id)

    def _settle_failure(self, job: Job, error: str, now: float) -> bool:
        pipe = self._client.pipeline()
        self._release(pipe, job.id)
        if job.attempts_made < job.max_attempts:
            run_at = now + backoff_delay(self.backoff_seconds, job.attempts_made)
            pipe.hset(self._job_key(job.id), mapping={"state": DELAYED, "error": error, "run_at": run_at})
            pipe.zadd(self._key(DELAYED), {job.id: run_at})
            pipe.execute()
            return True
        pipe.hset(self._job_key(job.id), mapping={"state": FAILED, "error": error, "finished_at": now})
        pipe.zadd(self._key(FAILED), {job.id: now})
        pipe.expire(self._job_key(job.id), self.retention_seconds)
        pipe.execute()
        self._prune(now)
        return False

    def _enqueue(self, job_id: str, data: Dict[str, Any]) -> Job:
        job_key = self._job_key(job_id)
        # hsetnx on the state field is the atomic "first writer wins" check
        if not self._client.hsetnx(job_key, "state", WAITING):
            existing = self._load(job_id)
            if existing is not None and existing.state != FAILED:
                log.info("queue.enqueue: duplicate job=%s state=%s", job_id, existing.state)
                return existing
            pipe = self._client.pipeline()
            pipe.delete(job_key)
            pipe.zrem(self._key(FAILED), job_id)
            pipe.execute()
            if not self._client.hsetnx(job_key, "state", WAITING):
                return self._load(job_id) or Job(id=job_id, data=dict(data), max_attempts=self.attempts)
            log.info("queue.enqueue: replacing failed job=%s", job_id)
        now = time.time()
        pipe = self._client.pipeline()
        pipe.hset(
            job_key,
            mapping={
                "data": json.dumps(data, ensure_ascii=False),
                "attempts_made": 0,
                "max_attempts": self.attempts,
                "run_at": now,
            },
        )
        pipe.rpush(self._key("wait"), job_id)
        pipe.execute()
        log.info("queue.enqueue: job=%s queue=%s", job_id, self.name)
        return Job(id=job_id, data=dict(data), max_attempts=self.attempts, run_at=now)

    def enqueue(self, job_id: str, data: Dict[str, Any]) -> Job:
        try:
            return self._enqueue(job_id, data)
        except redis.RedisError as exc:
            raise QueueError(f"task queue unavailable: {exc}") from exc

    def promote_delayed(self) -> int:
        now = time.time()
        due = self._client.zrangebyscore(self._key(DELAYED), 0, now)
        moved = 0
        for job_id in due:
            # zrem succeeds for exactly one competing worker
            if self._client.zrem(self._key(DELAYED), job_id):
                pipe = self._client.pipeline()
                pipe.hset(self._job_key(job_id), "state", WAITING)
                pipe.rpush(self._key("wait"), job_id)
                pipe.execute()
                moved += 1
        return moved

    def _lease_orphans(self, now: float) -> None:
        # A worker can die between LMOVE and writing its lease
        for job_id in self._client.lrange(self._key(ACTIVE), 0, -1):
            if self._client.zscore(self._key("leases"), job_id) is None:
                self._client.zadd(self._key("leases"), {job_id: now + self.lease_seconds}, nx=True)

    def reap_expired(self) -> List[Job]:
        """Fail every active job whose lease has run out; returns the jobs parked for good."""
        now = time.time()
        parked: List[Job] = []
        try:
            self._lease_orphans(now)
            for job_id in self._client.zrangebyscore(self._key("leases"), 0, now):
                # zrem succeeds for exactly one competing reaper
                if not self._client.zrem(self._key("leases"), job_id):
                    continue
                job = self._load(job_id)
                if job is not None and job.state == WAITING:
                    # moved off the wait list but never started; hand it back
                    pipe = self._client.pipeline()
                    pipe.lrem(self._key(ACTIVE), 0, job_id)
                    pipe.rpush(self._key("wait"), job_id)
                    pipe.execute()
                    continue
                if job is None or job.state != ACTIVE:
                    self._client.lrem(self._key(ACTIVE), 0, job_id)
                    continue
                log.warning("queue.reap: job=%s lease expired attempt=%d", job_id, job.attempts_made)
                if not self._settle_failure(job, LEASE_EXPIRED, now):
                    job.state = FAILED
                    job.error = LEASE_EXPIRED
                    parked.append(job)
        except redis.RedisError as exc:
            raise QueueError(f"task queue unavailable: {exc}") from exc
        return parked

    def dequeue(self, timeout: float = 0.0) -> Optional[Job]:
        try:
            self.promote_delayed()
            if timeout > 0:
                job_id = self._client.blmove(self._key("wait"), self._key(ACTIVE), timeout, "LEFT", "RIGHT")
            else:
                job_id = self._client.lmove(self._key("wait"), self._key(ACTIVE), "LEFT", "RIGHT")
            if not job_id:
                return None
            lease_until = time.time() + self.lease_seconds
            pipe = self._client.pipeline()
            pipe.zadd(self._key("leases"), {job_id: lease_until})
            pipe.hincrby(self._job_key(job_id), "attempts_made", 1)
            pipe.hset(self._job_key(job_id), "state", ACTIVE)
            pipe.execute()
            job = self._load(job_id)
        except redis.RedisError as exc:
            raise QueueError(f"task queue unavailable: {exc}") from exc
        if job is not None:
            job.lease_until = lease_until
        return job

    def complete(self, job: Job) -> None:
        now = time.time()
        pipe = self._client.pipeline()
        self._release(pipe, job.id)
        pipe.hset(self._job_key(job.id), mapping={"state": COMPLETED, "error": "", "finished_at": now})
        pipe.zadd(self._key(COMPLETED), {job.id: now})
        pipe.expire(self._job_key(job.id), self.retention_seconds)
        pipe.execute()
        self._prune(now)

    def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt; True when the job was re-scheduled."""
        return self._settle_failure(job, error, time.time())

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return self._load(job_id)
        except redis.RedisError as exc:
            raise QueueError(f"task queue unavailable: {exc}") from exc

    def job_counts(self) -> Dict[str, int]:
        pipe = self._client.pipeline()
        pipe.llen(self._key("wait"))
        pipe.zcard(self._key(DELAYED))
        pipe.llen(self._key(ACTIVE))
        pipe.zcard(self._key(COMPLETED))
        pipe.zcard(self._key(FAILED))
        try:
            waiting, delayed, active, completed, failed = pipe.execute()
        except redis.RedisError as exc:
            raise QueueError(f"task queue unavailable: {exc}") from exc
        return {
            WAITING: int(waiting),
            DELAYED: int(delayed),
            ACTIVE: int(active),
            COMPLETED: int(completed),
            FAILED: int(failed),
        }

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            log.warning("queue.ping: redis unavailable: %s", exc)
            return False

    def close(self) -> None:
        self._client.close()


def build_task_queue(settings: Settings):
    if settings.queue_configured:
        return RedisTaskQueue.from_settings(settings)
    return None
