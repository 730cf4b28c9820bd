"""
Durable Redis-backed job queue

Jobs survive process restarts (they live in Redis, not in the worker), are
delivered at least once, retried with backoff up to their attempt limit and
then parked in a failed set for manual inspection instead of being dropped.

Layout under ``{prefix}:{queue}:``

    id              INCR counter for job ids
    job:<id>        hash: data, opts, attempts_made, stalled_count, timestamp,
                    processed_on, finished_on, failed_reason, stacktrace, trace_id
    wait            list of ready job ids (LPUSH in, consumed from the right)
    active          list of job ids currently held by a worker
    lock:<id>       worker token, PX = lock duration; missing lock => stalled
    delayed         zset, score = ms timestamp when the job becomes ready
    completed       zset, score = finish time (only when not auto-removed)
    failed          zset, score = finish time (dead-letter)
    stalled-check   set of unlocked active ids seen on the previous sweep

The client must be created with ``decode_responses=True``.
"""
import json
import logging
import socket
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
import redis
from common.retry import BackoffConfig, calculate_delay

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"
STATES = (WAITING, ACTIVE, DELAYED, COMPLETED, FAILED)

LOCK_RETRIES = 3

class UnrecoverableError(Exception):
    """Raised by a job handler when retrying can never succeed.

    The job goes straight to the failed set regardless of attempts left.
    """
    pass

@dataclass
class JobOptions:
    attempts: int = 1
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    remove_on_complete: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict(),
            "remove_on_complete": self.remove_on_complete,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "JobOptions":
        raw = raw or {}
        return cls(
            attempts=int(raw.get("attempts", 1)),
            backoff=BackoffConfig.from_dict(raw.get("backoff")),
            remove_on_complete=bool(raw.get("remove_on_complete", False)),
        )

def _int_or_none(value) -> Optional[int]:
    return int(value) if value not in (None, "") else None

@dataclass
class Job:
    id: str
    queue: str
    data: Any
    opts: JobOptions
    attempts_made: int = 0
    stalled_count: int = 0
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    stacktrace: Optional[str] = None
    trace_id: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently being made"""
        return self.attempts_made + 1

    @classmethod
    def from_hash(cls, queue: str, job_id: str, raw: Dict[str, str]) -> "Job":
        return cls(
            id=job_id,
            queue=queue,
            data=json.loads(raw["data"]) if raw.get("data") else None,
            opts=JobOptions.from_dict(json.loads(raw["opts"]) if raw.get("opts") else None),
            attempts_made=int(raw.get("attempts_made", 0)),
            stalled_count=int(raw.get("stalled_count", 0)),
            timestamp=int(raw.get("timestamp", 0)),
            processed_on=_int_or_none(raw.get("processed_on")),
            finished_on=_int_or_none(raw.get("finished_on")),
            failed_reason=raw.get("failed_reason"),
            stacktrace=raw.get("stacktrace"),
            trace_id=raw.get("trace_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "data": self.data,
            "opts": self.opts.to_dict(),
            "attempts_made": self.attempts_made,
            "stalled_count": self.stalled_count,
            "timestamp": self.timestamp,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
            "trace_id": self.trace_id,
        }

class JobQueue:
    """A named queue backed by Redis"""

    def __init__(
        self,
        name: str,
        client: redis.Redis,
        prefix: str = "bull",
        default_opts: Optional[JobOptions] = None,
        lock_duration_ms: int = 30000,
        max_stalled_count: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.client = client
        self.prefix = prefix
        self.default_opts = default_opts or JobOptions()
        self.lock_duration_ms = lock_duration_ms
        self.max_stalled_count = max_stalled_count
        self._clock = clock

    def __repr__(self):
        return f"JobQueue({self.name!r})"

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix, self.name) + parts)

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # Producing

    def add(self, data: Any, opts: Optional[JobOptions] = None, trace_id: Optional[str] = None) -> Job:
        """Persist a job and make it available to workers"""
        opts = opts or self.default_opts
        if opts.attempts < 1:
            raise ValueError("attempts must be at least 1")

        job_id = str(self.client.incr(self._key("id")))
        now = self._now_ms()
        mapping = {
            "data": json.dumps(data),
            "opts": json.dumps(opts.to_dict()),
            "attempts_made": 0,
            "stalled_count": 0,
            "timestamp": now,
        }
        if trace_id:
            mapping["trace_id"] = trace_id

        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._job_key(job_id), mapping=mapping)
        pipe.lpush(self._key("wait"), job_id)
        pipe.execute()

        return Job(id=job_id, queue=self.name, data=data, opts=opts, timestamp=now, trace_id=trace_id)

    # Consuming

    def fetch_next(self, token: str, timeout: Optional[float] = None) -> Optional[Job]:
        """Move the next ready job to active and lock it for `token`.

        With `timeout=None` this never blocks; otherwise it waits up to
        `timeout` seconds for a job to arrive.
        """
        self.promote_delayed()

        if timeout is None:
            job_id = self.client.lmove(self._key("wait"), self._key("active"), src="RIGHT", dest="LEFT")
        else:
            job_id = self.client.blmove(self._key("wait"), self._key("active"), timeout, src="RIGHT", dest="LEFT")
        if job_id is None:
            return None

        job_key = self._job_key(job_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.exists(job_key)
        pipe.set(self._lock_key(job_id), token, px=self.lock_duration_ms)
        pipe.hset(job_key, "processed_on", self._now_ms())
        pipe.srem(self._key("stalled-check"), job_id)
        pipe.hgetall(job_key)
        exists, _, _, _, raw = pipe.execute()

        if not exists:
            # removed through the management API while it was waiting
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(job_key, self._lock_key(job_id))
            pipe.lrem(self._key("active"), 1, job_id)
            pipe.execute()
            logger.warning(f"Discarded dangling job id {job_id} on queue {self.name}")
            return None

        return Job.from_hash(self.name, job_id, raw)

    def _with_lock(self, job_id: str, token: str, mutate: Callable[[Any], None]) -> bool:
        """Apply `mutate` to a MULTI pipeline only while `token` still owns the job lock"""
        lock_key = self._lock_key(job_id)
        for _ in range(LOCK_RETRIES):
            with self.client.pipeline(transaction=True) as pipe:
                try:
                    pipe.watch(lock_key)
                    if pipe.get(lock_key) != token:
                        logger.warning(f"Lock for job {job_id} on {self.name} is no longer held by {token}")
                        return False
                    pipe.multi()
                    mutate(pipe)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    # a renewal by the same token also touches the key; re-check ownership
                    continue
        logger.warning(f"Lock for job {job_id} on {self.name} kept changing while finishing")
        return False

    def extend_lock(self, job: Job, token: str) -> bool:
        return self._with_lock(
            job.id, token, lambda pipe: pipe.pexpire(self._lock_key(job.id), self.lock_duration_ms)
        )

    def complete(self, job: Job, token: str) -> bool:
        now = self._now_ms()

        def mutate(pipe):
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.srem(self._key("stalled-check"), job.id)
            if job.opts.remove_on_complete:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.hset(self._job_key(job.id), "finished_on", now)
                pipe.zadd(self._key("completed"), {job.id: now})

        done = self._with_lock(job.id, token, mutate)
        if done:
            job.finished_on = now
        return done

    def fail(self, job: Job, token: str, exc: BaseException, unrecoverable: bool = False) -> Optional[str]:
        """Record a failed attempt.

        Returns the state the job moved to (delayed, waiting or failed), or
        None when the lock was lost and another worker now owns the job.
        """
        now = self._now_ms()
        attempts_made = job.attempts_made + 1
        reason = str(exc) or type(exc).__name__
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-4000:]
        exhausted = unrecoverable or attempts_made >= job.opts.attempts
        delay = 0 if exhausted else calculate_delay(attempts_made, job.opts.backoff)

        if exhausted:
            next_state = FAILED
        elif delay > 0:
            next_state = DELAYED
        else:
            next_state = WAITING

        def mutate(pipe):
            job_key = self._job_key(job.id)
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.srem(self._key("stalled-check"), job.id)
            pipe.hset(job_key, mapping={
                "attempts_made": attempts_made,
                "failed_reason": reason,
                "stacktrace": stack,
            })
            pipe.hdel(job_key, "processed_on")
            if next_state == FAILED:
                pipe.hset(job_key, "finished_on", now)
                pipe.zadd(self._key("failed"), {job.id: now})
            elif next_state == DELAYED:
                pipe.zadd(self._key("delayed"), {job.id: now + delay})
            else:
                pipe.lpush(self._key("wait"), job.id)

        if not self._with_lock(job.id, token, mutate):
            return None

        job.attempts_made = attempts_made
        job.failed_reason = reason
        job.stacktrace = stack
        if next_state == FAILED:
            job.finished_on = now
            logger.error(
                f"Job {job.id} on {self.name} moved to failed after {attempts_made} attempt(s): {reason}",
                extra={"job_id": job.id, "queue": self.name, "trace_id": job.trace_id},
            )
        else:
            logger.warning(
                f"Job {job.id} on {self.name} failed attempt {attempts_made}/{job.opts.attempts}, "
                f"retrying in {delay}ms: {reason}",
                extra={"job_id": job.id, "queue": self.name, "trace_id": job.trace_id},
            )
        return next_state

    # Housekeeping

    def promote_delayed(self, limit: int = 100) -> int:
        """Move delayed jobs whose backoff has elapsed back to wait"""
        delayed_key = self._key("delayed")
        with self.client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(delayed_key)
                due = pipe.zrangebyscore(delayed_key, 0, self._now_ms(), start=0, num=limit)
                if not due:
                    return 0
                pipe.multi()
                pipe.zrem(delayed_key, *due)
                pipe.lpush(self._key("wait"), *due)
                pipe.execute()
            except redis.WatchError:
                # another worker promoted them first
                return 0
        return len(due)

    def recover_stalled(self) -> List[str]:
        """Redeliver active jobs whose worker stopped renewing the lock.

        A job without a lock and without processed_on may have just been
        moved by a worker that has not locked it yet, so it is only recovered
        if it is still in that state on the next sweep.
        """
        active_key = self._key("active")
        check_key = self._key("stalled-check")
        recovered = []

        for job_id in self.client.lrange(active_key, 0, -1):
            lock_key = self._lock_key(job_id)
            if self.client.exists(lock_key):
                continue
            job_key = self._job_key(job_id)
            if not self.client.exists(job_key):
                # removed while its lock had lapsed; nothing left to redeliver
                pipe = self.client.pipeline(transaction=True)
                pipe.lrem(active_key, 0, job_id)
                pipe.srem(check_key, job_id)
                pipe.execute()
                logger.warning(f"Dropped dangling active job id {job_id} on queue {self.name}")
                continue
            if self.client.hget(job_key, "processed_on") is None and not self.client.sismember(check_key, job_id):
                self.client.sadd(check_key, job_id)
                continue

            with self.client.pipeline(transaction=True) as pipe:
                try:
                    pipe.watch(active_key, lock_key, job_key)
                    if pipe.exists(lock_key) or not pipe.exists(job_key):
                        continue
                    stalled_count = int(pipe.hget(job_key, "stalled_count") or 0) + 1
                    pipe.multi()
                    pipe.lrem(active_key, 1, job_id)
                    pipe.srem(check_key, job_id)
                    pipe.hdel(job_key, "processed_on")
                    pipe.hset(job_key, "stalled_count", stalled_count)
                    if stalled_count > self.max_stalled_count:
                        now = self._now_ms()
                        pipe.hset(job_key, mapping={
                            "failed_reason": "job stalled more than allowable limit",
                            "finished_on": now,
                        })
                        pipe.zadd(self._key("failed"), {job_id: now})
                    else:
                        pipe.lpush(self._key("wait"), job_id)
                    pipe.execute()
                except redis.WatchError:
                    continue

            logger.warning(f"Recovered stalled job {job_id} on {self.name} (stall #{stalled_count})")
            recovered.append(job_id)

        return recovered

    # Management

    def get_job_counts(self) -> Dict[str, int]:
        pipe = self.client.pipeline(transaction=False)
        pipe.llen(self._key("wait"))
        pipe.llen(self._key("active"))
        pipe.zcard(self._key("delayed"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        waiting, active, delayed, completed, failed = pipe.execute()
        return {
            WAITING: waiting,
            ACTIVE: active,
            DELAYED: delayed,
            COMPLETED: completed,
            FAILED: failed,
        }

    def get_job(self, job_id: str) -> Optional[Job]:
        raw = self.client.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return Job.from_hash(self.name, job_id, raw)

    def get_job_ids(self, state: str, start: int = 0, end: int = 49) -> List[str]:
        if state == WAITING:
            return self.client.lrange(self._key("wait"), start, end)
        if state == ACTIVE:
            return self.client.lrange(self._key("active"), start, end)
        if state == DELAYED:
            return self.client.zrange(self._key("delayed"), start, end)
        if state in (COMPLETED, FAILED):
            # newest first
            return self.client.zrevrange(self._key(state), start, end)
        raise ValueError(f"unknown job state: {state}")

    def get_jobs(self, state: str, start: int = 0, end: int = 49) -> List[Job]:
        jobs = []
        for job_id in self.get_job_ids(state, start, end):
            job = self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    def retry_job(self, job_id: str) -> bool:
        """Manually replay a dead-lettered job with its attempt count reset"""
        failed_key = self._key("failed")
        with self.client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(failed_key)
                if pipe.zscore(failed_key, job_id) is None:
                    return False
                pipe.multi()
                pipe.zrem(failed_key, job_id)
                pipe.hset(self._job_key(job_id), "attempts_made", 0)
                pipe.hdel(self._job_key(job_id), "finished_on", "processed_on", "failed_reason", "stacktrace")
                pipe.lpush(self._key("wait"), job_id)
                pipe.execute()
            except redis.WatchError:
                return False
        logger.info(f"Job {job_id} on {self.name} manually re-queued")
        return True

    def remove_job(self, job_id: str) -> bool:
        """Delete a job that is not currently being processed"""
        if self.client.exists(self._lock_key(job_id)):
            return False
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self._key("wait"), 0, job_id)
        pipe.lrem(self._key("active"), 0, job_id)
        pipe.srem(self._key("stalled-check"), job_id)
        pipe.zrem(self._key("delayed"), job_id)
        pipe.zrem(self._key("completed"), job_id)
        pipe.zrem(self._key("failed"), job_id)
        pipe.delete(self._job_key(job_id))
        results = pipe.execute()
        return bool(results[-1])

    def clean_completed(self, grace_ms: int = 0) -> int:
        completed_key = self._key("completed")
        ids = self.client.zrangebyscore(completed_key, 0, self._now_ms() - grace_ms)
        if not ids:
            return 0
        pipe = self.client.pipeline(transaction=True)
        pipe.zrem(completed_key, *ids)
        pipe.delete(*[self._job_key(job_id) for job_id in ids])
        pipe.execute()
        return len(ids)

class _LockRenewer(threading.Thread):
    """Keeps a job's lock alive while its handler runs"""

    def __init__(self, queue: JobQueue, job: Job, token: str):
        super().__init__(daemon=True, name=f"lock-renewer-{queue.name}-{job.id}")
        self.queue = queue
        self.job = job
        self.token = token
        self.interval = max(queue.lock_duration_ms / 2000.0, 0.05)
        self._done = threading.Event()

    def run(self):
        while not self._done.wait(self.interval):
            try:
                if not self.queue.extend_lock(self.job, self.token):
                    return
            except redis.RedisError as e:
                logger.warning(f"Could not extend lock for job {self.job.id}: {e}")

    def stop(self):
        self._done.set()

class Worker:
    """Pulls jobs from one queue and runs `handler(job)` on each.

    Returning normally completes the job, raising retries it (or parks it in
    failed once attempts are exhausted), raising UnrecoverableError parks it
    immediately.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: Callable[[Job], Any],
        poll_timeout: float = 1.0,
        stalled_interval: float = 30.0,
        name: Optional[str] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.poll_timeout = poll_timeout
        self.stalled_interval = stalled_interval
        self.token = name or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._stop = threading.Event()
        self.processed = 0
        self.failed = 0

    def process_one(self, timeout: Optional[float] = None) -> Optional[Job]:
        job = self.queue.fetch_next(self.token, timeout=timeout)
        if job is None:
            return None

        renewer = _LockRenewer(self.queue, job, self.token)
        renewer.start()
        error: Optional[Exception] = None
        try:
            self.handler(job)
        except Exception as e:
            error = e
        finally:
            # no renewal may land inside the finishing transaction
            renewer.stop()
            renewer.join()

        if isinstance(error, UnrecoverableError):
            self.failed += 1
            logger.error(f"Job {job.id} on {self.queue.name} is unrecoverable: {error}",
                         extra={"job_id": job.id, "trace_id": job.trace_id})
            finished = self.queue.fail(job, self.token, error, unrecoverable=True)
        elif error is not None:
            self.failed += 1
            logger.error(f"Job {job.id} on {self.queue.name} failed (attempt {job.attempt}): {error}",
                         extra={"job_id": job.id, "trace_id": job.trace_id})
            finished = self.queue.fail(job, self.token, error)
        else:
            self.processed += 1
            finished = self.queue.complete(job, self.token)

        if not finished:
            logger.warning(f"⚠️ Job {job.id} on {self.queue.name} could not be finished by {self.token}; "
                           f"it will be redelivered once its lock expires",
                           extra={"job_id": job.id, "trace_id": job.trace_id})
        return job

    def run(self):
        logger.info(f"🚀 Worker {self.token} consuming {self.queue.name}")
        last_stalled_check = 0.0
        while not self._stop.is_set():
            try:
                if time.monotonic() - last_stalled_check >= self.stalled_interval:
                    self.queue.recover_stalled()
                    last_stalled_check = time.monotonic()
                self.process_one(timeout=self.poll_timeout)
            except redis.RedisError as e:
                # in-flight job keeps its lock until it expires and is redelivered
                logger.error(f"Queue backend error on {self.queue.name}: {e}")
                self._stop.wait(1.0)
        logger.info(f"Worker {self.token} on {self.queue.name} stopped")

    def stop(self):
        """Ask the loop to exit once the in-flight job (if any) is finished"""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
