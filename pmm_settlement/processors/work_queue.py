"""
In-process work queue with idempotency keys.

Features:
- Caller-supplied job id acts as an idempotency key: adding a job whose id is
  already known (waiting, active, or retained after finishing) is a no-op
- Completed and failed jobs are retained for `retention_sec` so redelivery
  within that window is still deduplicated, then pruned
- Bounded attempts with fixed backoff for handler exceptions
- Error isolation: a failing job never stops the worker

Usage:
    queue = WorkQueue("rebalance-quote", handler=processor.process, retention_sec=86_400)
    await queue.start()
    await queue.add(job.to_dict(), job_id=f"rebalance-quote-{rid}-{retry}")
    ...
    await queue.stop()

Jobs live in memory only. A process restart drops waiting jobs; the
schedulers re-derive work from persisted record status on their next tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional

log = logging.getLogger("pmm_settlement")

JobHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class JobState(Enum):
    WAITING = auto()
    ACTIVE = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class Job:
    job_id: str
    payload: Dict[str, Any]
    state: JobState = JobState.WAITING
    attempts: int = 0
    enqueued_at_ms: int = 0
    finished_at_ms: int = 0
    error: Optional[str] = None


class WorkQueue:
    def __init__(
        self,
        name: str,
        handler: Optional[JobHandler] = None,
        retention_sec: int = 86_400,
        max_attempts: int = 3,
        backoff_sec: float = 5.0,
        concurrency: int = 1,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.name = name
        self._handler = handler
        self._retention_ms = retention_sec * 1000
        self._max_attempts = max(1, max_attempts)
        self._backoff_sec = backoff_sec
        self._concurrency = max(1, concurrency)
        self._metrics = metrics
        self._log = log_event or self._default_log

        self._jobs: Dict[str, Job] = {}
        self._ready: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._delayed: set = set()
        self._running = False

        self._stats = {
            "added": 0,
            "deduplicated": 0,
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "pruned": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if "error" in kwargs else logging.INFO
        log.log(level, json.dumps({"event": event, "queue": self.name, **kwargs}))

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def add(self, payload: Dict[str, Any], job_id: str) -> bool:
        """
        Enqueue a job. Returns False if `job_id` is already known.
        """
        self.prune()
        if job_id in self._jobs:
            self._stats["deduplicated"] += 1
            if self._metrics:
                self._metrics.jobs_deduplicated.labels(queue=self.name).inc()
            self._log("queue_job_deduplicated", job_id=job_id, state=self._jobs[job_id].state.name)
            return False

        self._jobs[job_id] = Job(job_id=job_id, payload=dict(payload), enqueued_at_ms=self._now_ms())
        self._ready.put_nowait(job_id)
        self._stats["added"] += 1
        if self._metrics:
            self._metrics.jobs_enqueued.labels(queue=self.name).inc()
        self._log("queue_job_added", job_id=job_id)
        return True

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def prune(self, now_ms: Optional[int] = None) -> int:
        """Drop finished jobs older than the retention window."""
        now = now_ms if now_ms is not None else self._now_ms()
        expired = [
            key for key, job in self._jobs.items()
            if job.state in (JobState.COMPLETED, JobState.FAILED)
            and now - job.finished_at_ms >= self._retention_ms
        ]
        for key in expired:
            del self._jobs[key]
        self._stats["pruned"] += len(expired)
        return len(expired)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        if self._handler is None:
            raise RuntimeError(f"Queue {self.name} has no handler")
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"{self.name}-worker-{i}")
            for i in range(self._concurrency)
        ]
        self._log("queue_started", concurrency=self._concurrency)

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        self._log("queue_stopped", waiting=self._ready.qsize())

    async def run_pending(self) -> int:
        """Process every job currently waiting, inline. Returns the number processed."""
        processed = 0
        while not self._ready.empty():
            job_id = self._ready.get_nowait()
            await self._process(job_id)
            self._ready.task_done()
            processed += 1
        return processed

    async def _worker_loop(self) -> None:
        while self._running:
            job_id = await self._ready.get()
            try:
                await self._process(job_id)
            finally:
                self._ready.task_done()

    async def _process(self, job_id: str) -> None:
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.WAITING:
            return
        if self._handler is None:
            raise RuntimeError(f"Queue {self.name} has no handler")

        job.state = JobState.ACTIVE
        job.attempts += 1
        try:
            await self._handler(job.payload)
        except asyncio.CancelledError:
            job.state = JobState.WAITING
            raise
        except Exception as exc:
            job.error = str(exc)
            if job.attempts < self._max_attempts:
                job.state = JobState.WAITING
                self._stats["retried"] += 1
                self._log("queue_job_retry", job_id=job_id, attempt=job.attempts, error=job.error)
                self._schedule_retry(job_id)
            else:
                job.state = JobState.FAILED
                job.finished_at_ms = self._now_ms()
                self._stats["failed"] += 1
                if self._metrics:
                    self._metrics.jobs_failed.labels(queue=self.name).inc()
                log.exception(json.dumps({"event": "queue_job_failed", "queue": self.name, "job_id": job_id}))
            return

        job.state = JobState.COMPLETED
        job.finished_at_ms = self._now_ms()
        job.error = None
        self._stats["completed"] += 1

    def _schedule_retry(self, job_id: str) -> None:
        if not self._running:
            # inline mode: next run_pending() picks it up
            self._ready.put_nowait(job_id)
            return

        async def _later() -> None:
            await asyncio.sleep(self._backoff_sec)
            self._ready.put_nowait(job_id)

        task = asyncio.create_task(_later())
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "waiting": self._ready.qsize(), "known": len(self._jobs)}
