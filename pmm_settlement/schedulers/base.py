"""
Periodic scheduler base.

A Ticker runs `tick()` on a fixed interval with these guarantees:
- ticks of the same scheduler never overlap (the loop awaits each tick, and
  run_once() skips if a tick is already in flight, e.g. a manual trigger)
- a tick never raises: unexpected errors are logged with the tick's trace id
- every event logged inside a tick carries trace id `sched-{name}-{uuid}`
- stop() cancels the loop and waits for it, so shutdown is clean

Usage:
    class MyScheduler(Ticker):
        name = "my-scheduler"

        async def tick(self) -> None:
            ...

    sched = MyScheduler(interval_sec=60)
    await sched.start()
    ...
    await sched.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

from pmm_settlement.infra.logging_cfg import get_trace_id, new_trace_id, reset_trace_id, set_trace_id

log = logging.getLogger("pmm_settlement")


class Ticker:
    name: str = "ticker"

    def __init__(
        self,
        interval_sec: float,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.interval_sec = interval_sec
        self._metrics = metrics
        self._log = log_event or self._default_log
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._stats = {
            "ticks": 0,
            "tick_errors": 0,
            "skipped_overlap": 0,
            "last_tick_ms": 0,
            "last_duration_ms": 0,
        }

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        payload = {"event": event, "scheduler": self.name, **kwargs}
        trace_id = get_trace_id()
        if trace_id:
            payload["trace_id"] = trace_id
        log.log(level, json.dumps(payload, default=str))

    async def tick(self) -> None:
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> bool:
        """
        Run a single tick under a fresh trace id.

        Returns False if skipped because a tick is in flight or if the tick
        failed, True otherwise.
        """
        if self._tick_lock.locked():
            self._stats["skipped_overlap"] += 1
            self._log("scheduler_tick_skipped", level=logging.DEBUG, reason="previous tick still running")
            return False

        async with self._tick_lock:
            token = set_trace_id(new_trace_id(f"sched-{self.name}"))
            start = time.monotonic()
            try:
                await self.tick()
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._stats["tick_errors"] += 1
                if self._metrics:
                    self._metrics.tick_errors.labels(scheduler=self.name).inc()
                log.exception(json.dumps({
                    "event": "scheduler_tick_error",
                    "scheduler": self.name,
                    "trace_id": get_trace_id(),
                    "error": str(exc),
                }))
                return False
            finally:
                duration = time.monotonic() - start
                self._stats["ticks"] += 1
                self._stats["last_tick_ms"] = int(time.time() * 1000)
                self._stats["last_duration_ms"] = int(duration * 1000)
                if self._metrics:
                    self._metrics.tick_duration.labels(scheduler=self.name).observe(duration)
                reset_trace_id(token)

    async def start(self, run_immediately: bool = False) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(run_immediately), name=f"sched-{self.name}")
        self._log("scheduler_started", interval_sec=self.interval_sec)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._log("scheduler_stopped")

    async def _loop(self, run_immediately: bool) -> None:
        if run_immediately:
            await self.run_once()
        while self._running:
            await asyncio.sleep(self.interval_sec)
            if not self._running:
                break
            await self.run_once()

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
