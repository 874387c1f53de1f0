"""
Structured logging setup for the settlement engine.

Production-optimized:
- Async-safe queue handler to avoid blocking event loop
- Log level hierarchy for noise reduction
- Throttling for repetitive warnings
- Trace ids carried through a context variable so every event emitted inside
  a scheduler tick can be correlated
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import queue
import sys
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

CRITICAL_SAFETY = logging.CRITICAL  # Double-send risk, nonce corruption
ERROR = logging.ERROR               # Failures requiring attention
WARNING = logging.WARNING           # Data inconsistency, recoverable issues
INFO = logging.INFO                 # Lifecycle events (verified, quoted, completed)
DEBUG = logging.DEBUG               # High-frequency detail (not yet confirmed, polls)

_trace_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("trace_id", default=None)


def new_trace_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4()}"


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_trace_id(trace_id: Optional[str]) -> contextvars.Token:
    return _trace_id.set(trace_id)


def reset_trace_id(token: contextvars.Token) -> None:
    _trace_id.reset(token)


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = time.time()
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


class TraceIdFilter(logging.Filter):
    """Attach the current trace id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "trace_id", None) is None:
            record.trace_id = _trace_id.get()
        return True


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues log records for background processing.

    Records are written by a dedicated background thread; when the queue is
    full new records are dropped and counted.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self._target.handle(record)
            self._queue.task_done()

    def close(self) -> None:
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Suppresses repeats of noisy events for cooldown_sec.

    Keyed on event name plus the record identifier so one noisy record does
    not hide warnings about others.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = throttled_events or {
            "rebalance_missing_tx_id",
            "rebalance_tx_not_found",
            "nonce_refresh_failed",
            "alert_delivery_failed",
        }

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        try:
            data = json.loads(msg)
        except (json.JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('rebalancing_id', data.get('network_id', ''))}"
        last = self._last_seen.get(key, 0)
        if now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "pmm_settlement",
    level: int = logging.INFO,
    file_path: Optional[str] = "pmm_settlement.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the engine logger.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: Path to log file (None to disable file logging)
        async_file: Use async queue handler for file to avoid blocking
        throttle_warnings: Apply throttling filter to reduce repetitive warnings
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Idempotent handler setup
    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            # trace id must be captured on the emitting task, not the writer thread
            async_handler.addFilter(TraceIdFilter())
            logger.addHandler(async_handler)
        else:
            file_handler.addFilter(TraceIdFilter())
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data
) -> None:
    """
    Log a structured event with proper level.

    Usage:
        log_event(log, "rebalance_verified", level=INFO, rebalancing_id="0x..", real_amount="5000")
    """
    payload = {"event": event, **data}
    trace_id = _trace_id.get()
    if trace_id and "trace_id" not in payload:
        payload["trace_id"] = trace_id
    logger.log(level, json.dumps(payload, default=str))
