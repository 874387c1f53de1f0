"""
Async wrapper around blocking RPC clients (web3.py) using a shared thread pool.

Every call carries a bounded timeout; read calls may be retried with jittered
backoff. Sends are never retried here: a timed-out send may still have reached
the node, so the caller decides what to do.
"""

from __future__ import annotations

import asyncio
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional


class RpcTimeoutError(Exception):
    """Raised when an RPC call exceeds its timeout."""
    pass


class AsyncRpc:
    def __init__(self, timeout: float = 15.0, max_workers: int = 8, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self._timeout = timeout
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rpc-exec")

    @property
    def timeout(self) -> float:
        return self._timeout

    async def read(self, fn: Callable[[], Any], retries: int = 2) -> Any:
        """Run an idempotent blocking call with retries."""
        return await self._call(fn, retries=retries)

    async def send(self, fn: Callable[[], Any]) -> Any:
        """Run a non-idempotent blocking call exactly once."""
        return await self._call(fn, retries=0)

    async def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[[], Any], retries: int) -> Any:
        loop = asyncio.get_running_loop()
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                if attempt >= retries:
                    raise RpcTimeoutError(f"RPC call timed out after {self._timeout}s") from exc
            except Exception:
                if attempt >= retries:
                    raise
            await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
            backoff *= 2
