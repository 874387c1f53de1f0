"""Periodic re-read of the on-chain nonce for every cached EVM signer."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from pmm_settlement.infra.nonce import NonceSequencer
from pmm_settlement.schedulers.base import Ticker


class NonceRefreshScheduler(Ticker):
    name = "nonce-refresh"

    def __init__(
        self,
        sequencer: NonceSequencer,
        interval_sec: float = 60.0,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(interval_sec, metrics=metrics, log_event=log_event)
        self._sequencer = sequencer

    async def tick(self) -> None:
        outcome = await self._sequencer.refresh_all()
        failed = [key for key, ok in outcome.items() if not ok]
        if self._metrics:
            self._metrics.nonce_cache_size.set(self._sequencer.size)
            if failed:
                self._metrics.nonce_refresh_failures.inc(len(failed))
        if outcome:
            self._log(
                "nonce_refresh_done",
                level=logging.WARNING if failed else logging.DEBUG,
                refreshed=len(outcome) - len(failed),
                failed=failed,
            )
