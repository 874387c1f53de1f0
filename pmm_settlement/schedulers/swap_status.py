"""
Swap status scheduler.

Polls the swap venue for every record whose BTC deposit has been submitted
(DEPOSIT_SUBMITTED or SWAP_PROCESSING) and moves it on:
- SUCCESS -> COMPLETED with the USDC received and the settlement tx hash
- FAILED -> FAILED (the pending scheduler's retry sweep picks it up)
- REFUNDED -> REFUNDED, which is unexpected and alerted as critical
- PROCESSING / KNOWN_DEPOSIT_TX / PENDING_DEPOSIT -> SWAP_PROCESSING
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from pmm_settlement.infra.swap_client import SwapStatus, SwapStatusResponse
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.rebalancing.models import Rebalancing, RebalancingStatus
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.schedulers.base import Ticker

IN_FLIGHT_STATUSES = (
    SwapStatus.PROCESSING,
    SwapStatus.KNOWN_DEPOSIT_TX,
    SwapStatus.PENDING_DEPOSIT,
)


class SwapStatusProvider(Protocol):
    async def get_status(self, deposit_address: str, deposit_memo: Optional[str] = None) -> SwapStatusResponse: ...


class SwapStatusScheduler(Ticker):
    name = "rebalance-swap-status"

    def __init__(
        self,
        service: RebalancingService,
        swaps: SwapStatusProvider,
        notifier: RebalanceNotifier,
        enabled: bool = True,
        interval_sec: float = 30.0,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(interval_sec, metrics=metrics, log_event=log_event)
        self._service = service
        self._swaps = swaps
        self._notifier = notifier
        self._enabled = enabled

    async def tick(self) -> None:
        if not self._enabled:
            return

        records = await self._service.find_by_statuses(
            [RebalancingStatus.DEPOSIT_SUBMITTED, RebalancingStatus.SWAP_PROCESSING]
        )
        if not records:
            return

        self._log("swap_status_poll_start", count=len(records))
        for record in records:
            try:
                await self.check_record(record)
            except Exception as exc:
                if self._metrics:
                    self._metrics.record_errors.labels(scheduler=self.name).inc()
                self._log(
                    "swap_status_error",
                    level=logging.ERROR,
                    rebalancing_id=record.rebalancing_id,
                    deposit_address=record.deposit_address,
                    error=str(exc),
                )

    async def check_record(self, record: Rebalancing) -> Optional[SwapStatus]:
        """Poll one record. Returns the venue status acted on, None if unknown or skipped."""
        if not record.deposit_address:
            self._log(
                "swap_status_missing_deposit_address",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
            )
            return None

        response = await self._swaps.get_status(record.deposit_address)
        status = response.status
        self._log(
            "swap_status_received",
            level=logging.DEBUG,
            rebalancing_id=record.rebalancing_id,
            status=response.raw_status,
        )

        if status == SwapStatus.SUCCESS:
            await self._complete(record, response)
        elif status == SwapStatus.FAILED:
            await self._fail(record)
        elif status == SwapStatus.REFUNDED:
            await self._refund(record, response)
        elif status in IN_FLIGHT_STATUSES:
            if record.status != RebalancingStatus.SWAP_PROCESSING:
                await self._service.update_status(record.id, RebalancingStatus.SWAP_PROCESSING)
        elif status == SwapStatus.INCOMPLETE_DEPOSIT:
            self._log(
                "swap_incomplete_deposit",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                deposit_address=record.deposit_address,
            )
        else:
            self._log(
                "swap_unknown_status",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                status=response.raw_status,
            )
        return status

    async def _complete(self, record: Rebalancing, response: SwapStatusResponse) -> None:
        tx_hash = response.settlement_tx_hash
        await self._service.update_status(
            record.id,
            RebalancingStatus.COMPLETED,
            actual_usdc=response.amount_out,
            near_tx_id=tx_hash,
        )
        if self._metrics:
            self._metrics.rebalances_completed.labels(outcome="success").inc()
        self._log(
            "rebalance_complete",
            rebalancing_id=record.rebalancing_id,
            usdc_amount=response.amount_out,
            tx_hash=tx_hash,
        )
        await self._notifier.completed(
            rebalancing_id=record.rebalancing_id,
            trade_id=record.display_trade_id,
            usdc_amount=response.amount_out or "0",
            tx_hash=tx_hash,
        )

    async def _fail(self, record: Rebalancing) -> None:
        await self._service.mark_failed(record.id, "NEAR swap failed")
        if self._metrics:
            self._metrics.rebalances_completed.labels(outcome="failed").inc()
        self._log("rebalance_swap_failed", level=logging.WARNING, rebalancing_id=record.rebalancing_id)
        await self._notifier.swap_failed(rebalancing_id=record.rebalancing_id, trade_id=record.display_trade_id)

    async def _refund(self, record: Rebalancing, response: SwapStatusResponse) -> None:
        refunded = response.refunded_amount_formatted
        await self._service.update_status(
            record.id,
            RebalancingStatus.REFUNDED,
            error=f"Funds refunded: {refunded or 'N/A'}",
        )
        if self._metrics:
            self._metrics.rebalances_completed.labels(outcome="refunded").inc()
        self._log(
            "rebalance_unexpected_refund",
            level=logging.ERROR,
            rebalancing_id=record.rebalancing_id,
            refunded_amount=refunded,
        )
        await self._notifier.refunded(
            rebalancing_id=record.rebalancing_id,
            trade_id=record.display_trade_id,
            refunded_amount=refunded,
        )
