"""
Quote stage of the BTC -> USDC rebalancing pipeline.

Consumes `rebalance-quote` jobs. For each verified record:
1. fetch the BTC/USD oracle price
2. request a FLEX_INPUT quote for the real BTC amount received
3. snapshot the quote on the record (QUOTE_REQUESTED)
4. run the slippage guard against the quoted USDC out
5. accept (QUOTE_ACCEPTED + `rebalance-transfer` job) or fail the record

Failures move the record to FAILED with the reason in `error`; the pending
scheduler's retry sweep decides whether it gets another attempt. The handler
itself never raises, so the queue never re-runs a quote on its own.

Usage:
    processor = QuoteProcessor(service, swaps, oracle, guard, transfer_queue, notifier, quote_defaults)
    quote_queue.set_handler(processor.process)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from pmm_settlement.core.slippage import SlippageGuard, format_bps
from pmm_settlement.infra.price_oracle import PriceUnavailableError
from pmm_settlement.infra.swap_client import QuoteRequest, SwapQuote
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.processors.work_queue import WorkQueue
from pmm_settlement.rebalancing.models import (
    Rebalancing,
    RebalancingQueueJob,
    RebalancingStatus,
    RebalancingTransferJob,
)
from pmm_settlement.rebalancing.service import RebalancingService

log = logging.getLogger("pmm_settlement")

# PENDING is quotable once a retry re-enqueues a record whose real_amount is known;
# a redelivered job for a record already past the quote stage must not touch it
QUOTABLE_STATUSES = (
    RebalancingStatus.PENDING,
    RebalancingStatus.MEMPOOL_VERIFIED,
    RebalancingStatus.QUOTE_REQUESTED,
)


def transfer_job_id(rebalancing_id: str, retry_count: int) -> str:
    return f"rebalance-transfer-{rebalancing_id}-{retry_count}"


class QuoteProvider(Protocol):
    async def request_quote(self, request: QuoteRequest, session_id: Optional[str] = None) -> SwapQuote: ...


class PriceProvider(Protocol):
    async def get_btc_price(self) -> float: ...


@dataclass(frozen=True)
class QuoteDefaults:
    """Per-deployment quote parameters; only the amount varies per job."""
    recipient: str
    refund_to: str
    origin_asset: str
    destination_asset: str
    slippage_tolerance_bps: int
    referral: Optional[str] = None

    def build(self, amount: int) -> QuoteRequest:
        return QuoteRequest(
            amount=amount,
            recipient=self.recipient,
            refund_to=self.refund_to,
            origin_asset=self.origin_asset,
            destination_asset=self.destination_asset,
            slippage_tolerance_bps=self.slippage_tolerance_bps,
            referral=self.referral,
        )


class QuoteProcessor:
    def __init__(
        self,
        service: RebalancingService,
        swaps: QuoteProvider,
        prices: PriceProvider,
        guard: SlippageGuard,
        transfer_queue: WorkQueue,
        notifier: RebalanceNotifier,
        defaults: QuoteDefaults,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._service = service
        self._swaps = swaps
        self._prices = prices
        self._guard = guard
        self._transfer_queue = transfer_queue
        self._notifier = notifier
        self._defaults = defaults
        self._metrics = metrics
        self._log = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def process(self, payload: Dict[str, Any]) -> Optional[str]:
        """
        Queue handler. Returns the final decision for the job:
        "accepted", "rejected", "failed", or None when the job was skipped.
        """
        job = RebalancingQueueJob(**payload)
        self._log(
            "rebalance_quote_start",
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            real_amount=job.real_amount,
        )
        try:
            return await self._process(job)
        except Exception as exc:
            self._log(
                "rebalance_quote_error",
                level=logging.ERROR,
                rebalancing_id=job.rebalancing_id,
                trade_hash=job.trade_hash,
                error=str(exc),
            )
            await self._fail(job, str(exc))
            return "failed"

    async def _process(self, job: RebalancingQueueJob) -> Optional[str]:
        record = await self._service.find_by_id(job.id)
        if record is None:
            raise LookupError(f"Rebalancing record not found: {job.rebalancing_id}")

        if record.status not in QUOTABLE_STATUSES:
            self._log(
                "rebalance_quote_skip",
                rebalancing_id=job.rebalancing_id,
                status=record.status.value,
            )
            return None

        try:
            btc_price = await self._prices.get_btc_price()
        except PriceUnavailableError as exc:
            self._log("rebalance_price_unavailable", level=logging.WARNING, rebalancing_id=job.rebalancing_id, error=str(exc))
            await self._fail(job, "Price provider unavailable")
            return "failed"

        quote = await self._request_quote(job)
        if quote is None:
            await self._fail(job, "Quote request failed")
            return "failed"

        await self._service.update_status(
            record.id,
            RebalancingStatus.QUOTE_REQUESTED,
            deposit_address=quote.deposit_address,
            oracle_price=str(btc_price),
            quote_price=quote.amount_in_usd,
            expected_usdc=quote.amount_out,
            metadata={
                **record.metadata,
                "quoteResponse": quote.raw,
                "quoteReceivedAt": datetime.now(timezone.utc).isoformat(),
            },
        )

        result = self._guard.check(int(job.real_amount), int(quote.amount_out), btc_price)
        await self._service.update_status(record.id, RebalancingStatus.QUOTE_REQUESTED, slippage_bps=result.slippage_bps)
        if self._metrics:
            self._metrics.slippage_bps.observe(result.slippage_bps)

        if not result.is_acceptable:
            error = f"Slippage exceeded: {format_bps(result.slippage_bps)} > {format_bps(result.threshold_bps)}"
            await self._service.mark_failed(record.id, error)
            if self._metrics:
                self._metrics.quotes.labels(decision="rejected").inc()
            self._log(
                "rebalance_slippage_exceeded",
                level=logging.WARNING,
                rebalancing_id=job.rebalancing_id,
                slippage_bps=result.slippage_bps,
                threshold_bps=result.threshold_bps,
                expected_usd=result.expected_usd,
                actual_usd=result.actual_usd,
            )
            await self._notifier.slippage_exceeded(
                rebalancing_id=job.rebalancing_id,
                trade_hash=job.trade_hash,
                slippage_bps=result.slippage_bps,
                threshold_bps=result.threshold_bps,
            )
            return "rejected"

        await self._service.update_status(record.id, RebalancingStatus.QUOTE_ACCEPTED)
        if self._metrics:
            self._metrics.quotes.labels(decision="accepted").inc()

        transfer = RebalancingTransferJob(
            id=record.id,
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            deposit_address=quote.deposit_address,
            real_amount=job.real_amount,
        )
        await self._transfer_queue.add(
            transfer.to_dict(),
            job_id=transfer_job_id(job.rebalancing_id, record.retry_count),
        )

        if result.is_high_warning:
            await self._notifier.slippage_high(
                rebalancing_id=job.rebalancing_id,
                trade_hash=job.trade_hash,
                slippage_bps=result.slippage_bps,
                high_warning_bps=self._guard.high_warning_bps,
            )
        await self._notifier.quote_accepted(
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            deposit_address=quote.deposit_address,
            real_amount=job.real_amount,
            expected_usdc=quote.amount_out,
            slippage_bps=result.slippage_bps,
        )
        self._log(
            "rebalance_quote_accepted",
            rebalancing_id=job.rebalancing_id,
            deposit_address=quote.deposit_address,
            expected_usdc=quote.amount_out,
            slippage_bps=result.slippage_bps,
        )
        return "accepted"

    async def _request_quote(self, job: RebalancingQueueJob) -> Optional[SwapQuote]:
        try:
            quote = await self._swaps.request_quote(self._defaults.build(int(job.real_amount)))
        except Exception as exc:
            self._log(
                "rebalance_quote_request_failed",
                level=logging.ERROR,
                rebalancing_id=job.rebalancing_id,
                trade_hash=job.trade_hash,
                error=str(exc),
            )
            await self._notifier.quote_failed(trade_hash=job.trade_hash, error=str(exc))
            return None
        self._log(
            "rebalance_quote_received",
            rebalancing_id=job.rebalancing_id,
            deposit_address=quote.deposit_address,
            amount_out=quote.amount_out,
            amount_out_usd=quote.amount_out_usd,
        )
        return quote

    async def _fail(self, job: RebalancingQueueJob, error: str) -> None:
        if self._metrics:
            self._metrics.quotes.labels(decision="failed").inc()
        try:
            await self._service.mark_failed(job.id, error)
        except Exception as exc:
            # record gone or already terminal; nothing left to retry
            self._log(
                "rebalance_mark_failed_error",
                level=logging.ERROR,
                rebalancing_id=job.rebalancing_id,
                error=str(exc),
            )
