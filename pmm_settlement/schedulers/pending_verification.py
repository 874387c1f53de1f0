"""
Pending verification scheduler.

Every tick (default 5 minutes):
1. Retry sweep: FAILED records inside the retry window go back to PENDING with
   a bumped retry count; those past the window become STUCK.
2. Verification: each PENDING record, oldest first, is checked against its BTC
   settlement transaction. Once confirmed and its real amount extracted, the
   record moves to MEMPOOL_VERIFIED and a quote job is enqueued.
3. In-flight recovery: every record between MEMPOOL_VERIFIED and
   SWAP_PROCESSING that is past the retry window becomes STUCK; the rest are
   re-offered to the queue for their stage, so work queued before a restart
   is picked up again. The idempotency key makes this a no-op while the
   original job is known.

Records are processed independently: one failing record is logged and the
tick moves on.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from pmm_settlement.core.amounts import extract_real_amount
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.processors.quote_processor import transfer_job_id
from pmm_settlement.processors.transfer_processor import transfer_started
from pmm_settlement.processors.work_queue import WorkQueue
from pmm_settlement.rebalancing.models import (
    Rebalancing,
    RebalancingQueueJob,
    RebalancingStatus,
    RebalancingTransferJob,
)
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.schedulers.base import Ticker

MS_PER_HOUR = 3_600_000

IN_FLIGHT_STATUSES = (
    RebalancingStatus.MEMPOOL_VERIFIED,
    RebalancingStatus.QUOTE_REQUESTED,
    RebalancingStatus.QUOTE_ACCEPTED,
    RebalancingStatus.DEPOSIT_SUBMITTED,
    RebalancingStatus.SWAP_PROCESSING,
)
REQUOTE_STATUSES = (RebalancingStatus.MEMPOOL_VERIFIED, RebalancingStatus.QUOTE_REQUESTED)


class TransactionProvider(Protocol):
    async def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]: ...


def quote_job_id(rebalancing_id: str, retry_count: int) -> str:
    return f"rebalance-quote-{rebalancing_id}-{retry_count}"


class VerifyOutcome:
    STUCK = "stuck"
    MISSING_TX_ID = "missing_tx_id"
    ENQUEUED = "enqueued"
    NOT_FOUND = "not_found"
    UNCONFIRMED = "unconfirmed"
    EXTRACTION_FAILED = "extraction_failed"
    VERIFIED = "verified"


class PendingVerificationScheduler(Ticker):
    name = "rebalance-pending"

    def __init__(
        self,
        service: RebalancingService,
        transactions: TransactionProvider,
        quote_queue: WorkQueue,
        notifier: RebalanceNotifier,
        enabled: bool,
        max_retry_duration_hours: float,
        skip_confirm: bool = False,
        interval_sec: float = 300.0,
        clock: Optional[Callable[[], int]] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
        transfer_queue: Optional[WorkQueue] = None,
    ) -> None:
        super().__init__(interval_sec, metrics=metrics, log_event=log_event)
        self._service = service
        self._transactions = transactions
        self._queue = quote_queue
        self._transfer_queue = transfer_queue
        self._notifier = notifier
        self._enabled = enabled
        self._max_hours = max_retry_duration_hours
        self._skip_confirm = skip_confirm
        self._now_ms = clock or (lambda: int(time.time() * 1000))

    async def tick(self) -> None:
        if not self._enabled:
            self._log("rebalance_pending_disabled", level=logging.DEBUG)
            return

        await self.sweep_failed()

        pending = await self._service.find_pending()
        if pending:
            self._log("rebalance_pending_scan", count=len(pending))
        for record in pending:
            try:
                await self.verify_record(record)
            except Exception as exc:
                self._record_error(record, exc)

        await self.recover_in_flight()

    # ------------------------------------------------------------------
    # Retry sweep
    # ------------------------------------------------------------------

    async def sweep_failed(self) -> int:
        """Move FAILED records back to PENDING or on to STUCK. Returns records retried."""
        failed = await self._service.find_by_statuses([RebalancingStatus.FAILED])
        retried = 0
        for record in failed:
            try:
                if self._is_expired(record):
                    await self._mark_stuck(record)
                    continue
                retry_count = await self._service.retry(record.id)
                retried += 1
                if self._metrics:
                    self._metrics.rebalances_retried.inc()
                self._log(
                    "rebalance_retry_scheduled",
                    rebalancing_id=record.rebalancing_id,
                    retry_count=retry_count,
                    last_error=record.error,
                )
            except Exception as exc:
                self._record_error(record, exc)
        return retried

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_record(self, record: Rebalancing) -> str:
        if self._is_expired(record):
            await self._mark_stuck(record)
            return VerifyOutcome.STUCK

        if not record.tx_id:
            self._log(
                "rebalance_missing_tx_id",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                trade_hash=record.trade_hash,
            )
            return VerifyOutcome.MISSING_TX_ID

        if record.real_amount is not None:
            # verified on an earlier attempt; never re-extract
            await self._enqueue(record, record.real_amount)
            return VerifyOutcome.ENQUEUED

        tx = await self._transactions.get_transaction(record.tx_id)
        if tx is None:
            self._log(
                "rebalance_tx_not_found",
                level=logging.DEBUG,
                rebalancing_id=record.rebalancing_id,
                tx_id=record.tx_id,
            )
            return VerifyOutcome.NOT_FOUND

        confirmed = bool((tx.get("status") or {}).get("confirmed"))
        if not confirmed and not self._skip_confirm:
            self._log(
                "rebalance_tx_unconfirmed",
                level=logging.DEBUG,
                rebalancing_id=record.rebalancing_id,
                tx_id=record.tx_id,
            )
            return VerifyOutcome.UNCONFIRMED

        outputs = tx.get("vout") or []
        real_amount = extract_real_amount(outputs, record.vault_address)
        if real_amount is None:
            self._log(
                "rebalance_amount_extraction_failed",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                tx_id=record.tx_id,
                vault_address=record.vault_address,
                expected_amount=record.amount,
                output_count=len(outputs),
            )
            return VerifyOutcome.EXTRACTION_FAILED

        if str(real_amount) != record.amount:
            self._log(
                "rebalance_amount_mismatch",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                expected_amount=record.amount,
                real_amount=str(real_amount),
            )

        updated = await self._service.update_status(
            record.id,
            RebalancingStatus.MEMPOOL_VERIFIED,
            real_amount=str(real_amount),
            mempool_verified=True,
        )
        if self._metrics:
            self._metrics.rebalances_verified.inc()
        self._log(
            "rebalance_verified",
            rebalancing_id=record.rebalancing_id,
            tx_id=record.tx_id,
            real_amount=str(real_amount),
            confirmed=confirmed,
        )
        await self._enqueue(updated, updated.real_amount)
        return VerifyOutcome.VERIFIED

    async def recover_in_flight(self) -> int:
        """
        Expire or re-offer records between verification and the swap.

        Every in-flight record past the retry window goes STUCK. The rest are
        re-offered to the queue for their stage, since queued jobs do not
        survive a restart: MEMPOOL_VERIFIED and QUOTE_REQUESTED go back to the
        quote queue, and QUOTE_ACCEPTED records whose BTC send was never
        attempted go back to the transfer queue. The idempotency key makes this
        a no-op while the original job is known. Returns the jobs re-added.
        """
        records = await self._service.find_by_statuses(IN_FLIGHT_STATUSES)
        added = 0
        for record in records:
            try:
                if self._is_expired(record):
                    await self._mark_stuck(record)
                    continue
                if record.status in REQUOTE_STATUSES:
                    if record.real_amount and await self._enqueue(record, record.real_amount):
                        added += 1
                elif record.status == RebalancingStatus.QUOTE_ACCEPTED:
                    if await self._enqueue_transfer(record):
                        added += 1
            except Exception as exc:
                self._record_error(record, exc)
        return added

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _elapsed_ms(self, record: Rebalancing) -> int:
        return self._now_ms() - record.trade_completed_at_ms

    def _is_expired(self, record: Rebalancing) -> bool:
        return self._elapsed_ms(record) >= self._max_hours * MS_PER_HOUR

    async def _mark_stuck(self, record: Rebalancing) -> None:
        elapsed_hours = self._elapsed_ms(record) // MS_PER_HOUR
        reason = f"Max retry duration exceeded ({elapsed_hours}h). Last error: {record.error or 'N/A'}"
        await self._service.mark_stuck(record.id, reason)
        if self._metrics:
            self._metrics.rebalances_stuck.inc()
        self._log(
            "rebalance_stuck",
            level=logging.ERROR,
            rebalancing_id=record.rebalancing_id,
            trade_hash=record.trade_hash,
            status=record.status.value,
            elapsed_hours=elapsed_hours,
            max_hours=self._max_hours,
            last_error=record.error,
        )
        await self._notifier.stuck(
            rebalancing_id=record.rebalancing_id,
            trade_id=record.display_trade_id,
            elapsed_hours=elapsed_hours,
            max_hours=self._max_hours,
            last_error=record.error,
        )

    async def _enqueue(self, record: Rebalancing, real_amount: str) -> bool:
        job = RebalancingQueueJob(
            id=record.id,
            rebalancing_id=record.rebalancing_id,
            trade_hash=record.display_trade_id,
            amount=record.amount,
            real_amount=real_amount,
            tx_id=record.tx_id or "",
        )
        job_id = quote_job_id(record.rebalancing_id, record.retry_count)
        added = await self._queue.add(job.to_dict(), job_id=job_id)
        if added:
            self._log("rebalance_quote_enqueued", rebalancing_id=record.rebalancing_id, job_id=job_id)
        return added

    async def _enqueue_transfer(self, record: Rebalancing) -> bool:
        if self._transfer_queue is None or not record.deposit_address or not record.real_amount:
            return False
        if record.near_vault_tx_id or transfer_started(record):
            # a send may have gone out; only the STUCK timeout moves this record on
            self._log(
                "rebalance_transfer_unreconciled",
                level=logging.WARNING,
                rebalancing_id=record.rebalancing_id,
                near_vault_tx_id=record.near_vault_tx_id,
            )
            return False
        job = RebalancingTransferJob(
            id=record.id,
            rebalancing_id=record.rebalancing_id,
            trade_hash=record.display_trade_id,
            deposit_address=record.deposit_address,
            real_amount=record.real_amount,
        )
        job_id = transfer_job_id(record.rebalancing_id, record.retry_count)
        added = await self._transfer_queue.add(job.to_dict(), job_id=job_id)
        if added:
            self._log("rebalance_transfer_requeued", rebalancing_id=record.rebalancing_id, job_id=job_id)
        return added

    def _record_error(self, record: Rebalancing, exc: Exception) -> None:
        if self._metrics:
            self._metrics.record_errors.labels(scheduler=self.name).inc()
        self._log(
            "rebalance_pending_error",
            level=logging.ERROR,
            rebalancing_id=record.rebalancing_id,
            trade_hash=record.trade_hash,
            error=str(exc),
        )
