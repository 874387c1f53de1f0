"""
Trade payout pipeline: pay the user, then prove the payment to the solver.

`settlement-transfer` jobs (SettlementTransferProcessor):
1. load the local trade; a trade that already carries a payment tx id only
   gets its submit job re-offered
2. confirm this PMM won the trade, and that the trade deadline has not passed
   (either failing marks the trade FAILED, nothing is sent)
3. resolve the payout token and pay through the TransferDispatcher
4. record the payment (trade -> SETTLING) and enqueue `settlement-submit`

Handler exceptions before the payout are left to the queue, which retries
with a fixed delay up to the configured attempt budget. The trade moves to
PAYING right before the dispatcher is called; PAYING trades are retried in
process but never re-enqueued after a restart.

`settlement-submit` jobs (SettlementSubmitProcessor) sign the MakePayment
message and post it to the solver; failures are retried by the queue.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from pmm_settlement.infra.trade_client import TradeStatus, TradeStore
from pmm_settlement.processors.work_queue import WorkQueue
from pmm_settlement.settlement.models import Token, TransferParams, TransferResult
from pmm_settlement.settlement.multisig import Eip712Domain
from pmm_settlement.settlement.router import PmmSelection
from pmm_settlement.settlement.solver import build_settlement_request

log = logging.getLogger("pmm_settlement")

PAYABLE_STATUSES = (TradeStatus.PENDING, TradeStatus.PAYING)


def settlement_transfer_job_id(trade_id: str) -> str:
    return f"settlement-transfer-{trade_id}"


def settlement_submit_job_id(trade_id: str) -> str:
    return f"settlement-submit-{trade_id}"


@dataclass(frozen=True)
class SettlementTransferJob:
    trade_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SettlementSubmitJob:
    trade_id: str
    payment_tx_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PayoutRouter(Protocol):
    async def get_pmm_selection(self, trade_id: str) -> PmmSelection: ...

    async def get_token(self, network_id: str, token_address: str) -> Token: ...


class Dispatcher(Protocol):
    async def transfer(self, params: TransferParams, network_type: str, trade_type: str) -> TransferResult: ...


class SignerDomainProvider(Protocol):
    async def get_signer_domain(self) -> Eip712Domain: ...


class SettlementSubmitter(Protocol):
    async def submit_settlement(self, request: Dict[str, Any]) -> Dict[str, Any]: ...


class SettlementTransferProcessor:
    def __init__(
        self,
        trades: TradeStore,
        router: PayoutRouter,
        dispatcher: Dispatcher,
        pmm_id: str,
        submit_queue: Optional[WorkQueue] = None,
        clock: Optional[Callable[[], float]] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._trades = trades
        self._router = router
        self._dispatcher = dispatcher
        self._pmm_id = pmm_id
        self._submit_queue = submit_queue
        self._clock = clock or time.time
        self._metrics = metrics
        self._log = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def _count(self, result: str) -> None:
        if self._metrics:
            self._metrics.settlements.labels(stage="transfer", result=result).inc()

    async def process(self, payload: Dict[str, Any]) -> Optional[str]:
        """Queue handler. Returns the payment tx id, or None when nothing was paid."""
        job = SettlementTransferJob(**payload)
        trade_id = job.trade_id
        self._log("settlement_transfer_start", trade_id=trade_id)

        trade = await self._trades.find_trade_by_id(trade_id)
        if trade is None:
            self._log("settlement_trade_not_found", level=logging.ERROR, trade_id=trade_id)
            self._count("not_found")
            return None

        if trade.payment_tx_id:
            await self._enqueue_submit(trade_id, trade.payment_tx_id)
            return trade.payment_tx_id

        if trade.status not in PAYABLE_STATUSES:
            self._log("settlement_transfer_skip", trade_id=trade_id, status=trade.status.value)
            self._count("skipped")
            return None

        selection = await self._router.get_pmm_selection(trade_id)
        if not selection.is_selected(self._pmm_id):
            self._log(
                "settlement_trade_pmm_mismatch",
                level=logging.ERROR,
                trade_id=trade_id,
                pmm_id=self._pmm_id,
                selected_pmm_id=selection.selected_pmm_id,
            )
            await self._trades.mark_failed(trade_id, "Trade does not belong to this PMM")
            self._count("pmm_mismatch")
            return None

        now = self._clock()
        if trade.is_expired(now):
            self._log(
                "settlement_trade_expired",
                level=logging.ERROR,
                trade_id=trade_id,
                trade_deadline=trade.trade_deadline,
                current_time=int(now),
            )
            await self._trades.mark_failed(trade_id, "Trade has expired")
            self._count("expired")
            return None

        token = await self._router.get_token(selection.to_network_id, selection.to_token_address)
        if trade.status == TradeStatus.PENDING:
            await self._trades.mark_paying(trade_id)

        result = await self._dispatcher.transfer(
            TransferParams(
                to_address=selection.to_address,
                amount=selection.amount_out,
                token=token,
                trade_id=trade_id,
            ),
            token.network_type,
            trade.trade_type,
        )
        self._count("paid")

        try:
            await self._trades.mark_paid(trade_id, result.hash)
        except Exception as exc:
            # paid on-chain; never let the queue pay again
            self._log(
                "settlement_payment_persist_failed",
                level=logging.CRITICAL,
                trade_id=trade_id,
                payment_tx_id=result.hash,
                error=str(exc),
            )
            return result.hash

        await self._enqueue_submit(trade_id, result.hash)
        self._log(
            "settlement_transfer_complete",
            trade_id=trade_id,
            payment_tx_id=result.hash,
            network_id=token.network_id,
            amount=str(selection.amount_out),
        )
        return result.hash

    async def _enqueue_submit(self, trade_id: str, payment_tx_id: str) -> None:
        if self._submit_queue is None:
            self._log("settlement_submit_disabled", level=logging.WARNING, trade_id=trade_id)
            return
        try:
            await self._submit_queue.add(
                SettlementSubmitJob(trade_id=trade_id, payment_tx_id=payment_tx_id).to_dict(),
                job_id=settlement_submit_job_id(trade_id),
            )
        except Exception as exc:
            self._log("settlement_submit_enqueue_failed", level=logging.ERROR, trade_id=trade_id, error=str(exc))


class SettlementSubmitProcessor:
    def __init__(
        self,
        domains: SignerDomainProvider,
        solver: SettlementSubmitter,
        pmm_id: str,
        private_key: str,
        clock: Optional[Callable[[], float]] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._domains = domains
        self._solver = solver
        self._pmm_id = pmm_id
        self._private_key = private_key
        self._clock = clock or time.time
        self._metrics = metrics
        self._log = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def process(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job = SettlementSubmitJob(**payload)
        self._log("settlement_submit_start", trade_id=job.trade_id, payment_tx_id=job.payment_tx_id)

        try:
            domain = await self._domains.get_signer_domain()
            request = build_settlement_request(
                job.trade_id,
                self._pmm_id,
                job.payment_tx_id,
                int(self._clock()),
                self._private_key,
                domain,
            )
            response = await self._solver.submit_settlement(request)
        except Exception as exc:
            if self._metrics:
                self._metrics.settlements.labels(stage="submit", result="failed").inc()
            self._log("settlement_submit_error", level=logging.ERROR, trade_id=job.trade_id, error=str(exc))
            raise

        if self._metrics:
            self._metrics.settlements.labels(stage="submit", result="submitted").inc()
        self._log("settlement_submit_success", trade_id=job.trade_id, response=response)
        return response
