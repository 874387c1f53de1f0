"""
Settlement monitor scheduler.

Every tick (default 10 minutes) each locally SETTLING trade is checked against
the protocol:
- SETTLEMENT_CONFIRMED: trade -> COMPLETED with the BTC release tx id, and a
  PENDING rebalancing record is created when rebalancing is enabled
- REFUNDED: trade -> FAILED
- anything else: left alone until the next tick
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from pmm_settlement.infra.trade_client import ProtocolTradeStatus, Trade, TradeStore, extract_release_tx_id
from pmm_settlement.rebalancing.models import CreateRebalancingInput, Rebalancing
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.schedulers.base import Ticker


class TradeStatusProvider(Protocol):
    async def get_trade_by_id(self, trade_id: str) -> Optional[Dict[str, Any]]: ...


class SettlementMonitorScheduler(Ticker):
    name = "settlement-monitor"

    def __init__(
        self,
        trades: TradeStore,
        trade_status: TradeStatusProvider,
        service: RebalancingService,
        rebalance_enabled: bool,
        interval_sec: float = 600.0,
        clock: Optional[Callable[[], int]] = None,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(interval_sec, metrics=metrics, log_event=log_event)
        self._trades = trades
        self._trade_status = trade_status
        self._service = service
        self._rebalance_enabled = rebalance_enabled
        self._now_ms = clock or (lambda: int(time.time() * 1000))

    async def tick(self) -> None:
        settling = await self._trades.find_settling_trades()
        if not settling:
            self._log("settlement_monitor_empty", level=logging.DEBUG)
            return

        self._log("settlement_monitor_scan", count=len(settling), trade_ids=[t.trade_id for t in settling])
        for trade in settling:
            try:
                await self.check_trade(trade)
            except Exception as exc:
                if self._metrics:
                    self._metrics.record_errors.labels(scheduler=self.name).inc()
                self._log("settlement_monitor_error", level=logging.ERROR, trade_id=trade.trade_id, error=str(exc))

    async def check_trade(self, trade: Trade) -> Optional[str]:
        """Returns the protocol status acted on, or None if nothing changed."""
        remote = await self._trade_status.get_trade_by_id(trade.trade_id)
        if not remote:
            self._log("settlement_monitor_trade_unknown", level=logging.DEBUG, trade_id=trade.trade_id)
            return None

        status = remote.get("status")
        if status == ProtocolTradeStatus.SETTLEMENT_CONFIRMED.value:
            release_tx_id = extract_release_tx_id(remote.get("events"))
            completed = await self._trades.mark_completed(trade.trade_id, release_tx_id)
            self._log(
                "settlement_monitor_completed",
                trade_id=trade.trade_id,
                release_tx_id=release_tx_id,
            )
            await self.create_rebalancing_if_eligible(completed, release_tx_id, status)
            return status

        if status == ProtocolTradeStatus.REFUNDED.value:
            await self._trades.mark_failed(trade.trade_id, "Settlement refunded on-chain")
            self._log("settlement_monitor_refunded", level=logging.WARNING, trade_id=trade.trade_id)
            return status

        return None

    async def create_rebalancing_if_eligible(
        self,
        trade: Trade,
        release_tx_id: Optional[str],
        protocol_status: str,
    ) -> Optional[Rebalancing]:
        if not self._rebalance_enabled:
            return None

        if not release_tx_id:
            self._log("rebalance_no_tx_id", level=logging.WARNING, trade_id=trade.trade_id)
            return None

        if await self._service.exists_by_trade_hash(trade.trade_id):
            self._log("rebalance_already_exists", level=logging.DEBUG, trade_id=trade.trade_id)
            return None

        record = await self._service.create_if_absent(CreateRebalancingInput(
            trade_hash=trade.trade_id,
            trade_id=trade.trade_id,
            amount=str(trade.amount),
            tx_id=release_tx_id,
            vault_address=trade.user_deposit_vault,
            optimex_status=protocol_status,
            trade_completed_at_ms=trade.completed_at_ms or self._now_ms(),
        ))
        if record is not None and self._metrics:
            self._metrics.rebalances_created.inc()
        return record
