"""
Component wiring and lifecycle.

SettlementApp builds every collaborator from Settings by hand; there is no
container. Components backed by optional configuration (BTC wallet, trade
API, router, Solana) are only built when configured, and the dispatcher only
registers the strategies that exist.

Usage:
    app = SettlementApp(cfg, metrics=metrics, alert_manager=alerts)
    await app.start()
    await app.register_trade(Trade(trade_id, amount, trade_deadline=deadline))
    ...
    result = await app.transfer(params, "EVM", "swap")
    ...
    await app.stop()
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from pmm_settlement.config.config import Settings
from pmm_settlement.core.slippage import SlippageGuard
from pmm_settlement.infra.async_rpc import AsyncRpc
from pmm_settlement.infra.btc_wallet import HttpBitcoinWallet
from pmm_settlement.infra.esplora import EsploraClient
from pmm_settlement.infra.nonce import NonceSequencer, Web3SignerFactory
from pmm_settlement.infra.price_oracle import PriceOracle
from pmm_settlement.infra.solana_client import HttpSolanaClient
from pmm_settlement.infra.swap_client import SwapQuoteClient
from pmm_settlement.infra.trade_client import JsonFileTradeStore, Trade, TradeStatus, TradeStatusClient
from pmm_settlement.monitoring.alerting import AlertConfig, AlertManager
from pmm_settlement.monitoring.metrics_rich import RichMetrics
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.processors.quote_processor import QuoteDefaults, QuoteProcessor
from pmm_settlement.processors.settlement_processor import (
    SettlementSubmitProcessor,
    SettlementTransferJob,
    SettlementTransferProcessor,
    settlement_transfer_job_id,
)
from pmm_settlement.processors.transfer_processor import TransferProcessor
from pmm_settlement.processors.work_queue import WorkQueue
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.rebalancing.store import JsonFileRebalancingStore
from pmm_settlement.schedulers.balance_monitor import BalanceMonitorScheduler
from pmm_settlement.schedulers.base import Ticker
from pmm_settlement.schedulers.nonce_refresh import NonceRefreshScheduler
from pmm_settlement.schedulers.pending_verification import PendingVerificationScheduler
from pmm_settlement.schedulers.settlement_monitor import SettlementMonitorScheduler
from pmm_settlement.schedulers.swap_status import SwapStatusScheduler
from pmm_settlement.settlement.dispatcher import TransferDispatcher, build_default_dispatcher
from pmm_settlement.settlement.evm_tx import EvmTransactionService
from pmm_settlement.settlement.models import TransferParams, TransferResult
from pmm_settlement.settlement.router import PaymentAddressBook, RouterClient
from pmm_settlement.settlement.solver import SolverClient
from pmm_settlement.settlement.strategies import (
    BtcTransferStrategy,
    EvmLiquidationTransferStrategy,
    EvmTransferStrategy,
    SolanaTransferStrategy,
)

log = logging.getLogger("pmm_settlement")


def build_alert_manager(cfg: Settings) -> AlertManager:
    return AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        telegram_bot_token=cfg.telegram_bot_token,
        telegram_chat_id=cfg.telegram_chat_id,
        timeout_seconds=cfg.http_timeout,
        enabled=cfg.alert_enabled,
    ))


class SettlementApp:
    def __init__(
        self,
        cfg: Settings,
        metrics: Optional[RichMetrics] = None,
        alert_manager: Optional[AlertManager] = None,
    ) -> None:
        self.cfg = cfg
        self.metrics = metrics or RichMetrics()
        self.alerts = alert_manager or build_alert_manager(cfg)
        self.notifier = RebalanceNotifier(self.alerts)
        self._closeables: List[Any] = []
        self._started = False

        # Persistence
        self.store = JsonFileRebalancingStore(cfg.state_dir)
        self.service = RebalancingService(self.store)
        self.trades = JsonFileTradeStore(cfg.state_dir)

        # Bitcoin side
        self.esplora = self._own(EsploraClient(cfg.btc_esplora_urls, timeout=cfg.btc_timeout_ms / 1000))
        self.wallet: Optional[HttpBitcoinWallet] = None
        if cfg.btc_wallet_url and cfg.pmm_btc_address:
            self.wallet = self._own(HttpBitcoinWallet(cfg.btc_wallet_url, cfg.pmm_btc_address, self.esplora))

        self.prices = self._own(PriceOracle(cfg.price_api_url, timeout=cfg.http_timeout))
        self.swaps = self._own(SwapQuoteClient(cfg.near_base_url, cfg.near_api_key, timeout=cfg.http_timeout))

        # EVM plumbing
        self.rpc = AsyncRpc(timeout=cfg.rpc_timeout)
        self.sequencer = NonceSequencer(Web3SignerFactory(cfg.evm_rpc_urls, cfg.pmm_evm_private_key, self.rpc))
        self.tx_service = EvmTransactionService(self.sequencer, self.rpc)

        # Queues: transfer jobs get a single attempt so a BTC send is never repeated by the queue
        self.quote_queue = WorkQueue(
            "rebalance-quote",
            retention_sec=cfg.queue_retention_sec,
            max_attempts=cfg.queue_max_attempts,
            metrics=self.metrics,
        )
        self.transfer_queue = WorkQueue(
            "rebalance-transfer",
            retention_sec=cfg.queue_retention_sec,
            max_attempts=1,
            metrics=self.metrics,
        )
        # Payouts: bounded retries with a fixed delay
        self.settlement_transfer_queue = WorkQueue(
            "settlement-transfer",
            retention_sec=cfg.queue_retention_sec,
            max_attempts=cfg.settlement_max_retries,
            backoff_sec=cfg.settlement_retry_delay_sec,
            metrics=self.metrics,
        )
        self.settlement_submit_queue = WorkQueue(
            "settlement-submit",
            retention_sec=cfg.queue_retention_sec,
            max_attempts=cfg.settlement_max_retries,
            backoff_sec=cfg.settlement_retry_delay_sec,
            metrics=self.metrics,
        )

        self.router: Optional[RouterClient] = None
        if cfg.router_api_url:
            self.router = self._own(RouterClient(cfg.router_api_url, timeout=cfg.http_timeout))
        self.solana: Optional[HttpSolanaClient] = None
        if cfg.solana_rpc_url and cfg.solana_signer_url and cfg.pmm_solana_address:
            self.solana = self._own(HttpSolanaClient(
                cfg.solana_rpc_url, cfg.solana_signer_url, cfg.pmm_solana_address, timeout=cfg.rpc_timeout,
            ))

        self.dispatcher = self._build_dispatcher()
        self.trade_status: Optional[TradeStatusClient] = None
        self.schedulers: List[Ticker] = []
        self._build_pipeline()
        self._build_payouts()

    def _own(self, component: Any) -> Any:
        self._closeables.append(component)
        return component

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _build_dispatcher(self) -> TransferDispatcher:
        cfg = self.cfg
        router = self.router

        evm = None
        liquidation = None
        if cfg.pmm_evm_private_key and cfg.evm_rpc_urls:
            if router is not None:
                evm = EvmTransferStrategy(self.tx_service, router, PaymentAddressBook(cfg.payment_addresses))
            liquidation = EvmLiquidationTransferStrategy(
                self.trades,
                self.tx_service,
                enabled=cfg.liquidation_enabled,
                contract_address=cfg.liquidation_contract_address,
                approver_keys=cfg.liquidation_approver_keys,
                deadline_seconds=cfg.liquidation_deadline_seconds,
            )

        btc = BtcTransferStrategy(self.wallet, self.notifier) if self.wallet is not None else None

        solana = None
        if self.solana is not None and router is not None:
            solana = SolanaTransferStrategy(self.solana, router, self.notifier)

        dispatcher = build_default_dispatcher(evm, btc, solana, liquidation, metrics=self.metrics, notifier=self.notifier)
        log.info(json.dumps({"event": "dispatcher_ready", "routes": dispatcher.supported()}))
        return dispatcher

    def _build_payouts(self) -> None:
        cfg = self.cfg
        if self.router is not None and cfg.pmm_id:
            submit_queue: Optional[WorkQueue] = None
            if cfg.solver_api_url and cfg.pmm_evm_private_key:
                solver = self._own(SolverClient(cfg.solver_api_url, timeout=cfg.http_timeout))
                submit_processor = SettlementSubmitProcessor(
                    self.router, solver, cfg.pmm_id, cfg.pmm_evm_private_key, metrics=self.metrics,
                )
                self.settlement_submit_queue.set_handler(submit_processor.process)
                submit_queue = self.settlement_submit_queue
            transfer_processor = SettlementTransferProcessor(
                self.trades,
                self.router,
                self.dispatcher,
                cfg.pmm_id,
                submit_queue=submit_queue,
                metrics=self.metrics,
            )
            self.settlement_transfer_queue.set_handler(transfer_processor.process)
        else:
            log.warning(json.dumps({"event": "payout_pipeline_disabled", "reason": "router or PMM id not configured"}))

        if self.wallet is not None or self.solana is not None:
            self.schedulers.append(BalanceMonitorScheduler(
                self.prices,
                self.notifier,
                wallet=self.wallet,
                solana=self.solana,
                min_balance_usd=cfg.min_balance_usd,
                interval_sec=cfg.balance_interval_sec,
                metrics=self.metrics,
            ))

    def _build_pipeline(self) -> None:
        cfg = self.cfg
        self.schedulers.append(NonceRefreshScheduler(
            self.sequencer, interval_sec=cfg.nonce_refresh_interval_sec, metrics=self.metrics,
        ))

        if cfg.trade_api_url:
            self.trade_status = self._own(TradeStatusClient(cfg.trade_api_url, timeout=cfg.http_timeout))
            self.schedulers.append(SettlementMonitorScheduler(
                self.trades,
                self.trade_status,
                self.service,
                rebalance_enabled=cfg.rebalance_enabled,
                interval_sec=cfg.settlement_interval_sec,
                metrics=self.metrics,
            ))

        if self.wallet is None:
            log.warning(json.dumps({"event": "rebalance_pipeline_disabled", "reason": "no BTC wallet configured"}))
            return

        quote_processor = QuoteProcessor(
            self.service,
            self.swaps,
            self.prices,
            SlippageGuard(cfg.slippage_threshold_bps, cfg.slippage_high_warning_bps),
            self.transfer_queue,
            self.notifier,
            QuoteDefaults(
                recipient=cfg.near_recipient or "",
                refund_to=cfg.pmm_btc_address or "",
                origin_asset=cfg.near_origin_asset,
                destination_asset=cfg.near_destination_asset,
                slippage_tolerance_bps=cfg.near_slippage_tolerance_bps,
                referral=cfg.near_referral or None,
            ),
            metrics=self.metrics,
        )
        transfer_processor = TransferProcessor(self.service, self.wallet, self.swaps, self.notifier)
        self.quote_queue.set_handler(quote_processor.process)
        self.transfer_queue.set_handler(transfer_processor.process)

        self.schedulers.append(PendingVerificationScheduler(
            self.service,
            self.esplora,
            self.quote_queue,
            self.notifier,
            enabled=cfg.rebalance_enabled,
            max_retry_duration_hours=cfg.max_retry_duration_hours,
            skip_confirm=cfg.btc_skip_confirm,
            interval_sec=cfg.pending_interval_sec,
            metrics=self.metrics,
            transfer_queue=self.transfer_queue,
        ))
        self.schedulers.append(SwapStatusScheduler(
            self.service,
            self.swaps,
            self.notifier,
            enabled=cfg.rebalance_enabled,
            interval_sec=cfg.swap_status_interval_sec,
            metrics=self.metrics,
        ))

    @property
    def pipeline_enabled(self) -> bool:
        return self.wallet is not None

    @property
    def payouts_enabled(self) -> bool:
        return self.router is not None and bool(self.cfg.pmm_id)

    @property
    def _payout_queues(self) -> List[WorkQueue]:
        queues = [self.settlement_transfer_queue]
        if self.cfg.solver_api_url and self.cfg.pmm_evm_private_key:
            queues.append(self.settlement_submit_queue)
        return queues

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        loaded = await self.store.load()
        trades = await self.trades.load()
        log.info(json.dumps({
            "event": "state_loaded",
            "records": loaded,
            "trades": trades,
            "path": str(self.store.path),
        }))

        if self.pipeline_enabled:
            await self.quote_queue.start()
            await self.transfer_queue.start()
        if self.payouts_enabled:
            for queue in self._payout_queues:
                await queue.start()
            await self.resume_unpaid_trades()
        for scheduler in self.schedulers:
            await scheduler.start(run_immediately=True)
        self._started = True
        log.info(json.dumps({
            "event": "app_started",
            "schedulers": [s.name for s in self.schedulers],
            "routes": self.dispatcher.supported(),
        }))

    async def stop(self) -> None:
        """Stop producers first, then consumers, then release clients."""
        for scheduler in self.schedulers:
            await scheduler.stop()
        for queue in (self.quote_queue, self.transfer_queue, self.settlement_transfer_queue, self.settlement_submit_queue):
            await queue.stop()

        for component in reversed(self._closeables):
            try:
                await component.close()
            except Exception as exc:
                log.warning(json.dumps({"event": "close_failed", "component": type(component).__name__, "error": str(exc)}))
        await self.rpc.close()
        await self.alerts.close()
        self._started = False
        log.info(json.dumps({"event": "app_stopped"}))

    async def run(self) -> None:
        """Start and block until cancelled; stop() always runs."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await asyncio.shield(self.stop())

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def register_trade(self, trade: Trade) -> bool:
        """
        Store a trade this PMM is party to.

        PENDING trades are queued for payout; SETTLING trades are picked up by
        the settlement monitor. Returns True when a payout job was queued.
        """
        stored = await self.trades.add(trade)
        log.info(json.dumps({"event": "trade_registered", "trade_id": stored.trade_id, "status": stored.status.value}))
        if stored.status != TradeStatus.PENDING:
            return False
        return await self.request_settlement(stored.trade_id)

    async def request_settlement(self, trade_id: str) -> bool:
        """Queue the payout for a stored trade. False if payouts are off or the job is already known."""
        if not self.payouts_enabled:
            log.warning(json.dumps({"event": "settlement_request_ignored", "trade_id": trade_id, "reason": "payouts disabled"}))
            return False
        return await self.settlement_transfer_queue.add(
            SettlementTransferJob(trade_id=trade_id).to_dict(),
            job_id=settlement_transfer_job_id(trade_id),
        )

    async def resume_unpaid_trades(self) -> int:
        """Re-queue payouts that were waiting when the process last stopped."""
        queued = 0
        for trade in await self.trades.find_unpaid_trades():
            if await self.request_settlement(trade.trade_id):
                queued += 1
        if queued:
            log.info(json.dumps({"event": "unpaid_trades_resumed", "count": queued}))
        return queued

    async def transfer(self, params: TransferParams, network_type: str, trade_type: str) -> TransferResult:
        return await self.dispatcher.transfer(params, network_type, trade_type)

    def get_stats(self) -> Dict[str, Any]:
        queues = (self.quote_queue, self.transfer_queue, self.settlement_transfer_queue, self.settlement_submit_queue)
        return {
            "queues": {q.name: q.get_stats() for q in queues},
            "nonce": self.sequencer.get_stats(),
            "alerts": self.alerts.get_stats(),
            "state_machine": self.service.state_machine.get_stats(),
        }
