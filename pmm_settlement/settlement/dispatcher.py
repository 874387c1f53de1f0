"""
Outbound payout dispatch.

Strategies are registered per (network type, trade type). The default table:

    EVM/swap            -> EVM payment contract
    BTC/swap, TBTC/swap -> BTC wallet send
    SOLANA/swap         -> Solana payment program
    EVM/liquid          -> multisig liquidator contract

An unknown pair raises UnsupportedTransferError before anything is sent.

Usage:
    dispatcher = TransferDispatcher(metrics=metrics, notifier=notifier)
    dispatcher.register("EVM", "swap", evm_strategy)
    result = await dispatcher.transfer(params, "EVM", "swap")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.settlement.errors import UnsupportedTransferError
from pmm_settlement.settlement.models import TransferParams, TransferResult, TransferStrategy

log = logging.getLogger("pmm_settlement")

SWAP = "swap"
LIQUID = "liquid"


class TransferDispatcher:
    def __init__(
        self,
        metrics: Any = None,
        notifier: Optional[RebalanceNotifier] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._strategies: Dict[Tuple[str, str], TransferStrategy] = {}
        self._metrics = metrics
        self._notifier = notifier
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.ERROR if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    @staticmethod
    def _key(network_type: str, trade_type: str) -> Tuple[str, str]:
        return (network_type.upper(), trade_type)

    def register(self, network_type: str, trade_type: str, strategy: TransferStrategy) -> None:
        self._strategies[self._key(network_type, trade_type)] = strategy

    def supported(self) -> list:
        return sorted(f"{nt}/{tt}" for nt, tt in self._strategies)

    def get_strategy(self, network_type: str, trade_type: str) -> TransferStrategy:
        strategy = self._strategies.get(self._key(network_type, trade_type))
        if strategy is None:
            raise UnsupportedTransferError(network_type, trade_type)
        return strategy

    async def transfer(self, params: TransferParams, network_type: str, trade_type: str) -> TransferResult:
        strategy = self.get_strategy(network_type, trade_type)
        labels = {"network_type": network_type.upper(), "trade_type": trade_type}
        try:
            result = await strategy.transfer(params)
        except Exception as exc:
            if self._metrics:
                self._metrics.transfers.labels(result="failed", **labels).inc()
            self._log(
                "transfer_failed",
                trade_id=params.trade_id,
                network_id=params.token.network_id,
                error=str(exc),
                **labels,
            )
            if self._notifier:
                await self._notifier.transfer_failed(
                    trade_id=params.trade_id, network_id=params.token.network_id, error=str(exc)
                )
            raise

        if self._metrics:
            self._metrics.transfers.labels(result="sent", **labels).inc()
        self._log("transfer_sent", trade_id=params.trade_id, tx_hash=result.hash, **labels)
        return result


def build_default_dispatcher(
    evm: Optional[TransferStrategy],
    btc: Optional[TransferStrategy],
    solana: Optional[TransferStrategy],
    evm_liquidation: Optional[TransferStrategy],
    metrics: Any = None,
    notifier: Optional[RebalanceNotifier] = None,
) -> TransferDispatcher:
    """Register the default table; strategies passed as None are left out."""
    dispatcher = TransferDispatcher(metrics=metrics, notifier=notifier)
    table = [
        ("EVM", SWAP, evm),
        ("TBTC", SWAP, btc),
        ("BTC", SWAP, btc),
        ("SOLANA", SWAP, solana),
        ("EVM", LIQUID, evm_liquidation),
    ]
    for network_type, trade_type, strategy in table:
        if strategy is not None:
            dispatcher.register(network_type, trade_type, strategy)
    return dispatcher
