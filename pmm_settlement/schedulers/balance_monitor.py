"""
Wallet balance monitor.

Values the PMM's BTC and SOL payout wallets in USD on every tick and alerts
when either drops below `min_balance_usd`. Assets are checked independently;
a failed lookup for one is logged and does not skip the other.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, List, Optional, Protocol, Tuple

from pmm_settlement.infra.price_oracle import BITCOIN, SOLANA
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.schedulers.base import Ticker

SATS_PER_BTC = Decimal(100_000_000)
LAMPORTS_PER_SOL = Decimal(1_000_000_000)


class UsdPrices(Protocol):
    async def get_price(self, coin_id: str) -> float: ...


class BalanceMonitorScheduler(Ticker):
    name = "balance-monitor"

    def __init__(
        self,
        prices: UsdPrices,
        notifier: RebalanceNotifier,
        wallet: Any = None,
        solana: Any = None,
        min_balance_usd: float = 1000.0,
        interval_sec: float = 300.0,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(interval_sec, metrics=metrics, log_event=log_event)
        self._prices = prices
        self._notifier = notifier
        self._min_balance_usd = min_balance_usd
        # (asset, coin id, unit divisor, balance getter, address)
        self._checks: List[Tuple[str, str, Decimal, Callable[[], Any], str]] = []
        if wallet is not None:
            self._checks.append(("BTC", BITCOIN, SATS_PER_BTC, wallet.get_balance, wallet.address))
        if solana is not None:
            self._checks.append(("SOL", SOLANA, LAMPORTS_PER_SOL, solana.get_sol_balance, solana.address))

    @property
    def assets(self) -> List[str]:
        return [check[0] for check in self._checks]

    async def tick(self) -> None:
        for asset, coin_id, divisor, get_balance, address in self._checks:
            try:
                await self.check(asset, coin_id, divisor, get_balance, address)
            except Exception as exc:
                if self._metrics:
                    self._metrics.record_errors.labels(scheduler=self.name).inc()
                self._log("balance_check_error", level=logging.ERROR, asset=asset, error=str(exc))

    async def check(
        self,
        asset: str,
        coin_id: str,
        divisor: Decimal,
        get_balance: Callable[[], Any],
        address: str,
    ) -> bool:
        """Returns True when the balance is at or above the floor."""
        raw = await get_balance()
        price = await self._prices.get_price(coin_id)
        balance = Decimal(int(raw)) / divisor
        value_usd = float(balance * Decimal(str(price)))

        if self._metrics:
            self._metrics.wallet_balance_usd.labels(asset=asset).set(value_usd)

        if value_usd < self._min_balance_usd:
            if self._metrics:
                self._metrics.low_balance_alerts.labels(asset=asset).inc()
            self._log(
                "balance_below_minimum",
                level=logging.WARNING,
                asset=asset,
                balance=str(balance),
                balance_usd=round(value_usd, 2),
                min_balance_usd=self._min_balance_usd,
                address=address,
            )
            await self._notifier.low_balance(
                asset=asset,
                balance=str(balance),
                balance_usd=value_usd,
                min_usd=self._min_balance_usd,
                address=address,
            )
            return False

        self._log("balance_check_done", level=logging.DEBUG, asset=asset, balance_usd=round(value_usd, 2))
        return True
