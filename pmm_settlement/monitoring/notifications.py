"""
Rebalancing notifications.

Message formatters produce Telegram HTML. RebalanceNotifier turns pipeline
events into alerts; every notify_* method is best-effort and never raises, so
a broken alert channel cannot stall or fail a rebalancing.
"""

from __future__ import annotations

import html
import logging
from decimal import Decimal
from textwrap import dedent
from typing import List, Optional

from pmm_settlement.monitoring.alerting import Alert, AlertManager, AlertSeverity, AlertType

log = logging.getLogger("pmm_settlement")


def format_sats_to_btc(sats: str | int) -> str:
    return f"{Decimal(int(sats)) / Decimal(100_000_000):.8f}"


def format_usdc(micro_usdc: str | int) -> str:
    """USDC micros to a grouped amount with 2 to 6 decimals: 49000000000 -> '49,000.00'."""
    text = f"{Decimal(int(micro_usdc)) / Decimal(1_000_000):,.6f}"
    whole, frac = text.split(".")
    frac = frac.rstrip("0").ljust(2, "0")
    return f"{whole}.{frac}"


def _pct(bps: int) -> str:
    return f"{bps / 100:.2f}%"


def _e(value: Optional[object]) -> str:
    return html.escape(str(value)) if value is not None else "N/A"


def quote_accepted_message(
    rebalancing_id: str,
    trade_hash: str,
    deposit_address: str,
    real_amount: str,
    expected_usdc: str,
    slippage_bps: int,
) -> str:
    return dedent(f"""\
        ✅ <b>Quote Accepted</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        📍 <b>Deposit:</b> <code>{_e(deposit_address)}</code>
        💰 <b>Amount:</b> {format_sats_to_btc(real_amount)} BTC ({real_amount} sats)
        💵 <b>Expected:</b> ${format_usdc(expected_usdc)} USDC
        📊 <b>Slippage:</b> {_pct(slippage_bps)}

        ⏳ Transfer queued...""")


def slippage_exceeded_message(rebalancing_id: str, trade_hash: str, slippage_bps: int, threshold_bps: int) -> str:
    return dedent(f"""\
        ⚠️ <b>Slippage Exceeded</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        📊 <b>Slippage:</b> {_pct(slippage_bps)}
        🎯 <b>Threshold:</b> {_pct(threshold_bps)}

        🔄 Will retry when price improves""")


def slippage_high_message(rebalancing_id: str, trade_hash: str, slippage_bps: int, high_warning_bps: int) -> str:
    return dedent(f"""\
        🟡 <b>High Slippage</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        📊 <b>Slippage:</b> {_pct(slippage_bps)} (warning above {_pct(high_warning_bps)})""")


def btc_transferred_message(
    rebalancing_id: str, trade_hash: str, real_amount: str, deposit_address: str, tx_id: str
) -> str:
    return dedent(f"""\
        📤 <b>BTC Transferred to NEAR</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        💰 <b>Amount:</b> {format_sats_to_btc(real_amount)} BTC
        📍 <b>Deposit:</b> <code>{_e(deposit_address)}</code>
        🔗 <b>TX:</b> <code>{_e(tx_id)}</code>

        ⏳ Waiting for NEAR swap...""")


def btc_transfer_failed_message(rebalancing_id: str, trade_hash: str, error: str) -> str:
    return dedent(f"""\
        ❌ <b>BTC Transfer Failed</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        ⚠️ <b>Error:</b> {_e(error)}

        🔄 Will retry transfer""")


def completed_message(rebalancing_id: str, trade_id: str, usdc_amount: str, tx_hash: Optional[str]) -> str:
    return dedent(f"""\
        🎉 <b>Rebalancing Completed!</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_id)}</code>
        💵 <b>USDC Received:</b> ${format_usdc(usdc_amount)}
        🔗 <b>TX:</b> <code>{_e(tx_hash)}</code>

        ✅ Swap successful!""")


def swap_failed_message(rebalancing_id: str, trade_id: str) -> str:
    return dedent(f"""\
        ❌ <b>NEAR Swap Failed</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_id)}</code>

        🔄 Will retry later""")


def refunded_message(rebalancing_id: str, trade_id: str, refunded_amount: Optional[str]) -> str:
    return dedent(f"""\
        🚨 <b>CRITICAL: Unexpected Refund</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_id)}</code>
        💸 <b>Refunded:</b> {_e(refunded_amount)}

        ⚠️ <b>Manual intervention required!</b>""")


def stuck_message(
    rebalancing_id: str, trade_id: str, elapsed_hours: int, max_hours: float, last_error: Optional[str]
) -> str:
    return dedent(f"""\
        🚨 <b>CRITICAL: Rebalancing Stuck</b>

        🔁 <b>ID:</b> <code>{_e(rebalancing_id)}</code>
        📋 <b>Trade:</b> <code>{_e(trade_id)}</code>
        ⏱️ <b>Elapsed:</b> {elapsed_hours}h (max: {max_hours:g}h)
        ⚠️ <b>Last Error:</b> {_e(last_error)}

        🔧 <b>Manual intervention required!</b>""")


def quote_failed_message(trade_hash: str, error: str) -> str:
    return dedent(f"""\
        ❌ <b>Quote Request Failed</b>

        📋 <b>Trade:</b> <code>{_e(trade_hash)}</code>
        ⚠️ <b>Error:</b> {_e(error)}""")


def insufficient_balance_message(asset: str, required: int, available: int, address: str) -> str:
    return dedent(f"""\
        ⚠️ <b>Insufficient {_e(asset)} Balance</b>

        <b>Required:</b> {required}
        <b>Available:</b> {available}
        <b>Address:</b> <code>{_e(address)}</code>""")


def low_balance_message(asset: str, balance: str, balance_usd: float, min_usd: float, address: str) -> str:
    return dedent(f"""\
        ⚠️ <b>Low {_e(asset)} Balance</b>

        💰 <b>Balance:</b> {_e(balance)} {_e(asset)} (${balance_usd:,.2f})
        🎯 <b>Minimum:</b> ${min_usd:,.2f}
        📍 <b>Address:</b> <code>{_e(address)}</code>

        💸 Top up the wallet""")


def transfer_failed_message(trade_id: str, network_id: str, error: str) -> str:
    return dedent(f"""\
        ❌ <b>Payout Transfer Failed</b>

        📋 <b>Trade:</b> <code>{_e(trade_id)}</code>
        🌐 <b>Network:</b> {_e(network_id)}
        ⚠️ <b>Error:</b> {_e(error)}""")


def lifecycle_message(title: str, details: str) -> str:
    return dedent(f"""\
        🔔 <b>{_e(title)}</b>

        {_e(details)}""")


class RebalanceNotifier:
    """Pipeline-facing notification sink. All methods swallow delivery errors."""

    def __init__(self, alert_manager: AlertManager) -> None:
        self._alerts = alert_manager

    async def _send(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        **details,
    ) -> bool:
        try:
            return await self._alerts.send_alert(Alert(
                alert_type=alert_type,
                severity=severity,
                title=title,
                message=message,
                details=details,
                dedup_key=dedup_key,
            ))
        except Exception as exc:
            log.warning(f"notification_failed:{alert_type.name} error={exc}")
            return False

    async def stuck(self, rebalancing_id: str, trade_id: str, elapsed_hours: int, max_hours: float, last_error: Optional[str]) -> bool:
        return await self._send(
            AlertType.REBALANCE_STUCK, AlertSeverity.CRITICAL, "Rebalancing Stuck",
            stuck_message(rebalancing_id, trade_id, elapsed_hours, max_hours, last_error),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id, trade_id=trade_id,
        )

    async def quote_accepted(self, rebalancing_id: str, trade_hash: str, deposit_address: str,
                             real_amount: str, expected_usdc: str, slippage_bps: int) -> bool:
        return await self._send(
            AlertType.QUOTE_ACCEPTED, AlertSeverity.INFO, "Quote Accepted",
            quote_accepted_message(rebalancing_id, trade_hash, deposit_address, real_amount, expected_usdc, slippage_bps),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id, slippage_bps=slippage_bps,
        )

    async def slippage_exceeded(self, rebalancing_id: str, trade_hash: str, slippage_bps: int, threshold_bps: int) -> bool:
        return await self._send(
            AlertType.SLIPPAGE_EXCEEDED, AlertSeverity.WARNING, "Slippage Exceeded",
            slippage_exceeded_message(rebalancing_id, trade_hash, slippage_bps, threshold_bps),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id, slippage_bps=slippage_bps,
        )

    async def slippage_high(self, rebalancing_id: str, trade_hash: str, slippage_bps: int, high_warning_bps: int) -> bool:
        return await self._send(
            AlertType.SLIPPAGE_HIGH, AlertSeverity.WARNING, "High Slippage",
            slippage_high_message(rebalancing_id, trade_hash, slippage_bps, high_warning_bps),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id, slippage_bps=slippage_bps,
        )

    async def quote_failed(self, trade_hash: str, error: str) -> bool:
        return await self._send(
            AlertType.QUOTE_FAILED, AlertSeverity.WARNING, "Quote Request Failed",
            quote_failed_message(trade_hash, error), dedup_key=trade_hash, trade_hash=trade_hash,
        )

    async def btc_transferred(self, rebalancing_id: str, trade_hash: str, real_amount: str,
                              deposit_address: str, tx_id: str) -> bool:
        return await self._send(
            AlertType.BTC_TRANSFERRED, AlertSeverity.INFO, "BTC Transferred",
            btc_transferred_message(rebalancing_id, trade_hash, real_amount, deposit_address, tx_id),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id, tx_id=tx_id,
        )

    async def btc_transfer_failed(self, rebalancing_id: str, trade_hash: str, error: str) -> bool:
        return await self._send(
            AlertType.BTC_TRANSFER_FAILED, AlertSeverity.CRITICAL, "BTC Transfer Failed",
            btc_transfer_failed_message(rebalancing_id, trade_hash, error),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id,
        )

    async def completed(self, rebalancing_id: str, trade_id: str, usdc_amount: str, tx_hash: Optional[str]) -> bool:
        return await self._send(
            AlertType.SWAP_COMPLETED, AlertSeverity.INFO, "Rebalancing Completed",
            completed_message(rebalancing_id, trade_id, usdc_amount, tx_hash),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id,
        )

    async def swap_failed(self, rebalancing_id: str, trade_id: str) -> bool:
        return await self._send(
            AlertType.SWAP_FAILED, AlertSeverity.WARNING, "NEAR Swap Failed",
            swap_failed_message(rebalancing_id, trade_id),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id,
        )

    async def refunded(self, rebalancing_id: str, trade_id: str, refunded_amount: Optional[str]) -> bool:
        return await self._send(
            AlertType.SWAP_REFUNDED, AlertSeverity.CRITICAL, "Unexpected Refund",
            refunded_message(rebalancing_id, trade_id, refunded_amount),
            dedup_key=rebalancing_id, rebalancing_id=rebalancing_id,
        )

    async def insufficient_balance(self, asset: str, required: int, available: int, address: str) -> bool:
        return await self._send(
            AlertType.INSUFFICIENT_BALANCE, AlertSeverity.CRITICAL, f"Insufficient {asset} Balance",
            insufficient_balance_message(asset, required, available, address),
            dedup_key=asset, required=required, available=available,
        )

    async def low_balance(self, asset: str, balance: str, balance_usd: float, min_usd: float, address: str) -> bool:
        return await self._send(
            AlertType.LOW_BALANCE, AlertSeverity.WARNING, f"Low {asset} Balance",
            low_balance_message(asset, balance, balance_usd, min_usd, address),
            dedup_key=asset, balance=balance, balance_usd=balance_usd,
        )

    async def transfer_failed(self, trade_id: str, network_id: str, error: str) -> bool:
        return await self._send(
            AlertType.TRANSFER_FAILED, AlertSeverity.CRITICAL, "Payout Transfer Failed",
            transfer_failed_message(trade_id, network_id, error),
            dedup_key=trade_id, trade_id=trade_id, network_id=network_id,
        )

    async def startup(self, enabled: bool, networks: List[str]) -> bool:
        details = f"Rebalancing {'enabled' if enabled else 'disabled'}; EVM networks: {', '.join(networks) or 'none'}"
        return await self._send(
            AlertType.STARTUP, AlertSeverity.INFO, "Settlement Engine Started",
            lifecycle_message("Settlement Engine Started", details),
        )

    async def shutdown(self, reason: str) -> bool:
        return await self._send(
            AlertType.SHUTDOWN, AlertSeverity.WARNING, "Settlement Engine Stopped",
            lifecycle_message("Settlement Engine Stopped", f"Reason: {reason}"),
        )
