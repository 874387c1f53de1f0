"""
Slippage guard for BTC -> USDC swap quotes.

All comparisons run on integers:
- satoshis (1e8 per BTC)
- USD micros (1e6 per USD, the USDC base unit)

Divisions truncate toward zero, so a favorable quote (negative slippage)
rounds toward zero rather than away from it.
"""

from __future__ import annotations

from dataclasses import dataclass

SATS_PER_BTC = 100_000_000
MICROS_PER_USD = 1_000_000
BPS = 10_000


def _div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(numerator) // abs(denominator)
    return q if (numerator >= 0) == (denominator > 0) else -q


def price_to_micros(price_usd: float) -> int:
    return int(round(price_usd * MICROS_PER_USD))


def expected_usd_micros(btc_amount_sats: int, btc_price_usd: float) -> int:
    return _div_trunc(int(btc_amount_sats) * price_to_micros(btc_price_usd), SATS_PER_BTC)


def format_bps(bps: int) -> str:
    """200 -> '2.00%'"""
    return f"{bps / 100:.2f}%"


@dataclass(frozen=True)
class SlippageCheckResult:
    is_acceptable: bool
    slippage_bps: int
    threshold_bps: int
    is_high_warning: bool
    expected_usd: float
    actual_usd: float


class SlippageGuard:
    """
    Compares the USD value a quote pays against the spot value of the BTC sold.

    Usage:
        guard = SlippageGuard(threshold_bps=300, high_warning_bps=100)
        result = guard.check(100_000_000, 49_000_000_000, 50_000.0)
        result.slippage_bps  # 200
    """

    def __init__(self, threshold_bps: int, high_warning_bps: int) -> None:
        if high_warning_bps > threshold_bps:
            raise ValueError(
                f"high_warning_bps ({high_warning_bps}) must not exceed threshold_bps ({threshold_bps})"
            )
        self.threshold_bps = threshold_bps
        self.high_warning_bps = high_warning_bps

    def calculate_bps(self, btc_amount_sats: int, quoted_usd_micros: int, btc_price_usd: float) -> int:
        expected = expected_usd_micros(btc_amount_sats, btc_price_usd)
        if expected <= 0:
            return 0
        return _div_trunc((expected - int(quoted_usd_micros)) * BPS, expected)

    def check(self, btc_amount_sats: int, quoted_usd_micros: int, btc_price_usd: float) -> SlippageCheckResult:
        expected = expected_usd_micros(btc_amount_sats, btc_price_usd)
        bps = self.calculate_bps(btc_amount_sats, quoted_usd_micros, btc_price_usd)
        acceptable = bps <= self.threshold_bps
        return SlippageCheckResult(
            is_acceptable=acceptable,
            slippage_bps=bps,
            threshold_bps=self.threshold_bps,
            is_high_warning=acceptable and bps > self.high_warning_bps,
            expected_usd=expected / MICROS_PER_USD,
            actual_usd=int(quoted_usd_micros) / MICROS_PER_USD,
        )
