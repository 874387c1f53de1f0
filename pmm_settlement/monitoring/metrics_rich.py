"""
Prometheus metrics for the settlement engine.

Organized into: rebalancing pipeline, payouts, schedulers, nonce cache.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class RichMetrics:
    """Metrics for rebalancing and payout observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Rebalancing pipeline ===
        self.rebalances_created = Counter(
            'rebalances_created_total',
            'Rebalancing records created from settled trades',
            registry=reg
        )
        self.rebalances_verified = Counter(
            'rebalances_verified_total',
            'BTC settlement transactions verified',
            registry=reg
        )
        self.rebalances_stuck = Counter(
            'rebalances_stuck_total',
            'Records moved to STUCK after the retry window',
            registry=reg
        )
        self.rebalances_retried = Counter(
            'rebalances_retried_total',
            'FAILED records returned to PENDING',
            registry=reg
        )
        self.rebalances_completed = Counter(
            'rebalances_completed_total',
            'Swaps completed',
            labelnames=['outcome'],
            registry=reg
        )
        self.quotes = Counter(
            'swap_quotes_total',
            'Swap quotes by decision',
            labelnames=['decision'],
            registry=reg
        )
        self.slippage_bps = Histogram(
            'swap_slippage_bps',
            'Quoted slippage in basis points',
            buckets=[-100, 0, 25, 50, 100, 200, 300, 500, 1000],
            registry=reg
        )

        # === Queue ===
        self.jobs_enqueued = Counter(
            'queue_jobs_enqueued_total',
            'Jobs accepted onto a work queue',
            labelnames=['queue'],
            registry=reg
        )
        self.jobs_deduplicated = Counter(
            'queue_jobs_deduplicated_total',
            'Jobs dropped because their idempotency key was already seen',
            labelnames=['queue'],
            registry=reg
        )
        self.jobs_failed = Counter(
            'queue_jobs_failed_total',
            'Jobs that exhausted their attempts',
            labelnames=['queue'],
            registry=reg
        )

        # === Payouts ===
        self.transfers = Counter(
            'transfers_total',
            'Outbound payouts by network type and result',
            labelnames=['network_type', 'trade_type', 'result'],
            registry=reg
        )
        self.settlements = Counter(
            'settlements_total',
            'Trade payout pipeline outcomes by stage',
            labelnames=['stage', 'result'],
            registry=reg
        )

        # === Balances ===
        self.wallet_balance_usd = Gauge(
            'wallet_balance_usd',
            'Last observed wallet balance in USD',
            labelnames=['asset'],
            registry=reg
        )
        self.low_balance_alerts = Counter(
            'low_balance_alerts_total',
            'Balance checks that fell below the configured floor',
            labelnames=['asset'],
            registry=reg
        )

        # === Schedulers ===
        self.tick_duration = Histogram(
            'scheduler_tick_seconds',
            'Scheduler tick duration',
            labelnames=['scheduler'],
            buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300],
            registry=reg
        )
        self.tick_errors = Counter(
            'scheduler_tick_errors_total',
            'Ticks that ended with an unexpected error',
            labelnames=['scheduler'],
            registry=reg
        )
        self.record_errors = Counter(
            'scheduler_record_errors_total',
            'Per-record failures inside a tick',
            labelnames=['scheduler'],
            registry=reg
        )

        # === Nonce ===
        self.nonce_cache_size = Gauge(
            'nonce_cache_size',
            'Cached EVM signers',
            registry=reg
        )
        self.nonce_refresh_failures = Counter(
            'nonce_refresh_failures_total',
            'Per-network nonce refresh failures',
            registry=reg
        )


def start_metrics_server(metrics: RichMetrics, port: int) -> None:
    """Expose /metrics on a background thread."""
    start_http_server(port, registry=metrics.registry)
