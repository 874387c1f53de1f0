"""
Monitoring package.

Alert delivery, rebalancing notification formatting and Prometheus metrics.
"""

from pmm_settlement.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from pmm_settlement.monitoring.metrics_rich import RichMetrics, start_metrics_server
from pmm_settlement.monitoring.notifications import RebalanceNotifier, format_sats_to_btc, format_usdc
