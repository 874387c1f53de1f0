"""
Alert delivery for rebalancing and payout events.

- Telegram bot messages (HTML parse mode) and/or webhooks (generic, Slack, Discord)
- Rate limiting per (alert type, record) to prevent alert storms
- Fire-and-forget: send_alert() schedules delivery and returns immediately;
  delivery failures are logged, never raised into the caller
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    REBALANCE_STUCK = auto()
    SLIPPAGE_EXCEEDED = auto()
    SLIPPAGE_HIGH = auto()
    QUOTE_ACCEPTED = auto()
    QUOTE_FAILED = auto()
    BTC_TRANSFERRED = auto()
    BTC_TRANSFER_FAILED = auto()
    SWAP_COMPLETED = auto()
    SWAP_FAILED = auto()
    SWAP_REFUNDED = auto()
    INSUFFICIENT_BALANCE = auto()
    TRANSFER_FAILED = auto()
    LOW_BALANCE = auto()
    STARTUP = auto()
    SHUTDOWN = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str  # HTML; webhooks receive it verbatim
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    telegram_bot_token: Optional[str] = field(default=None, repr=False)
    telegram_chat_id: Optional[str] = None
    telegram_base_url: str = "https://api.telegram.org"
    min_severity: AlertSeverity = AlertSeverity.INFO
    rate_limit_seconds: int = 60  # Min seconds between alerts with the same key
    timeout_seconds: float = 10.0
    enabled: bool = True
    service_name: str = "PMM Settlement"


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")
        fields = [{"title": "Type", "value": alert.alert_type.name, "short": True}]
        for key, value in list(alert.details.items())[:5]:
            fields.append({"title": key, "value": str(value), "short": True})
        return {
            "username": config.service_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.service_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }],
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)
        fields = [{"name": "Type", "value": alert.alert_type.name, "inline": True}]
        for key, value in list(alert.details.items())[:5]:
            fields.append({"name": key, "value": str(value), "inline": True})
        return {
            "username": config.service_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.service_name} | {alert.severity.name}"},
            }],
        }


class AlertManager:
    """
    Manages alert delivery with rate limiting.

    Usage:
        manager = AlertManager(AlertConfig(telegram_bot_token=..., telegram_chat_id=...))
        await manager.send_alert(Alert(...))
        ...
        await manager.close()   # waits for in-flight deliveries
    """

    def __init__(self, config: Optional[AlertConfig] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[str, int] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._stats = {"queued": 0, "rate_limited": 0, "delivered": 0, "failed": 0}

    @property
    def has_destination(self) -> bool:
        return bool(self.config.webhook_url or (self.config.telegram_bot_token and self.config.telegram_chat_id))

    async def send_alert(self, alert: Alert) -> bool:
        """
        Schedule an alert for delivery.

        Returns True if delivery was scheduled, False if disabled, below the
        severity threshold, without a destination, or rate limited.
        """
        if not self.config.enabled or not self.has_destination:
            logger.debug(f"Alert not sent (disabled or no destination): {alert.title}")
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        key = f"{alert.alert_type.name}:{alert.dedup_key or ''}"
        now_ms = int(time.time() * 1000)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            self._stats["rate_limited"] += 1
            logger.debug(f"Alert rate limited: {key}")
            return False
        self._last_alert_times[key] = now_ms

        task = asyncio.create_task(self._deliver(alert))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        self._stats["queued"] += 1
        return True

    async def flush(self) -> None:
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def _deliver(self, alert: Alert) -> None:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                results = []
                if self.config.telegram_bot_token and self.config.telegram_chat_id:
                    results.append(await self._post_telegram(session, alert))
                if self.config.webhook_url:
                    results.append(await self._post_webhook(session, alert))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._stats["failed"] += 1
            logger.warning(f"Alert delivery error: {e}")
            return
        if all(results):
            self._stats["delivered"] += 1
        else:
            self._stats["failed"] += 1

    async def _post_telegram(self, session: aiohttp.ClientSession, alert: Alert) -> bool:
        url = f"{self.config.telegram_base_url}/bot{self.config.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self.config.telegram_chat_id,
            "text": alert.message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        return await self._post(session, url, payload)

    async def _post_webhook(self, session: aiohttp.ClientSession, alert: Alert) -> bool:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return await self._post(session, self.config.webhook_url, formatter(alert, self.config))

    async def _post(self, session: aiohttp.ClientSession, url: str, payload: Dict[str, Any], retries: int = 2) -> bool:
        for attempt in range(retries + 1):
            try:
                async with session.post(url, json=payload) as resp:
                    if resp.status < 300:
                        return True
                    logger.warning(f"Alert delivery failed: HTTP {resp.status}")
            except asyncio.TimeoutError:
                logger.warning(f"Alert delivery timeout (attempt {attempt + 1})")
            except aiohttp.ClientError as e:
                logger.warning(f"Alert delivery error: {e}")
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False
