"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _list_env(key: str) -> List[str]:
    raw = os.getenv(key, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _map_env(key: str) -> Dict[str, str]:
    """Parse `a=x,b=y` into {"a": "x", "b": "y"}."""
    out: Dict[str, str] = {}
    for item in _list_env(key):
        name, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"{key}: expected name=value, got '{item}'")
        out[name.strip()] = value.strip()
    return out


DEFAULT_ESPLORA_URLS = ["https://mempool.space/api", "https://blockstream.info/api"]


@dataclass(frozen=True)
class Settings:
    # Rebalancing
    rebalance_enabled: bool
    max_retry_duration_hours: float
    slippage_threshold_bps: int
    slippage_high_warning_bps: int
    # NEAR 1Click swap venue
    near_base_url: str
    near_api_key: str | None
    near_slippage_tolerance_bps: int
    near_referral: str
    near_origin_asset: str
    near_destination_asset: str
    near_recipient: str | None  # USDC recipient on the destination chain
    # Bitcoin
    btc_skip_confirm: bool
    btc_timeout_ms: int
    btc_max_retries: int
    btc_retry_delay_ms: int
    btc_esplora_urls: List[str]
    pmm_btc_address: str | None
    btc_wallet_url: str | None
    # Price oracle
    price_api_url: str
    http_timeout: float
    # EVM
    evm_rpc_urls: Dict[str, str]
    payment_addresses: Dict[str, str]
    router_api_url: str | None
    rpc_timeout: float
    pmm_evm_private_key: str | None
    # Liquidation payouts
    liquidation_enabled: bool
    liquidation_contract_address: str | None
    liquidation_network_id: str | None
    liquidation_approver_keys: List[str] = field(repr=False)
    liquidation_deadline_seconds: int = 300
    # Solana
    solana_rpc_url: str | None = None
    solana_signer_url: str | None = None
    pmm_solana_address: str | None = None
    # Trade status provider
    trade_api_url: str | None = None
    # Trade payouts
    pmm_id: str | None = None
    solver_api_url: str | None = None
    settlement_max_retries: int = 60
    settlement_retry_delay_sec: float = 60.0
    # Balance monitor
    min_balance_usd: float = 1000.0
    balance_interval_sec: float = 300.0
    # Notifications
    telegram_bot_token: str | None = field(default=None, repr=False)
    telegram_chat_id: str | None = None
    alert_webhook_url: str | None = None
    alert_webhook_type: str = "generic"
    alert_enabled: bool = True
    # Cadences (seconds)
    pending_interval_sec: float = 300.0
    settlement_interval_sec: float = 600.0
    nonce_refresh_interval_sec: float = 60.0
    swap_status_interval_sec: float = 30.0
    # Queue / persistence / observability
    queue_retention_sec: int = 86_400
    queue_max_attempts: int = 3
    state_dir: str = "state"
    metrics_port: int = 9108
    log_file: str | None = "pmm_settlement.log"

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging, secrets removed."""
        data = self.__dict__.copy()
        for secret in ("near_api_key", "pmm_evm_private_key", "liquidation_approver_keys", "telegram_bot_token"):
            data.pop(secret, None)
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            rebalance_enabled=env_bool("REBALANCE_ENABLED", False),
            max_retry_duration_hours=_float_env("REBALANCE_MAX_RETRY_HOURS", 24),
            slippage_threshold_bps=_int_env("REBALANCE_SLIPPAGE_THRESHOLD_BPS", 300),
            slippage_high_warning_bps=_int_env("REBALANCE_SLIPPAGE_HIGH_WARNING_BPS", 100),
            near_base_url=os.getenv("NEAR_BASE_URL", "https://1click.chaindefuser.com"),
            near_api_key=os.getenv("NEAR_API_KEY"),
            near_slippage_tolerance_bps=_int_env("NEAR_SLIPPAGE_TOLERANCE_BPS", 100),
            near_referral=os.getenv("NEAR_REFERRAL", "optimex"),
            near_origin_asset=os.getenv("NEAR_ORIGIN_ASSET", "nep141:btc.omft.near"),
            near_destination_asset=os.getenv(
                "NEAR_DESTINATION_ASSET",
                "nep141:eth-0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48.omft.near",
            ),
            near_recipient=os.getenv("NEAR_RECIPIENT"),
            btc_skip_confirm=env_bool("BTC_SKIP_CONFIRM", False),
            btc_timeout_ms=_int_env("BTC_TIMEOUT_MS", 10_000),
            btc_max_retries=_int_env("BTC_MAX_RETRIES", 3),
            btc_retry_delay_ms=_int_env("BTC_RETRY_DELAY_MS", 1_000),
            btc_esplora_urls=_list_env("BTC_ESPLORA_URLS") or list(DEFAULT_ESPLORA_URLS),
            pmm_btc_address=os.getenv("PMM_BTC_ADDRESS"),
            btc_wallet_url=os.getenv("BTC_WALLET_URL"),
            price_api_url=os.getenv("PRICE_API_URL", "https://api.coingecko.com/api/v3"),
            http_timeout=_float_env("HTTP_TIMEOUT", 10.0),
            evm_rpc_urls=_map_env("EVM_RPC_URLS"),
            payment_addresses=_map_env("PAYMENT_ADDRESSES"),
            router_api_url=os.getenv("ROUTER_API_URL"),
            rpc_timeout=_float_env("RPC_TIMEOUT", 15.0),
            pmm_evm_private_key=os.getenv("PMM_EVM_PRIVATE_KEY"),
            liquidation_enabled=env_bool("LIQUIDATION_ENABLED", False),
            liquidation_contract_address=os.getenv("LIQUIDATION_CONTRACT_ADDRESS"),
            liquidation_network_id=os.getenv("LIQUIDATION_NETWORK_ID"),
            liquidation_approver_keys=_list_env("LIQUIDATION_APPROVER_KEYS"),
            liquidation_deadline_seconds=_int_env("LIQUIDATION_DEADLINE_SECONDS", 300),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL"),
            solana_signer_url=os.getenv("SOLANA_SIGNER_URL"),
            pmm_solana_address=os.getenv("PMM_SOLANA_ADDRESS"),
            trade_api_url=os.getenv("TRADE_API_URL"),
            pmm_id=os.getenv("PMM_ID"),
            solver_api_url=os.getenv("SOLVER_API_URL"),
            settlement_max_retries=_int_env("SETTLEMENT_MAX_RETRIES", 60),
            settlement_retry_delay_sec=_float_env("SETTLEMENT_RETRY_DELAY_SEC", 60.0),
            min_balance_usd=_float_env("MIN_BALANCE_USD", 1000.0),
            balance_interval_sec=_float_env("BALANCE_INTERVAL_SEC", 300.0),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("ALERT_ENABLED", True),
            pending_interval_sec=_float_env("PENDING_INTERVAL_SEC", 300.0),
            settlement_interval_sec=_float_env("SETTLEMENT_INTERVAL_SEC", 600.0),
            nonce_refresh_interval_sec=_float_env("NONCE_REFRESH_INTERVAL_SEC", 60.0),
            swap_status_interval_sec=_float_env("SWAP_STATUS_INTERVAL_SEC", 30.0),
            queue_retention_sec=_int_env("QUEUE_RETENTION_SEC", 86_400),
            queue_max_attempts=_int_env("QUEUE_MAX_ATTEMPTS", 3),
            state_dir=os.getenv("STATE_DIR", "state"),
            metrics_port=_int_env("METRICS_PORT", 9108),
            log_file=os.getenv("LOG_FILE", "pmm_settlement.log") or None,
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.max_retry_duration_hours <= 0:
            raise ValueError("REBALANCE_MAX_RETRY_HOURS must be > 0")
        if self.slippage_threshold_bps < 0 or self.slippage_high_warning_bps < 0:
            raise ValueError("Slippage thresholds must be >= 0")
        if self.slippage_high_warning_bps > self.slippage_threshold_bps:
            raise ValueError("REBALANCE_SLIPPAGE_HIGH_WARNING_BPS must be <= REBALANCE_SLIPPAGE_THRESHOLD_BPS")
        for name in (
            "pending_interval_sec",
            "settlement_interval_sec",
            "nonce_refresh_interval_sec",
            "swap_status_interval_sec",
            "balance_interval_sec",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be > 0")
        if self.settlement_max_retries < 1:
            raise ValueError("SETTLEMENT_MAX_RETRIES must be >= 1")
        if self.liquidation_enabled and len(self.liquidation_approver_keys) < 2:
            logging.getLogger("pmm_settlement").warning(
                "WARNING: LIQUIDATION_ENABLED with fewer than 2 approver keys. "
                "Liquidation payouts will be rejected until approvers are configured."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("pmm_settlement")
    payload = {
        "event": "config_loaded",
        "rebalance_enabled": cfg.rebalance_enabled,
        "max_retry_duration_hours": cfg.max_retry_duration_hours,
        "slippage_threshold_bps": cfg.slippage_threshold_bps,
        "slippage_high_warning_bps": cfg.slippage_high_warning_bps,
        "btc_skip_confirm": cfg.btc_skip_confirm,
        "evm_networks": sorted(cfg.evm_rpc_urls),
    }
    logger.info(json.dumps(payload))
