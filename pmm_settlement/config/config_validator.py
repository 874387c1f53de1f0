"""
Configuration validation for production safety.

- Range checks for numeric parameters
- Dependency validation (e.g., rebalancing requires a swap venue API key)
- Warnings for risky configurations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ValidationSeverity(Enum):
    """Severity levels for validation issues."""
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings before the engine starts.

    Checks:
    - Numeric values are within safe ranges
    - Dependencies between fields
    - Risky configurations
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "max_retry_duration_hours": (1.0, 24.0 * 30),
        "slippage_threshold_bps": (0, 5_000),
        "slippage_high_warning_bps": (0, 5_000),
        "near_slippage_tolerance_bps": (0, 5_000),
        "pending_interval_sec": (5.0, 3_600.0),
        "settlement_interval_sec": (5.0, 3_600.0),
        "nonce_refresh_interval_sec": (5.0, 3_600.0),
        "swap_status_interval_sec": (5.0, 3_600.0),
        "balance_interval_sec": (5.0, 3_600.0),
        "settlement_max_retries": (1, 1_000),
        "settlement_retry_delay_sec": (1.0, 3_600.0),
        "min_balance_usd": (0.0, 1e9),
        "http_timeout": (1.0, 120.0),
        "rpc_timeout": (1.0, 120.0),
        "queue_retention_sec": (60, 7 * 86_400),
    }

    # (if_field, then_required, message)
    CONDITIONAL_REQUIREMENTS: List[Tuple[str, str, str]] = [
        ("rebalance_enabled", "near_api_key", "rebalancing requires NEAR_API_KEY"),
        ("rebalance_enabled", "near_recipient", "rebalancing requires NEAR_RECIPIENT"),
        ("rebalance_enabled", "pmm_btc_address", "rebalancing requires PMM_BTC_ADDRESS for refunds"),
        ("rebalance_enabled", "btc_wallet_url", "rebalancing requires BTC_WALLET_URL to send deposits"),
        ("solana_rpc_url", "solana_signer_url", "Solana payouts require SOLANA_SIGNER_URL"),
        ("solana_rpc_url", "pmm_solana_address", "Solana payouts require PMM_SOLANA_ADDRESS"),
        ("liquidation_enabled", "liquidation_contract_address", "liquidation requires LIQUIDATION_CONTRACT_ADDRESS"),
        ("telegram_bot_token", "telegram_chat_id", "TELEGRAM_BOT_TOKEN requires TELEGRAM_CHAT_ID"),
        ("pmm_id", "router_api_url", "trade payouts require ROUTER_API_URL"),
        ("solver_api_url", "pmm_evm_private_key", "settlement submission requires PMM_EVM_PRIVATE_KEY to sign"),
    ]

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_conditional(cfg))
        issues.extend(self._check_risky_configs(cfg))
        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            num_value = float(value)
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_conditional(self, cfg) -> List[ValidationIssue]:
        issues = []
        for if_field, then_required, message in self.CONDITIONAL_REQUIREMENTS:
            if getattr(cfg, if_field, None) and not getattr(cfg, then_required, None):
                issues.append(ValidationIssue(
                    field=then_required,
                    message=message,
                    severity=ValidationSeverity.ERROR,
                    suggestion=f"Set '{then_required}' when using '{if_field}'",
                ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        if getattr(cfg, "btc_skip_confirm", False):
            issues.append(ValidationIssue(
                field="btc_skip_confirm",
                message="BTC confirmations are bypassed; unconfirmed transactions will be verified",
                severity=ValidationSeverity.WARNING,
                suggestion="Only use BTC_SKIP_CONFIRM in test environments",
            ))

        threshold = getattr(cfg, "slippage_threshold_bps", 0)
        if threshold > 500:
            issues.append(ValidationIssue(
                field="slippage_threshold_bps",
                message=f"Slippage threshold {threshold} bps accepts quotes more than 5% below spot",
                severity=ValidationSeverity.WARNING,
                value=threshold,
            ))

        if not getattr(cfg, "pmm_evm_private_key", None) and getattr(cfg, "evm_rpc_urls", None):
            issues.append(ValidationIssue(
                field="pmm_evm_private_key",
                message="EVM networks configured without PMM_EVM_PRIVATE_KEY; EVM payouts are disabled",
                severity=ValidationSeverity.WARNING,
            ))

        if getattr(cfg, "alert_enabled", True) and not (
            getattr(cfg, "alert_webhook_url", None) or getattr(cfg, "telegram_bot_token", None)
        ):
            issues.append(ValidationIssue(
                field="alert_webhook_url",
                message="Alerts enabled but no webhook or Telegram bot configured",
                severity=ValidationSeverity.WARNING,
            ))

        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")

    return result.valid
