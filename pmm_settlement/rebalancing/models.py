"""
Rebalancing record model.

One record exists per originating trade (unique trade_hash). Amounts are kept
as string-encoded integers (satoshis / USDC micros) so they survive JSON
persistence without precision loss; convert with int() before any arithmetic.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class RebalancingStatus(str, Enum):
    """
    Rebalancing lifecycle states. Values are the persisted strings.

    PENDING -> MEMPOOL_VERIFIED -> QUOTE_REQUESTED -> QUOTE_ACCEPTED
            -> DEPOSIT_SUBMITTED -> SWAP_PROCESSING -> COMPLETED

    FAILED / STUCK / REFUNDED are side branches from any non-terminal state.
    """
    PENDING = "PENDING"
    MEMPOOL_VERIFIED = "MEMPOOL_VERIFIED"
    QUOTE_REQUESTED = "QUOTE_REQUESTED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    DEPOSIT_SUBMITTED = "DEPOSIT_SUBMITTED"
    SWAP_PROCESSING = "SWAP_PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STUCK = "STUCK"
    REFUNDED = "REFUNDED"


RETRYABLE_STATUSES = (RebalancingStatus.PENDING, RebalancingStatus.FAILED)
TERMINAL_STATUSES = (RebalancingStatus.COMPLETED, RebalancingStatus.STUCK, RebalancingStatus.REFUNDED)


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_rebalancing_id() -> str:
    """128-bit random identifier, 0x-prefixed hex."""
    return "0x" + secrets.token_hex(16)


@dataclass
class Rebalancing:
    id: int
    rebalancing_id: str
    trade_hash: str
    amount: str
    status: RebalancingStatus = RebalancingStatus.PENDING

    trade_id: Optional[str] = None
    real_amount: Optional[str] = None
    tx_id: Optional[str] = None
    vault_address: Optional[str] = None
    optimex_status: Optional[str] = None
    mempool_verified: bool = False

    # swap venue linkage
    deposit_address: Optional[str] = None
    near_vault_tx_id: Optional[str] = None
    quote_id: Optional[str] = None
    near_tx_id: Optional[str] = None
    near_deposit_id: Optional[str] = None

    # price / slippage snapshot
    oracle_price: Optional[str] = None
    quote_price: Optional[str] = None
    slippage_bps: Optional[int] = None
    expected_usdc: Optional[str] = None
    actual_usdc: Optional[str] = None

    retry_count: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    created_at_ms: int = 0
    updated_at_ms: int = 0
    trade_completed_at_ms: int = 0

    def __post_init__(self):
        now = now_ms()
        if self.created_at_ms == 0:
            self.created_at_ms = now
        if self.updated_at_ms == 0:
            self.updated_at_ms = now
        if self.trade_completed_at_ms == 0:
            self.trade_completed_at_ms = self.created_at_ms
        if not isinstance(self.status, RebalancingStatus):
            self.status = RebalancingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def display_trade_id(self) -> str:
        return self.trade_id or self.trade_hash

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rebalancing":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class CreateRebalancingInput:
    trade_hash: str
    amount: str
    trade_id: Optional[str] = None
    tx_id: Optional[str] = None
    vault_address: Optional[str] = None
    optimex_status: Optional[str] = None
    trade_completed_at_ms: Optional[int] = None


# Fields a status update may carry alongside the new status.
UPDATABLE_FIELDS = frozenset({
    "real_amount",
    "mempool_verified",
    "deposit_address",
    "near_vault_tx_id",
    "quote_id",
    "oracle_price",
    "quote_price",
    "slippage_bps",
    "expected_usdc",
    "actual_usdc",
    "near_tx_id",
    "near_deposit_id",
    "error",
    "metadata",
})


@dataclass(frozen=True)
class RebalancingQueueJob:
    """Payload handed from verification to the swap-processing stage."""
    id: int
    rebalancing_id: str
    trade_hash: str
    amount: str
    real_amount: str
    tx_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RebalancingTransferJob:
    id: int
    rebalancing_id: str
    trade_hash: str
    deposit_address: str
    real_amount: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
