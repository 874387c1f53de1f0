"""Payout request and result types shared by the dispatcher and strategies."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

NATIVE_TOKEN = "native"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class Token:
    network_id: str
    network_type: str
    token_address: str
    token_symbol: str
    token_decimals: int

    @property
    def is_native(self) -> bool:
        return self.token_address == NATIVE_TOKEN


@dataclass(frozen=True)
class TransferParams:
    to_address: str
    amount: int
    token: Token
    trade_id: str


@dataclass(frozen=True)
class TransferResult:
    hash: str
    nonce: Optional[int] = None
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None


class TransferStrategy(Protocol):
    async def transfer(self, params: TransferParams) -> TransferResult: ...
