"""
Trade access for settlement monitoring and payouts.

- Trade / TradeStatus: the PMM's local view of a trade
  (PENDING -> PAYING -> SETTLING -> COMPLETED, or FAILED)
- TradeStore: local trade persistence interface, with in-memory and JSON-file
  implementations
- TradeStatusClient: on-chain trade status from the protocol API (httpx)
- extract_release_tx_id: pull the BTC release tx id out of trade events
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from pmm_settlement.core.json_utils import dumps_pretty, loads

log = logging.getLogger("pmm_settlement")

CONFIRM_SETTLEMENT_ACTION = "ConfirmSettlement"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    PAYING = "PAYING"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProtocolTradeStatus(str, Enum):
    """Subset of on-chain trade statuses the monitor acts on."""
    SETTLEMENT_CONFIRMED = "SETTLEMENT_CONFIRMED"
    REFUNDED = "REFUNDED"


@dataclass
class Trade:
    trade_id: str
    amount: str
    status: TradeStatus = TradeStatus.PENDING
    trade_type: str = "swap"
    user_deposit_vault: Optional[str] = None
    trade_deadline: Optional[int] = None  # unix seconds
    payment_tx_id: Optional[str] = None
    settlement_tx_id: Optional[str] = None
    completed_at_ms: Optional[int] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.status, TradeStatus):
            self.status = TradeStatus(self.status)

    def is_expired(self, now_sec: float) -> bool:
        return self.trade_deadline is not None and self.trade_deadline < now_sec

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class TradeStore(Protocol):
    async def add(self, trade: Trade) -> Trade: ...

    async def find_trade_by_id(self, trade_id: str) -> Optional[Trade]: ...

    async def find_settling_trades(self) -> List[Trade]: ...

    async def find_unpaid_trades(self) -> List[Trade]: ...

    async def mark_paying(self, trade_id: str) -> Trade: ...

    async def mark_paid(self, trade_id: str, payment_tx_id: str) -> Trade: ...

    async def mark_completed(self, trade_id: str, settlement_tx_id: Optional[str]) -> Trade: ...

    async def mark_failed(self, trade_id: str, error: str) -> Trade: ...


class InMemoryTradeStore:
    """
    Dict-backed trade store. Returned trades are copies.

    Mutations follow the rebalancing store: change a copy, persist, then
    publish, so a failed write changes nothing.
    """

    def __init__(self, trades: Optional[Iterable[Trade]] = None) -> None:
        self._trades: Dict[str, Trade] = {t.trade_id: t for t in trades or []}
        self._lock = asyncio.Lock()

    async def add(self, trade: Trade) -> Trade:
        """Register a trade, replacing any earlier copy with the same id."""
        async with self._lock:
            await self._commit(copy.deepcopy(trade))
            return copy.deepcopy(trade)

    async def find_trade_by_id(self, trade_id: str) -> Optional[Trade]:
        trade = self._trades.get(trade_id)
        return copy.deepcopy(trade) if trade else None

    async def find_settling_trades(self) -> List[Trade]:
        return [copy.deepcopy(t) for t in self._trades.values() if t.status == TradeStatus.SETTLING]

    async def find_unpaid_trades(self) -> List[Trade]:
        """PENDING trades with no payout yet. PAYING trades are excluded: their payout may be on-chain."""
        return [
            copy.deepcopy(t)
            for t in self._trades.values()
            if t.status == TradeStatus.PENDING and not t.payment_tx_id
        ]

    async def mark_paying(self, trade_id: str) -> Trade:
        async with self._lock:
            trade = self._staged(trade_id)
            trade.status = TradeStatus.PAYING
            await self._commit(trade)
            return copy.deepcopy(trade)

    async def mark_paid(self, trade_id: str, payment_tx_id: str) -> Trade:
        """Record the payout tx; the trade then waits for on-chain settlement."""
        async with self._lock:
            trade = self._staged(trade_id)
            trade.payment_tx_id = payment_tx_id
            trade.status = TradeStatus.SETTLING
            await self._commit(trade)
            return copy.deepcopy(trade)

    async def mark_completed(self, trade_id: str, settlement_tx_id: Optional[str]) -> Trade:
        async with self._lock:
            trade = self._staged(trade_id)
            trade.status = TradeStatus.COMPLETED
            if settlement_tx_id:
                trade.settlement_tx_id = settlement_tx_id
            trade.completed_at_ms = trade.completed_at_ms or int(time.time() * 1000)
            await self._commit(trade)
            return copy.deepcopy(trade)

    async def mark_failed(self, trade_id: str, error: str) -> Trade:
        async with self._lock:
            trade = self._staged(trade_id)
            trade.status = TradeStatus.FAILED
            trade.error = error
            await self._commit(trade)
            return copy.deepcopy(trade)

    def _staged(self, trade_id: str) -> Trade:
        trade = self._trades.get(trade_id)
        if trade is None:
            raise KeyError(f"Trade not found: {trade_id}")
        return copy.deepcopy(trade)

    async def _commit(self, trade: Trade) -> None:
        staged = {**self._trades, trade.trade_id: trade}
        await self._persist(staged)
        self._trades = staged

    async def _persist(self, trades: Dict[str, Trade]) -> None:
        return None


class JsonFileTradeStore(InMemoryTradeStore):
    """Trade table persisted to one JSON file, same write discipline as JsonFileRebalancingStore."""

    def __init__(self, state_dir: str, filename: str = "trades.json") -> None:
        super().__init__()
        self.path = Path(state_dir) / filename
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> int:
        async with self._lock:
            loop = asyncio.get_running_loop()
            raw = await loop.run_in_executor(None, self._read)
            self._trades = {}
            for item in raw.get("trades", []):
                trade = Trade.from_dict(item)
                self._trades[trade.trade_id] = trade
            log.info(f"trade_store_loaded:{len(self._trades)} path={self.path}")
            return len(self._trades)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        return loads(self.path.read_bytes())

    def _write(self, payload: bytes) -> None:
        self.tmp.write_bytes(payload)
        self.tmp.replace(self.path)

    async def _persist(self, trades: Dict[str, Trade]) -> None:
        payload = dumps_pretty({"trades": [t.to_dict() for t in trades.values()]})
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._write(payload))


def extract_release_tx_id(events: Any) -> Optional[str]:
    """
    Return the BTC release tx id from the first ConfirmSettlement event.

    Event payloads arrive either camelCase or snake_case depending on the API
    version, so both spellings are accepted.
    """
    if not isinstance(events, list):
        return None
    for event in events:
        if not isinstance(event, dict) or event.get("action") != CONFIRM_SETTLEMENT_ACTION:
            continue
        input_data = event.get("inputData") or event.get("input_data") or {}
        if not isinstance(input_data, dict):
            return None
        tx_id = input_data.get("release_tx_id") or input_data.get("releaseTxId")
        return str(tx_id) if tx_id else None
    return None


class TradeStatusClient:
    """Reads protocol-side trade state: GET /v1/trades/{trade_id}."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get_trade_by_id(self, trade_id: str) -> Optional[Dict[str, Any]]:
        resp = await self.client.get(f"/v1/trades/{trade_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        data = resp.json()
        # unwrap {data: {...}}
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        return data
