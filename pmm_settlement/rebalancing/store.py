"""
Rebalancing persistence.

RebalancingStore is the storage interface the engine depends on. Two
implementations ship here:

- InMemoryRebalancingStore: dict-backed, for tests and dry runs
- JsonFileRebalancingStore: in-memory index persisted to a single JSON file
  with tmp-then-replace writes, file IO run in the default executor

Both serialize mutations with an asyncio.Lock so concurrent schedulers and
processors never interleave read-modify-write cycles. A mutation is applied
to a copy, persisted, and only then published to the in-memory table, so a
failed write leaves memory and disk in agreement. Stores do not validate
status transitions; RebalancingService does that before calling update().
"""

from __future__ import annotations

import asyncio
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pmm_settlement.core.json_utils import dumps_pretty, loads
from pmm_settlement.rebalancing.errors import DuplicateRebalancingError, RebalancingNotFoundError
from pmm_settlement.rebalancing.models import (
    CreateRebalancingInput,
    Rebalancing,
    RebalancingStatus,
    generate_rebalancing_id,
    now_ms,
)

log = logging.getLogger("pmm_settlement")


class RebalancingStore(Protocol):
    async def create(self, data: CreateRebalancingInput) -> Rebalancing: ...

    async def find_by_id(self, record_id: int) -> Optional[Rebalancing]: ...

    async def find_by_trade_hash(self, trade_hash: str) -> Optional[Rebalancing]: ...

    async def exists_by_trade_hash(self, trade_hash: str) -> bool: ...

    async def find_pending(self) -> List[Rebalancing]: ...

    async def find_by_statuses(self, statuses: Iterable[RebalancingStatus]) -> List[Rebalancing]: ...

    async def update(self, record_id: int, status: RebalancingStatus, fields: Dict[str, Any]) -> Rebalancing: ...

    async def mark_retry(self, record_id: int) -> Rebalancing: ...


class InMemoryRebalancingStore:
    """Dict-backed store. Returned records are copies; mutate through update()."""

    def __init__(self) -> None:
        self._records: Dict[int, Rebalancing] = {}
        self._by_hash: Dict[str, int] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def create(self, data: CreateRebalancingInput) -> Rebalancing:
        async with self._lock:
            if data.trade_hash in self._by_hash:
                raise DuplicateRebalancingError(f"Rebalancing already exists for trade {data.trade_hash}")
            now = now_ms()
            record = Rebalancing(
                id=self._next_id,
                rebalancing_id=generate_rebalancing_id(),
                trade_hash=data.trade_hash,
                trade_id=data.trade_id,
                amount=data.amount,
                tx_id=data.tx_id,
                vault_address=data.vault_address,
                optimex_status=data.optimex_status,
                status=RebalancingStatus.PENDING,
                retry_count=0,
                created_at_ms=now,
                updated_at_ms=now,
                trade_completed_at_ms=data.trade_completed_at_ms or now,
            )
            await self._commit(record, next_id=self._next_id + 1)
            return copy.deepcopy(record)

    async def find_by_id(self, record_id: int) -> Optional[Rebalancing]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def find_by_trade_hash(self, trade_hash: str) -> Optional[Rebalancing]:
        record_id = self._by_hash.get(trade_hash)
        if record_id is None:
            return None
        return await self.find_by_id(record_id)

    async def exists_by_trade_hash(self, trade_hash: str) -> bool:
        return trade_hash in self._by_hash

    async def find_pending(self) -> List[Rebalancing]:
        return await self.find_by_statuses([RebalancingStatus.PENDING])

    async def find_by_statuses(self, statuses: Iterable[RebalancingStatus]) -> List[Rebalancing]:
        wanted = set(statuses)
        rows = [r for r in self._records.values() if r.status in wanted]
        rows.sort(key=lambda r: (r.created_at_ms, r.id))
        return [copy.deepcopy(r) for r in rows]

    async def update(self, record_id: int, status: RebalancingStatus, fields: Dict[str, Any]) -> Rebalancing:
        async with self._lock:
            record = self._staged(record_id)
            for key, value in fields.items():
                setattr(record, key, value)
            record.status = status
            record.updated_at_ms = now_ms()
            await self._commit(record)
            return copy.deepcopy(record)

    async def mark_retry(self, record_id: int) -> Rebalancing:
        """Bump retry_count and move the record back to PENDING in a single write."""
        async with self._lock:
            record = self._staged(record_id)
            record.retry_count += 1
            record.status = RebalancingStatus.PENDING
            record.updated_at_ms = now_ms()
            await self._commit(record)
            return copy.deepcopy(record)

    def _staged(self, record_id: int) -> Rebalancing:
        record = self._records.get(record_id)
        if record is None:
            raise RebalancingNotFoundError(f"Rebalancing {record_id} not found")
        return copy.deepcopy(record)

    async def _commit(self, record: Rebalancing, next_id: Optional[int] = None) -> None:
        """
        Persist the table with `record` swapped in, then publish it.

        Called with the lock held. If the write raises, the in-memory table is
        left exactly as it was.
        """
        next_id = self._next_id if next_id is None else next_id
        staged = {**self._records, record.id: record}
        await self._persist(staged, next_id)
        self._records = staged
        self._by_hash[record.trade_hash] = record.id
        self._next_id = next_id

    async def _persist(self, records: Dict[int, Rebalancing], next_id: int) -> None:
        """Hook for durable subclasses."""
        return None


class JsonFileRebalancingStore(InMemoryRebalancingStore):
    """
    File-backed store for single-process deployments.

    The whole table is rewritten on each mutation (tmp file then replace), so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, state_dir: str, filename: str = "rebalancing.json") -> None:
        super().__init__()
        self.path = Path(state_dir) / filename
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> int:
        """Load the snapshot from disk. Returns the number of records loaded."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            raw = await loop.run_in_executor(None, self._read)
            if not raw:
                return 0
            self._records.clear()
            self._by_hash.clear()
            for item in raw.get("records", []):
                record = Rebalancing.from_dict(item)
                self._records[record.id] = record
                self._by_hash[record.trade_hash] = record.id
            self._next_id = max([raw.get("next_id", 1), *[r.id + 1 for r in self._records.values()]])
            log.info(f"rebalancing_store_loaded:{len(self._records)} path={self.path}")
            return len(self._records)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        return loads(self.path.read_bytes())

    def _write(self, payload: bytes) -> None:
        self.tmp.write_bytes(payload)
        self.tmp.replace(self.path)

    async def _persist(self, records: Dict[int, Rebalancing], next_id: int) -> None:
        snapshot = {
            "next_id": next_id,
            "records": [r.to_dict() for r in sorted(records.values(), key=lambda r: r.id)],
        }
        payload = dumps_pretty(snapshot)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self._write(payload))
