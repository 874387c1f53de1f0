"""
Rebalancing service: the only writer of rebalancing records.

Wraps a RebalancingStore and enforces the record invariants:
- one record per trade hash (existence check before create)
- status changes must follow VALID_TRANSITIONS
- real_amount is written once and never recomputed
- trade_completed_at is fixed at creation
- retry_count moves only through retry()
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Iterable, List, Optional

from pmm_settlement.rebalancing.errors import (
    DuplicateRebalancingError,
    ImmutableFieldError,
    RebalancingNotFoundError,
)
from pmm_settlement.rebalancing.models import (
    UPDATABLE_FIELDS,
    CreateRebalancingInput,
    Rebalancing,
    RebalancingStatus,
)
from pmm_settlement.rebalancing.state_machine import RebalancingStateMachine
from pmm_settlement.rebalancing.store import RebalancingStore

log = logging.getLogger("pmm_settlement")


class RebalancingService:
    def __init__(
        self,
        store: RebalancingStore,
        state_machine: Optional[RebalancingStateMachine] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._store = store
        self._log_event = log_event or self._default_log
        self.state_machine = state_machine or RebalancingStateMachine(log_event=self._log_event)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, data: CreateRebalancingInput) -> Rebalancing:
        """Create a PENDING record. Raises DuplicateRebalancingError if one exists."""
        if await self._store.exists_by_trade_hash(data.trade_hash):
            raise DuplicateRebalancingError(f"Rebalancing already exists for trade {data.trade_hash}")
        record = await self._store.create(data)
        self._log_event(
            "rebalance_created",
            rebalancing_id=record.rebalancing_id,
            trade_hash=record.trade_hash,
            amount=record.amount,
            tx_id=record.tx_id,
        )
        return record

    async def create_if_absent(self, data: CreateRebalancingInput) -> Optional[Rebalancing]:
        """Create a record unless the trade already has one. Returns None when skipped."""
        try:
            return await self.create(data)
        except DuplicateRebalancingError:
            self._log_event("rebalance_create_skipped_duplicate", trade_hash=data.trade_hash)
            return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, record_id: int) -> Rebalancing:
        record = await self._store.find_by_id(record_id)
        if record is None:
            raise RebalancingNotFoundError(f"Rebalancing {record_id} not found")
        return record

    async def find_by_id(self, record_id: int) -> Optional[Rebalancing]:
        return await self._store.find_by_id(record_id)

    async def find_by_trade_hash(self, trade_hash: str) -> Optional[Rebalancing]:
        return await self._store.find_by_trade_hash(trade_hash)

    async def exists_by_trade_hash(self, trade_hash: str) -> bool:
        return await self._store.exists_by_trade_hash(trade_hash)

    async def find_pending(self) -> List[Rebalancing]:
        return await self._store.find_pending()

    async def find_by_statuses(self, statuses: Iterable[RebalancingStatus]) -> List[Rebalancing]:
        return await self._store.find_by_statuses(statuses)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_status(
        self,
        record_id: int,
        status: RebalancingStatus,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> Rebalancing:
        """
        Move a record to `status`, writing `fields` alongside.

        Raises InvalidTransitionError for a disallowed move, ImmutableFieldError
        for an attempt to change an already-set real_amount, and ValueError for
        fields outside UPDATABLE_FIELDS.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        record = await self.get(record_id)
        self.state_machine.validate(record.rebalancing_id, record.status, status)

        if "real_amount" in fields and record.real_amount is not None:
            if str(fields["real_amount"]) != record.real_amount:
                raise ImmutableFieldError(
                    f"real_amount already set for {record.rebalancing_id}: "
                    f"{record.real_amount} (attempted {fields['real_amount']})"
                )
            fields.pop("real_amount")
        elif fields.get("real_amount") is not None:
            fields["real_amount"] = str(fields["real_amount"])

        updated = await self._store.update(record_id, status, fields)
        self.state_machine.record(record.rebalancing_id, record.status, status, reason=reason or fields.get("error"))
        return updated

    async def update_fields(self, record_id: int, **fields: Any) -> Rebalancing:
        """Write fields without changing status."""
        record = await self.get(record_id)
        return await self.update_status(record_id, record.status, **fields)

    async def mark_failed(self, record_id: int, error: str, **fields: Any) -> Rebalancing:
        return await self.update_status(record_id, RebalancingStatus.FAILED, error=error, **fields)

    async def mark_stuck(self, record_id: int, error: str) -> Rebalancing:
        return await self.update_status(record_id, RebalancingStatus.STUCK, error=error)

    async def retry(self, record_id: int) -> int:
        """
        Put a FAILED record back to PENDING for another attempt.

        Returns the new retry count. The count feeds the queue idempotency key
        so each attempt is enqueued under a fresh key.
        """
        record = await self.get(record_id)
        self.state_machine.validate(record.rebalancing_id, record.status, RebalancingStatus.PENDING)
        updated = await self._store.mark_retry(record_id)
        self.state_machine.record(
            record.rebalancing_id,
            record.status,
            RebalancingStatus.PENDING,
            reason="retry",
            retry_count=updated.retry_count,
        )
        return updated.retry_count
