"""
Rebalancing State Machine - explicit lifecycle transitions.

Provides:
- The transition table for RebalancingStatus
- Guard used by the service layer before any status write
- Audit trail of applied transitions (bounded, in-memory)

State Diagram:

    PENDING ──> MEMPOOL_VERIFIED ──> QUOTE_REQUESTED ──> QUOTE_ACCEPTED
       │                                                     │
       │                                                     ▼
       │                              DEPOSIT_SUBMITTED ──> SWAP_PROCESSING
       │                                     │                    │
       │                                     └──────> COMPLETED <─┘
       ▼
    FAILED ──(retry sweep)──> PENDING

    Any non-terminal state may move to FAILED, STUCK or REFUNDED.
    COMPLETED, STUCK and REFUNDED are terminal.
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from pmm_settlement.rebalancing.errors import InvalidTransitionError
from pmm_settlement.rebalancing.models import RebalancingStatus, TERMINAL_STATUSES

log = logging.getLogger("pmm_settlement")

S = RebalancingStatus

_SIDE_BRANCHES = [S.FAILED, S.STUCK, S.REFUNDED]

VALID_TRANSITIONS: Dict[RebalancingStatus, List[RebalancingStatus]] = {
    S.PENDING: [
        S.MEMPOOL_VERIFIED,    # BTC tx verified
        S.QUOTE_REQUESTED,     # realAmount already known from a prior attempt
        *_SIDE_BRANCHES,
    ],
    S.MEMPOOL_VERIFIED: [
        S.QUOTE_REQUESTED,
        *_SIDE_BRANCHES,
    ],
    S.QUOTE_REQUESTED: [
        S.QUOTE_REQUESTED,     # re-quote on job redelivery
        S.QUOTE_ACCEPTED,
        *_SIDE_BRANCHES,
    ],
    S.QUOTE_ACCEPTED: [
        S.QUOTE_ACCEPTED,
        S.DEPOSIT_SUBMITTED,
        *_SIDE_BRANCHES,
    ],
    S.DEPOSIT_SUBMITTED: [
        S.SWAP_PROCESSING,
        S.COMPLETED,           # venue reports success on first poll
        *_SIDE_BRANCHES,
    ],
    S.SWAP_PROCESSING: [
        S.SWAP_PROCESSING,
        S.COMPLETED,
        *_SIDE_BRANCHES,
    ],
    S.FAILED: [
        S.PENDING,             # retry sweep
        S.STUCK,
        S.REFUNDED,
    ],
    # Terminal states - no transitions allowed
    S.COMPLETED: [],
    S.STUCK: [],
    S.REFUNDED: [],
}


def is_valid_transition(from_status: RebalancingStatus, to_status: RebalancingStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


@dataclass
class StatusTransition:
    """Record of an applied transition."""
    rebalancing_id: str
    from_status: RebalancingStatus
    to_status: RebalancingStatus
    timestamp_ms: int
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class RebalancingStateMachine:
    """
    Validates and records rebalancing status transitions.

    The machine does not own records; the service asks it to validate a
    change, persists the change, then calls record() so the audit trail and
    callbacks reflect what was actually written.
    """

    def __init__(
        self,
        log_event: Optional[Callable[..., None]] = None,
        on_transition: Optional[Callable[[StatusTransition], None]] = None,
        history_size: int = 1000,
    ) -> None:
        self._log_event = log_event or self._default_log
        self._on_transition = on_transition
        self._history: Deque[StatusTransition] = deque(maxlen=history_size)

        self._stats = {
            "transitions": 0,
            "invalid_transitions_blocked": 0,
            "terminal_reached": 0,
        }

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    def validate(self, rebalancing_id: str, from_status: RebalancingStatus, to_status: RebalancingStatus) -> None:
        """Raise InvalidTransitionError if from_status may not move to to_status."""
        if from_status == to_status and from_status not in TERMINAL_STATUSES:
            # field-only update on a live record
            return
        if not is_valid_transition(from_status, to_status):
            self._stats["invalid_transitions_blocked"] += 1
            self._log_event(
                "rebalance_invalid_transition",
                rebalancing_id=rebalancing_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            raise InvalidTransitionError(rebalancing_id, from_status.value, to_status.value)

    def record(
        self,
        rebalancing_id: str,
        from_status: RebalancingStatus,
        to_status: RebalancingStatus,
        reason: Optional[str] = None,
        **metadata: Any,
    ) -> Optional[StatusTransition]:
        if from_status == to_status:
            return None
        transition = StatusTransition(
            rebalancing_id=rebalancing_id,
            from_status=from_status,
            to_status=to_status,
            timestamp_ms=int(time.time() * 1000),
            reason=reason,
            metadata=metadata,
        )
        self._history.append(transition)
        self._stats["transitions"] += 1
        if to_status in TERMINAL_STATUSES:
            self._stats["terminal_reached"] += 1

        self._log_event(
            "rebalance_status_change",
            rebalancing_id=rebalancing_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        if self._on_transition:
            self._on_transition(transition)
        return transition

    def history(self, rebalancing_id: Optional[str] = None) -> List[StatusTransition]:
        if rebalancing_id is None:
            return list(self._history)
        return [t for t in self._history if t.rebalancing_id == rebalancing_id]

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
