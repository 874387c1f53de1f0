"""
Rebalancing package.

Record model, lifecycle state machine, storage interface and the service
that enforces record invariants.
"""

from pmm_settlement.rebalancing.errors import (
    DuplicateRebalancingError,
    ImmutableFieldError,
    InvalidTransitionError,
    RebalancingError,
    RebalancingNotFoundError,
)
from pmm_settlement.rebalancing.models import (
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    CreateRebalancingInput,
    Rebalancing,
    RebalancingQueueJob,
    RebalancingStatus,
    RebalancingTransferJob,
)
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.rebalancing.state_machine import VALID_TRANSITIONS, RebalancingStateMachine
from pmm_settlement.rebalancing.store import (
    InMemoryRebalancingStore,
    JsonFileRebalancingStore,
    RebalancingStore,
)
