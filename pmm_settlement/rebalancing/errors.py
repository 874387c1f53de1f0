"""Rebalancing domain errors."""

from __future__ import annotations


class RebalancingError(Exception):
    """Base class for rebalancing record errors."""
    pass


class InvalidTransitionError(RebalancingError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, rebalancing_id: str, from_status: str, to_status: str) -> None:
        super().__init__(f"Invalid transition for {rebalancing_id}: {from_status} -> {to_status}")
        self.rebalancing_id = rebalancing_id
        self.from_status = from_status
        self.to_status = to_status


class DuplicateRebalancingError(RebalancingError):
    """Raised when a record already exists for a trade hash."""
    pass


class RebalancingNotFoundError(RebalancingError):
    """Raised when a record id does not resolve."""
    pass


class ImmutableFieldError(RebalancingError):
    """Raised on an attempt to overwrite a write-once field."""
    pass
