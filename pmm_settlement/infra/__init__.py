"""
Infrastructure package.

This package contains external-facing clients (Esplora, swap venue, price
oracle, trade API, BTC wallet), the async RPC executor, logging configuration
and nonce sequencing.
"""

from pmm_settlement.infra.async_rpc import AsyncRpc
from pmm_settlement.infra.logging_cfg import build_logger, log_event
from pmm_settlement.infra.nonce import ManagedSigner, NonceSequencer
