"""
Settlement package.

Outbound payouts: the (network type, trade type) dispatcher, the per-chain
transfer strategies and the EVM transaction plumbing they share.
"""

from pmm_settlement.settlement.dispatcher import TransferDispatcher, build_default_dispatcher
from pmm_settlement.settlement.errors import (
    DecodedError,
    InsufficientBalanceError,
    RevertDecoder,
    TransferExecutionError,
    UnsupportedTransferError,
)
from pmm_settlement.settlement.models import Token, TransferParams, TransferResult
