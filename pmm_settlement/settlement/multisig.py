"""
Multisig authorization for liquidation payouts.

The liquidator contract accepts a payment when `threshold` approvers signed
the EIP-712 message ApprovePayment(bytes32 contextHash), with

    contextHash = keccak256(abi.encode(
        address executor, uint64 deadline, uint16 threshold,
        (address token, uint256 amount, bytes externalCall)))

Signatures must be ordered by approver address, ascending.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_bytes


@dataclass(frozen=True)
class PaymentRequest:
    token: str
    amount: int
    external_call: bytes

    def as_tuple(self) -> Tuple[str, int, bytes]:
        return (self.token, self.amount, self.external_call)


@dataclass(frozen=True)
class MultisigAuth:
    deadline: int
    threshold: int
    signatures: List[bytes]

    def as_tuple(self) -> Tuple[int, int, List[bytes]]:
        return (self.deadline, self.threshold, self.signatures)


@dataclass(frozen=True)
class Eip712Domain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    @classmethod
    def from_call(cls, result: Sequence) -> "Eip712Domain":
        """Build from the eip712Domain() return tuple (fields, name, version, chainId, verifyingContract, ...)."""
        return cls(name=result[1], version=result[2], chain_id=int(result[3]), verifying_contract=result[4])


def hex_to_bytes(value: str) -> bytes:
    return to_bytes(hexstr=value) if value else b""


def compute_context_hash(executor: str, deadline: int, threshold: int, request: PaymentRequest) -> bytes:
    return keccak(encode(
        ["address", "uint64", "uint16", "(address,uint256,bytes)"],
        [executor, deadline, threshold, request.as_tuple()],
    ))


def sign_approval(private_key: str, domain: Eip712Domain, context_hash: bytes) -> bytes:
    message = encode_typed_data(full_message={
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "ApprovePayment": [{"name": "contextHash", "type": "bytes32"}],
        },
        "primaryType": "ApprovePayment",
        "domain": {
            "name": domain.name,
            "version": domain.version,
            "chainId": domain.chain_id,
            "verifyingContract": domain.verifying_contract,
        },
        "message": {"contextHash": context_hash},
    })
    return bytes(Account.sign_message(message, private_key=private_key).signature)


def build_multisig_auth(
    executor: str,
    request: PaymentRequest,
    approver_keys: Sequence[str],
    domain: Eip712Domain,
    deadline_seconds: int,
    now: Optional[float] = None,
) -> MultisigAuth:
    threshold = len(approver_keys)
    deadline = int(now if now is not None else time.time()) + deadline_seconds
    context_hash = compute_context_hash(executor, deadline, threshold, request)

    accounts = sorted((Account.from_key(key) for key in approver_keys), key=lambda a: int(a.address, 16))
    signatures = [sign_approval(acct.key, domain, context_hash) for acct in accounts]
    return MultisigAuth(deadline=deadline, threshold=threshold, signatures=signatures)
