"""
Payout errors and contract revert decoding.

RevertDecoder turns raw revert data from a failed call into something a log
line can carry:
- Error(string)     -> the reason string
- Panic(uint256)    -> "Panic(0x11)" style code
- known custom errors (by 4-byte selector) -> the error name
- anything else     -> the selector, reason None
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector, to_bytes


class UnsupportedTransferError(Exception):
    """No strategy is registered for a (network type, trade type) pair."""

    def __init__(self, network_type: str, trade_type: str) -> None:
        super().__init__(f"Unsupported network type: {network_type} with trade type: {trade_type}")
        self.network_type = network_type
        self.trade_type = trade_type


class InsufficientBalanceError(Exception):
    """The PMM wallet cannot cover the payout."""
    pass


class TransferExecutionError(Exception):
    """A payout was attempted and failed; `reason` carries the decoded revert when known."""

    def __init__(self, message: str, reason: Optional[str] = None, data: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.data = data


ERROR_STRING_SELECTOR = "0x08c379a0"
PANIC_SELECTOR = "0x4e487b71"

# custom errors raised by the payment and liquidator contracts
CUSTOM_ERROR_SIGNATURES = (
    "AddressZero()",
    "DeadlineExceeded()",
    "InSuspension()",
    "InsufficientQuoteAmount()",
    "InvalidTradeId()",
    "RouteNotSupported()",
    "SignatureExpired()",
    "TokenNotSupported()",
    "Unauthorized()",
    "InvalidSignature()",
    "InvalidThreshold()",
    "InsufficientSignatures()",
    "ExternalCallFailed()",
    "ECDSAInvalidSignature()",
    "ECDSAInvalidSignatureLength(uint256)",
    "ECDSAInvalidSignatureS(bytes32)",
    "OwnableUnauthorizedAccount(address)",
    "SafeERC20FailedOperation(address)",
)


def selector_of(signature: str) -> str:
    return "0x" + function_signature_to_4byte_selector(signature).hex()


@dataclass(frozen=True)
class DecodedError:
    selector: Optional[str]
    name: Optional[str]
    reason: Optional[str]
    data: Optional[str]


def extract_revert_data(exc: BaseException) -> Optional[str]:
    """
    Find hex revert data on an exception raised by web3.

    web3 puts it on `exc.data` (ContractCustomError / ContractLogicError), or
    inside an RPC error dict, or as one of the exception args.
    """
    candidates = [getattr(exc, "data", None), getattr(getattr(exc, "transaction", None), "data", None)]
    candidates.extend(exc.args)
    for item in candidates:
        if isinstance(item, dict):
            item = item.get("data")
        if isinstance(item, bytes) and len(item) >= 4:
            return "0x" + item.hex()
        if isinstance(item, str) and item.startswith("0x") and len(item) >= 10:
            return item
    return None


class RevertDecoder:
    def __init__(self, signatures: Iterable[str] = CUSTOM_ERROR_SIGNATURES) -> None:
        self._custom: Dict[str, str] = {selector_of(sig): sig.split("(", 1)[0] for sig in signatures}

    def decode_data(self, data: Optional[str]) -> DecodedError:
        if not data or len(data) < 10:
            return DecodedError(selector=None, name=None, reason=None, data=data)

        selector = data[:10].lower()
        payload = to_bytes(hexstr=data)[4:]
        if selector == ERROR_STRING_SELECTOR:
            try:
                (reason,) = decode(["string"], payload)
            except Exception:
                reason = None
            return DecodedError(selector=selector, name="Error", reason=reason, data=data)

        if selector == PANIC_SELECTOR:
            try:
                (code,) = decode(["uint256"], payload)
                reason = f"Panic({hex(code)})"
            except Exception:
                reason = "Panic"
            return DecodedError(selector=selector, name="Panic", reason=reason, data=data)

        name = self._custom.get(selector)
        return DecodedError(selector=selector, name=name, reason=name, data=data)

    def decode(self, exc: BaseException) -> DecodedError:
        return self.decode_data(extract_revert_data(exc))
