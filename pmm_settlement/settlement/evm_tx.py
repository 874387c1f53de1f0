"""
EVM transaction execution for payouts.

Signs locally with the network's ManagedSigner (nonce from NonceSequencer) and
broadcasts the raw transaction. Blocking web3 calls go through AsyncRpc so
each one has a timeout.

Gas:
- limit = estimate + max(estimate * buffer_pct / 100, min_buffer), capped at
  max_gas_limit when given
- a revert during estimation is raised as-is; any other estimation failure
  falls back to `fallback_gas_limit` (buffered)
- fee fields are left for web3's build_transaction to fill from the node

Nonce:
- a failed broadcast evicts the cached signer so the next allocation re-reads
  the chain; nonce-shaped errors are retried once with a fresh signer
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from web3 import Web3
from web3.exceptions import ContractLogicError

from pmm_settlement.infra.async_rpc import AsyncRpc
from pmm_settlement.infra.nonce import ManagedSigner, NonceSequencer
from pmm_settlement.settlement.abi import ERC20_ABI, MAX_UINT256
from pmm_settlement.settlement.models import TransferResult

log = logging.getLogger("pmm_settlement")

DEFAULT_GAS_BUFFER_PCT = 20
DEFAULT_MIN_GAS_BUFFER = 21_000
DEFAULT_FALLBACK_GAS = 500_000
APPROVAL_FALLBACK_GAS = 100_000

NONCE_ERROR_MARKERS = (
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "invalid nonce",
)


@dataclass(frozen=True)
class TxOptions:
    value: int = 0
    gas_limit: Optional[int] = None
    gas_buffer_pct: int = DEFAULT_GAS_BUFFER_PCT
    min_gas_buffer: int = DEFAULT_MIN_GAS_BUFFER
    max_gas_limit: Optional[int] = None
    fallback_gas_limit: int = DEFAULT_FALLBACK_GAS
    max_nonce_retries: int = 1
    description: str = ""


def apply_gas_buffer(estimated: int, options: TxOptions) -> int:
    buffer = max(estimated * options.gas_buffer_pct // 100, options.min_gas_buffer)
    gas = estimated + buffer
    if options.max_gas_limit and gas > options.max_gas_limit:
        return options.max_gas_limit
    return gas


def is_nonce_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in NONCE_ERROR_MARKERS)


class EvmTransactionService:
    def __init__(
        self,
        sequencer: NonceSequencer,
        rpc: AsyncRpc,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._sequencer = sequencer
        self._rpc = rpc
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def signer_address(self, network_id: str) -> str:
        signer = await self._sequencer.get(network_id)
        return signer.address

    async def call(
        self,
        network_id: str,
        address: str,
        abi: List[Dict[str, Any]],
        method: str,
        args: Sequence[Any] = (),
    ) -> Any:
        """Read-only contract call."""
        signer = await self._sequencer.get(network_id)
        contract = signer.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        fn = getattr(contract.functions, method)(*args)
        return await self._rpc.read(fn.call)

    async def execute_contract_method(
        self,
        network_id: str,
        address: str,
        abi: List[Dict[str, Any]],
        method: str,
        args: Sequence[Any],
        options: Optional[TxOptions] = None,
    ) -> TransferResult:
        options = options or TxOptions()
        self._log(
            "evm_execute_contract_method",
            network_id=network_id,
            contract=address,
            method=method,
            description=options.description,
        )

        attempt = 0
        while True:
            try:
                return await self._execute_once(network_id, address, abi, method, args, options)
            except Exception as exc:
                # the cached nonce may have run ahead of the chain
                await self._sequencer.reset(network_id)
                retryable = is_nonce_error(exc) and not isinstance(exc, ContractLogicError)
                if retryable and attempt < options.max_nonce_retries:
                    attempt += 1
                    self._log("evm_nonce_error_retry", network_id=network_id, attempt=attempt, error=str(exc))
                    continue
                self._log("evm_execute_failed", network_id=network_id, method=method, error=str(exc))
                raise

    async def _execute_once(
        self,
        network_id: str,
        address: str,
        abi: List[Dict[str, Any]],
        method: str,
        args: Sequence[Any],
        options: TxOptions,
    ) -> TransferResult:
        signer = await self._sequencer.get(network_id)
        w3 = signer.web3
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        fn = getattr(contract.functions, method)(*args)

        gas = options.gas_limit or await self._estimate_gas(fn, signer, options)
        nonce = await signer.next_nonce()
        chain_id = await self._rpc.read(lambda: w3.eth.chain_id)
        tx = await self._rpc.read(lambda: fn.build_transaction({
            "from": signer.address,
            "nonce": nonce,
            "gas": gas,
            "value": options.value,
            "chainId": chain_id,
        }))
        signed = signer.sign_transaction(tx)
        tx_hash = await self._rpc.send(lambda: w3.eth.send_raw_transaction(signed.raw_transaction))

        result = TransferResult(
            hash=Web3.to_hex(tx_hash),
            nonce=nonce,
            gas_limit=gas,
            gas_price=tx.get("maxFeePerGas") or tx.get("gasPrice"),
        )
        self._log(
            "evm_tx_sent",
            network_id=network_id,
            method=method,
            tx_hash=result.hash,
            nonce=nonce,
            gas_limit=gas,
        )
        return result

    async def _estimate_gas(self, fn: Any, signer: ManagedSigner, options: TxOptions) -> int:
        try:
            estimated = await self._rpc.read(
                lambda: fn.estimate_gas({"from": signer.address, "value": options.value}),
                retries=0,
            )
        except ContractLogicError:
            raise
        except Exception as exc:
            self._log(
                "evm_gas_estimate_fallback",
                network_id=signer.network_id,
                fallback_gas=options.fallback_gas_limit,
                error=str(exc),
            )
            estimated = options.fallback_gas_limit
        return apply_gas_buffer(int(estimated), options)

    async def handle_token_approval(
        self,
        network_id: str,
        token_address: str,
        spender: str,
        required_amount: int,
        options: Optional[TxOptions] = None,
    ) -> None:
        """
        Make sure `spender` may pull `required_amount` of the token.

        Sufficient allowance: nothing to do. Otherwise a non-zero allowance is
        reset to 0 first (USDT-style tokens refuse a direct change) and the
        allowance is set to MAX_UINT256.
        """
        options = options or TxOptions()
        owner = await self.signer_address(network_id)
        allowance = await self.call(
            network_id,
            token_address,
            ERC20_ABI,
            "allowance",
            [Web3.to_checksum_address(owner), Web3.to_checksum_address(spender)],
        )
        self._log(
            "token_allowance_checked",
            network_id=network_id,
            token=token_address,
            allowance=str(allowance),
            required=str(required_amount),
        )
        if allowance >= required_amount:
            return

        approval = replace(options, value=0, fallback_gas_limit=APPROVAL_FALLBACK_GAS)
        spender_cs = Web3.to_checksum_address(spender)
        if allowance > 0:
            await self.execute_contract_method(
                network_id, token_address, ERC20_ABI, "approve", [spender_cs, 0],
                replace(approval, description=f"Reset token approval to 0 for {token_address}"),
            )
        await self.execute_contract_method(
            network_id, token_address, ERC20_ABI, "approve", [spender_cs, MAX_UINT256],
            replace(approval, description=f"Set token approval to max for {token_address}"),
        )
        self._log("token_approval_set", network_id=network_id, token=token_address, spender=spender)
