"""Standard EVM payout through the protocol's Payment contract."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Optional, Protocol

from web3 import Web3

from pmm_settlement.settlement.abi import PAYMENT_ABI
from pmm_settlement.settlement.errors import RevertDecoder, TransferExecutionError
from pmm_settlement.settlement.evm_tx import EvmTransactionService, TxOptions
from pmm_settlement.settlement.models import ZERO_ADDRESS, TransferParams, TransferResult
from pmm_settlement.settlement.multisig import hex_to_bytes
from pmm_settlement.settlement.router import FeeDetails

log = logging.getLogger("pmm_settlement")

PAYMENT_DEADLINE_SECONDS = 30 * 60


class FeeProvider(Protocol):
    async def get_fee_details(self, trade_id: str) -> FeeDetails: ...


class PaymentAddressProvider(Protocol):
    def get_payment_address(self, network_id: str) -> Optional[str]: ...


class EvmTransferStrategy:
    def __init__(
        self,
        tx_service: EvmTransactionService,
        router: FeeProvider,
        protocol: PaymentAddressProvider,
        decoder: Optional[RevertDecoder] = None,
        clock: Optional[Callable[[], float]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._tx = tx_service
        self._router = router
        self._protocol = protocol
        self._decoder = decoder or RevertDecoder()
        self._clock = clock or time.time
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.ERROR if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    def get_payment_address(self, network_id: str) -> str:
        address = self._protocol.get_payment_address(network_id)
        if not address:
            raise ValueError(f"Unsupported networkId: {network_id}")
        return address

    async def transfer(self, params: TransferParams) -> TransferResult:
        token = params.token
        payment_address = self.get_payment_address(token.network_id)

        if not token.is_native:
            await self._tx.handle_token_approval(token.network_id, token.token_address, payment_address, params.amount)

        fee = await self._router.get_fee_details(params.trade_id)
        deadline = int(self._clock()) + PAYMENT_DEADLINE_SECONDS
        args = [
            hex_to_bytes(params.trade_id),
            ZERO_ADDRESS if token.is_native else Web3.to_checksum_address(token.token_address),
            Web3.to_checksum_address(params.to_address),
            params.amount,
            fee.total_amount,
            deadline,
        ]

        try:
            result = await self._tx.execute_contract_method(
                token.network_id,
                payment_address,
                PAYMENT_ABI,
                "payment",
                args,
                TxOptions(
                    value=params.amount if token.is_native else 0,
                    description=f"Normal payment for trade {params.trade_id}",
                ),
            )
        except Exception as exc:
            decoded = self._decoder.decode(exc)
            self._log(
                "evm_transfer_failed",
                trade_id=params.trade_id,
                network_id=token.network_id,
                token=token.token_address,
                to_address=params.to_address,
                amount=str(params.amount),
                error=decoded.reason or str(exc) or "Unknown error",
            )
            raise TransferExecutionError(
                f"EVM payment failed for trade {params.trade_id}: {decoded.reason or exc}",
                reason=decoded.reason,
                data=decoded.data,
            ) from exc

        self._log(
            "evm_transfer_sent",
            trade_id=params.trade_id,
            network_id=token.network_id,
            tx_hash=result.hash,
            nonce=result.nonce,
            gas_limit=result.gas_limit,
        )
        return result
