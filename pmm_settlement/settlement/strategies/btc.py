"""BTC payout from the PMM wallet, tagged with the trade id hash in OP_RETURN."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from eth_abi import encode
from eth_utils import keccak

from pmm_settlement.infra.btc_wallet import BitcoinWallet
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.settlement.errors import InsufficientBalanceError
from pmm_settlement.settlement.models import TransferParams, TransferResult
from pmm_settlement.settlement.multisig import hex_to_bytes

log = logging.getLogger("pmm_settlement")


def trade_ids_hash(trade_ids: list) -> str:
    """keccak256(abi.encode(bytes32[] tradeIds)), 0x-prefixed."""
    encoded = encode(["bytes32[]"], [[hex_to_bytes(t) for t in trade_ids]])
    return "0x" + keccak(encoded).hex()


class BtcTransferStrategy:
    def __init__(
        self,
        wallet: BitcoinWallet,
        notifier: RebalanceNotifier,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._wallet = wallet
        self._notifier = notifier
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.ERROR if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def check_balance(self, amount: int) -> bool:
        """False when the wallet is short (alerted) or the balance cannot be read."""
        try:
            balance = await self._wallet.get_balance()
        except Exception as exc:
            self._log("btc_check_balance_failed", address=self._wallet.address, error=str(exc))
            return False

        self._log("btc_check_balance", address=self._wallet.address, balance=balance, required=amount)
        if balance < amount:
            await self._notifier.insufficient_balance(
                asset="BTC", required=amount, available=balance, address=self._wallet.address
            )
            return False
        return True

    async def transfer(self, params: TransferParams) -> TransferResult:
        self._log(
            "btc_transfer_start",
            trade_id=params.trade_id,
            to_address=params.to_address,
            amount=params.amount,
            network_id=params.token.network_id,
        )
        try:
            if not await self.check_balance(params.amount):
                raise InsufficientBalanceError("Insufficient balance for transfer")

            op_return = trade_ids_hash([params.trade_id])[2:]
            result = await self._wallet.send_btc(params.to_address, params.amount, op_return_data=op_return)
        except Exception as exc:
            self._log(
                "btc_transfer_failed",
                trade_id=params.trade_id,
                to_address=params.to_address,
                amount=params.amount,
                error=str(exc),
            )
            raise

        self._log(
            "btc_transfer_sent",
            trade_id=params.trade_id,
            tx_id=result.tx_id,
            fee_sats=result.fee_sats,
        )
        return TransferResult(hash=result.tx_id)
