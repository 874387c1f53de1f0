"""Solana payout (native SOL or SPL token) through the protocol payment program."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Optional

import httpx

from pmm_settlement.infra.solana_client import SolanaPayment, SolanaPaymentClient
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.settlement.errors import InsufficientBalanceError
from pmm_settlement.settlement.models import TransferParams, TransferResult
from pmm_settlement.settlement.strategies.evm import FeeProvider

log = logging.getLogger("pmm_settlement")

PAYMENT_DEADLINE_SECONDS = 3600


class SolanaTransferStrategy:
    def __init__(
        self,
        client: SolanaPaymentClient,
        router: FeeProvider,
        notifier: RebalanceNotifier,
        send_attempts: int = 3,
        retry_delay_sec: float = 2.0,
        clock: Optional[Callable[[], float]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._client = client
        self._router = router
        self._notifier = notifier
        self._send_attempts = max(1, send_attempts)
        self._retry_delay = retry_delay_sec
        self._clock = clock or time.time
        self._log = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.ERROR if kwargs.get("error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def check_balance(self, mint: Optional[str], amount: int) -> bool:
        try:
            if mint is None:
                balance = await self._client.get_sol_balance()
            else:
                balance = await self._client.get_token_balance(mint)
        except Exception as exc:
            self._log("solana_check_balance_failed", token=mint or "SOL", error=str(exc))
            return False

        if balance < amount:
            await self._notifier.insufficient_balance(
                asset=mint or "SOL", required=amount, available=balance, address=self._client.address
            )
            return False
        return True

    async def transfer(self, params: TransferParams) -> TransferResult:
        token = params.token
        mint = None if token.is_native else token.token_address
        deadline = int(self._clock()) + PAYMENT_DEADLINE_SECONDS
        self._log(
            "solana_transfer_start",
            trade_id=params.trade_id,
            to_address=params.to_address,
            amount=params.amount,
            token=mint or "native",
        )

        if not await self.check_balance(mint, params.amount):
            raise InsufficientBalanceError("Insufficient balance for transfer")

        fee = await self._router.get_fee_details(params.trade_id)
        payment = SolanaPayment(
            trade_id=params.trade_id,
            to_address=params.to_address,
            token=mint,
            amount=params.amount,
            total_fee=fee.total_amount,
            deadline=deadline,
        )
        signature = await self._send_with_retry(payment)
        self._log("solana_transfer_sent", trade_id=params.trade_id, signature=signature)
        return TransferResult(hash=signature)

    async def _send_with_retry(self, payment: SolanaPayment) -> str:
        delay = self._retry_delay
        for attempt in range(1, self._send_attempts + 1):
            try:
                return await self._client.send_payment(payment)
            except httpx.TransportError as exc:
                if attempt >= self._send_attempts:
                    self._log("solana_transfer_failed", trade_id=payment.trade_id, attempt=attempt, error=str(exc))
                    raise
                self._log("solana_send_retry", trade_id=payment.trade_id, attempt=attempt, retry_in=delay)
                await asyncio.sleep(delay)
                delay *= 2
            except Exception as exc:
                self._log("solana_transfer_failed", trade_id=payment.trade_id, attempt=attempt, error=str(exc))
                raise
        raise RuntimeError("unreachable")
