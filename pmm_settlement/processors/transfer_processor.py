"""
Transfer stage: send the PMM's BTC to the swap venue's deposit address.

Consumes `rebalance-transfer` jobs for records in QUOTE_ACCEPTED. Before the
send, the attempt is stamped on the record (metadata `transferAttempt` = the
record's retry count); a record already stamped for its current retry count is
never sent again, in this process or after a restart. Once the BTC send
returns a tx id the money has left the wallet, so everything after that point
is best-effort: the deposit hint to the venue may fail, and a failure to
persist DEPOSIT_SUBMITTED is logged as critical but never turns into a resend.
The queue for this stage must run with max_attempts=1.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Optional, Protocol

from pmm_settlement.infra.btc_wallet import BitcoinWallet
from pmm_settlement.monitoring.notifications import RebalanceNotifier
from pmm_settlement.rebalancing.models import Rebalancing, RebalancingStatus, RebalancingTransferJob
from pmm_settlement.rebalancing.service import RebalancingService

log = logging.getLogger("pmm_settlement")

TRANSFER_ATTEMPT_KEY = "transferAttempt"


def transfer_started(record: Rebalancing) -> bool:
    """True once a send was attempted for the record's current retry count."""
    return record.metadata.get(TRANSFER_ATTEMPT_KEY) == record.retry_count


class DepositSubmitter(Protocol):
    async def submit_deposit(self, tx_hash: str, deposit_address: str) -> Any: ...


class TransferProcessor:
    def __init__(
        self,
        service: RebalancingService,
        wallet: BitcoinWallet,
        swaps: DepositSubmitter,
        notifier: RebalanceNotifier,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._service = service
        self._wallet = wallet
        self._swaps = swaps
        self._notifier = notifier
        self._log = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    async def process(self, payload: Dict[str, Any]) -> Optional[str]:
        """Queue handler. Returns the BTC tx id when a send happened, else None."""
        job = RebalancingTransferJob(**payload)
        self._log(
            "rebalance_transfer_start",
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            real_amount=job.real_amount,
            deposit_address=job.deposit_address,
        )

        try:
            record = await self._service.find_by_id(job.id)
            if record is None:
                raise LookupError(f"Rebalancing record not found: {job.rebalancing_id}")
            if record.status != RebalancingStatus.QUOTE_ACCEPTED:
                self._log("rebalance_transfer_skip", rebalancing_id=job.rebalancing_id, status=record.status.value)
                return None
            if transfer_started(record):
                self._log(
                    "rebalance_transfer_unreconciled",
                    level=logging.CRITICAL,
                    rebalancing_id=job.rebalancing_id,
                    retry_count=record.retry_count,
                    deposit_address=job.deposit_address,
                )
                return None

            await self._service.update_fields(
                record.id,
                metadata={**record.metadata, TRANSFER_ATTEMPT_KEY: record.retry_count},
            )
            result = await self._wallet.send_btc(job.deposit_address, int(job.real_amount))
        except Exception as exc:
            await self._handle_send_failure(job, str(exc))
            return None

        tx_id = result.tx_id
        self._log(
            "rebalance_btc_sent",
            rebalancing_id=job.rebalancing_id,
            tx_id=tx_id,
            fee_sats=result.fee_sats,
        )

        try:
            await self._service.update_status(
                job.id,
                RebalancingStatus.DEPOSIT_SUBMITTED,
                near_vault_tx_id=tx_id,
            )
        except Exception as exc:
            # BTC is on its way; manual reconciliation needed, never resend
            self._log(
                "rebalance_transfer_persist_failed",
                level=logging.CRITICAL,
                rebalancing_id=job.rebalancing_id,
                tx_id=tx_id,
                deposit_address=job.deposit_address,
                error=str(exc),
            )
            return tx_id

        await self._submit_deposit(job, tx_id)

        await self._notifier.btc_transferred(
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            real_amount=job.real_amount,
            deposit_address=job.deposit_address,
            tx_id=tx_id,
        )
        self._log(
            "rebalance_transfer_complete",
            rebalancing_id=job.rebalancing_id,
            tx_id=tx_id,
            deposit_address=job.deposit_address,
        )
        return tx_id

    async def _submit_deposit(self, job: RebalancingTransferJob, tx_id: str) -> None:
        try:
            await self._swaps.submit_deposit(tx_id, job.deposit_address)
        except Exception as exc:
            # the venue detects the deposit on its own eventually
            self._log(
                "rebalance_submit_deposit_warning",
                level=logging.WARNING,
                rebalancing_id=job.rebalancing_id,
                tx_id=tx_id,
                error=str(exc),
            )
            return
        self._log("rebalance_submit_deposit_success", rebalancing_id=job.rebalancing_id, tx_id=tx_id)

    async def _handle_send_failure(self, job: RebalancingTransferJob, error: str) -> None:
        self._log(
            "rebalance_transfer_error",
            level=logging.ERROR,
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            error=error,
        )
        try:
            await self._service.mark_failed(job.id, error)
        except Exception as exc:
            self._log(
                "rebalance_mark_failed_error",
                level=logging.ERROR,
                rebalancing_id=job.rebalancing_id,
                error=str(exc),
            )
        await self._notifier.btc_transfer_failed(
            rebalancing_id=job.rebalancing_id,
            trade_hash=job.trade_hash,
            error=error,
        )
