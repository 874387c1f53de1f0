from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from pmm_settlement.infra.trade_client import InMemoryTradeStore, Trade, TradeStatus
from pmm_settlement.processors.settlement_processor import (
    SettlementSubmitJob,
    SettlementSubmitProcessor,
    SettlementTransferJob,
    SettlementTransferProcessor,
    settlement_submit_job_id,
)
from pmm_settlement.processors.work_queue import WorkQueue
from pmm_settlement.settlement.models import Token, TransferParams, TransferResult
from pmm_settlement.settlement.multisig import Eip712Domain
from pmm_settlement.settlement.router import PmmSelection
from pmm_settlement.settlement.solver import encode_payment_tx_id, make_payment_hash

from conftest import MockQueue

TRADE_ID = "0x" + "ab" * 32
PMM_ID = "pmm-alpha"
NOW = 1_700_000_000
USDC = Token("ethereum", "EVM", "0x" + "aa" * 20, "USDC", 6)
PAY_HASH = "0x" + "ef" * 32
KEY = "0x" + "11" * 32
DOMAIN = Eip712Domain("Signer", "1", 1, "0x" + "cc" * 20)


@dataclass
class FakeRouter:
    selected: str = PMM_ID
    selection_error: Optional[Exception] = None
    token_lookups: List[tuple] = field(default_factory=list)

    async def get_pmm_selection(self, trade_id: str) -> PmmSelection:
        if self.selection_error:
            raise self.selection_error
        return PmmSelection(
            selected_pmm_id=self.selected,
            amount_out=5_000_000,
            to_address="0x" + "bb" * 20,
            to_network_id="ethereum",
            to_token_address=USDC.token_address,
        )

    async def get_token(self, network_id: str, token_address: str) -> Token:
        self.token_lookups.append((network_id, token_address))
        return USDC

    async def get_signer_domain(self) -> Eip712Domain:
        return DOMAIN


@dataclass
class FakeDispatcher:
    error: Optional[Exception] = None
    calls: List[tuple] = field(default_factory=list)

    async def transfer(self, params: TransferParams, network_type: str, trade_type: str) -> TransferResult:
        self.calls.append((params, network_type, trade_type))
        if self.error:
            raise self.error
        return TransferResult(hash=PAY_HASH)


@dataclass
class FakeSolver:
    error: Optional[Exception] = None
    requests: List[Dict[str, Any]] = field(default_factory=list)

    async def submit_settlement(self, request: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(request)
        if self.error:
            raise self.error
        return {"status": "accepted"}


@pytest.fixture
def trades():
    return InMemoryTradeStore([Trade(TRADE_ID, "1000", trade_deadline=NOW + 600)])


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def submit_queue():
    return MockQueue()


@pytest.fixture
def processor(trades, router, dispatcher, submit_queue):
    return SettlementTransferProcessor(
        trades, router, dispatcher, PMM_ID,
        submit_queue=submit_queue, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )


def _job():
    return SettlementTransferJob(trade_id=TRADE_ID).to_dict()


@pytest.mark.asyncio
async def test_pays_user_and_queues_submission(processor, trades, dispatcher, submit_queue):
    assert await processor.process(_job()) == PAY_HASH

    params, network_type, trade_type = dispatcher.calls[0]
    assert (params.to_address, params.amount, params.token, params.trade_id) == ("0x" + "bb" * 20, 5_000_000, USDC, TRADE_ID)
    assert (network_type, trade_type) == ("EVM", "swap")
    trade = await trades.find_trade_by_id(TRADE_ID)
    assert trade.status == TradeStatus.SETTLING
    assert trade.payment_tx_id == PAY_HASH
    assert submit_queue.jobs == {
        settlement_submit_job_id(TRADE_ID): {"trade_id": TRADE_ID, "payment_tx_id": PAY_HASH},
    }


@pytest.mark.asyncio
async def test_selection_is_case_insensitive(processor, router, dispatcher):
    router.selected = PMM_ID.upper()
    assert await processor.process(_job()) == PAY_HASH
    assert len(dispatcher.calls) == 1


@pytest.mark.asyncio
async def test_trade_won_by_another_pmm_fails_without_paying(processor, router, trades, dispatcher, submit_queue):
    router.selected = "pmm-other"

    assert await processor.process(_job()) is None

    trade = await trades.find_trade_by_id(TRADE_ID)
    assert trade.status == TradeStatus.FAILED
    assert trade.error == "Trade does not belong to this PMM"
    assert dispatcher.calls == []
    assert submit_queue.jobs == {}


@pytest.mark.asyncio
async def test_expired_trade_fails_without_paying(trades, router, dispatcher, submit_queue):
    processor = SettlementTransferProcessor(
        trades, router, dispatcher, PMM_ID,
        submit_queue=submit_queue, clock=lambda: NOW + 601, log_event=lambda *a, **k: None,
    )

    assert await processor.process(_job()) is None

    trade = await trades.find_trade_by_id(TRADE_ID)
    assert trade.status == TradeStatus.FAILED
    assert trade.error == "Trade has expired"
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_paid_trade_only_requeues_submission(processor, trades, dispatcher, submit_queue):
    await trades.mark_paid(TRADE_ID, PAY_HASH)

    assert await processor.process(_job()) == PAY_HASH

    assert dispatcher.calls == []
    assert settlement_submit_job_id(TRADE_ID) in submit_queue.jobs


@pytest.mark.asyncio
async def test_unknown_and_finished_trades_are_skipped(processor, trades, dispatcher):
    assert await processor.process(SettlementTransferJob(trade_id="0xmissing").to_dict()) is None
    await trades.mark_failed(TRADE_ID, "refunded")
    assert await processor.process(_job()) is None
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_transient_failure_is_retried_by_the_queue(trades, router, dispatcher, submit_queue):
    dispatcher.error = RuntimeError("rpc timeout")
    processor = SettlementTransferProcessor(
        trades, router, dispatcher, PMM_ID,
        submit_queue=submit_queue, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )
    queue = WorkQueue(
        "settlement-transfer", handler=processor.process, max_attempts=3, backoff_sec=0, log_event=lambda *a, **k: None,
    )

    await queue.add(_job(), job_id="settlement-transfer-1")
    await queue.run_pending()

    assert len(dispatcher.calls) == 3
    assert queue.get_stats()["failed"] == 1
    trade = await trades.find_trade_by_id(TRADE_ID)
    assert trade.status == TradeStatus.PAYING
    assert trade.payment_tx_id is None
    # PAYING trades are never offered for payout again after a restart
    assert await trades.find_unpaid_trades() == []


@pytest.mark.asyncio
async def test_retry_after_lookup_failure_still_pays_once(trades, router, dispatcher, submit_queue):
    router.selection_error = RuntimeError("router 502")
    processor = SettlementTransferProcessor(
        trades, router, dispatcher, PMM_ID,
        submit_queue=submit_queue, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )
    with pytest.raises(RuntimeError):
        await processor.process(_job())
    assert (await trades.find_trade_by_id(TRADE_ID)).status == TradeStatus.PENDING

    router.selection_error = None
    assert await processor.process(_job()) == PAY_HASH
    assert len(dispatcher.calls) == 1


@pytest.mark.asyncio
async def test_failed_payment_record_is_not_paid_again(trades, router, dispatcher, submit_queue):
    async def broken_mark_paid(trade_id, payment_tx_id):
        raise OSError("disk full")

    trades.mark_paid = broken_mark_paid
    processor = SettlementTransferProcessor(
        trades, router, dispatcher, PMM_ID,
        submit_queue=submit_queue, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )

    assert await processor.process(_job()) == PAY_HASH
    assert (await trades.find_trade_by_id(TRADE_ID)).status == TradeStatus.PAYING
    assert submit_queue.jobs == {}


# ----------------------------------------------------------------------
# Submission
# ----------------------------------------------------------------------


def _recover(request: Dict[str, Any]) -> str:
    info_hash = make_payment_hash(
        request["tradeIds"], request["signedAt"], request["startIndex"], encode_payment_tx_id(PAY_HASH),
    )
    message = encode_typed_data(full_message={
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "MakePayment": [{"name": "infoHash", "type": "bytes32"}],
        },
        "primaryType": "MakePayment",
        "domain": {"name": "Signer", "version": "1", "chainId": 1, "verifyingContract": "0x" + "cc" * 20},
        "message": {"infoHash": info_hash},
    })
    return Account.recover_message(message, signature=request["signature"])


@pytest.mark.asyncio
async def test_submission_is_signed_by_the_pmm(router):
    solver = FakeSolver()
    processor = SettlementSubmitProcessor(
        router, solver, PMM_ID, KEY, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )

    response = await processor.process(SettlementSubmitJob(trade_id=TRADE_ID, payment_tx_id=PAY_HASH).to_dict())

    assert response == {"status": "accepted"}
    request = solver.requests[0]
    assert request["tradeIds"] == [TRADE_ID]
    assert request["pmmId"] == PMM_ID
    assert request["settlementTx"] == PAY_HASH
    assert request["startIndex"] == 0
    assert request["signedAt"] == NOW
    assert _recover(request) == Account.from_key(KEY).address


@pytest.mark.asyncio
async def test_submission_failure_raises_for_retry(router):
    solver = FakeSolver(error=RuntimeError("solver 503"))
    processor = SettlementSubmitProcessor(
        router, solver, PMM_ID, KEY, clock=lambda: NOW, log_event=lambda *a, **k: None,
    )
    with pytest.raises(RuntimeError):
        await processor.process(SettlementSubmitJob(trade_id=TRADE_ID, payment_tx_id=PAY_HASH).to_dict())


def test_payment_tx_encoding():
    assert encode_payment_tx_id("0x0a0b") == b"\x0a\x0b"
    assert encode_payment_tx_id("ab" * 32) == ("ab" * 32).encode("utf-8")
