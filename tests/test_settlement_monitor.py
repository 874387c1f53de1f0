from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio

from pmm_settlement.infra.trade_client import InMemoryTradeStore, Trade, TradeStatus, extract_release_tx_id
from pmm_settlement.rebalancing.models import RebalancingStatus
from pmm_settlement.schedulers.settlement_monitor import SettlementMonitorScheduler


@dataclass
class MockTradeStatus:
    trades: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    async def get_trade_by_id(self, trade_id: str) -> Optional[Dict[str, Any]]:
        return self.trades.get(trade_id)


def _confirmed(release_tx_id: Optional[str] = "btc-release-1") -> Dict[str, Any]:
    events = [{"action": "SubmitTrade", "inputData": {}}]
    if release_tx_id is not None:
        events.append({"action": "ConfirmSettlement", "inputData": {"release_tx_id": release_tx_id}})
    return {"status": "SETTLEMENT_CONFIRMED", "events": events}


@pytest_asyncio.fixture
async def trades():
    store = InMemoryTradeStore()
    await store.add(Trade(
        trade_id="0xtrade1",
        amount="100000000",
        status=TradeStatus.SETTLING,
        user_deposit_vault="bc1qvault",
        completed_at_ms=1_700_000_000_000,
    ))
    return store


def _scheduler(trades, remote, service, enabled=True):
    return SettlementMonitorScheduler(
        trades, remote, service, rebalance_enabled=enabled, log_event=lambda *a, **k: None,
    )


class TestExtractReleaseTxId:
    def test_camel_and_snake_case(self):
        assert extract_release_tx_id([{"action": "ConfirmSettlement", "inputData": {"releaseTxId": "a"}}]) == "a"
        assert extract_release_tx_id([{"action": "ConfirmSettlement", "input_data": {"release_tx_id": "b"}}]) == "b"

    def test_missing_event(self):
        assert extract_release_tx_id([{"action": "SubmitTrade"}]) is None
        assert extract_release_tx_id(None) is None


@pytest.mark.asyncio
async def test_confirmed_settlement_completes_trade_and_creates_record(trades, service):
    remote = MockTradeStatus({"0xtrade1": _confirmed()})
    await _scheduler(trades, remote, service).tick()

    trade = await trades.find_trade_by_id("0xtrade1")
    assert trade.status == TradeStatus.COMPLETED
    assert trade.settlement_tx_id == "btc-release-1"

    record = await service.find_by_trade_hash("0xtrade1")
    assert record.status == RebalancingStatus.PENDING
    assert record.tx_id == "btc-release-1"
    assert record.vault_address == "bc1qvault"
    assert record.amount == "100000000"
    assert record.trade_completed_at_ms == 1_700_000_000_000
    assert record.optimex_status == "SETTLEMENT_CONFIRMED"


@pytest.mark.asyncio
async def test_second_pass_does_not_duplicate(trades, service):
    remote = MockTradeStatus({"0xtrade1": _confirmed()})
    scheduler = _scheduler(trades, remote, service)
    trade = await trades.find_trade_by_id("0xtrade1")

    first = await scheduler.create_rebalancing_if_eligible(trade, "btc-release-1", "SETTLEMENT_CONFIRMED")
    second = await scheduler.create_rebalancing_if_eligible(trade, "btc-release-1", "SETTLEMENT_CONFIRMED")
    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_no_record_without_release_tx(trades, service):
    remote = MockTradeStatus({"0xtrade1": _confirmed(release_tx_id=None)})
    await _scheduler(trades, remote, service).tick()
    assert (await trades.find_trade_by_id("0xtrade1")).status == TradeStatus.COMPLETED
    assert await service.find_by_trade_hash("0xtrade1") is None


@pytest.mark.asyncio
async def test_rebalancing_disabled_only_completes_trade(trades, service):
    remote = MockTradeStatus({"0xtrade1": _confirmed()})
    await _scheduler(trades, remote, service, enabled=False).tick()
    assert (await trades.find_trade_by_id("0xtrade1")).status == TradeStatus.COMPLETED
    assert await service.find_by_trade_hash("0xtrade1") is None


@pytest.mark.asyncio
async def test_refunded_settlement_fails_trade(trades, service):
    remote = MockTradeStatus({"0xtrade1": {"status": "REFUNDED", "events": []}})
    await _scheduler(trades, remote, service).tick()
    trade = await trades.find_trade_by_id("0xtrade1")
    assert trade.status == TradeStatus.FAILED
    assert trade.error == "Settlement refunded on-chain"


@pytest.mark.asyncio
async def test_other_statuses_are_ignored(trades, service):
    remote = MockTradeStatus({"0xtrade1": {"status": "SETTLING", "events": []}})
    scheduler = _scheduler(trades, remote, service)
    trade = await trades.find_trade_by_id("0xtrade1")
    assert await scheduler.check_trade(trade) is None
    assert (await trades.find_trade_by_id("0xtrade1")).status == TradeStatus.SETTLING
