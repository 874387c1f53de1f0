import httpx
import pytest

from conftest import VAULT
from pmm_settlement.app import SettlementApp
from pmm_settlement.infra.trade_client import JsonFileTradeStore, Trade, TradeStatus
from pmm_settlement.processors.settlement_processor import settlement_transfer_job_id
from pmm_settlement.rebalancing.models import RebalancingStatus
from pmm_settlement.rebalancing.store import JsonFileRebalancingStore
from pmm_settlement.monitoring.metrics_rich import RichMetrics
from pmm_settlement.settlement.errors import UnsupportedTransferError
from pmm_settlement.settlement.models import Token, TransferParams


def _app(make_settings, tmp_path, **overrides):
    cfg = make_settings(state_dir=str(tmp_path), alert_enabled=False, **overrides)
    return SettlementApp(cfg, metrics=RichMetrics())


@pytest.mark.asyncio
async def test_wallet_enables_pipeline_and_btc_routes(make_settings, tmp_path):
    app = _app(make_settings, tmp_path)

    assert app.pipeline_enabled
    assert app.dispatcher.supported() == ["BTC/swap", "TBTC/swap"]
    assert [s.name for s in app.schedulers] == ["nonce-refresh", "rebalance-pending", "rebalance-swap-status", "balance-monitor"]
    await app.stop()


@pytest.mark.asyncio
async def test_without_wallet_only_housekeeping_runs(make_settings, tmp_path):
    app = _app(make_settings, tmp_path, btc_wallet_url=None, trade_api_url="https://trades.test")

    assert not app.pipeline_enabled
    assert app.dispatcher.supported() == []
    assert [s.name for s in app.schedulers] == ["nonce-refresh", "settlement-monitor"]

    params = TransferParams("bc1qdest", 1_000, Token("bitcoin", "BTC", "native", "BTC", 8), "0x" + "ab" * 32)
    with pytest.raises(UnsupportedTransferError):
        await app.transfer(params, "BTC", "swap")
    await app.stop()


@pytest.mark.asyncio
async def test_evm_routes_need_key_rpc_and_router(make_settings, tmp_path):
    app = _app(
        make_settings,
        tmp_path,
        pmm_evm_private_key="0x" + "11" * 32,
        evm_rpc_urls={"ethereum": "https://eth.test"},
        router_api_url="https://router.test",
        payment_addresses={"ethereum": "0x" + "dd" * 20},
    )
    assert app.dispatcher.supported() == ["BTC/swap", "EVM/liquid", "EVM/swap", "TBTC/swap"]
    await app.stop()


@pytest.mark.asyncio
async def test_start_and_stop_with_empty_state(make_settings, tmp_path):
    app = _app(make_settings, tmp_path)
    await app.start()

    assert all(s.is_running for s in app.schedulers)
    stats = app.get_stats()
    assert set(stats["queues"]) == {
        "rebalance-quote", "rebalance-transfer", "settlement-transfer", "settlement-submit",
    }

    await app.stop()
    assert not any(s.is_running for s in app.schedulers)


TRADE_ID = "0x" + "ab" * 32
RELEASE_TX = "cd" * 32


@pytest.mark.asyncio
async def test_registered_settling_trade_becomes_a_rebalancing(make_settings, tmp_path):
    app = _app(make_settings, tmp_path, trade_api_url="https://trades.test")
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"data": {
            "status": "SETTLEMENT_CONFIRMED",
            "events": [{"action": "ConfirmSettlement", "inputData": {"releaseTxId": RELEASE_TX}}],
        }})

    app.trade_status.client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://trades.test")

    queued = await app.register_trade(Trade(
        TRADE_ID, "100000000", status=TradeStatus.SETTLING, user_deposit_vault=VAULT, payment_tx_id="0xpaid",
    ))
    assert queued is False

    monitor = next(s for s in app.schedulers if s.name == "settlement-monitor")
    assert await monitor.run_once()

    assert seen == [f"/v1/trades/{TRADE_ID}"]
    record = await app.service.find_by_trade_hash(TRADE_ID)
    assert record.status == RebalancingStatus.PENDING
    assert record.tx_id == RELEASE_TX
    assert record.vault_address == VAULT

    # both tables survive a restart
    trades = JsonFileTradeStore(str(tmp_path))
    records = JsonFileRebalancingStore(str(tmp_path))
    assert await trades.load() == 1
    assert await records.load() == 1
    assert (await trades.find_trade_by_id(TRADE_ID)).status == TradeStatus.COMPLETED
    assert (await records.find_by_trade_hash(TRADE_ID)).tx_id == RELEASE_TX
    await app.stop()


@pytest.mark.asyncio
async def test_pending_trade_is_queued_for_payout(make_settings, tmp_path):
    app = _app(make_settings, tmp_path, router_api_url="https://router.test", pmm_id="pmm-1")
    assert app.payouts_enabled

    assert await app.register_trade(Trade(TRADE_ID, "1000"))
    job = app.settlement_transfer_queue.get_job(settlement_transfer_job_id(TRADE_ID))
    assert job.payload == {"trade_id": TRADE_ID}
    # a second request for the same trade is deduplicated
    assert not await app.request_settlement(TRADE_ID)
    await app.stop()

    restarted = _app(make_settings, tmp_path, router_api_url="https://router.test", pmm_id="pmm-1")
    await restarted.trades.load()
    assert await restarted.resume_unpaid_trades() == 1
    assert restarted.settlement_transfer_queue.get_job(settlement_transfer_job_id(TRADE_ID)) is not None
    await restarted.stop()


@pytest.mark.asyncio
async def test_payouts_need_router_and_pmm_id(make_settings, tmp_path):
    app = _app(make_settings, tmp_path, router_api_url="https://router.test")

    assert not app.payouts_enabled
    assert not await app.register_trade(Trade(TRADE_ID, "1000"))
    assert (await app.trades.find_trade_by_id(TRADE_ID)).status == TradeStatus.PENDING
    assert app.settlement_transfer_queue.get_stats()["known"] == 0
    await app.stop()
