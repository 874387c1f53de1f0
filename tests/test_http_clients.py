import json

import httpx
import pytest

from pmm_settlement.infra.btc_wallet import HttpBitcoinWallet
from pmm_settlement.infra.esplora import EsploraClient
from pmm_settlement.infra.price_oracle import PriceOracle, PriceUnavailableError
from pmm_settlement.infra.swap_client import QuoteRequest, SwapQuoteClient, SwapQuoteError, SwapStatus
from pmm_settlement.infra.trade_client import TradeStatusClient, extract_release_tx_id
from pmm_settlement.settlement.router import RouterClient
from pmm_settlement.settlement.solver import SolverClient


def _client(handler, base_url="https://api.test"):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


TX_DOC = {"txid": "ab" * 32, "status": {"confirmed": True}, "vout": [{"scriptpubkey_address": "bc1qv", "value": 1000}]}


class TestEsplora:
    @pytest.mark.asyncio
    async def test_first_provider_with_an_answer_wins(self):
        missing = _client(lambda request: httpx.Response(404))
        found = _client(lambda request: httpx.Response(200, json=TX_DOC))
        esplora = EsploraClient([], clients=[missing, found])

        assert await esplora.get_transaction("ab" * 32) == TX_DOC

    @pytest.mark.asyncio
    async def test_all_providers_failing_is_not_found(self):
        def broken(request):
            raise httpx.ConnectError("refused", request=request)

        esplora = EsploraClient([], clients=[_client(broken), _client(lambda r: httpx.Response(500))])
        assert await esplora.get_transaction("ab" * 32) is None

    @pytest.mark.asyncio
    async def test_balance_sums_chain_and_mempool(self):
        body = {
            "chain_stats": {"funded_txo_sum": 10_000, "spent_txo_sum": 4_000},
            "mempool_stats": {"funded_txo_sum": 500, "spent_txo_sum": 1_500},
        }
        esplora = EsploraClient([], clients=[_client(lambda r: httpx.Response(200, json=body))])
        assert await esplora.get_balance("bc1qpmm") == 5_000

    @pytest.mark.asyncio
    async def test_balance_unavailable_raises(self):
        esplora = EsploraClient([], clients=[_client(lambda r: httpx.Response(404))])
        with pytest.raises(LookupError):
            await esplora.get_balance("bc1qpmm")

    def test_requires_a_provider(self):
        with pytest.raises(ValueError):
            EsploraClient([])


class TestPriceOracle:
    @pytest.mark.asyncio
    async def test_price_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.params["ids"])
            return httpx.Response(200, json={"bitcoin": {"usd": 64_000.5}})

        oracle = PriceOracle("https://price.test", client=_client(handler))
        assert await oracle.get_btc_price() == 64_000.5
        assert await oracle.get_btc_price() == 64_000.5
        assert calls == ["bitcoin"]

    @pytest.mark.asyncio
    async def test_prices_are_cached_per_coin(self):
        calls = []
        prices = {"bitcoin": 64_000.0, "solana": 150.25}

        def handler(request):
            coin = request.url.params["ids"]
            calls.append(coin)
            return httpx.Response(200, json={coin: {"usd": prices[coin]}})

        oracle = PriceOracle("https://price.test", client=_client(handler))
        assert await oracle.get_price("solana") == 150.25
        assert await oracle.get_btc_price() == 64_000.0
        assert await oracle.get_price("solana") == 150.25
        assert calls == ["solana", "bitcoin"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={"bitcoin": {}}),
        httpx.Response(200, json={"bitcoin": {"usd": 0}}),
        httpx.Response(503),
    ])
    async def test_unusable_answers(self, response):
        oracle = PriceOracle("https://price.test", client=_client(lambda r: response))
        with pytest.raises(PriceUnavailableError):
            await oracle.get_btc_price()


class TestSwapQuoteClient:
    @pytest.mark.asyncio
    async def test_quote_payload(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"quote": {"depositAddress": "bc1qdep", "amountIn": "1000", "amountOut": "640000"}})

        swaps = SwapQuoteClient("https://1click.test", "key", client=_client(handler))
        quote = await swaps.request_quote(
            QuoteRequest(
                amount=1000,
                recipient="0xrecipient",
                refund_to="bc1qpmm",
                origin_asset="nep141:btc.omft.near",
                destination_asset="nep141:usdc.omft.near",
                slippage_tolerance_bps=100,
                referral="optimex",
            ),
            session_id="session-1",
        )

        assert quote.deposit_address == "bc1qdep"
        assert quote.amount_out == "640000"
        assert seen["swapType"] == "FLEX_INPUT"
        assert seen["amount"] == "1000"
        assert seen["refundTo"] == "bc1qpmm"
        assert seen["sessionId"] == "session-1"
        assert seen["deadline"].endswith("Z")

    @pytest.mark.asyncio
    async def test_status_and_http_errors(self):
        def handler(request):
            if request.url.path == "/v0/status":
                assert request.url.params["depositAddress"] == "bc1qdep"
                return httpx.Response(200, json={"status": "PROCESSING"})
            return httpx.Response(401, text="unauthorized")

        swaps = SwapQuoteClient("https://1click.test", None, client=_client(handler))
        assert (await swaps.get_status("bc1qdep")).status == SwapStatus.PROCESSING
        with pytest.raises(SwapQuoteError) as exc_info:
            await swaps.submit_deposit("ab" * 32, "bc1qdep")
        assert exc_info.value.status_code == 401


class TestProtocolClients:
    @pytest.mark.asyncio
    async def test_wallet_send(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"txId": "cd" * 32, "feeSats": 310})

        esplora = EsploraClient([], clients=[_client(lambda r: httpx.Response(404))])
        wallet = HttpBitcoinWallet("https://wallet.test", "bc1qpmm", esplora, client=_client(handler))
        result = await wallet.send_btc("bc1qdep", 5_000, op_return_data="ff" * 32)

        assert result.tx_id == "cd" * 32
        assert result.fee_sats == 310
        assert seen == {"toAddress": "bc1qdep", "amount": "5000", "opReturnData": "ff" * 32}

    @pytest.mark.asyncio
    async def test_router_fee_details(self):
        def handler(request):
            assert request.url.path == "/v1/trades/0xabc/fee-details"
            return httpx.Response(200, json={"data": {"totalAmount": "1500", "pmmFeeAmount": "1000"}})

        router = RouterClient("https://router.test", client=_client(handler))
        fee = await router.get_fee_details("0xabc")
        assert (fee.total_amount, fee.pmm_fee, fee.protocol_fee) == (1500, 1000, 0)

    @pytest.mark.asyncio
    async def test_router_selection_token_and_domain(self):
        bodies = {
            "/v1/trades/0xabc/pmm-selection": {"data": {
                "selectedPmmId": "PMM-A", "amountOut": "2500", "toAddress": "0xuser",
                "toNetworkId": "ethereum", "toTokenAddress": "native",
            }},
            "/v1/tokens/ethereum/native": {"data": {"networkType": "evm", "tokenSymbol": "ETH", "tokenDecimals": 18}},
            "/v1/signer/domain": {"name": "Signer", "version": "1", "chainId": "11155111", "verifyingContract": "0xsig"},
        }
        router = RouterClient("https://router.test", client=_client(lambda r: httpx.Response(200, json=bodies[r.url.path])))

        selection = await router.get_pmm_selection("0xabc")
        assert selection.is_selected("pmm-a")
        assert not selection.is_selected("pmm-b")
        assert (selection.amount_out, selection.to_address) == (2500, "0xuser")

        token = await router.get_token("ethereum", "native")
        assert (token.network_type, token.token_symbol, token.is_native) == ("EVM", "ETH", True)

        domain = await router.get_signer_domain()
        assert (domain.chain_id, domain.verifying_contract) == (11155111, "0xsig")

    @pytest.mark.asyncio
    async def test_solver_submit(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        solver = SolverClient("https://solver.test", client=_client(handler))
        assert await solver.submit_settlement({"tradeIds": ["0xabc"]}) == {"ok": True}
        assert seen == {"path": "/v1/settlements/submit", "body": {"tradeIds": ["0xabc"]}}

        failing = SolverClient("https://solver.test", client=_client(lambda r: httpx.Response(400)))
        with pytest.raises(httpx.HTTPStatusError):
            await failing.submit_settlement({})

    @pytest.mark.asyncio
    async def test_trade_status_unwraps_and_handles_missing(self):
        def handler(request):
            if request.url.path.endswith("/missing"):
                return httpx.Response(404)
            return httpx.Response(200, json={"data": {"status": "SETTLEMENT_CONFIRMED"}})

        trades = TradeStatusClient("https://trades.test", client=_client(handler))
        assert await trades.get_trade_by_id("0xabc") == {"status": "SETTLEMENT_CONFIRMED"}
        assert await trades.get_trade_by_id("missing") is None


@pytest.mark.parametrize("events,expected", [
    ([{"action": "ConfirmSettlement", "inputData": {"releaseTxId": "tx1"}}], "tx1"),
    ([{"action": "Other"}, {"action": "ConfirmSettlement", "input_data": {"release_tx_id": "tx2"}}], "tx2"),
    ([{"action": "ConfirmSettlement", "inputData": {}}], None),
    (None, None),
])
def test_extract_release_tx_id(events, expected):
    assert extract_release_tx_id(events) == expected
