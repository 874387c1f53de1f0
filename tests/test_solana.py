import json
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
import pytest

from pmm_settlement.infra.solana_client import HttpSolanaClient, SolanaPayment, SolanaRpcError
from pmm_settlement.settlement.errors import InsufficientBalanceError
from pmm_settlement.settlement.models import Token, TransferParams
from pmm_settlement.settlement.router import FeeDetails
from pmm_settlement.settlement.strategies import SolanaTransferStrategy

MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TRADE_ID = "0x" + "ab" * 32


def _params(token_address: str = MINT, amount: int = 2_000_000) -> TransferParams:
    return TransferParams(
        to_address="7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU",
        amount=amount,
        token=Token(
            network_id="solana",
            network_type="SOLANA",
            token_address=token_address,
            token_symbol="USDC",
            token_decimals=6,
        ),
        trade_id=TRADE_ID,
    )


@dataclass
class MockSolana:
    address: str = "PmmSolanaAddress1111111111111111111111111"
    sol_balance: int = 10_000_000_000
    token_balance: int = 5_000_000
    failures: List[Exception] = field(default_factory=list)
    payments: List[SolanaPayment] = field(default_factory=list)
    balance_mints: List[Optional[str]] = field(default_factory=list)

    async def get_sol_balance(self) -> int:
        self.balance_mints.append(None)
        return self.sol_balance

    async def get_token_balance(self, mint: str) -> int:
        self.balance_mints.append(mint)
        return self.token_balance

    async def send_payment(self, payment: SolanaPayment) -> str:
        self.payments.append(payment)
        if self.failures:
            raise self.failures.pop(0)
        return "5igSignature"


class MockRouter:
    async def get_fee_details(self, trade_id: str) -> FeeDetails:
        return FeeDetails(total_amount=2_500)


def _strategy(client, notifier, **kwargs):
    return SolanaTransferStrategy(
        client, MockRouter(), notifier, retry_delay_sec=0, clock=lambda: 1_000.0, log_event=lambda *a, **k: None, **kwargs,
    )


@pytest.mark.asyncio
async def test_token_payment(notifier):
    client = MockSolana()
    result = await _strategy(client, notifier).transfer(_params())

    assert result.hash == "5igSignature"
    (payment,) = client.payments
    assert payment.token == MINT
    assert payment.total_fee == 2_500
    assert payment.deadline == 1_000 + 3600
    assert client.balance_mints == [MINT]


@pytest.mark.asyncio
async def test_native_payment_checks_sol_balance(notifier):
    client = MockSolana()
    await _strategy(client, notifier).transfer(_params(token_address="native", amount=1_000))
    assert client.balance_mints == [None]
    assert client.payments[0].token is None


@pytest.mark.asyncio
async def test_short_balance_alerts_and_refuses(notifier):
    client = MockSolana(token_balance=1)
    with pytest.raises(InsufficientBalanceError):
        await _strategy(client, notifier).transfer(_params())
    assert client.payments == []
    assert notifier.names() == ["insufficient_balance"]


@pytest.mark.asyncio
async def test_transport_errors_are_retried_with_same_payment(notifier):
    client = MockSolana(failures=[httpx.ConnectError("reset"), httpx.ReadTimeout("slow")])
    result = await _strategy(client, notifier).transfer(_params())

    assert result.hash == "5igSignature"
    assert len(client.payments) == 3
    assert len({p.to_payload()["idempotencyKey"] for p in client.payments}) == 1


@pytest.mark.asyncio
async def test_signer_rejection_is_not_retried(notifier):
    client = MockSolana(failures=[ValueError("bad mint")])
    with pytest.raises(ValueError):
        await _strategy(client, notifier).transfer(_params())
    assert len(client.payments) == 1


@pytest.mark.asyncio
async def test_retries_are_bounded(notifier):
    client = MockSolana(failures=[httpx.ConnectError("down")] * 3)
    with pytest.raises(httpx.ConnectError):
        await _strategy(client, notifier, send_attempts=2).transfer(_params())
    assert len(client.payments) == 2


class TestHttpSolanaClient:
    def _client(self, rpc_handler, signer_handler=None):
        rpc = httpx.AsyncClient(transport=httpx.MockTransport(rpc_handler), base_url="https://sol.test")
        signer = httpx.AsyncClient(
            transport=httpx.MockTransport(signer_handler or (lambda r: httpx.Response(500))),
            base_url="https://signer.test",
        )
        return HttpSolanaClient("https://sol.test", "https://signer.test", "PmmAddr", rpc_client=rpc, signer_client=signer)

    @pytest.mark.asyncio
    async def test_balances(self):
        def rpc(request):
            body = json.loads(request.content)
            if body["method"] == "getBalance":
                return httpx.Response(200, json={"result": {"value": 42}})
            account = {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": "700"}}}}}}
            return httpx.Response(200, json={"result": {"value": [account, account]}})

        client = self._client(rpc)
        assert await client.get_sol_balance() == 42
        assert await client.get_token_balance(MINT) == 1_400

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        client = self._client(lambda r: httpx.Response(200, json={"error": {"code": -32602, "message": "bad"}}))
        with pytest.raises(SolanaRpcError):
            await client.get_sol_balance()

    @pytest.mark.asyncio
    async def test_send_payment(self):
        seen = {}

        def signer(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"signature": "sig123"})

        client = self._client(lambda r: httpx.Response(500), signer)
        payment = SolanaPayment(TRADE_ID, "Dest", MINT, 100, 5, 2_000)
        assert await client.send_payment(payment) == "sig123"
        assert seen["idempotencyKey"] == TRADE_ID
        assert seen["amount"] == "100"
