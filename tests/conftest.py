"""
Shared fixtures and mock collaborators for the settlement engine tests.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pytest

from pmm_settlement.config.config import Settings
from pmm_settlement.infra.btc_wallet import BtcSendResult
from pmm_settlement.infra.swap_client import SwapQuote, SwapStatusResponse
from pmm_settlement.rebalancing.models import CreateRebalancingInput, RebalancingStatus
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.rebalancing.store import InMemoryRebalancingStore

VAULT = "tb1qvaultaddress000000000000000000000000"
DEPOSIT = "bc1qdepositaddress0000000000000000000000"


class MockNotifier:
    """Records every notification as (method, kwargs)."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        async def record(**kwargs: Any) -> bool:
            self.calls.append((name, kwargs))
            return True

        return record

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]


@dataclass
class MockTransactions:
    """Esplora stand-in keyed by tx id."""
    txs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    lookups: List[str] = field(default_factory=list)

    async def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        self.lookups.append(tx_id)
        return self.txs.get(tx_id)


@dataclass
class MockQueue:
    """WorkQueue stand-in with the same idempotency-key behaviour."""
    jobs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    async def add(self, payload: Dict[str, Any], job_id: str) -> bool:
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = dict(payload)
        return True


@dataclass
class MockPrices:
    price: float = 50_000.0
    error: Optional[Exception] = None

    async def get_btc_price(self) -> float:
        if self.error:
            raise self.error
        return self.price


@dataclass
class MockSwaps:
    """Swap venue stand-in covering quotes, deposits and status polls."""
    amount_out: str = "49500000000"
    quote_error: Optional[Exception] = None
    deposit_error: Optional[Exception] = None
    statuses: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    quote_requests: List[Any] = field(default_factory=list)
    deposits: List[Tuple[str, str]] = field(default_factory=list)

    async def request_quote(self, request: Any, session_id: Optional[str] = None) -> SwapQuote:
        self.quote_requests.append(request)
        if self.quote_error:
            raise self.quote_error
        return SwapQuote.from_response({
            "quote": {
                "depositAddress": DEPOSIT,
                "amountIn": str(request.amount),
                "amountOut": self.amount_out,
                "amountInUsd": "50000.00",
                "amountOutUsd": "49500.00",
            }
        })

    async def submit_deposit(self, tx_hash: str, deposit_address: str) -> None:
        self.deposits.append((tx_hash, deposit_address))
        if self.deposit_error:
            raise self.deposit_error

    async def get_status(self, deposit_address: str, deposit_memo: Optional[str] = None) -> SwapStatusResponse:
        return SwapStatusResponse.from_response(self.statuses.get(deposit_address, {"status": "PENDING_DEPOSIT"}))


@dataclass
class MockWallet:
    address: str = "bc1qpmmwallet000000000000000000000000000"
    balance: int = 10_000_000
    tx_id: str = "ab" * 32
    send_error: Optional[Exception] = None
    sends: List[Tuple[str, int, Optional[str]]] = field(default_factory=list)

    async def get_balance(self) -> int:
        return self.balance

    async def send_btc(self, to_address: str, amount: int, op_return_data: Optional[str] = None) -> BtcSendResult:
        if self.send_error:
            raise self.send_error
        self.sends.append((to_address, amount, op_return_data))
        return BtcSendResult(tx_id=self.tx_id, fee_sats=250)


@pytest.fixture
def notifier():
    return MockNotifier()


@pytest.fixture
def store():
    return InMemoryRebalancingStore()


@pytest.fixture
def service(store):
    return RebalancingService(store)


@pytest.fixture
def create_record(service):
    """Create a record and optionally walk it to a status through valid transitions."""
    path = [
        RebalancingStatus.MEMPOOL_VERIFIED,
        RebalancingStatus.QUOTE_REQUESTED,
        RebalancingStatus.QUOTE_ACCEPTED,
        RebalancingStatus.DEPOSIT_SUBMITTED,
        RebalancingStatus.SWAP_PROCESSING,
    ]

    async def _create(
        trade_hash: str = "0xtrade1",
        amount: str = "100000000",
        status: RebalancingStatus = RebalancingStatus.PENDING,
        tx_id: Optional[str] = "tx-settle-1",
        **fields: Any,
    ):
        record = await service.create(CreateRebalancingInput(
            trade_hash=trade_hash,
            trade_id=trade_hash,
            amount=amount,
            tx_id=tx_id,
            vault_address=VAULT,
        ))
        if status != RebalancingStatus.PENDING:
            for step in path[: path.index(status) + 1]:
                record = await service.update_status(record.id, step)
        if fields:
            record = await service.update_fields(record.id, **fields)
        return record

    return _create


@pytest.fixture
def make_settings():
    def _make(**overrides: Any) -> Settings:
        base: Dict[str, Any] = dict(
            rebalance_enabled=True,
            max_retry_duration_hours=24,
            slippage_threshold_bps=300,
            slippage_high_warning_bps=100,
            near_base_url="https://1click.test",
            near_api_key="key",
            near_slippage_tolerance_bps=100,
            near_referral="optimex",
            near_origin_asset="nep141:btc.omft.near",
            near_destination_asset="nep141:usdc.omft.near",
            near_recipient="0x000000000000000000000000000000000000dEaD",
            btc_skip_confirm=False,
            btc_timeout_ms=10_000,
            btc_max_retries=3,
            btc_retry_delay_ms=1_000,
            btc_esplora_urls=["https://esplora.test/api"],
            pmm_btc_address="bc1qpmm",
            btc_wallet_url="https://wallet.test",
            price_api_url="https://price.test",
            http_timeout=10.0,
            evm_rpc_urls={},
            payment_addresses={},
            router_api_url=None,
            rpc_timeout=15.0,
            pmm_evm_private_key=None,
            liquidation_enabled=False,
            liquidation_contract_address=None,
            liquidation_network_id=None,
            liquidation_approver_keys=[],
        )
        base.update(overrides)
        return Settings(**base)

    return _make
