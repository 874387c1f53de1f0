import pytest

from pmm_settlement.rebalancing.errors import (
    DuplicateRebalancingError,
    ImmutableFieldError,
    InvalidTransitionError,
    RebalancingNotFoundError,
)
from pmm_settlement.rebalancing.models import CreateRebalancingInput, RebalancingStatus
from pmm_settlement.rebalancing.service import RebalancingService
from pmm_settlement.rebalancing.store import InMemoryRebalancingStore


@pytest.mark.asyncio
async def test_create_starts_pending_with_random_id(service):
    record = await service.create(CreateRebalancingInput(trade_hash="0xt", amount="1000"))
    assert record.status == RebalancingStatus.PENDING
    assert record.retry_count == 0
    assert record.rebalancing_id.startswith("0x") and len(record.rebalancing_id) == 34
    assert record.trade_completed_at_ms == record.created_at_ms


@pytest.mark.asyncio
async def test_one_record_per_trade_hash(service):
    await service.create(CreateRebalancingInput(trade_hash="0xt", amount="1000"))
    with pytest.raises(DuplicateRebalancingError):
        await service.create(CreateRebalancingInput(trade_hash="0xt", amount="1000"))
    assert await service.create_if_absent(CreateRebalancingInput(trade_hash="0xt", amount="1")) is None


@pytest.mark.asyncio
async def test_real_amount_is_write_once(service, create_record):
    record = await create_record()
    record = await service.update_status(record.id, RebalancingStatus.MEMPOOL_VERIFIED, real_amount=5000)
    assert record.real_amount == "5000"

    # writing the same value again is a no-op
    await service.update_fields(record.id, real_amount="5000")
    with pytest.raises(ImmutableFieldError):
        await service.update_fields(record.id, real_amount="6000")
    assert (await service.get(record.id)).real_amount == "5000"


@pytest.mark.asyncio
async def test_invalid_transition_is_rejected(service, create_record):
    record = await create_record()
    with pytest.raises(InvalidTransitionError):
        await service.update_status(record.id, RebalancingStatus.DEPOSIT_SUBMITTED)
    assert (await service.get(record.id)).status == RebalancingStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_fields_are_rejected(service, create_record):
    record = await create_record()
    with pytest.raises(ValueError):
        await service.update_fields(record.id, retry_count=9)


@pytest.mark.asyncio
async def test_missing_record(service):
    with pytest.raises(RebalancingNotFoundError):
        await service.get(404)


@pytest.mark.asyncio
async def test_retry_bumps_count_and_returns_to_pending(service, create_record):
    record = await create_record()
    await service.mark_failed(record.id, "quote failed")
    assert await service.retry(record.id) == 1

    record = await service.get(record.id)
    assert record.status == RebalancingStatus.PENDING
    assert record.retry_count == 1
    assert record.error == "quote failed"


@pytest.mark.asyncio
async def test_retry_requires_failed(service, create_record):
    record = await create_record(status=RebalancingStatus.QUOTE_ACCEPTED)
    with pytest.raises(InvalidTransitionError):
        await service.retry(record.id)


class FlakyStore(InMemoryRebalancingStore):
    """Raises on the next persisted write when `fail_next` is set."""

    fail_next = False

    async def _persist(self, records, next_id):
        if self.fail_next:
            self.fail_next = False
            raise OSError("write failed")


@pytest.mark.asyncio
async def test_retry_is_a_single_write():
    store = FlakyStore()
    service = RebalancingService(store)
    record = await service.create(CreateRebalancingInput(trade_hash="0xa", amount="1"))
    await service.mark_failed(record.id, "quote failed")

    store.fail_next = True
    with pytest.raises(OSError):
        await service.retry(record.id)
    record = await service.get(record.id)
    assert record.status == RebalancingStatus.FAILED
    assert record.retry_count == 0

    # the next sweep gets a clean first retry, not a double bump
    assert await service.retry(record.id) == 1


@pytest.mark.asyncio
async def test_terminal_record_cannot_be_failed(service, create_record):
    record = await create_record()
    await service.mark_stuck(record.id, "too old")
    with pytest.raises(InvalidTransitionError):
        await service.mark_failed(record.id, "late failure")
