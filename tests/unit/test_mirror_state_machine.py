"""
Mirror lifecycle: terminal-state idempotence, order id protection and the
pre-order fund guards.
"""
from decimal import Decimal

import pytest

from copytrader.domain.models import MirrorStatus, OrderResult, OrderSpec, TradeSide
from copytrader.exceptions import InsufficientFundsError, InvariantError
from copytrader.execution.state_machine import (
    LOW_FUND_MESSAGE,
    MISSING_ORDER_ID_MESSAGE,
    MirrorStateMachine,
    can_transition,
    is_placeholder_order_id,
)

ORDER = OrderSpec(
    pair="BTC_USDT",
    side=TradeSide.BUY,
    quantity=Decimal("0.005"),
    price=Decimal("45000"),
    leverage=3,
)


def test_transition_table():
    assert can_transition(MirrorStatus.PENDING, MirrorStatus.EXECUTED)
    assert can_transition(MirrorStatus.PENDING, MirrorStatus.FAILED)
    for terminal in (MirrorStatus.EXECUTED, MirrorStatus.FAILED):
        for target in MirrorStatus:
            assert not can_transition(terminal, target)


@pytest.mark.parametrize("order_id", [None, "", "  ", "unknown", "None", "NULL"])
def test_placeholder_order_ids(order_id):
    assert is_placeholder_order_id(order_id)


def test_real_order_id_is_not_placeholder():
    assert not is_placeholder_order_id("a1b2-c3")


@pytest.mark.asyncio
async def test_mark_executed_writes_fill(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    applied = await machine.mark_executed(
        "m1", OrderResult(success=True, order_id="O1", executed_price=Decimal("45010")), ORDER
    )

    row = mirror_store.rows["m1"]
    assert applied is True
    assert row.status is MirrorStatus.EXECUTED
    assert row.venue_order_id == "O1"
    assert row.executed_price == Decimal("45010")
    assert row.executed_quantity == Decimal("0.005")
    assert row.executed_leverage == Decimal("3")
    assert row.executed_at is not None


@pytest.mark.asyncio
async def test_missing_executed_price_falls_back_to_order_price(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    await machine.mark_executed("m1", OrderResult(success=True, order_id="O1"), ORDER)

    assert mirror_store.rows["m1"].executed_price == Decimal("45000")


@pytest.mark.asyncio
async def test_executed_is_idempotent_and_order_id_never_overwritten(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    assert await machine.mark_executed("m1", OrderResult(success=True, order_id="O1"), ORDER)
    assert not await machine.mark_executed("m1", OrderResult(success=True, order_id="O2"), ORDER)
    assert not await machine.mark_failed("m1", "late failure")

    row = mirror_store.rows["m1"]
    assert row.status is MirrorStatus.EXECUTED
    assert row.venue_order_id == "O1"
    assert row.error_message is None


@pytest.mark.asyncio
async def test_failed_is_terminal(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    assert await machine.mark_failed("m1", "Invalid API credentials")
    assert not await machine.mark_executed("m1", OrderResult(success=True, order_id="O1"), ORDER)

    row = mirror_store.rows["m1"]
    assert row.status is MirrorStatus.FAILED
    assert row.error_message == "Invalid API credentials"
    assert row.venue_order_id is None


@pytest.mark.asyncio
async def test_placeholder_order_id_marks_failed(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    applied = await machine.mark_executed("m1", OrderResult(success=True, order_id="unknown"), ORDER)

    row = mirror_store.rows["m1"]
    assert applied is False
    assert row.status is MirrorStatus.FAILED
    assert row.error_message == MISSING_ORDER_ID_MESSAGE


@pytest.mark.asyncio
async def test_failed_needs_a_message(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    machine = MirrorStateMachine(mirror_store)

    with pytest.raises(InvariantError):
        await machine.mark_failed("m1", "   ")
    assert mirror_store.rows["m1"].status is MirrorStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_mirror_is_invariant_error(mirror_store):
    with pytest.raises(InvariantError):
        await MirrorStateMachine(mirror_store).mark_failed("nope", "boom")


@pytest.mark.asyncio
async def test_executed_with_failed_result_is_invariant_error(mirror_store, pending_mirror):
    await mirror_store.create(pending_mirror)
    with pytest.raises(InvariantError):
        await MirrorStateMachine(mirror_store).mark_executed("m1", OrderResult(success=False), ORDER)


class TestFundGuards:
    def test_low_fund_block(self, follower_factory):
        assert MirrorStateMachine.low_fund_block(follower_factory(low_fund=True)) == LOW_FUND_MESSAGE
        assert MirrorStateMachine.low_fund_block(follower_factory()) is None

    @pytest.mark.asyncio
    async def test_margin_with_buffer_covered(self, mirror_store, follower_factory):
        follower = follower_factory(wallet_balance=Decimal("82.5"))
        # 75 * 1.10 = 82.5 exactly
        await MirrorStateMachine(mirror_store).check_margin(follower, Decimal("75"))

    @pytest.mark.asyncio
    async def test_margin_below_buffer_rejected(self, mirror_store, follower_factory):
        follower = follower_factory(wallet_balance=Decimal("80"))
        with pytest.raises(InsufficientFundsError, match="Insufficient funds"):
            await MirrorStateMachine(mirror_store).check_margin(follower, Decimal("75"))

    @pytest.mark.asyncio
    async def test_balance_looked_up_from_follower_store(
        self, mirror_store, follower_factory, in_memory_follower_store
    ):
        stored = follower_factory(wallet_balance=Decimal("10"))
        store = in_memory_follower_store([stored])
        machine = MirrorStateMachine(mirror_store, follower_store=store)

        with pytest.raises(InsufficientFundsError):
            await machine.check_margin(follower_factory(), Decimal("75"))

    @pytest.mark.asyncio
    async def test_unknown_balance_skips_check(self, mirror_store, follower_factory):
        await MirrorStateMachine(mirror_store).check_margin(follower_factory(), Decimal("1000000"))
