"""
Mirror trade lifecycle.

    pending ──► executed   (terminal)
        └─────► failed     (terminal)

MirrorStateMachine is the single writer of execution outcome. Transitions
out of a terminal state are no-ops, so every entry point is idempotent and
an executed record's venue order id is never overwritten.

It also owns the two pre-order guards:
    - low-fund flag set on the follower        -> failed, venue never called
    - wallet balance < margin * margin_buffer  -> failed, venue never called
"""
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from copytrader import constants
from copytrader.domain.models import (
    ExecutionFill,
    Follower,
    MirrorStatus,
    MirrorTrade,
    OrderResult,
    OrderSpec,
)
from copytrader.exceptions import InsufficientFundsError, InvariantError
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[MirrorStatus, FrozenSet[MirrorStatus]] = {
    MirrorStatus.PENDING: frozenset({MirrorStatus.EXECUTED, MirrorStatus.FAILED}),
    MirrorStatus.EXECUTED: frozenset(),
    MirrorStatus.FAILED: frozenset(),
}

LOW_FUND_MESSAGE = "Insufficient funds: follower wallet balance is below allocated fund"
MISSING_ORDER_ID_MESSAGE = "Exchange accepted the request but returned no order id"


def check_invariant(condition: bool, message: str) -> None:
    """Raise InvariantError (and log critical) when `condition` is false."""
    if not condition:
        logger.critical(f"INVARIANT VIOLATION: {message}")
        raise InvariantError(message)


def is_placeholder_order_id(order_id: Optional[str]) -> bool:
    return order_id is None or order_id.strip().lower() in constants.PLACEHOLDER_ORDER_IDS


def can_transition(current: MirrorStatus, target: MirrorStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class MirrorStateMachine:
    """Applies lifecycle transitions through a MirrorTradeStore."""

    def __init__(self, mirror_store, follower_store=None, margin_buffer: Decimal = constants.MARGIN_BUFFER):
        self._mirrors = mirror_store
        self._followers = follower_store
        self.margin_buffer = Decimal(str(margin_buffer))

    async def _load(self, mirror_id: str) -> MirrorTrade:
        mirror = await self._mirrors.get(mirror_id)
        check_invariant(mirror is not None, f"Mirror trade {mirror_id} does not exist")
        return mirror

    async def mark_executed(self, mirror_id: str, result: OrderResult, order: OrderSpec) -> bool:
        """
        Transition pending -> executed.

        A success result without a real order id is recorded as failed instead.

        Returns:
            True if the record is now executed because of this call.
        """
        mirror = await self._load(mirror_id)
        if not can_transition(mirror.status, MirrorStatus.EXECUTED):
            logger.info(
                "MIRROR_TRANSITION_NOOP",
                mirror_id=mirror_id,
                status=mirror.status.value,
                target=MirrorStatus.EXECUTED.value,
            )
            return False
        check_invariant(result.success, f"mark_executed called with a failed result for {mirror_id}")

        if is_placeholder_order_id(result.order_id):
            logger.warning("MIRROR_PLACEHOLDER_ORDER_ID", mirror_id=mirror_id, order_id=result.order_id)
            await self.mark_failed(mirror_id, MISSING_ORDER_ID_MESSAGE)
            return False

        fill = ExecutionFill(
            venue_order_id=result.order_id,
            executed_price=result.executed_price if result.executed_price is not None else order.price,
            executed_quantity=order.quantity,
            executed_leverage=Decimal(order.leverage),
        )
        applied = await self._mirrors.update_execution(mirror_id, fill)
        if applied:
            logger.info(
                "MIRROR_EXECUTED",
                mirror_id=mirror_id,
                order_id=fill.venue_order_id,
                price=str(fill.executed_price),
                quantity=str(fill.executed_quantity),
                leverage=str(fill.executed_leverage),
            )
        return bool(applied)

    async def mark_failed(self, mirror_id: str, error_message: str) -> bool:
        """
        Transition pending -> failed with a human-readable reason.

        Returns:
            True if the record is now failed because of this call.
        """
        check_invariant(bool(error_message and error_message.strip()), "A failed mirror needs an error message")
        mirror = await self._load(mirror_id)
        if not can_transition(mirror.status, MirrorStatus.FAILED):
            logger.info(
                "MIRROR_TRANSITION_NOOP",
                mirror_id=mirror_id,
                status=mirror.status.value,
                target=MirrorStatus.FAILED.value,
            )
            return False
        applied = await self._mirrors.update_status(mirror_id, MirrorStatus.FAILED, error_message)
        if applied:
            logger.warning("MIRROR_FAILED", mirror_id=mirror_id, error=error_message)
        return bool(applied)

    @staticmethod
    def low_fund_block(follower: Follower) -> Optional[str]:
        """Failure message when the follower is flagged low-fund, else None."""
        return LOW_FUND_MESSAGE if follower.low_fund else None

    async def check_margin(self, follower: Follower, required_margin: Decimal) -> None:
        """
        Raise InsufficientFundsError when the known wallet balance cannot cover
        required_margin * margin_buffer. Skipped when the balance is unknown.
        """
        balance = follower.wallet_balance
        if balance is None and self._followers is not None:
            balance = await self._followers.get_wallet_balance(follower.id)
        if balance is None:
            logger.debug("MARGIN_CHECK_SKIPPED", follower_id=follower.id, reason="balance_unknown")
            return
        needed = required_margin * self.margin_buffer
        if balance < needed:
            raise InsufficientFundsError(
                f"Insufficient funds: balance {balance} USDT is below required margin "
                f"{needed.quantize(Decimal('0.01'))} USDT (incl. {self.margin_buffer} fee buffer)"
            )
