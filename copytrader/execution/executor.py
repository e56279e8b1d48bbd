"""
Order executors.

OrderExecutor is the only path to the venue's order endpoint. The concrete
strategy is chosen once at startup by build_order_executor:

    LiveOrderExecutor       rate gate + retry/backoff around VenueClient.create_order
    SimulatedOrderExecutor  dry run: rate gate, weighted random outcome, no network

Both return an OrderResult; venue failures become success=False with the
classified message, never an exception.
"""
import asyncio
import random
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from copytrader import constants
from copytrader.config.config import ExecutionConfig
from copytrader.domain.models import Credentials, OrderResult, OrderSpec
from copytrader.exceptions import CopyTradingError
from copytrader.execution.error_classification import classify_error
from copytrader.execution.rate_limiter import CallIntervalGate
from copytrader.monitoring.logger import get_logger
from copytrader.utils.retry import call_with_retry

logger = get_logger(__name__)


class OrderExecutor(ABC):
    """Places one order for one follower."""

    def __init__(self, gate: CallIntervalGate):
        self.gate = gate

    @property
    @abstractmethod
    def mode(self) -> str:
        ...

    @abstractmethod
    async def execute(self, follower_id: str, credentials: Credentials, order: OrderSpec) -> OrderResult:
        ...


class LiveOrderExecutor(OrderExecutor):
    mode = "live"

    def __init__(
        self,
        venue,
        gate: CallIntervalGate,
        max_attempts: int = constants.MAX_RETRIES,
        base_delay_ms: int = constants.RETRY_BASE_DELAY_MS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(gate)
        self._venue = venue
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self._sleep = sleep

    async def execute(self, follower_id: str, credentials: Credentials, order: OrderSpec) -> OrderResult:
        try:
            return await call_with_retry(
                lambda: self._venue.create_order(credentials, order),
                max_attempts=self.max_attempts,
                base_delay_ms=self.base_delay_ms,
                classify=classify_error,
                before_attempt=lambda: self.gate.acquire(follower_id),
                sleep=self._sleep,
                op_name="create_order",
                follower_id=follower_id,
                pair=order.pair,
            )
        except CopyTradingError as e:
            return OrderResult(success=False, message=classify_error(e).message)


class SimulatedOrderExecutor(OrderExecutor):
    """Dry-run executor. Still paced by the rate gate; never retries."""

    mode = "dry_run"

    def __init__(
        self,
        gate: CallIntervalGate,
        success_rate: float = constants.DRY_RUN_SUCCESS_RATE,
        min_delay_seconds: float = constants.DRY_RUN_MIN_DELAY_SECONDS,
        max_delay_seconds: float = constants.DRY_RUN_MAX_DELAY_SECONDS,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(gate)
        self.success_rate = success_rate
        self.min_delay = min_delay_seconds
        self.max_delay = max(max_delay_seconds, min_delay_seconds)
        self._rng = rng or random.Random()
        self._sleep = sleep

    def simulate_execution_price(self, price: Decimal) -> Decimal:
        """Price moved by up to +/-0.1%."""
        jitter = Decimal(str(self._rng.uniform(-1.0, 1.0))) * constants.DRY_RUN_PRICE_JITTER
        return price + price * jitter

    async def execute(self, follower_id: str, credentials: Credentials, order: OrderSpec) -> OrderResult:
        await self.gate.acquire(follower_id)
        await self._sleep(self._rng.uniform(self.min_delay, self.max_delay))

        if self._rng.random() < self.success_rate:
            order_id = f"dryrun-{uuid.uuid4()}"
            price = self.simulate_execution_price(order.price)
            logger.info(
                "DRY_RUN_ORDER_FILLED",
                follower_id=follower_id,
                pair=order.pair,
                order_id=order_id,
                price=str(price),
            )
            return OrderResult(success=True, order_id=order_id, message="Simulated fill", executed_price=price)

        reason = self._rng.choice(constants.DRY_RUN_FAILURE_REASONS)
        logger.info("DRY_RUN_ORDER_FAILED", follower_id=follower_id, pair=order.pair, reason=reason)
        return OrderResult(success=False, message=f"Simulated failure: {reason}")


def build_order_executor(
    config: ExecutionConfig,
    venue=None,
    gate: Optional[CallIntervalGate] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> OrderExecutor:
    """Select the executor strategy once, from config.dry_run."""
    gate = gate or CallIntervalGate(config.min_api_interval_ms)
    if config.dry_run:
        logger.info("ORDER_EXECUTOR_SELECTED", mode="dry_run", success_rate=config.dry_run_success_rate)
        return SimulatedOrderExecutor(
            gate,
            success_rate=config.dry_run_success_rate,
            min_delay_seconds=config.dry_run_min_delay_seconds,
            max_delay_seconds=config.dry_run_max_delay_seconds,
            rng=rng,
            sleep=sleep,
        )
    if venue is None:
        raise ValueError("A venue client is required when dry_run is disabled")
    logger.info(
        "ORDER_EXECUTOR_SELECTED",
        mode="live",
        max_retries=config.max_retries,
        retry_base_delay_ms=config.retry_base_delay_ms,
        min_api_interval_ms=config.min_api_interval_ms,
    )
    return LiveOrderExecutor(
        venue,
        gate,
        max_attempts=config.max_retries,
        base_delay_ms=config.retry_base_delay_ms,
        sleep=sleep,
    )
