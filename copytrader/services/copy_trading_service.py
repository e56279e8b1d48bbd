"""
Copy trading orchestrator.

On each new primary trade:
    1. load active followers
    2. create one pending mirror per follower (creation errors are collected,
       they never stop the rest)
    3. spawn one asyncio task per mirror and return without awaiting them

Each task runs the per-mirror pipeline:
    follower -> low-fund guard -> daily cap -> decrypt -> metadata -> size
    -> margin check -> executor -> executed / failed

Every error inside a task ends as a failed transition on that mirror only.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from copytrader.config.config import Config
from copytrader.domain.models import (
    Follower,
    MirrorStatus,
    MirrorTrade,
    OrderSpec,
    PrimaryTrade,
    SizingResult,
)
from copytrader.exceptions import (
    CredentialDecryptionError,
    DataError,
    InvariantError,
    ValidationError,
)
from copytrader.execution.executor import OrderExecutor
from copytrader.execution.instrument_meta import InstrumentMetaCache
from copytrader.execution.position_sizing import apply_quantity_override, size_position
from copytrader.execution.state_machine import MirrorStateMachine
from copytrader.monitoring.logger import get_logger
from copytrader.utils.credentials import decrypt_follower_credentials

logger = get_logger(__name__)

_HUNDRED = Decimal("100")


class BatchCompletion:
    """
    Counts finished mirror tasks of one batch.

    Dispatch never awaits the tasks; callers that want a join point await
    `wait()` instead.
    """

    def __init__(self, total: int):
        self.total = total
        self.done = 0
        self.executed = 0
        self.failed = 0
        self._event = asyncio.Event()
        if total == 0:
            self._event.set()

    def record(self, executed: bool) -> None:
        self.done += 1
        if executed:
            self.executed += 1
        else:
            self.failed += 1
        if self.done >= self.total:
            self._event.set()

    @property
    def finished(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every mirror in the batch reached a terminal state. False on timeout."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class MirrorBatchResult:
    success: bool
    message: str
    mirror_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    completion: Optional[BatchCompletion] = None


def placeholder_quantity(primary_total: Decimal, risk_per_trade: Decimal) -> Decimal:
    """Quantity recorded on the pending row; replaced by the sized quantity at execution."""
    return Decimal(str(primary_total)) * Decimal(str(risk_per_trade)) / _HUNDRED


def start_of_utc_day(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class CopyTradingService:
    """Mirrors primary trades onto every active follower."""

    def __init__(
        self,
        config: Config,
        follower_store,
        mirror_store,
        executor: OrderExecutor,
        meta_cache: InstrumentMetaCache,
        decryptor,
        state_machine: Optional[MirrorStateMachine] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config
        self.followers = follower_store
        self.mirrors = mirror_store
        self.executor = executor
        self.meta_cache = meta_cache
        self.decryptor = decryptor
        self.state = state_machine or MirrorStateMachine(
            mirror_store, follower_store, margin_buffer=config.execution.margin_buffer
        )
        self._now = now
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def process_primary_trade(self, primary: PrimaryTrade) -> MirrorBatchResult:
        """
        Create pending mirrors for all active followers and dispatch execution.

        Returns as soon as every pending row exists; execution continues in
        background tasks.
        """
        logger.info(
            "PRIMARY_TRADE_RECEIVED",
            primary_trade_id=primary.id,
            pair=primary.pair,
            side=primary.side.value,
            entry=str(primary.entry_price),
        )
        try:
            followers = await self.followers.list_active_followers()
        except Exception as e:
            logger.error("FOLLOWER_LOAD_FAILED", primary_trade_id=primary.id, error=str(e), exc_info=True)
            return MirrorBatchResult(success=False, message=f"Copy trading processing failed: {e}")

        if not followers:
            logger.info("NO_ACTIVE_FOLLOWERS", primary_trade_id=primary.id)
            return MirrorBatchResult(
                success=True,
                message="No active copy trading users to process",
                completion=BatchCompletion(0),
            )

        created: List[MirrorTrade] = []
        errors: List[str] = []
        for follower in followers:
            try:
                created.append(await self._create_pending(primary, follower))
            except Exception as e:
                msg = f"Failed to create copy trade for user {follower.name}: {e}"
                logger.error("MIRROR_CREATE_FAILED", follower_id=follower.id, error=str(e), exc_info=True)
                errors.append(msg)

        completion = self.dispatch(created)
        return MirrorBatchResult(
            success=True,
            message=f"Created {len(created)} copy trades for {len(followers)} users",
            mirror_ids=[m.id for m in created],
            errors=errors,
            completion=completion,
        )

    async def _create_pending(self, primary: PrimaryTrade, follower: Follower) -> MirrorTrade:
        mirror = MirrorTrade(
            id=str(uuid.uuid4()),
            primary_trade_id=primary.id,
            follower_id=follower.id,
            pair=primary.pair,
            side=primary.side,
            requested_quantity=placeholder_quantity(primary.total, follower.risk_per_trade),
            requested_leverage=primary.leverage,
            requested_price=primary.entry_price,
            stop_loss=primary.stop_loss,
        )
        return await self.mirrors.create(mirror)

    def dispatch(self, mirrors: List[MirrorTrade]) -> BatchCompletion:
        """Spawn one task per mirror. Does not await them."""
        completion = BatchCompletion(len(mirrors))
        for mirror in mirrors:
            task = asyncio.create_task(self._run_mirror(mirror, completion), name=f"mirror-{mirror.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.info("MIRRORS_DISPATCHED", count=len(mirrors), executor=self.executor.mode)
        return completion

    async def _run_mirror(self, mirror: MirrorTrade, completion: BatchCompletion) -> None:
        executed = False
        try:
            executed = await self.execute_mirror(mirror)
        except InvariantError:
            logger.critical("MIRROR_INVARIANT_BROKEN", mirror_id=mirror.id, exc_info=True)
            raise
        except Exception as e:
            logger.error("MIRROR_EXECUTION_CRASHED", mirror_id=mirror.id, error=str(e), exc_info=True)
            try:
                await self.state.mark_failed(mirror.id, f"Execution failed: {e}")
            except Exception as mark_err:
                logger.error("MIRROR_FAIL_MARK_FAILED", mirror_id=mirror.id, error=str(mark_err))
        finally:
            completion.record(executed)

    async def execute_mirror(self, mirror: MirrorTrade) -> bool:
        """
        Run the execution pipeline for one pending mirror.

        Returns:
            True if the mirror ended executed. A mirror that is no longer
            pending is left alone and no order is placed.
        """
        current = await self.mirrors.get(mirror.id)
        if current is None or current.status is not MirrorStatus.PENDING:
            logger.info(
                "MIRROR_NOT_PENDING_SKIPPED",
                mirror_id=mirror.id,
                status=current.status.value if current else None,
            )
            return False
        mirror = current

        follower = await self.followers.get_follower(mirror.follower_id)
        if follower is None:
            await self.state.mark_failed(mirror.id, "Copy trading user not found")
            return False

        blocked = self.state.low_fund_block(follower)
        if blocked:
            logger.info("MIRROR_LOW_FUND_BLOCKED", mirror_id=mirror.id, follower_id=follower.id)
            await self.state.mark_failed(mirror.id, blocked)
            return False

        try:
            await self._check_daily_cap(follower)
            credentials = decrypt_follower_credentials(self.decryptor, follower)
            meta = await self.meta_cache.get(mirror.pair)
            sizing = self._size(mirror, follower, meta)
            await self.state.check_margin(follower, sizing.required_margin)
        except (DataError, CredentialDecryptionError) as e:
            await self.state.mark_failed(mirror.id, str(e))
            return False

        order = OrderSpec(
            pair=mirror.pair,
            side=mirror.side,
            quantity=sizing.qty,
            price=mirror.requested_price,
            leverage=sizing.leverage,
        )
        result = await self.executor.execute(follower.id, credentials, order)
        if result.success:
            return await self.state.mark_executed(mirror.id, result, order)
        await self.state.mark_failed(mirror.id, result.message or "Order failed")
        return False

    async def _check_daily_cap(self, follower: Follower) -> None:
        if not follower.max_trades_per_day:
            return
        since = start_of_utc_day(self._now())
        used = await self.mirrors.count_executed_since(follower.id, since)
        if used >= follower.max_trades_per_day:
            raise ValidationError(
                f"Daily trade limit reached ({used}/{follower.max_trades_per_day})"
            )

    def _size(self, mirror: MirrorTrade, follower: Follower, meta) -> SizingResult:
        sizing = size_position(
            entry=mirror.requested_price,
            stop_loss=mirror.stop_loss,
            fund=follower.fund,
            risk_pct=follower.risk_per_trade,
            pair=mirror.pair,
            meta=meta,
        )
        sizing = apply_quantity_override(
            sizing,
            mirror.pair,
            mirror.requested_price,
            follower.fund,
            meta,
            whole_quantity_pairs=self.config.sizing.whole_quantity_pairs,
            precision_overrides=self.config.sizing.quantity_precision_overrides,
        )
        for warning in sizing.warnings:
            logger.warning("SIZING_WARNING", mirror_id=mirror.id, pair=mirror.pair, warning=warning)
        if sizing.warnings and self.config.execution.abort_on_leverage_warning:
            raise ValidationError(f"Aborted: {sizing.warnings[0]}")
        return sizing

    async def wait_for_all(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight mirror task (shutdown helper)."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def get_stats(self, follower_id: Optional[str] = None) -> Dict[str, float]:
        counts = await self.mirrors.count_by_status(follower_id)
        executed = counts.get(MirrorStatus.EXECUTED, 0)
        failed = counts.get(MirrorStatus.FAILED, 0)
        pending = counts.get(MirrorStatus.PENDING, 0)
        total = executed + failed + pending
        return {
            "total_trades": total,
            "executed_trades": executed,
            "failed_trades": failed,
            "pending_trades": pending,
            "success_rate": (executed / total * 100) if total else 0.0,
        }
