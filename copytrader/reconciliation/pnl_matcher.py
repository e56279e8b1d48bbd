"""
Post-trade P&L reconciliation.

The venue ledger for an order has one row whose parent_id is the order id;
its position_id identifies the position the order opened. The realized P&L
sits on a *different* row of that same position (the closing fill), with a
non-zero amount.

    ledger for O1:
        parent_id=O1  position_id=P1  amount=0      <- opening row, gives P1
        parent_id=X2  position_id=P1  amount=-15.5  <- realized P&L

Exit price follows from the P&L:
    buy  : exit = entry + pnl / (qty * leverage)
    sell : exit = entry - pnl / (qty * leverage)
"""
import asyncio
from decimal import Decimal
from typing import Dict, List, Optional

from copytrader import constants
from copytrader.domain.models import LedgerEntry, MirrorStatus, MirrorTrade, TradeSide
from copytrader.exceptions import CopyTradingError
from copytrader.monitoring.logger import get_logger
from copytrader.utils.credentials import decrypt_follower_credentials

logger = get_logger(__name__)


def match_ledger(order_id: str, entries: List[LedgerEntry]) -> Optional[Decimal]:
    """
    Realized P&L for `order_id`, or None when the position is not settled.
    """
    if not entries:
        return None
    opening = next((e for e in entries if e.parent_id == order_id), None)
    if opening is None or not opening.position_id:
        return None
    closing = next(
        (
            e for e in entries
            if e.position_id == opening.position_id and e.parent_id != order_id and e.amount != 0
        ),
        None,
    )
    return closing.amount if closing is not None else None


def derive_exit_price(
    side: TradeSide,
    entry_price: Optional[Decimal],
    quantity: Optional[Decimal],
    pnl: Optional[Decimal],
    leverage: Optional[Decimal] = None,
) -> Optional[Decimal]:
    """Implied exit price, None when any input is missing or pnl is zero."""
    if entry_price is None or not quantity or not pnl:
        return None
    leverage = leverage or Decimal("1")
    move = pnl / (quantity * leverage)
    return entry_price + move if side is TradeSide.BUY else entry_price - move


class PnLReconciler:
    """Fills pnl / exit_price on executed mirrors once the venue settles them."""

    def __init__(
        self,
        mirror_store,
        follower_store,
        venue,
        decryptor,
        batch_limit: int = constants.RECONCILE_BATCH_LIMIT,
    ):
        self.mirrors = mirror_store
        self.followers = follower_store
        self.venue = venue
        self.decryptor = decryptor
        self.batch_limit = batch_limit

    async def reconcile_one(self, mirror: MirrorTrade) -> bool:
        """
        Reconcile a single executed mirror.

        Returns:
            True if pnl was written by this call; False when unsettled or
            already reconciled.
        """
        if mirror.status is not MirrorStatus.EXECUTED or not mirror.venue_order_id:
            logger.debug("PNL_SKIP_NOT_EXECUTED", mirror_id=mirror.id, status=mirror.status.value)
            return False
        if mirror.pnl is not None:
            return False

        follower = await self.followers.get_follower(mirror.follower_id)
        if follower is None:
            raise CopyTradingError(f"Copy trading user {mirror.follower_id} not found")
        credentials = decrypt_follower_credentials(self.decryptor, follower)

        entries = await self.venue.get_transactions(credentials, mirror.venue_order_id)
        pnl = match_ledger(mirror.venue_order_id, entries)
        if pnl is None:
            logger.debug(
                "PNL_NOT_SETTLED",
                mirror_id=mirror.id,
                order_id=mirror.venue_order_id,
                ledger_rows=len(entries),
            )
            return False

        exit_price = derive_exit_price(
            mirror.side,
            mirror.executed_price,
            mirror.executed_quantity,
            pnl,
            mirror.executed_leverage,
        )
        updated = await self.mirrors.update_pnl(mirror.id, pnl, exit_price)
        if updated:
            logger.info(
                "PNL_RECONCILED",
                mirror_id=mirror.id,
                order_id=mirror.venue_order_id,
                pnl=str(pnl),
                exit_price=str(exit_price) if exit_price is not None else None,
            )
        return bool(updated)

    async def reconcile_by_id(self, mirror_id: str) -> bool:
        mirror = await self.mirrors.get(mirror_id)
        if mirror is None:
            raise CopyTradingError(f"Copy trade {mirror_id} not found")
        return await self.reconcile_one(mirror)

    async def reconcile_all(self) -> Dict[str, int]:
        """
        One sweep over executed mirrors without pnl.

        Returns:
            Summary with checked / updated / unsettled / errors counts.
        """
        summary = {"checked": 0, "updated": 0, "unsettled": 0, "errors": 0}
        mirrors = await self.mirrors.list_executed_without_pnl(self.batch_limit)
        for mirror in mirrors:
            summary["checked"] += 1
            try:
                if await self.reconcile_one(mirror):
                    summary["updated"] += 1
                else:
                    summary["unsettled"] += 1
            except CopyTradingError as e:
                summary["errors"] += 1
                logger.warning("PNL_RECONCILE_FAILED", mirror_id=mirror.id, error=str(e))
            except Exception as e:
                summary["errors"] += 1
                logger.error("PNL_RECONCILE_FAILED", mirror_id=mirror.id, error=str(e), exc_info=True)
        logger.info("PNL_SWEEP_COMPLETE", **summary)
        return summary

    async def run_periodic(self, interval_seconds: float = constants.RECONCILE_INTERVAL_SECONDS) -> None:
        """Sweep forever, `interval_seconds` apart, until cancelled."""
        while True:
            try:
                await self.reconcile_all()
            except Exception as e:
                logger.error("PNL_SWEEP_FAILED", error=str(e), exc_info=True)
            await asyncio.sleep(interval_seconds)
