"""
Persistence for followers and mirror trades.

ORM models plus the SQL-backed FollowerStore / MirrorTradeStore. Sync
functions do the session work; the store classes offload them to a worker
thread with asyncio.to_thread so the event loop is never blocked.

Status writes are conditional updates (`WHERE status = 'pending'`,
`WHERE pnl IS NULL`) so the database itself refuses to move a terminal
record or overwrite a reconciled P&L.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func

from copytrader.domain.models import (
    ExecutionFill,
    Follower,
    MirrorStatus,
    MirrorTrade,
    TradeSide,
)
from copytrader.storage.db import Base, Database, get_db


def _utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _dec(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


# ORM Models
class FollowerModel(Base):
    """ORM model for follower accounts."""
    __tablename__ = "followers"
    __table_args__ = (
        Index("idx_follower_active", "is_active"),
    )

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    api_key = Column(String, nullable=False)  # encrypted
    api_secret = Column(String, nullable=False)  # encrypted
    fund = Column(Numeric(precision=20, scale=8), nullable=False)
    risk_per_trade = Column(Numeric(precision=10, scale=4), nullable=False)
    max_trades_per_day = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    low_fund = Column(Boolean, nullable=False, default=False)
    wallet_balance = Column(Numeric(precision=20, scale=8), nullable=True)
    balance_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: _utc_naive(datetime.now(timezone.utc)))


class MirrorTradeModel(Base):
    """ORM model for mirrored trades."""
    __tablename__ = "mirror_trades"
    __table_args__ = (
        Index("idx_mirror_status", "status"),
        Index("idx_mirror_follower_status", "follower_id", "status", "executed_at"),
        Index("idx_mirror_primary", "primary_trade_id"),
    )

    id = Column(String, primary_key=True)
    primary_trade_id = Column(String, nullable=False)
    follower_id = Column(String, ForeignKey("followers.id"), nullable=False)
    pair = Column(String, nullable=False)
    side = Column(String, nullable=False)
    requested_quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    requested_leverage = Column(Numeric(precision=10, scale=2), nullable=False)
    requested_price = Column(Numeric(precision=20, scale=8), nullable=False)
    stop_loss = Column(Numeric(precision=20, scale=8), nullable=True)

    status = Column(String, nullable=False, default=MirrorStatus.PENDING.value)
    venue_order_id = Column(String, nullable=True)
    executed_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    executed_price = Column(Numeric(precision=20, scale=8), nullable=True)
    executed_leverage = Column(Numeric(precision=10, scale=2), nullable=True)
    error_message = Column(String, nullable=True)

    pnl = Column(Numeric(precision=20, scale=8), nullable=True)
    exit_price = Column(Numeric(precision=20, scale=8), nullable=True)

    created_at = Column(DateTime, nullable=False)
    executed_at = Column(DateTime, nullable=True)
    reconciled_at = Column(DateTime, nullable=True)


def _follower_from_model(row: FollowerModel) -> Follower:
    return Follower(
        id=row.id,
        name=row.name,
        api_key=row.api_key,
        api_secret=row.api_secret,
        fund=_dec(row.fund),
        risk_per_trade=_dec(row.risk_per_trade),
        is_active=bool(row.is_active),
        low_fund=bool(row.low_fund),
        max_trades_per_day=row.max_trades_per_day,
        wallet_balance=_dec(row.wallet_balance),
        balance_checked_at=_utc_aware(row.balance_checked_at),
    )


def _mirror_from_model(row: MirrorTradeModel) -> MirrorTrade:
    return MirrorTrade(
        id=row.id,
        primary_trade_id=row.primary_trade_id,
        follower_id=row.follower_id,
        pair=row.pair,
        side=TradeSide.parse(row.side),
        requested_quantity=_dec(row.requested_quantity),
        requested_leverage=_dec(row.requested_leverage),
        requested_price=_dec(row.requested_price),
        stop_loss=_dec(row.stop_loss),
        status=MirrorStatus.parse(row.status),
        venue_order_id=row.venue_order_id,
        executed_quantity=_dec(row.executed_quantity),
        executed_price=_dec(row.executed_price),
        executed_leverage=_dec(row.executed_leverage),
        error_message=row.error_message,
        pnl=_dec(row.pnl),
        exit_price=_dec(row.exit_price),
        created_at=_utc_aware(row.created_at),
        executed_at=_utc_aware(row.executed_at),
        reconciled_at=_utc_aware(row.reconciled_at),
    )


# ============ Followers ============

def save_follower(follower: Follower, db: Optional[Database] = None) -> None:
    """Insert or update a follower."""
    db = db or get_db()
    with db.get_session() as session:
        session.merge(FollowerModel(
            id=follower.id,
            name=follower.name,
            api_key=follower.api_key,
            api_secret=follower.api_secret,
            fund=follower.fund,
            risk_per_trade=follower.risk_per_trade,
            max_trades_per_day=follower.max_trades_per_day,
            is_active=follower.is_active,
            low_fund=follower.low_fund,
            wallet_balance=follower.wallet_balance,
            balance_checked_at=_utc_naive(follower.balance_checked_at),
        ))


def list_active_followers(db: Optional[Database] = None) -> List[Follower]:
    db = db or get_db()
    with db.get_session() as session:
        rows = (
            session.query(FollowerModel)
            .filter(FollowerModel.is_active.is_(True))
            .order_by(FollowerModel.created_at, FollowerModel.id)
            .all()
        )
        return [_follower_from_model(r) for r in rows]


def get_follower(follower_id: str, db: Optional[Database] = None) -> Optional[Follower]:
    db = db or get_db()
    with db.get_session() as session:
        row = session.get(FollowerModel, follower_id)
        return _follower_from_model(row) if row is not None else None


def update_follower_balance(
    follower_id: str,
    balance: Optional[Decimal],
    low_fund: bool,
    db: Optional[Database] = None,
) -> None:
    db = db or get_db()
    values = {FollowerModel.low_fund: low_fund}
    if balance is not None:
        values[FollowerModel.wallet_balance] = balance
        values[FollowerModel.balance_checked_at] = _utc_naive(datetime.now(timezone.utc))
    with db.get_session() as session:
        session.query(FollowerModel).filter(FollowerModel.id == follower_id).update(
            values, synchronize_session=False
        )


# ============ Mirror trades ============

def insert_mirror(mirror: MirrorTrade, db: Optional[Database] = None) -> MirrorTrade:
    db = db or get_db()
    with db.get_session() as session:
        session.add(MirrorTradeModel(
            id=mirror.id,
            primary_trade_id=mirror.primary_trade_id,
            follower_id=mirror.follower_id,
            pair=mirror.pair,
            side=mirror.side.value,
            requested_quantity=mirror.requested_quantity,
            requested_leverage=mirror.requested_leverage,
            requested_price=mirror.requested_price,
            stop_loss=mirror.stop_loss,
            status=mirror.status.value,
            created_at=_utc_naive(mirror.created_at),
        ))
    return mirror


def get_mirror(mirror_id: str, db: Optional[Database] = None) -> Optional[MirrorTrade]:
    db = db or get_db()
    with db.get_session() as session:
        row = session.get(MirrorTradeModel, mirror_id)
        return _mirror_from_model(row) if row is not None else None


def set_mirror_status(
    mirror_id: str,
    status: MirrorStatus,
    error_message: Optional[str] = None,
    db: Optional[Database] = None,
) -> bool:
    """Move a pending mirror to `status`. False if it was no longer pending."""
    db = db or get_db()
    with db.get_session() as session:
        updated = (
            session.query(MirrorTradeModel)
            .filter(
                MirrorTradeModel.id == mirror_id,
                MirrorTradeModel.status == MirrorStatus.PENDING.value,
            )
            .update(
                {MirrorTradeModel.status: status.value, MirrorTradeModel.error_message: error_message},
                synchronize_session=False,
            )
        )
    return updated == 1


def set_mirror_execution(mirror_id: str, fill: ExecutionFill, db: Optional[Database] = None) -> bool:
    """Status and every fill field in one conditional UPDATE."""
    db = db or get_db()
    with db.get_session() as session:
        updated = (
            session.query(MirrorTradeModel)
            .filter(
                MirrorTradeModel.id == mirror_id,
                MirrorTradeModel.status == MirrorStatus.PENDING.value,
            )
            .update(
                {
                    MirrorTradeModel.status: MirrorStatus.EXECUTED.value,
                    MirrorTradeModel.venue_order_id: fill.venue_order_id,
                    MirrorTradeModel.executed_price: fill.executed_price,
                    MirrorTradeModel.executed_quantity: fill.executed_quantity,
                    MirrorTradeModel.executed_leverage: fill.executed_leverage,
                    MirrorTradeModel.executed_at: _utc_naive(fill.executed_at),
                    MirrorTradeModel.error_message: None,
                },
                synchronize_session=False,
            )
        )
    return updated == 1


def set_mirror_pnl(
    mirror_id: str,
    pnl: Decimal,
    exit_price: Optional[Decimal],
    db: Optional[Database] = None,
) -> bool:
    db = db or get_db()
    with db.get_session() as session:
        updated = (
            session.query(MirrorTradeModel)
            .filter(
                MirrorTradeModel.id == mirror_id,
                MirrorTradeModel.status == MirrorStatus.EXECUTED.value,
                MirrorTradeModel.pnl.is_(None),
            )
            .update(
                {
                    MirrorTradeModel.pnl: pnl,
                    MirrorTradeModel.exit_price: exit_price,
                    MirrorTradeModel.reconciled_at: _utc_naive(datetime.now(timezone.utc)),
                },
                synchronize_session=False,
            )
        )
    return updated == 1


def list_executed_without_pnl(limit: int, db: Optional[Database] = None) -> List[MirrorTrade]:
    db = db or get_db()
    with db.get_session() as session:
        rows = (
            session.query(MirrorTradeModel)
            .filter(
                MirrorTradeModel.status == MirrorStatus.EXECUTED.value,
                MirrorTradeModel.venue_order_id.isnot(None),
                MirrorTradeModel.pnl.is_(None),
            )
            .order_by(MirrorTradeModel.executed_at)
            .limit(limit)
            .all()
        )
        return [_mirror_from_model(r) for r in rows]


def count_executed_since(follower_id: str, since: datetime, db: Optional[Database] = None) -> int:
    db = db or get_db()
    with db.get_session() as session:
        return (
            session.query(MirrorTradeModel)
            .filter(
                MirrorTradeModel.follower_id == follower_id,
                MirrorTradeModel.status == MirrorStatus.EXECUTED.value,
                MirrorTradeModel.executed_at >= _utc_naive(since),
            )
            .count()
        )


def count_by_status(follower_id: Optional[str] = None, db: Optional[Database] = None) -> Dict[MirrorStatus, int]:
    db = db or get_db()
    with db.get_session() as session:
        query = session.query(MirrorTradeModel.status, func.count(MirrorTradeModel.id))
        if follower_id:
            query = query.filter(MirrorTradeModel.follower_id == follower_id)
        rows = query.group_by(MirrorTradeModel.status).all()
    counts = {status: 0 for status in MirrorStatus}
    for status, n in rows:
        counts[MirrorStatus.parse(status)] = n
    return counts


# ============ Async stores ============

class SqlFollowerStore:
    """FollowerStore backed by the followers table."""

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    async def list_active_followers(self) -> List[Follower]:
        return await asyncio.to_thread(list_active_followers, db=self._db)

    async def get_follower(self, follower_id: str) -> Optional[Follower]:
        return await asyncio.to_thread(get_follower, follower_id, db=self._db)

    async def get_wallet_balance(self, follower_id: str) -> Optional[Decimal]:
        follower = await self.get_follower(follower_id)
        return follower.wallet_balance if follower is not None else None

    async def set_low_fund(self, follower_id: str, low_fund: bool) -> None:
        await asyncio.to_thread(update_follower_balance, follower_id, None, low_fund, db=self._db)

    async def update_wallet_balance(self, follower_id: str, balance: Decimal, low_fund: bool) -> None:
        await asyncio.to_thread(update_follower_balance, follower_id, balance, low_fund, db=self._db)


class SqlMirrorTradeStore:
    """MirrorTradeStore backed by the mirror_trades table."""

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    async def create(self, mirror: MirrorTrade) -> MirrorTrade:
        return await asyncio.to_thread(insert_mirror, mirror, db=self._db)

    async def get(self, mirror_id: str) -> Optional[MirrorTrade]:
        return await asyncio.to_thread(get_mirror, mirror_id, db=self._db)

    async def update_status(
        self, mirror_id: str, status: MirrorStatus, error_message: Optional[str] = None
    ) -> bool:
        return await asyncio.to_thread(set_mirror_status, mirror_id, status, error_message, db=self._db)

    async def update_execution(self, mirror_id: str, fill: ExecutionFill) -> bool:
        return await asyncio.to_thread(set_mirror_execution, mirror_id, fill, db=self._db)

    async def update_pnl(self, mirror_id: str, pnl: Decimal, exit_price: Optional[Decimal]) -> bool:
        return await asyncio.to_thread(set_mirror_pnl, mirror_id, pnl, exit_price, db=self._db)

    async def list_executed_without_pnl(self, limit: int) -> List[MirrorTrade]:
        return await asyncio.to_thread(list_executed_without_pnl, limit, db=self._db)

    async def count_executed_since(self, follower_id: str, since: datetime) -> int:
        return await asyncio.to_thread(count_executed_since, follower_id, since, db=self._db)

    async def count_by_status(self, follower_id: Optional[str] = None) -> Dict[MirrorStatus, int]:
        return await asyncio.to_thread(count_by_status, follower_id, db=self._db)
