"""
Pytest configuration and shared fixtures.
"""
import os

# Unit tests never log to disk
os.environ.setdefault("COPYTRADER_LOG_FILE", "")

import asyncio
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest

from copytrader.domain.models import (
    ExecutionFill,
    Follower,
    InstrumentMeta,
    MirrorStatus,
    MirrorTrade,
    PrimaryTrade,
    TradeSide,
)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _mock_db_for_unit(request):
    """
    Unit tests run without a real DB: repository.get_db is patched with a
    MagicMock session. Integration tests bring their own SQLite database.
    """
    if "integration" in str(request.node.fspath):
        yield
        return

    def _make_mock_db():
        mock_db = MagicMock()
        mock_session = MagicMock()
        mock_session.query.return_value.filter.return_value.count.return_value = 0
        mock_session.query.return_value.filter.return_value.all.return_value = []
        cm = MagicMock()
        cm.__enter__ = MagicMock(return_value=mock_session)
        cm.__exit__ = MagicMock(return_value=False)
        mock_db.get_session.return_value = cm
        mock_db.database_url = "sqlite://"
        return mock_db

    with patch("copytrader.storage.repository.get_db", side_effect=_make_mock_db):
        yield


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class InMemoryMirrorStore:
    """MirrorTradeStore with the same conditional-update semantics as the SQL store."""

    def __init__(self):
        self.rows: Dict[str, MirrorTrade] = {}
        self.fail_create_for: set = set()

    async def create(self, mirror: MirrorTrade) -> MirrorTrade:
        if mirror.follower_id in self.fail_create_for:
            raise RuntimeError("insert failed")
        self.rows[mirror.id] = mirror
        return mirror

    async def get(self, mirror_id: str) -> Optional[MirrorTrade]:
        row = self.rows.get(mirror_id)
        return replace(row) if row is not None else None

    async def update_status(self, mirror_id, status, error_message=None) -> bool:
        row = self.rows[mirror_id]
        if row.status is not MirrorStatus.PENDING:
            return False
        row.status = status
        row.error_message = error_message
        return True

    async def update_execution(self, mirror_id: str, fill: ExecutionFill) -> bool:
        row = self.rows[mirror_id]
        if row.status is not MirrorStatus.PENDING:
            return False
        row.status = MirrorStatus.EXECUTED
        row.venue_order_id = fill.venue_order_id
        row.executed_price = fill.executed_price
        row.executed_quantity = fill.executed_quantity
        row.executed_leverage = fill.executed_leverage
        row.executed_at = fill.executed_at
        return True

    async def update_pnl(self, mirror_id, pnl, exit_price) -> bool:
        row = self.rows[mirror_id]
        if row.pnl is not None:
            return False
        row.pnl = pnl
        row.exit_price = exit_price
        return True

    async def list_executed_without_pnl(self, limit: int) -> List[MirrorTrade]:
        rows = [
            r for r in self.rows.values()
            if r.status is MirrorStatus.EXECUTED and r.venue_order_id and r.pnl is None
        ]
        return rows[:limit]

    async def count_executed_since(self, follower_id: str, since: datetime) -> int:
        return sum(
            1 for r in self.rows.values()
            if r.follower_id == follower_id and r.status is MirrorStatus.EXECUTED
            and r.executed_at is not None and r.executed_at >= since
        )

    async def count_by_status(self, follower_id=None):
        counts = {s: 0 for s in MirrorStatus}
        for r in self.rows.values():
            if follower_id is None or r.follower_id == follower_id:
                counts[r.status] += 1
        return counts


class InMemoryFollowerStore:
    def __init__(self, followers: List[Follower] = ()):
        self.followers: Dict[str, Follower] = {f.id: f for f in followers}

    async def list_active_followers(self) -> List[Follower]:
        return [f for f in self.followers.values() if f.is_active]

    async def get_follower(self, follower_id: str) -> Optional[Follower]:
        return self.followers.get(follower_id)

    async def get_wallet_balance(self, follower_id: str) -> Optional[Decimal]:
        f = self.followers.get(follower_id)
        return f.wallet_balance if f else None

    async def set_low_fund(self, follower_id: str, low_fund: bool) -> None:
        self.followers[follower_id].low_fund = low_fund

    async def update_wallet_balance(self, follower_id: str, balance: Decimal, low_fund: bool) -> None:
        self.followers[follower_id].wallet_balance = balance
        self.followers[follower_id].low_fund = low_fund


class PlainDecryptor:
    """Test decryptor: strips an 'enc:' prefix, raises on anything else."""

    def decrypt(self, blob: str) -> str:
        from copytrader.exceptions import CredentialDecryptionError

        if not blob.startswith("enc:"):
            raise CredentialDecryptionError("Stored credential could not be decrypted")
        return blob[4:]


def make_follower(follower_id: str = "f1", **overrides) -> Follower:
    values = dict(
        id=follower_id,
        name=f"user-{follower_id}",
        api_key="enc:key-" + follower_id,
        api_secret="enc:secret-" + follower_id,
        fund=Decimal("100"),
        risk_per_trade=Decimal("5"),
    )
    values.update(overrides)
    return Follower(**values)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def mirror_store():
    return InMemoryMirrorStore()


@pytest.fixture
def follower_factory():
    return make_follower


@pytest.fixture
def decryptor():
    return PlainDecryptor()


@pytest.fixture
def btc_meta():
    return InstrumentMeta(
        pair="BTC_USDT",
        step_size=Decimal("0.001"),
        min_qty=Decimal("0.001"),
        min_notional=Decimal("5"),
        max_leverage=Decimal("20"),
    )


@pytest.fixture
def primary_trade():
    return PrimaryTrade(
        id="primary-1",
        pair="BTC_USDT",
        side=TradeSide.BUY,
        entry_price=Decimal("45000"),
        stop_loss=Decimal("44000"),
        leverage=Decimal("5"),
        total=Decimal("0.2"),
    )


@pytest.fixture
def pending_mirror():
    return MirrorTrade(
        id="m1",
        primary_trade_id="primary-1",
        follower_id="f1",
        pair="BTC_USDT",
        side=TradeSide.BUY,
        requested_quantity=Decimal("0.01"),
        requested_leverage=Decimal("5"),
        requested_price=Decimal("45000"),
        stop_loss=Decimal("44000"),
    )


@pytest.fixture
def in_memory_follower_store():
    return InMemoryFollowerStore
