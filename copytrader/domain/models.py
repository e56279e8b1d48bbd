"""
Domain models for the copy trading system.

These are the core business objects used throughout the application.
All monetary and quantity values are Decimal; all timestamps are UTC-aware.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class TradeSide(str, Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: str) -> "TradeSide":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown trade side: {value!r}") from None


class MirrorStatus(str, Enum):
    """Mirror trade lifecycle status. pending is the only non-terminal state."""
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MirrorStatus.PENDING

    @classmethod
    def parse(cls, value: str) -> "MirrorStatus":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown mirror status: {value!r}") from None


class SizingRejectionReason(str, Enum):
    """Why the sizing calculator refused to produce an order."""
    INVALID_PARAMETERS = "invalid_parameters"
    METADATA_UNAVAILABLE = "metadata_unavailable"
    POSITION_TOO_SMALL = "position_too_small"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass
class Follower:
    """
    A follower account that mirrors the primary account's trades.

    `fund` is the capital the follower allocated to copy trading; it is
    independent of the actual wallet balance on the venue.
    """
    id: str
    name: str
    api_key: str  # encrypted blob
    api_secret: str  # encrypted blob
    fund: Decimal
    risk_per_trade: Decimal  # percent, 0 < x <= 100
    is_active: bool = True
    low_fund: bool = False
    max_trades_per_day: Optional[int] = None
    wallet_balance: Optional[Decimal] = None
    balance_checked_at: Optional[datetime] = None

    def __post_init__(self):
        if self.fund <= 0:
            raise ValueError(f"Follower fund must be positive, got {self.fund}")
        if not (Decimal("0") < self.risk_per_trade <= Decimal("100")):
            raise ValueError(f"risk_per_trade must be in (0, 100], got {self.risk_per_trade}")


@dataclass(frozen=True)
class PrimaryTrade:
    """A trade placed on the primary account. Immutable once created."""
    id: str
    pair: str
    side: TradeSide
    entry_price: Decimal
    stop_loss: Decimal
    leverage: Decimal
    total: Decimal  # primary quantity
    take_profits: List[Decimal] = field(default_factory=list)


@dataclass
class MirrorTrade:
    """
    A follower's copy of a primary trade.

    Lifecycle is governed by MirrorStateMachine; nothing else writes
    status or execution fields.
    """
    id: str
    primary_trade_id: str
    follower_id: str
    pair: str
    side: TradeSide
    requested_quantity: Decimal
    requested_leverage: Decimal
    requested_price: Decimal
    stop_loss: Optional[Decimal] = None
    status: MirrorStatus = MirrorStatus.PENDING
    venue_order_id: Optional[str] = None
    executed_quantity: Optional[Decimal] = None
    executed_price: Optional[Decimal] = None
    executed_leverage: Optional[Decimal] = None
    error_message: Optional[str] = None
    pnl: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    executed_at: Optional[datetime] = None
    reconciled_at: Optional[datetime] = None


@dataclass(frozen=True)
class InstrumentMeta:
    """Per-pair trading constraints published by the venue."""
    pair: str
    step_size: Decimal
    min_qty: Decimal
    min_notional: Decimal
    max_leverage: Decimal


@dataclass(frozen=True)
class SizingResult:
    """A compliant position size for one follower."""
    qty: Decimal
    leverage: int
    notional: Decimal
    required_margin: Decimal
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class OrderSpec:
    """Everything the venue needs to place one limit order."""
    pair: str
    side: TradeSide
    quantity: Decimal
    price: Decimal
    leverage: int


@dataclass(frozen=True)
class OrderResult:
    """Venue response to an order request."""
    success: bool
    order_id: Optional[str] = None
    message: str = ""
    executed_price: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionFill:
    """Fields written atomically with the transition to executed."""
    venue_order_id: str
    executed_price: Decimal
    executed_quantity: Decimal
    executed_leverage: Decimal
    executed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class LedgerEntry:
    """One row of the venue's per-order transaction ledger."""
    parent_id: str
    position_id: str
    amount: Decimal
    currency: Optional[str] = None
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Credentials:
    """Decrypted venue credentials. Lives only for the duration of a venue call."""
    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:4]}***)"
