"""
Domain protocols (interfaces) for dependency inversion.

The orchestrator, state machine and reconciler depend on these contracts,
not on the SQL stores or the aiohttp venue client, so tests can hand in
in-memory fakes or AsyncMocks.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, runtime_checkable

from copytrader.domain.models import (
    Credentials,
    ExecutionFill,
    Follower,
    InstrumentMeta,
    LedgerEntry,
    MirrorStatus,
    MirrorTrade,
    OrderResult,
    OrderSpec,
)


@runtime_checkable
class FollowerStore(Protocol):
    async def list_active_followers(self) -> List[Follower]: ...

    async def get_follower(self, follower_id: str) -> Optional[Follower]: ...

    async def get_wallet_balance(self, follower_id: str) -> Optional[Decimal]: ...

    async def set_low_fund(self, follower_id: str, low_fund: bool) -> None: ...

    async def update_wallet_balance(self, follower_id: str, balance: Decimal, low_fund: bool) -> None: ...


@runtime_checkable
class MirrorTradeStore(Protocol):
    async def create(self, mirror: MirrorTrade) -> MirrorTrade: ...

    async def get(self, mirror_id: str) -> Optional[MirrorTrade]: ...

    async def update_status(
        self, mirror_id: str, status: MirrorStatus, error_message: Optional[str] = None
    ) -> bool:
        """Returns False when the record was no longer pending."""
        ...

    async def update_execution(self, mirror_id: str, fill: ExecutionFill) -> bool:
        """Set status=executed together with every fill field, in one transaction."""
        ...

    async def update_pnl(self, mirror_id: str, pnl: Decimal, exit_price: Optional[Decimal]) -> bool:
        """No-op (False) when pnl is already set."""
        ...

    async def list_executed_without_pnl(self, limit: int) -> List[MirrorTrade]: ...

    async def count_executed_since(self, follower_id: str, since: datetime) -> int: ...

    async def count_by_status(self, follower_id: Optional[str] = None) -> Dict[MirrorStatus, int]: ...


@runtime_checkable
class VenueClient(Protocol):
    async def get_instrument_meta(self, pair: str) -> Optional[InstrumentMeta]: ...

    async def create_order(self, credentials: Credentials, order: OrderSpec) -> OrderResult: ...

    async def get_transactions(self, credentials: Credentials, order_id: str) -> List[LedgerEntry]: ...

    async def get_wallet_balance(self, credentials: Credentials) -> Decimal: ...


@runtime_checkable
class CredentialDecryptor(Protocol):
    def decrypt(self, blob: str) -> str:
        """Return the plaintext or raise CredentialDecryptionError. Never returns the input."""
        ...
