"""
Instrument metadata cache: read-through, TTL-bounded view of per-pair
trading constraints (step size, min qty, min notional, max leverage).

Venues sometimes answer with a generic default record instead of the real
constraints. Such records are detected by shape and treated as absent so
sizing never runs against made-up limits.
"""
import asyncio
import time
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from copytrader import constants
from copytrader.domain.models import InstrumentMeta
from copytrader.exceptions import MetadataUnavailableError, VenueError
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def is_fallback_metadata(meta: InstrumentMeta) -> bool:
    """
    True when `meta` looks like a venue default rather than real constraints:
    USDT-quoted pair, step size >= 1, min qty == 1 and max leverage == 1.
    """
    return (
        constants.FALLBACK_QUOTE in meta.pair.upper()
        and meta.step_size >= Decimal("1")
        and meta.min_qty == constants.FALLBACK_MIN_QTY
        and meta.max_leverage == constants.FALLBACK_MAX_LEVERAGE
    )


class InstrumentMetaCache:
    """
    Read-through cache in front of VenueClient.get_instrument_meta.

    Concurrent lookups for the same pair share one fetch. Entries expire
    after `ttl_seconds`; failed or fallback-shaped lookups are not cached.
    """

    def __init__(
        self,
        venue,
        ttl_seconds: float = constants.INSTRUMENT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._venue = venue
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[InstrumentMeta, float]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _cached(self, pair: str) -> Optional[InstrumentMeta]:
        entry = self._entries.get(pair)
        if entry is None:
            return None
        meta, fetched_at = entry
        if self._clock() - fetched_at >= self._ttl:
            del self._entries[pair]
            return None
        return meta

    async def get(self, pair: str) -> InstrumentMeta:
        """
        Return usable metadata for `pair`.

        Raises:
            MetadataUnavailableError: venue failed, returned nothing, or returned
                fallback-shaped defaults.
        """
        meta = self._cached(pair)
        if meta is not None:
            return meta

        lock = self._locks.setdefault(pair, asyncio.Lock())
        async with lock:
            meta = self._cached(pair)
            if meta is not None:
                return meta
            try:
                meta = await self._venue.get_instrument_meta(pair)
            except VenueError as e:
                logger.warning("INSTRUMENT_META_FETCH_FAILED", pair=pair, error=str(e))
                raise MetadataUnavailableError(
                    f"Market metadata unavailable for {pair}. Please try again later."
                ) from e
            if meta is None:
                raise MetadataUnavailableError(f"Market metadata unavailable for {pair}. Please try again later.")
            if is_fallback_metadata(meta):
                logger.warning(
                    "INSTRUMENT_META_FALLBACK_DETECTED",
                    pair=pair,
                    step_size=str(meta.step_size),
                    min_qty=str(meta.min_qty),
                    max_leverage=str(meta.max_leverage),
                )
                raise MetadataUnavailableError(f"Market metadata unavailable for {pair}. Please try again later.")
            self._entries[pair] = (meta, self._clock())
            return meta

    def invalidate(self, pair: Optional[str] = None) -> None:
        if pair is None:
            self._entries.clear()
        else:
            self._entries.pop(pair, None)
