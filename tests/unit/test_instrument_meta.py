from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from copytrader.domain.models import InstrumentMeta
from copytrader.exceptions import MetadataUnavailableError, VenueTransportError
from copytrader.execution.instrument_meta import InstrumentMetaCache, is_fallback_metadata


def _meta(pair="BTC_USDT", step="0.001", min_qty="0.001", max_leverage="20"):
    return InstrumentMeta(
        pair=pair,
        step_size=Decimal(step),
        min_qty=Decimal(min_qty),
        min_notional=Decimal("5"),
        max_leverage=Decimal(max_leverage),
    )


class TestFallbackDetection:
    def test_default_shape_is_fallback(self):
        assert is_fallback_metadata(_meta(step="1", min_qty="1", max_leverage="1"))

    def test_step_above_one_still_fallback(self):
        assert is_fallback_metadata(_meta(step="10", min_qty="1", max_leverage="1"))

    def test_real_metadata_is_not_fallback(self):
        assert not is_fallback_metadata(_meta())

    def test_non_usdt_pair_is_not_fallback(self):
        assert not is_fallback_metadata(_meta(pair="BTC_INR", step="1", min_qty="1", max_leverage="1"))

    def test_leverage_above_one_is_not_fallback(self):
        assert not is_fallback_metadata(_meta(step="1", min_qty="1", max_leverage="5"))


@pytest.mark.asyncio
async def test_cache_reads_through_once(fake_clock):
    venue = AsyncMock()
    venue.get_instrument_meta.return_value = _meta()
    cache = InstrumentMetaCache(venue, ttl_seconds=60, clock=fake_clock)

    first = await cache.get("BTC_USDT")
    second = await cache.get("BTC_USDT")

    assert first == second == _meta()
    assert venue.get_instrument_meta.await_count == 1


@pytest.mark.asyncio
async def test_cache_entry_expires_after_ttl(fake_clock):
    venue = AsyncMock()
    venue.get_instrument_meta.return_value = _meta()
    cache = InstrumentMetaCache(venue, ttl_seconds=60, clock=fake_clock)

    await cache.get("BTC_USDT")
    fake_clock.now += 61
    await cache.get("BTC_USDT")

    assert venue.get_instrument_meta.await_count == 2


@pytest.mark.asyncio
async def test_fallback_metadata_is_not_cached_and_raises(fake_clock):
    venue = AsyncMock()
    venue.get_instrument_meta.return_value = _meta(step="1", min_qty="1", max_leverage="1")
    cache = InstrumentMetaCache(venue, clock=fake_clock)

    with pytest.raises(MetadataUnavailableError, match="Market metadata unavailable for BTC_USDT"):
        await cache.get("BTC_USDT")
    with pytest.raises(MetadataUnavailableError):
        await cache.get("BTC_USDT")
    assert venue.get_instrument_meta.await_count == 2


@pytest.mark.asyncio
async def test_missing_or_failed_lookup_raises(fake_clock):
    venue = AsyncMock()
    venue.get_instrument_meta.side_effect = [None, VenueTransportError("reset")]
    cache = InstrumentMetaCache(venue, clock=fake_clock)

    with pytest.raises(MetadataUnavailableError):
        await cache.get("ETH_USDT")
    with pytest.raises(MetadataUnavailableError):
        await cache.get("ETH_USDT")
