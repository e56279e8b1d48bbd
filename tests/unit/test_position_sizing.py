"""
Position sizing: step compliance, leverage/margin derivation, typed rejections
and the per-pair submission override pass.
"""
from decimal import Decimal

import pytest

from copytrader.domain.models import InstrumentMeta, SizingRejectionReason
from copytrader.exceptions import SizingRejectedError
from copytrader.execution.position_sizing import (
    apply_quantity_override,
    ceil_to_step,
    floor_to_step,
    required_leverage,
    size_position,
    step_decimals,
)


def _meta(pair="BTC_USDT", step="0.001", min_qty="0.001", min_notional="5", max_leverage="20"):
    return InstrumentMeta(
        pair=pair,
        step_size=Decimal(step),
        min_qty=Decimal(min_qty),
        min_notional=Decimal(min_notional),
        max_leverage=Decimal(max_leverage),
    )


def test_reference_btc_scenario():
    """45000 entry, 44000 stop, 100 fund, 5% risk, 0.001 step."""
    result = size_position("45000", "44000", "100", "5", "BTC_USDT", _meta())

    assert result.qty == Decimal("0.005")
    assert result.notional == Decimal("225")
    assert result.leverage == 3
    assert result.required_margin == Decimal("75")
    assert result.warnings == []


def test_quantity_is_floored_to_step():
    # raw qty = 5 / 700 = 0.00714... -> 0.007
    result = size_position(Decimal("45000"), Decimal("44300"), Decimal("100"), Decimal("5"), "BTC_USDT", _meta())
    assert result.qty == Decimal("0.007")


@pytest.mark.parametrize(
    "entry,stop,fund,risk,step",
    [
        ("45000", "44000", "100", "5", "0.001"),
        ("1.2345", "1.2", "250", "2", "0.1"),
        ("3000", "3100", "1000", "1.5", "0.01"),
        ("0.08123", "0.079", "50", "10", "1"),
        ("150.5", "149.75", "333", "3.3", "0.05"),
    ],
)
def test_successful_results_respect_constraints(entry, stop, fund, risk, step):
    meta = _meta(pair="X_USDT", step=step, min_qty=step, min_notional="1", max_leverage="100")
    result = size_position(entry, stop, fund, risk, "X_USDT", meta)

    assert result.qty % meta.step_size == 0
    assert result.notional >= meta.min_notional
    assert result.required_margin <= Decimal(fund)
    assert result.leverage >= 1


def test_below_min_qty_is_bumped_to_min_qty():
    # raw qty = 0.0005 -> floors to 0.000, min_qty 0.002 wins
    meta = _meta(min_qty="0.002", min_notional="1")
    result = size_position("45000", "35000", "100", "5", "BTC_USDT", meta)

    assert result.qty == Decimal("0.002")
    assert result.notional == Decimal("90")
    assert result.leverage == 1


def test_min_qty_not_on_step_is_ceiled_to_step():
    meta = _meta(step="0.01", min_qty="0.015", min_notional="0")
    result = size_position("100", "50", "10", "1", "SOL_USDT", meta)
    assert result.qty == Decimal("0.02")


def test_leverage_above_max_is_warning_not_rejection():
    meta = _meta(max_leverage="2")
    result = size_position("45000", "44000", "100", "5", "BTC_USDT", meta)

    assert result.leverage == 3
    assert result.warnings == ["High leverage 3x may be rejected by exchange (max: 2x)"]


def test_notional_below_minimum_is_position_too_small():
    meta = _meta(min_notional="500")
    with pytest.raises(SizingRejectedError) as exc_info:
        size_position("45000", "44000", "100", "5", "BTC_USDT", meta)
    assert exc_info.value.reason is SizingRejectionReason.POSITION_TOO_SMALL
    assert "Position too small" in str(exc_info.value)


@pytest.mark.parametrize(
    "entry,stop,fund,risk,pair",
    [
        ("0", "44000", "100", "5", "BTC_USDT"),
        ("45000", "-1", "100", "5", "BTC_USDT"),
        ("45000", "44000", "0", "5", "BTC_USDT"),
        ("45000", "44000", "100", "0", "BTC_USDT"),
        ("45000", "44000", "100", "100.5", "BTC_USDT"),
        ("45000", "45000", "100", "5", "BTC_USDT"),
        ("45000", "44000", "100", "5", ""),
        ("abc", "44000", "100", "5", "BTC_USDT"),
        (None, "44000", "100", "5", "BTC_USDT"),
        ("NaN", "44000", "100", "5", "BTC_USDT"),
    ],
)
def test_invalid_inputs_are_rejected(entry, stop, fund, risk, pair):
    with pytest.raises(SizingRejectedError) as exc_info:
        size_position(entry, stop, fund, risk, pair, _meta())
    assert exc_info.value.reason is SizingRejectionReason.INVALID_PARAMETERS


def test_fallback_metadata_is_metadata_unavailable():
    fallback = _meta(pair="BTC_USDT", step="1", min_qty="1", min_notional="0", max_leverage="1")
    with pytest.raises(SizingRejectedError) as exc_info:
        size_position("45000", "44000", "100", "5", "BTC_USDT", fallback)
    assert exc_info.value.reason is SizingRejectionReason.METADATA_UNAVAILABLE


def test_missing_metadata_is_metadata_unavailable():
    with pytest.raises(SizingRejectedError) as exc_info:
        size_position("45000", "44000", "100", "5", "BTC_USDT", None)
    assert exc_info.value.reason is SizingRejectionReason.METADATA_UNAVAILABLE


def test_sizing_is_deterministic():
    a = size_position("45000", "44000", "100", "5", "BTC_USDT", _meta())
    b = size_position("45000", "44000", "100", "5", "BTC_USDT", _meta())
    assert a == b


class TestStepRounding:
    def test_step_decimals(self):
        assert step_decimals(Decimal("0.001")) == 3
        assert step_decimals(Decimal("1")) == 0
        assert step_decimals(Decimal("10")) == 0
        assert step_decimals(Decimal("0.05")) == 2

    def test_floor_and_ceil(self):
        assert floor_to_step(Decimal("0.0079"), Decimal("0.001")) == Decimal("0.007")
        assert ceil_to_step(Decimal("0.0071"), Decimal("0.001")) == Decimal("0.008")
        assert floor_to_step(Decimal("1.27"), Decimal("0.05")) == Decimal("1.25")
        assert ceil_to_step(Decimal("1.26"), Decimal("0.05")) == Decimal("1.30")
        assert floor_to_step(Decimal("17"), Decimal("5")) == Decimal("15")

    def test_exact_multiple_is_unchanged(self):
        assert floor_to_step(Decimal("0.005"), Decimal("0.001")) == Decimal("0.005")
        assert ceil_to_step(Decimal("0.005"), Decimal("0.001")) == Decimal("0.005")

    def test_required_leverage_floor_is_one(self):
        assert required_leverage(Decimal("10"), Decimal("100")) == 1
        assert required_leverage(Decimal("225"), Decimal("100")) == 3
        assert required_leverage(Decimal("200"), Decimal("100")) == 2


class TestQuantityOverride:
    def test_no_override_returns_same_result(self):
        meta = _meta()
        result = size_position("45000", "44000", "100", "5", "BTC_USDT", meta)
        assert apply_quantity_override(result, "BTC_USDT", Decimal("45000"), Decimal("100"), meta) is result

    def test_whole_quantity_pair_rounds_down_and_recomputes(self):
        meta = _meta(pair="DOGE_USDT", step="0.1", min_qty="1", min_notional="1", max_leverage="20")
        # raw qty = 5 / 0.0097 = 515.46 -> 515.4 on the 0.1 step
        result = size_position("0.15", "0.1403", "100", "5", "DOGE_USDT", meta)
        assert result.qty != result.qty.to_integral_value()

        overridden = apply_quantity_override(
            result, "DOGE_USDT", Decimal("0.15"), Decimal("100"), meta, whole_quantity_pairs=["DOGE_USDT"]
        )
        assert overridden.qty == result.qty.to_integral_value(rounding="ROUND_DOWN")
        assert overridden.notional == overridden.qty * Decimal("0.15")
        assert overridden.required_margin == overridden.notional / overridden.leverage

    def test_precision_override(self):
        meta = _meta(pair="SOL_USDT", step="0.001", min_qty="0.001", min_notional="1", max_leverage="20")
        result = size_position("150", "147", "100", "5", "SOL_USDT", meta)
        assert result.qty == Decimal("1.666")

        overridden = apply_quantity_override(
            result, "SOL_USDT", Decimal("150"), Decimal("100"), meta,
            precision_overrides={"SOL_USDT": 2},
        )
        assert overridden.qty == Decimal("1.66")
        assert overridden.notional == Decimal("249.00")
        assert overridden.leverage == 3

    def test_override_below_minimum_is_rejected(self):
        meta = _meta(pair="PEPE_USDT", step="0.1", min_qty="0.1", min_notional="0", max_leverage="20")
        result = size_position("10", "9", "10", "5", "PEPE_USDT", meta)
        assert result.qty == Decimal("0.5")

        with pytest.raises(SizingRejectedError) as exc_info:
            apply_quantity_override(
                result, "PEPE_USDT", Decimal("10"), Decimal("10"), meta, whole_quantity_pairs=["PEPE_USDT"]
            )
        assert exc_info.value.reason is SizingRejectionReason.POSITION_TOO_SMALL
