"""
Position sizing for mirrored trades.

Turns (entry, stop, follower fund, risk %, instrument constraints) into an
exchange-compliant (qty, leverage, notional, margin) or a typed rejection.
All arithmetic is Decimal; step rounding uses scaled integers so the
quantity is always an exact multiple of the step size.

Flow:
    risk_amount = fund * risk_pct / 100
    raw_qty     = risk_amount / |entry - stop|
    qty         = floor_to_step(raw_qty)            (bumped to ceil_to_step(min_qty) if below)
    leverage    = max(1, ceil(qty * entry / fund))
    margin      = notional / leverage

A final submission pass applies per-pair whole-unit / precision overrides
and re-validates against min qty and min notional.
"""
from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from copytrader.domain.models import InstrumentMeta, SizingRejectionReason, SizingResult
from copytrader.exceptions import SizingRejectedError
from copytrader.execution.instrument_meta import is_fallback_metadata
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

_HUNDRED = Decimal("100")


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def step_decimals(step: Decimal) -> int:
    """Number of decimal places needed to express `step` exactly."""
    exponent = step.normalize().as_tuple().exponent
    return max(0, -exponent)


def _scaled(value: Decimal, step: Decimal, rounding: str) -> Decimal:
    factor = Decimal(10) ** step_decimals(step)
    scaled_step = int((step * factor).to_integral_value())
    scaled_value = int((value * factor).to_integral_value(rounding=rounding))
    if rounding == ROUND_FLOOR:
        units = scaled_value // scaled_step
    else:
        units = -(-scaled_value // scaled_step)
    return Decimal(units * scaled_step) / factor


def floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Largest multiple of `step` that is <= value."""
    return _scaled(value, step, ROUND_FLOOR)


def ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Smallest multiple of `step` that is >= value."""
    return _scaled(value, step, ROUND_CEILING)


def required_leverage(notional: Decimal, fund: Decimal) -> int:
    """Smallest whole leverage that fits `notional` into `fund`, at least 1."""
    lev = int((notional / fund).to_integral_value(rounding=ROUND_CEILING))
    return max(1, lev)


def _as_decimal(name: str, value: Any) -> Decimal:
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise SizingRejectedError(
            SizingRejectionReason.INVALID_PARAMETERS, f"Invalid parameters provided: {name}={value!r}"
        ) from None
    if not d.is_finite():
        raise SizingRejectedError(
            SizingRejectionReason.INVALID_PARAMETERS, f"Invalid parameters provided: {name}={value!r}"
        )
    return d


def size_position(
    entry: Any,
    stop_loss: Any,
    fund: Any,
    risk_pct: Any,
    pair: str,
    meta: Optional[InstrumentMeta],
) -> SizingResult:
    """
    Size one follower's position.

    Pure and deterministic: same inputs, same result, no I/O.

    Raises:
        SizingRejectedError: with reason invalid_parameters, metadata_unavailable,
            position_too_small or insufficient_funds. No partial result is returned.
    """
    entry = _as_decimal("entry", entry)
    stop_loss = _as_decimal("stop_loss", stop_loss)
    fund = _as_decimal("fund", fund)
    risk_pct = _as_decimal("risk_pct", risk_pct)

    if not pair or not pair.strip():
        raise SizingRejectedError(SizingRejectionReason.INVALID_PARAMETERS, "Invalid parameters provided: empty pair")
    if entry <= 0 or stop_loss <= 0 or fund <= 0:
        raise SizingRejectedError(
            SizingRejectionReason.INVALID_PARAMETERS,
            "Invalid parameters provided: entry, stop loss and fund must be positive",
        )
    if not (Decimal("0") < risk_pct <= _HUNDRED):
        raise SizingRejectedError(
            SizingRejectionReason.INVALID_PARAMETERS,
            f"Invalid parameters provided: risk percent {_fmt(risk_pct)} outside (0, 100]",
        )
    if entry == stop_loss:
        raise SizingRejectedError(
            SizingRejectionReason.INVALID_PARAMETERS, "Entry price and stop loss cannot be the same"
        )

    if meta is None or meta.step_size <= 0 or is_fallback_metadata(meta):
        raise SizingRejectedError(
            SizingRejectionReason.METADATA_UNAVAILABLE,
            f"Market metadata unavailable for {pair}. Please try again later.",
        )

    risk_amount = fund * risk_pct / _HUNDRED
    per_unit_risk = abs(entry - stop_loss)
    raw_qty = risk_amount / per_unit_risk

    qty = floor_to_step(raw_qty, meta.step_size)
    if qty < meta.min_qty:
        qty = ceil_to_step(meta.min_qty, meta.step_size)

    notional = qty * entry
    leverage = required_leverage(notional, fund)

    warnings = []
    if leverage > meta.max_leverage:
        warnings.append(
            f"High leverage {leverage}x may be rejected by exchange (max: {_fmt(meta.max_leverage)}x)"
        )

    required_margin = notional / leverage

    if notional < meta.min_notional:
        raise SizingRejectedError(
            SizingRejectionReason.POSITION_TOO_SMALL,
            f"Position too small: Notional {_fmt(notional)} < minimum {_fmt(meta.min_notional)}",
        )
    if required_margin > fund:
        raise SizingRejectedError(
            SizingRejectionReason.INSUFFICIENT_FUNDS,
            f"Insufficient margin: Required {_fmt(required_margin)} > Available {_fmt(fund)}",
        )

    logger.debug(
        "POSITION_SIZED",
        pair=pair,
        raw_qty=str(raw_qty),
        qty=str(qty),
        notional=str(notional),
        leverage=leverage,
        required_margin=str(required_margin),
        warnings=len(warnings),
    )
    return SizingResult(
        qty=qty,
        leverage=leverage,
        notional=notional,
        required_margin=required_margin,
        warnings=warnings,
    )


def apply_quantity_override(
    result: SizingResult,
    pair: str,
    entry: Decimal,
    fund: Decimal,
    meta: InstrumentMeta,
    whole_quantity_pairs: Iterable[str] = (),
    precision_overrides: Optional[Dict[str, int]] = None,
) -> SizingResult:
    """
    Final submission rounding for pairs with venue-specific quantity rules.

    The override wins over the step-size result. Rounding is always down;
    leverage and margin are recomputed and the result is re-validated.

    Raises:
        SizingRejectedError(position_too_small): overridden qty falls under
            min qty or min notional.
    """
    decimals: Optional[int] = None
    if pair in set(whole_quantity_pairs):
        decimals = 0
    elif precision_overrides and pair in precision_overrides:
        decimals = precision_overrides[pair]
    if decimals is None:
        return result

    qty = result.qty.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    if qty == result.qty:
        return result

    entry = Decimal(str(entry))
    fund = Decimal(str(fund))
    notional = qty * entry
    if qty <= 0 or qty < meta.min_qty or notional < meta.min_notional:
        raise SizingRejectedError(
            SizingRejectionReason.POSITION_TOO_SMALL,
            f"Position too small after {pair} precision override: qty {_fmt(qty)} "
            f"(min qty {_fmt(meta.min_qty)}, min notional {_fmt(meta.min_notional)})",
        )

    leverage = required_leverage(notional, fund)
    warnings = [w for w in result.warnings if not w.startswith("High leverage")]
    if leverage > meta.max_leverage:
        warnings.append(
            f"High leverage {leverage}x may be rejected by exchange (max: {_fmt(meta.max_leverage)}x)"
        )
    logger.info("QUANTITY_OVERRIDE_APPLIED", pair=pair, before=str(result.qty), after=str(qty))
    return SizingResult(
        qty=qty,
        leverage=leverage,
        notional=notional,
        required_margin=notional / leverage,
        warnings=warnings,
    )
