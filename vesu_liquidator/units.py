"""Unit conversion between Assets (token amounts) and Native units (shares / nominal debt).

Rounding always favours the protocol:

* collateral conversions round down (the user never receives or claims more
  than the shares are worth),
* debt conversions round up (the user never owes less than was borrowed).
"""
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, localcontext

from .errors import ValidationError
from .models import Amount, AmountKind, AssetConfig, Denomination

# Native and Assets values are kept at 18 decimal places unless the caller
# passes a coarser quantum (e.g. the token's own decimals).
DEFAULT_QUANTUM = Decimal("1e-18")
_PRECISION = 78


def _rounding(kind: AmountKind) -> str:
    return ROUND_FLOOR if kind is AmountKind.COLLATERAL else ROUND_CEILING


def _check(value: Decimal, rate: Decimal) -> None:
    if not isinstance(rate, Decimal) or not rate.is_finite() or rate <= 0:
        raise ValidationError(f"Conversion rate must be a positive decimal, got {rate!r}")
    if not isinstance(value, Decimal) or not value.is_finite() or value < 0:
        raise ValidationError(f"Amount must be a non-negative decimal, got {value!r}")


def to_native(
    assets: Decimal,
    rate: Decimal,
    kind: AmountKind,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> Decimal:
    """Convert an Assets amount into Native units (shares or nominal debt)."""
    _check(assets, rate)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (assets / rate).quantize(quantum, rounding=_rounding(kind))


def to_assets(
    native: Decimal,
    rate: Decimal,
    kind: AmountKind,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> Decimal:
    """Convert a Native amount into Assets."""
    _check(native, rate)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return (native * rate).quantize(quantum, rounding=_rounding(kind))


def convert(
    amount: Amount,
    rate: Decimal,
    kind: AmountKind,
    to: Denomination,
    quantum: Decimal = DEFAULT_QUANTUM,
) -> Amount:
    """Convert a signed, tagged amount into the requested denomination.

    The sign is carried through; rounding is applied to the magnitude.
    """
    if amount.denomination is to:
        return amount
    magnitude = abs(amount.value)
    if to is Denomination.NATIVE:
        converted = to_native(magnitude, rate, kind, quantum)
    else:
        converted = to_assets(magnitude, rate, kind, quantum)
    return Amount(-converted if amount.value < 0 else converted, to)


def collateral_rate(config: AssetConfig) -> Decimal:
    """Assets per collateral share; 1 for an empty pool."""
    if config.total_collateral_shares <= 0:
        return Decimal(1)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return config.total_supplied_assets / config.total_collateral_shares


def debt_rate(config: AssetConfig) -> Decimal:
    """The rate accumulator scales nominal debt to real debt."""
    return config.last_rate_accumulator


def rate_for(config: AssetConfig, kind: AmountKind) -> Decimal:
    if kind is AmountKind.COLLATERAL:
        return collateral_rate(config)
    return debt_rate(config)


def token_quantum(decimals: int) -> Decimal:
    """Smallest representable amount of a token with ``decimals`` places."""
    return Decimal(1).scaleb(-decimals)
