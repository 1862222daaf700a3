"""Unit tests for Assets <-> Native conversion and rounding direction."""
from __future__ import annotations

from decimal import Decimal

import pytest

from vesu_liquidator.errors import ValidationError
from vesu_liquidator.models import Amount, AmountKind, AssetConfig, Denomination
from vesu_liquidator.units import (
    DEFAULT_QUANTUM,
    collateral_rate,
    convert,
    debt_rate,
    rate_for,
    to_assets,
    to_native,
    token_quantum,
)

RATES = [Decimal("1"), Decimal("1.000000000000000001"), Decimal("1.0375"), Decimal("3"), Decimal("0.7")]
AMOUNTS = [Decimal("0"), Decimal("1"), Decimal("2100"), Decimal("1.5"), Decimal("0.123456789012345678")]


class TestRounding:
    def test_collateral_rounds_down(self) -> None:
        assert to_native(Decimal("1"), Decimal("3"), AmountKind.COLLATERAL) == Decimal(
            "0.333333333333333333"
        )

    def test_debt_rounds_up(self) -> None:
        assert to_native(Decimal("1"), Decimal("3"), AmountKind.DEBT) == Decimal(
            "0.333333333333333334"
        )

    def test_custom_quantum(self) -> None:
        result = to_assets(Decimal("1"), Decimal("1.0000015"), AmountKind.DEBT, token_quantum(6))
        assert result == Decimal("1.000002")

    def test_exact_conversion_is_unchanged(self) -> None:
        assert to_assets(Decimal("2100"), Decimal("1"), AmountKind.DEBT) == Decimal("2100")


class TestRoundTrip:
    @pytest.mark.parametrize("rate", RATES)
    @pytest.mark.parametrize("amount", AMOUNTS)
    def test_collateral_never_gains(self, amount: Decimal, rate: Decimal) -> None:
        native = to_native(amount, rate, AmountKind.COLLATERAL)
        back = to_assets(native, rate, AmountKind.COLLATERAL)
        assert back <= amount
        assert amount - back <= rate * DEFAULT_QUANTUM + DEFAULT_QUANTUM

    @pytest.mark.parametrize("rate", RATES)
    @pytest.mark.parametrize("amount", AMOUNTS)
    def test_debt_never_shrinks(self, amount: Decimal, rate: Decimal) -> None:
        native = to_native(amount, rate, AmountKind.DEBT)
        back = to_assets(native, rate, AmountKind.DEBT)
        assert back >= amount
        assert back - amount <= rate * DEFAULT_QUANTUM + DEFAULT_QUANTUM


class TestValidation:
    @pytest.mark.parametrize("rate", [Decimal("0"), Decimal("-1"), Decimal("NaN"), Decimal("Infinity")])
    def test_bad_rate_raises(self, rate: Decimal) -> None:
        with pytest.raises(ValidationError):
            to_native(Decimal("1"), rate, AmountKind.DEBT)

    def test_negative_amount_raises(self) -> None:
        with pytest.raises(ValidationError):
            to_assets(Decimal("-1"), Decimal("1"), AmountKind.COLLATERAL)


class TestConvert:
    def test_sign_is_preserved(self) -> None:
        result = convert(
            Amount(Decimal("-10"), Denomination.ASSETS), Decimal("2"), AmountKind.DEBT, Denomination.NATIVE
        )
        assert result == Amount(Decimal("-5.000000000000000000"), Denomination.NATIVE)

    def test_same_denomination_is_noop(self) -> None:
        amount = Amount(Decimal("3"), Denomination.NATIVE)
        assert convert(amount, Decimal("2"), AmountKind.DEBT, Denomination.NATIVE) is amount


class TestRates:
    def test_collateral_rate_from_config(self, eth_config: AssetConfig) -> None:
        assert collateral_rate(eth_config) == Decimal("1")

    def test_collateral_rate_empty_pool(self, eth_config: AssetConfig) -> None:
        empty = AssetConfig(
            total_collateral_shares=Decimal(0),
            total_nominal_debt=Decimal(0),
            reserve=Decimal(0),
            max_utilization=Decimal(1),
            fee_rate=Decimal(0),
            last_rate_accumulator=Decimal(1),
            last_updated=0,
        )
        assert collateral_rate(empty) == Decimal(1)

    def test_collateral_rate_grows_with_interest(self) -> None:
        config = AssetConfig(
            total_collateral_shares=Decimal("100"),
            total_nominal_debt=Decimal("50"),
            reserve=Decimal("50"),
            max_utilization=Decimal(1),
            fee_rate=Decimal(0),
            last_rate_accumulator=Decimal("1.1"),
            last_updated=0,
        )
        assert collateral_rate(config) == Decimal("1.05")

    def test_debt_rate_is_accumulator(self, usdc_config: AssetConfig) -> None:
        assert debt_rate(usdc_config) == usdc_config.last_rate_accumulator
        assert rate_for(usdc_config, AmountKind.DEBT) == usdc_config.last_rate_accumulator
