"""
Tests for integer-cent money helpers and the payment split.
"""
from decimal import Decimal

import pytest

from order_bot.errors import ValidationError
from order_bot.money import compute_split, format_money, from_cents, to_cents


class TestConversions:
    def test_to_cents(self):
        assert to_cents("20.00") == 2000
        assert to_cents(Decimal("0.305")) == 31
        assert to_cents(20) == 2000

    def test_floats_rejected(self):
        with pytest.raises(TypeError):
            to_cents(20.5)

    def test_negative_rejected(self):
        with pytest.raises(ValidationError):
            to_cents("-1")

    def test_from_cents_and_format(self):
        assert from_cents(4500) == Decimal("45.00")
        assert format_money(4500) == "R$45.00"
        assert format_money(5, symbol="$") == "$0.05"


class TestComputeSplit:
    def test_five_percent_of_forty(self):
        split = compute_split(4000, Decimal("5"))
        assert split.platform_fee_cents == 200
        assert split.restaurant_amount_cents == 3800

    def test_fee_rounds_half_up(self):
        # 5% of 10 cents is 0.5 -> 1
        assert compute_split(10, Decimal("5")).platform_fee_cents == 1
        # 2.5% of 999 is 24.975 -> 25
        assert compute_split(999, Decimal("2.5")).platform_fee_cents == 25

    def test_parts_always_sum_to_total(self):
        percents = [Decimal(p) for p in ("0", "0.1", "2.5", "5", "7.77", "12.5", "33.333", "50", "99.99", "100")]
        for total in list(range(0, 250)) + [999, 1001, 4567, 123457, 10_000_001]:
            for percent in percents:
                split = compute_split(total, percent)
                assert split.platform_fee_cents + split.restaurant_amount_cents == total
                assert 0 <= split.platform_fee_cents <= total

    def test_reproducible(self):
        assert compute_split(4567, Decimal("7.5")) == compute_split(4567, Decimal("7.5"))

    def test_accepts_string_percentage(self):
        assert compute_split(4000, "5").platform_fee_cents == 200

    @pytest.mark.parametrize("percent", [Decimal("-1"), Decimal("100.01")])
    def test_percent_out_of_range(self, percent):
        with pytest.raises(ValidationError):
            compute_split(4000, percent)

    def test_negative_total(self):
        with pytest.raises(ValidationError):
            compute_split(-1, Decimal("5"))
