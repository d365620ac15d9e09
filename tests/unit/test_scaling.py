"""
test_scaling.py - Unit tests for the fixed-point helpers

Tests:
- mul_div width and truncation
- rescale: unchanged, orphaned and drifted totals
- normalize: lazy per-holder normalization, ceiling clamp, off-by-one snap
"""

import pytest

from safeledger import (
    BASE_UNIT, MAX_UINT256, ArithmeticOverflow,
    mul_div, rescale, normalize, proportional_share,
)
from safeledger.scaling import check_uint, effective_scale


class TestMulDiv:
    """Tests for mul_div."""

    def test_truncates_toward_zero(self):
        assert mul_div(10, 1, 3) == 3
        assert mul_div(2, 1, 3) == 0

    def test_wide_intermediate(self):
        """The product may exceed 256 bits as long as the result fits."""
        assert mul_div(MAX_UINT256, BASE_UNIT, BASE_UNIT) == MAX_UINT256

    def test_result_overflow_raises(self):
        with pytest.raises(ArithmeticOverflow):
            mul_div(MAX_UINT256, 2, 1)

    def test_zero_divisor_raises(self):
        with pytest.raises(ZeroDivisionError):
            mul_div(1, 1, 0)

    def test_negative_operand_raises(self):
        with pytest.raises(ValueError):
            mul_div(-1, 1, 1)


class TestCheckUint:

    def test_accepts_bounds(self):
        assert check_uint(0) == 0
        assert check_uint(MAX_UINT256) == MAX_UINT256

    def test_rejects_negative(self):
        with pytest.raises(ValueError, match="non-negative"):
            check_uint(-5, "amount")

    def test_rejects_overflow(self):
        with pytest.raises(ArithmeticOverflow, match="amount"):
            check_uint(MAX_UINT256 + 1, "amount")


class TestRescale:
    """Tests for the reconciliation primitive."""

    def test_equal_totals_unchanged(self):
        result = rescale(1000, BASE_UNIT, 1000)
        assert result.changed is False
        assert result.orphaned is False
        assert result.total == 1000
        assert result.scale == BASE_UNIT

    def test_balance_with_nothing_recorded_is_orphaned(self):
        result = rescale(0, 0, 50)
        assert result.orphaned is True
        assert result.changed is False
        assert result.total == 0

    def test_growth_rescales(self):
        result = rescale(1000, BASE_UNIT, 1100)
        assert result.changed is True
        assert result.total == 1100
        assert result.scale == BASE_UNIT * 11 // 10

    def test_shrink_rescales(self):
        result = rescale(1000, BASE_UNIT, 250)
        assert result.total == 250
        assert result.scale == BASE_UNIT // 4

    def test_unset_scale_is_base_unit(self):
        assert rescale(1000, 0, 2000).scale == 2 * BASE_UNIT

    def test_compounds_existing_scale(self):
        first = rescale(1000, BASE_UNIT, 2000)
        second = rescale(first.total, first.scale, 3000)
        assert second.scale == 3 * BASE_UNIT

    def test_truncates(self):
        result = rescale(3, BASE_UNIT, 1)
        assert result.scale == BASE_UNIT // 3


class TestNormalize:
    """Tests for per-holder normalization."""

    def test_zero_amount(self):
        assert normalize(0, 2 * BASE_UNIT, BASE_UNIT) == 0

    def test_same_scale_is_identity(self):
        assert normalize(123, BASE_UNIT, BASE_UNIT) == 123

    def test_applies_ratio(self):
        assert normalize(1000, BASE_UNIT * 11 // 10, BASE_UNIT) == 1100
        assert normalize(1000, BASE_UNIT // 2, BASE_UNIT) == 500

    def test_unset_scales_are_base_unit(self):
        assert normalize(1000, 0, 0) == 1000
        assert normalize(1000, 2 * BASE_UNIT, 0) == 2000

    def test_ceiling_clamps(self):
        assert normalize(1000, 2 * BASE_UNIT, BASE_UNIT, ceiling=1500) == 1500

    def test_same_scale_respects_ceiling(self):
        assert normalize(1000, BASE_UNIT, BASE_UNIT, ceiling=0) == 0

    def test_same_scale_does_not_snap(self):
        """An amount one unit short of the pool is a real minority share."""
        assert normalize(999, BASE_UNIT, BASE_UNIT, ceiling=1000) == 999

    def test_off_by_one_snaps_to_ceiling(self):
        # 1000 * (1/3) truncates to 333 while the pool holds 334
        scale = BASE_UNIT // 3
        assert normalize(1000, scale, BASE_UNIT) == 333
        assert normalize(1000, scale, BASE_UNIT, ceiling=334) == 334

    def test_two_units_short_does_not_snap(self):
        scale = BASE_UNIT // 3
        assert normalize(1000, scale, BASE_UNIT, ceiling=335) == 333


class TestHelpers:

    def test_effective_scale(self):
        assert effective_scale(0) == BASE_UNIT
        assert effective_scale(7) == 7

    def test_proportional_share(self):
        assert proportional_share(400, 1000, 4000) == 100
        assert proportional_share(400, 1, 3) == 133
        assert proportional_share(400, 1, 0) == 0
