"""Unit tests for escrow_kernel.domain.commission."""

from decimal import Decimal

import pytest

from escrow_kernel.domain.commission import (
    AdjustmentType,
    CommissionCalculator,
    is_valid_rate,
)
from escrow_kernel.exceptions import InvalidAmountError, InvalidRateError


@pytest.fixture
def commission() -> CommissionCalculator:
    return CommissionCalculator()


class TestCalculate:

    def test_default_rate(self, commission):
        c = commission.calculate(Decimal("100.00"))
        assert c.commission_rate == Decimal("0.20")
        assert c.commission_amount == Decimal("20.00")
        assert c.net_amount == Decimal("80.00")

    def test_rounds_commission_half_up(self, commission):
        c = commission.calculate("33.33")
        assert c.commission_amount == Decimal("6.67")
        assert c.net_amount == Decimal("26.66")

    def test_explicit_rate(self, commission):
        assert commission.platform_revenue("200", "0.15") == Decimal("30.00")
        assert commission.tailor_earnings("200", "0.15") == Decimal("170.00")

    def test_zero_gross(self, commission):
        c = commission.calculate(0)
        assert c.commission_amount == Decimal("0.00")
        assert c.net_amount == Decimal("0.00")

    def test_negative_gross_rejected(self, commission):
        with pytest.raises(InvalidAmountError):
            commission.calculate("-1")

    def test_gross_too_large_to_round(self, commission):
        with pytest.raises(InvalidAmountError, match="out of range"):
            commission.calculate("1e30")

    @pytest.mark.parametrize("rate", ["-0.01", "1.01", "abc", None])
    def test_invalid_rate_rejected(self, rate):
        with pytest.raises(InvalidRateError):
            CommissionCalculator(rate)

    def test_rate_bounds(self):
        assert is_valid_rate("0")
        assert is_valid_rate("1")
        assert not is_valid_rate("1.5")


class TestTranches:

    def test_total_is_sum_of_tranches(self, commission):
        summary = commission.total_for_tranches(["8.33", "16.67", "8.33"])
        assert summary.total_gross == Decimal("33.33")
        assert summary.total_commission == sum(
            (t.commission_amount for t in summary.tranches), Decimal("0"),
        )
        assert summary.total_gross == summary.total_commission + summary.total_net

    def test_processing_fee(self, commission):
        assert commission.processing_fee("100.00") == Decimal("2.50")


class TestDisputeAdjustment:

    def test_refund_lowers_commission(self, commission):
        adj = commission.dispute_adjustment("100.00", "60.00")
        assert adj.original_commission == Decimal("20.00")
        assert adj.resolved_commission == Decimal("12.00")
        assert adj.adjustment_amount == Decimal("8.00")
        assert adj.adjustment_type == AdjustmentType.REFUND

    def test_unchanged_value(self, commission):
        adj = commission.dispute_adjustment("100.00", "100.00")
        assert adj.adjustment_type == AdjustmentType.NONE
        assert adj.adjustment_amount == Decimal("0.00")

    def test_increase(self, commission):
        adj = commission.dispute_adjustment("50.00", "100.00")
        assert adj.adjustment_type == AdjustmentType.ADDITIONAL
