"""
escrow_kernel.domain.commission -- Platform commission arithmetic.

Pure functions over Decimal.  ``commission + net == gross`` always holds
because net is derived by subtraction after the commission is rounded.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable

from escrow_kernel.db.types import ZERO, round_money, to_money
from escrow_kernel.exceptions import InvalidAmountError, InvalidRateError

DEFAULT_COMMISSION_RATE = Decimal("0.20")
DEFAULT_PROCESSING_FEE_RATE = Decimal("0.025")


class AdjustmentType(str, Enum):
    REFUND = "REFUND"
    ADDITIONAL = "ADDITIONAL"
    NONE = "NONE"


@dataclass(frozen=True)
class CommissionCalculation:
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal


@dataclass(frozen=True)
class OrderCommissionSummary:
    """Commission taken per released tranche, and in total."""

    total_gross: Decimal
    total_commission: Decimal
    total_net: Decimal
    tranches: tuple[CommissionCalculation, ...]


@dataclass(frozen=True)
class CommissionAdjustment:
    """Commission correction owed after a dispute changed the order value."""

    original_commission: Decimal
    resolved_commission: Decimal
    adjustment_amount: Decimal
    adjustment_type: AdjustmentType


def is_valid_rate(rate: object) -> bool:
    try:
        value = to_money(rate)
    except InvalidAmountError:
        return False
    return Decimal(0) <= value <= Decimal(1)


class CommissionCalculator:
    """Splits gross amounts into platform commission and tailor net."""

    def __init__(self, default_rate: Decimal = DEFAULT_COMMISSION_RATE):
        self._default_rate = self._check_rate(default_rate)

    @property
    def default_rate(self) -> Decimal:
        return self._default_rate

    @staticmethod
    def _check_rate(rate: object) -> Decimal:
        if not is_valid_rate(rate):
            raise InvalidRateError(rate)
        return to_money(rate)

    def calculate(self, gross: object, rate: object | None = None) -> CommissionCalculation:
        """
        Split ``gross`` at ``rate`` (default 0.20).

        Raises:
            InvalidAmountError: gross is negative or non-finite.
            InvalidRateError: rate outside [0, 1].
        """
        amount = to_money(gross)
        if amount < 0:
            raise InvalidAmountError(gross, "gross amount cannot be negative")
        effective_rate = self._default_rate if rate is None else self._check_rate(rate)

        gross_amount = round_money(amount)
        commission = round_money(gross_amount * effective_rate)
        return CommissionCalculation(
            gross_amount=gross_amount,
            commission_rate=effective_rate,
            commission_amount=commission,
            net_amount=gross_amount - commission,
        )

    def total_for_tranches(
        self,
        amounts: Iterable[object],
        rate: object | None = None,
    ) -> OrderCommissionSummary:
        """Commission computed tranche by tranche, then summed."""
        tranches = tuple(self.calculate(amount, rate) for amount in amounts)
        total_gross = sum((t.gross_amount for t in tranches), ZERO)
        total_commission = sum((t.commission_amount for t in tranches), ZERO)
        return OrderCommissionSummary(
            total_gross=total_gross,
            total_commission=total_commission,
            total_net=total_gross - total_commission,
            tranches=tranches,
        )

    def tailor_earnings(self, gross: object, rate: object | None = None) -> Decimal:
        return self.calculate(gross, rate).net_amount

    def platform_revenue(self, gross: object, rate: object | None = None) -> Decimal:
        return self.calculate(gross, rate).commission_amount

    def processing_fee(
        self,
        amount: object,
        fee_rate: Decimal = DEFAULT_PROCESSING_FEE_RATE,
    ) -> Decimal:
        """Payment-provider fee shown alongside the commission."""
        value = to_money(amount)
        if value < 0:
            raise InvalidAmountError(amount, "amount cannot be negative")
        return round_money(value * self._check_rate(fee_rate))

    def dispute_adjustment(
        self,
        original_amount: object,
        resolved_amount: object,
        rate: object | None = None,
    ) -> CommissionAdjustment:
        """Commission delta when a dispute changes what the order is worth."""
        original = self.calculate(original_amount, rate).commission_amount
        resolved = self.calculate(resolved_amount, rate).commission_amount
        if original > resolved:
            adjustment_type = AdjustmentType.REFUND
        elif original < resolved:
            adjustment_type = AdjustmentType.ADDITIONAL
        else:
            adjustment_type = AdjustmentType.NONE
        return CommissionAdjustment(
            original_commission=original,
            resolved_commission=resolved,
            adjustment_amount=abs(original - resolved),
            adjustment_type=adjustment_type,
        )
