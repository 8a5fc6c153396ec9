"""
escrow_kernel.domain.escrow -- Exact-sum split of an order total.

Responsibility:
    Splits a total into the three escrow tranches.  Pure arithmetic, zero I/O.

Invariants enforced:
    - ``deposit + fitting + final == total`` exactly for every total inside
      the configured bounds.  The final tranche is always the remainder and
      is never rounded on its own.
    - Half-up rounding at two decimal places (33.33 -> fitting 16.67).

Failure modes:
    - InvalidAmountError when the total is non-finite, non-positive, carries
      sub-cent precision, or falls outside [min_amount, max_amount].
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from escrow_kernel.db.types import ZERO, is_whole_cents, round_money, to_money
from escrow_kernel.domain.lifecycle import EscrowStage
from escrow_kernel.exceptions import InvalidAmountError

DEFAULT_DEPOSIT_RATE = Decimal("0.25")
DEFAULT_FITTING_RATE = Decimal("0.50")
DEFAULT_MIN_AMOUNT = Decimal("10.00")
DEFAULT_MAX_AMOUNT = Decimal("10000.00")


@dataclass(frozen=True)
class EscrowPolicy:
    """Rates and bounds governing the split."""

    deposit_rate: Decimal = DEFAULT_DEPOSIT_RATE
    fitting_rate: Decimal = DEFAULT_FITTING_RATE
    min_amount: Decimal = DEFAULT_MIN_AMOUNT
    max_amount: Decimal = DEFAULT_MAX_AMOUNT

    def __post_init__(self) -> None:
        if self.deposit_rate < 0 or self.fitting_rate < 0:
            raise ValueError("Escrow rates must be non-negative")
        if self.deposit_rate + self.fitting_rate > 1:
            raise ValueError("Deposit and fitting rates must not exceed 1 combined")
        if self.min_amount > self.max_amount:
            raise ValueError("min_amount must not exceed max_amount")

    @property
    def final_rate(self) -> Decimal:
        return Decimal(1) - self.deposit_rate - self.fitting_rate


@dataclass(frozen=True)
class EscrowBreakdown:
    """Tranche amounts for one order total."""

    deposit_amount: Decimal
    fitting_amount: Decimal
    final_amount: Decimal
    total_amount: Decimal

    def amount_for(self, stage: EscrowStage) -> Decimal:
        if stage == EscrowStage.DEPOSIT:
            return self.deposit_amount
        if stage == EscrowStage.FITTING:
            return self.fitting_amount
        if stage == EscrowStage.FINAL:
            return self.final_amount
        if stage == EscrowStage.RELEASED:
            return ZERO
        raise InvalidAmountError(stage, "unknown escrow stage")

    def to_dict(self) -> dict[str, Any]:
        return {
            "depositAmount": str(self.deposit_amount),
            "fittingAmount": str(self.fitting_amount),
            "finalAmount": str(self.final_amount),
            "totalAmount": str(self.total_amount),
        }


class EscrowCalculator:
    """Computes and verifies escrow breakdowns under an EscrowPolicy."""

    def __init__(self, policy: EscrowPolicy | None = None):
        self._policy = policy or EscrowPolicy()

    @property
    def policy(self) -> EscrowPolicy:
        return self._policy

    def check_total(self, total: object) -> Decimal:
        """Coerce and bound-check an order total; returns it at cent precision."""
        amount = to_money(total)
        if amount <= 0:
            raise InvalidAmountError(total, "total must be positive")
        if amount < self._policy.min_amount or amount > self._policy.max_amount:
            raise InvalidAmountError(
                total,
                f"total must be between {self._policy.min_amount} "
                f"and {self._policy.max_amount}",
            )
        if not is_whole_cents(amount):
            raise InvalidAmountError(total, "total has sub-cent precision")
        return round_money(amount)

    def breakdown(self, total: object) -> EscrowBreakdown:
        """
        Split ``total`` into deposit, fitting and final tranches.

        Examples:
            100.00 -> 25.00 / 50.00 / 25.00
            33.33  ->  8.33 / 16.67 /  8.33
        """
        amount = self.check_total(total)
        deposit = round_money(amount * self._policy.deposit_rate)
        fitting = round_money(amount * self._policy.fitting_rate)
        final = amount - deposit - fitting
        return EscrowBreakdown(
            deposit_amount=deposit,
            fitting_amount=fitting,
            final_amount=final,
            total_amount=amount,
        )

    def stage_amount(self, total: object, stage: EscrowStage | str) -> Decimal:
        """Amount of the tranche released at ``stage`` (RELEASED -> 0)."""
        try:
            escrow_stage = EscrowStage(stage)
        except ValueError:
            raise InvalidAmountError(stage, "unknown escrow stage") from None
        return self.breakdown(total).amount_for(escrow_stage)

    def validate(self, breakdown: EscrowBreakdown) -> list[str]:
        """
        Re-check a breakdown that came from storage or a client.

        Returns a list of human-readable problems; empty means valid.
        """
        errors: list[str] = []
        components = {
            "deposit_amount": breakdown.deposit_amount,
            "fitting_amount": breakdown.fitting_amount,
            "final_amount": breakdown.final_amount,
            "total_amount": breakdown.total_amount,
        }
        for field_name, value in components.items():
            if not isinstance(value, Decimal) or not value.is_finite():
                errors.append(f"{field_name} is not a finite amount")
            elif value < 0:
                errors.append(f"{field_name} is negative")
        if errors:
            return errors

        parts = breakdown.deposit_amount + breakdown.fitting_amount + breakdown.final_amount
        if parts != breakdown.total_amount:
            errors.append(
                f"tranches sum to {parts}, expected {breakdown.total_amount}"
            )
        return errors

    def assert_valid(self, breakdown: EscrowBreakdown) -> None:
        errors = self.validate(breakdown)
        if errors:
            raise InvalidAmountError(breakdown.total_amount, "; ".join(errors))
