"""
Installment Calculator Module

Zero-interest repayment terms for fund loans. The monthly installment grows
with the square of the loan and shrinks with the member's balance:

    installment = max(ceil5(0.02 * amount^2 / (3 * balance)), MIN_INSTALLMENT)

Repayment runs in whole installments with a smaller final installment for
any remainder, so the schedule always sums to the loan amount exactly.
"""

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, InvalidOperation
from dataclasses import dataclass
from typing import List, Optional, Any
from enum import Enum

from .config import LoanEngineConfig, get_config
from .errors import ValidationError
from .models import quantize_amount


class BalanceTier(Enum):
    """Balance bands used for display and loan sizing guidance"""
    INELIGIBLE = "ineligible"  # Below minimum balance
    BASIC = "basic"
    MEDIUM = "medium"
    SPECIAL = "special"        # Balance large enough for the system maximum


# Lower bounds of the non-ineligible tiers
MEDIUM_TIER_BALANCE = Decimal("1000")
SPECIAL_TIER_BALANCE = Decimal("3330")


@dataclass(frozen=True)
class LoanTerms:
    """Computed repayment terms for a loan amount against a balance"""
    loan_amount: Decimal
    balance: Decimal
    installment: Decimal
    implied_period: int
    payment_count: int
    final_installment: Decimal
    base_installment: Decimal
    applied_minimum: bool
    max_loan_amount: Decimal
    balance_tier: BalanceTier

    def to_dict(self) -> dict:
        return {
            "loan_amount": str(self.loan_amount),
            "balance": str(self.balance),
            "installment": str(self.installment),
            "implied_period": self.implied_period,
            "payment_count": self.payment_count,
            "final_installment": str(self.final_installment),
            "base_installment": str(self.base_installment),
            "applied_minimum": self.applied_minimum,
            "max_loan_amount": str(self.max_loan_amount),
            "balance_tier": self.balance_tier.value,
        }


def parse_amount(value: Any, field_name: str) -> Decimal:
    """Parse a user-supplied amount into Decimal"""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return amount


class InstallmentCalculator:
    """Pure calculator for installment, period and loan ceiling"""

    def __init__(self, config: Optional[LoanEngineConfig] = None):
        self.config = config or get_config()

    def _quantize(self, amount: Decimal) -> Decimal:
        return quantize_amount(amount, self.config.currency_precision)

    def round_up_to_step(self, amount: Decimal) -> Decimal:
        """Round up to the next multiple of the rounding step (5 by default)"""
        step = self.config.installment_rounding_step
        return (amount / step).to_integral_value(rounding=ROUND_CEILING) * step

    def max_loan_amount(self, balance: Any) -> Decimal:
        """min(balance * multiplier, system maximum), never negative"""
        balance = parse_amount(balance, "balance")
        ceiling = min(balance * self.config.max_loan_multiplier, self.config.system_max_loan)
        return self._quantize(max(ceiling, Decimal("0")))

    def balance_tier(self, balance: Any) -> BalanceTier:
        balance = parse_amount(balance, "balance")
        if balance >= SPECIAL_TIER_BALANCE:
            return BalanceTier.SPECIAL
        if balance >= MEDIUM_TIER_BALANCE:
            return BalanceTier.MEDIUM
        if balance >= self.config.min_balance:
            return BalanceTier.BASIC
        return BalanceTier.INELIGIBLE

    def compute(self, loan_amount: Any, balance: Any) -> LoanTerms:
        """
        Compute repayment terms.

        Args:
            loan_amount: Requested loan amount, must be positive
            balance: Member balance the installment is scaled against, must be positive

        Returns:
            LoanTerms

        Raises:
            ValidationError: Non-numeric or non-positive inputs
        """
        amount = parse_amount(loan_amount, "loan_amount")
        balance = parse_amount(balance, "balance")
        if amount <= 0:
            raise ValidationError("Loan amount must be greater than zero")
        if balance <= 0:
            raise ValidationError("Balance must be greater than zero")
        amount = self._quantize(amount)

        # Single division: the numerator is exact, so a value just above a step stays above it
        raw = (self.config.installment_rate * amount * amount
               / (self.config.installment_rate_divisor * balance))
        base = self.round_up_to_step(raw)
        installment = max(base, self.config.min_installment)

        full_payments = int((amount / installment).to_integral_value(rounding=ROUND_FLOOR))
        remainder = amount - installment * full_payments
        if remainder > 0:
            payment_count = full_payments + 1
            final_installment = remainder
        else:
            payment_count = full_payments
            final_installment = installment

        return LoanTerms(
            loan_amount=amount,
            balance=balance,
            installment=self._quantize(installment),
            implied_period=max(self.config.min_period_months, payment_count),
            payment_count=payment_count,
            final_installment=self._quantize(final_installment),
            base_installment=self._quantize(base),
            applied_minimum=base < self.config.min_installment,
            max_loan_amount=self.max_loan_amount(balance),
            balance_tier=self.balance_tier(balance),
        )

    def schedule(self, loan_amount: Any, balance: Any) -> List[Decimal]:
        """Installment amounts in payment order; sums to the loan amount exactly"""
        terms = self.compute(loan_amount, balance)
        return [terms.installment] * (terms.payment_count - 1) + [terms.final_installment]

    def terms_for_balance(self, balance: Any) -> Optional[LoanTerms]:
        """Terms of the largest loan the balance allows; None below the minimum balance"""
        balance = parse_amount(balance, "balance")
        if balance < self.config.min_balance:
            return None
        return self.compute(self.max_loan_amount(balance), balance)
