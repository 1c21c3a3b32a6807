"""
Test suite for installment calculator

Tests installment rounding, minimum installment and period, the zero-interest
schedule, loan ceiling and balance tiers. No database involved.
"""

import pytest
from decimal import Decimal

from loan_engine.calculator import InstallmentCalculator, BalanceTier, parse_amount
from loan_engine.errors import ValidationError

from conftest import make_config


class TestComputeTerms:
    """Test installment and period computation"""

    def setup_method(self):
        self.calculator = InstallmentCalculator(make_config())

    def test_installment_multiple_of_five(self):
        """2000 against a balance of 1000 rounds 26.67 up to 30"""
        terms = self.calculator.compute(2000, 1000)

        assert terms.installment == Decimal("30")
        assert terms.installment % 5 == 0
        assert terms.installment >= 20
        assert terms.base_installment == Decimal("30")
        assert not terms.applied_minimum

    def test_remainder_extends_period(self):
        """66 full installments of 30 leave 20, paid as a 67th installment"""
        terms = self.calculator.compute(2000, 1000)

        assert terms.payment_count == 67
        assert terms.final_installment == Decimal("20")
        assert terms.implied_period == 67

    def test_minimum_installment_applied(self):
        terms = self.calculator.compute(500, 1000)

        assert terms.base_installment == Decimal("5")
        assert terms.installment == Decimal("20")
        assert terms.applied_minimum
        assert terms.payment_count == 25

    def test_minimum_period(self):
        """Small loans still run at least six months"""
        terms = self.calculator.compute(100, 1000)

        assert terms.installment == Decimal("20")
        assert terms.payment_count == 5
        assert terms.implied_period == 6

    def test_loan_smaller_than_installment(self):
        terms = self.calculator.compute(15, 1000)

        assert terms.payment_count == 1
        assert terms.final_installment == Decimal("15")
        assert terms.implied_period == 6

    def test_exact_ratio_does_not_round_up_a_step(self):
        """3000 against 1000 is exactly 60, not 65"""
        terms = self.calculator.compute(3000, 1000)

        assert terms.installment == Decimal("60")
        assert terms.payment_count == 50

    @pytest.mark.parametrize("amount,balance,installment", [
        (1503, 502, "35"),   # 30.000119...
        (1387, 513, "30"),   # 25.000246...
        ("3000.001", 1000, "65"),  # 60.00004...
    ])
    def test_value_just_above_step_rounds_up(self, amount, balance, installment):
        """Less than a fils above a multiple of 5 still moves to the next step"""
        terms = self.calculator.compute(amount, balance)

        assert terms.installment == Decimal(installment)
        assert terms.base_installment == Decimal(installment)

    def test_larger_balance_lowers_installment(self):
        low_balance = self.calculator.compute(3000, 1000)
        high_balance = self.calculator.compute(3000, 3000)

        assert high_balance.installment < low_balance.installment

    @pytest.mark.parametrize("amount,balance", [
        ("100", "500"),
        ("777.5", "1000"),
        ("2000", "1000"),
        ("1499.999", "500"),
        ("10000", "3334"),
        ("9999.999", "5000"),
    ])
    def test_schedule_sums_to_loan_amount(self, amount, balance):
        """Zero interest: the installments add up to exactly the loan"""
        schedule = self.calculator.schedule(amount, balance)
        terms = self.calculator.compute(amount, balance)

        assert sum(schedule) == Decimal(amount)
        assert len(schedule) == terms.payment_count
        assert all(payment == terms.installment for payment in schedule[:-1])
        assert schedule[-1] <= terms.installment

    def test_amounts_quantized_to_currency_precision(self):
        terms = self.calculator.compute("1000.0004", 1000)
        assert terms.loan_amount == Decimal("1000.000")

    @pytest.mark.parametrize("amount,balance", [
        (0, 1000),
        (-5, 1000),
        (1000, 0),
        (1000, -1),
        ("abc", 1000),
        (None, 1000),
        (float("nan"), 1000),
        (True, 1000),
    ])
    def test_invalid_inputs(self, amount, balance):
        with pytest.raises(ValidationError):
            self.calculator.compute(amount, balance)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            self.calculator.compute(0, 1000)


class TestLoanCeiling:
    """Test maximum loan amount and balance tiers"""

    def setup_method(self):
        self.calculator = InstallmentCalculator(make_config())

    def test_three_times_balance(self):
        assert self.calculator.max_loan_amount(1000) == Decimal("3000")
        assert self.calculator.max_loan_amount("499") == Decimal("1497")

    def test_system_maximum(self):
        assert self.calculator.max_loan_amount(5000) == Decimal("10000")

    def test_never_negative(self):
        assert self.calculator.max_loan_amount(-100) == Decimal("0")

    def test_configurable_ceiling(self):
        calculator = InstallmentCalculator(make_config(system_max_loan=Decimal("2000")))
        assert calculator.max_loan_amount(1000) == Decimal("2000")

    @pytest.mark.parametrize("balance,tier", [
        ("100", BalanceTier.INELIGIBLE),
        ("499.999", BalanceTier.INELIGIBLE),
        ("500", BalanceTier.BASIC),
        ("999", BalanceTier.BASIC),
        ("1000", BalanceTier.MEDIUM),
        ("3329", BalanceTier.MEDIUM),
        ("3330", BalanceTier.SPECIAL),
    ])
    def test_balance_tiers(self, balance, tier):
        assert self.calculator.balance_tier(balance) == tier

    def test_terms_for_balance(self):
        terms = self.calculator.terms_for_balance(1000)

        assert terms.loan_amount == Decimal("3000")
        assert terms.installment == Decimal("60")
        assert terms.balance_tier == BalanceTier.MEDIUM

    def test_terms_for_balance_below_minimum(self):
        assert self.calculator.terms_for_balance(499) is None

    def test_terms_to_dict(self):
        data = self.calculator.compute(2000, 1000).to_dict()

        assert data["installment"] == "30.000"
        assert data["implied_period"] == 67
        assert data["balance_tier"] == "medium"


class TestParseAmount:
    """Test amount parsing"""

    def test_float_uses_short_repr(self):
        assert parse_amount(0.1, "amount") == Decimal("0.1")

    def test_string(self):
        assert parse_amount("12.345", "amount") == Decimal("12.345")

    def test_infinite_rejected(self):
        with pytest.raises(ValidationError):
            parse_amount("Infinity", "amount")
