"""
Eligibility Evaluator Module

One canonical set of seven loan eligibility rules evaluated over an
immutable snapshot of member state. Every rule is always evaluated so the
caller gets the complete list of failures (and can decide whether to ask an
admin for an override). The evaluator never touches storage: all numbers in
its messages come from the snapshot it was given.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import calendar
import math

from .config import LoanEngineConfig, get_config
from .calculator import InstallmentCalculator
from .models import JoiningFeeStatus


class EligibilityRule(Enum):
    """Rule identifiers, in evaluation and reporting order"""
    NOT_BLOCKED = "not_blocked"
    JOINING_FEE_APPROVED = "joining_fee_approved"
    MINIMUM_BALANCE = "minimum_balance"
    TENURE = "tenure"
    NO_ACTIVE_LOAN = "no_active_loan"
    SUBSCRIPTION_PAID = "subscription_paid"
    COOLDOWN_SINCE_CLOSURE = "cooldown_since_closure"


def add_months(start_date: date, months: int) -> date:
    """Add (or subtract) months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(frozen=True)
class EligibilitySnapshot:
    """
    Member state read once inside a single transaction.

    ``active_loan_ids`` already excludes the loan being approved when the
    snapshot is built for an approval decision.
    """
    member_id: str
    balance: Decimal
    is_blocked: bool
    joining_fee_status: JoiningFeeStatus
    registration_date: Optional[date]
    active_loan_ids: Tuple[str, ...]
    last_closure_date: Optional[datetime]
    subscription_paid: Decimal
    subscription_pending: Decimal
    as_of: datetime


@dataclass(frozen=True)
class RuleCheck:
    """Outcome of one rule"""
    rule: EligibilityRule
    passed: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule": self.rule.value,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class EligibilityResult:
    """Result of evaluating all rules"""
    member_id: str
    eligible: bool
    checks: Tuple[RuleCheck, ...]
    max_loan_amount: Decimal
    as_of: datetime

    @property
    def failed_rules(self) -> List[str]:
        return [check.rule.value for check in self.checks if not check.passed]

    @property
    def messages(self) -> List[str]:
        return [check.message for check in self.checks if not check.passed]

    def check(self, rule: EligibilityRule) -> RuleCheck:
        return next(c for c in self.checks if c.rule == rule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "eligible": self.eligible,
            "failed_rules": self.failed_rules,
            "messages": self.messages,
            "checks": [check.to_dict() for check in self.checks],
            "max_loan_amount": str(self.max_loan_amount),
            "as_of": self.as_of.isoformat(),
        }


@dataclass(frozen=True)
class EligibilityFailure:
    """
    "Not eligible" outcome of a submission or approval. A result, not an
    exception: the caller decides whether to seek an admin override.
    """
    member_id: str
    failed_rules: List[str]
    messages: List[str]
    max_loan_amount: Decimal
    loan_id: Optional[str] = None

    @classmethod
    def from_result(cls, result: EligibilityResult,
                    loan_id: Optional[str] = None) -> 'EligibilityFailure':
        return cls(
            member_id=result.member_id,
            failed_rules=result.failed_rules,
            messages=result.messages,
            max_loan_amount=result.max_loan_amount,
            loan_id=loan_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "failed_rules": list(self.failed_rules),
            "messages": list(self.messages),
            "max_loan_amount": str(self.max_loan_amount),
            "loan_id": self.loan_id,
        }


class EligibilityEvaluator:
    """Evaluates the seven eligibility rules against a snapshot"""

    def __init__(self, config: Optional[LoanEngineConfig] = None,
                 calculator: Optional[InstallmentCalculator] = None):
        self.config = config or get_config()
        self.calculator = calculator or InstallmentCalculator(self.config)

    def evaluate(self, snapshot: EligibilitySnapshot) -> EligibilityResult:
        checks = (
            self._check_not_blocked(snapshot),
            self._check_joining_fee(snapshot),
            self._check_minimum_balance(snapshot),
            self._check_tenure(snapshot),
            self._check_no_active_loan(snapshot),
            self._check_subscription(snapshot),
            self._check_cooldown(snapshot),
        )
        return EligibilityResult(
            member_id=snapshot.member_id,
            eligible=all(check.passed for check in checks),
            checks=checks,
            max_loan_amount=self.calculator.max_loan_amount(snapshot.balance),
            as_of=snapshot.as_of,
        )

    def _check_not_blocked(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        if snapshot.is_blocked:
            return RuleCheck(EligibilityRule.NOT_BLOCKED, False, "Member account is blocked")
        return RuleCheck(EligibilityRule.NOT_BLOCKED, True, "Member account is not blocked")

    def _check_joining_fee(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        status = snapshot.joining_fee_status
        details = {"joining_fee_status": status.value}
        if status == JoiningFeeStatus.APPROVED:
            return RuleCheck(EligibilityRule.JOINING_FEE_APPROVED, True,
                             "Joining fee approved", details)
        return RuleCheck(EligibilityRule.JOINING_FEE_APPROVED, False,
                         f"Joining fee is {status.value}, it must be approved", details)

    def _check_minimum_balance(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        minimum = self.config.min_balance
        details = {"balance": str(snapshot.balance), "required": str(minimum)}
        if snapshot.balance >= minimum:
            return RuleCheck(EligibilityRule.MINIMUM_BALANCE, True,
                             f"Balance {snapshot.balance} meets the minimum of {minimum}", details)
        shortfall = minimum - snapshot.balance
        details["shortfall"] = str(shortfall)
        return RuleCheck(EligibilityRule.MINIMUM_BALANCE, False,
                         f"Balance {snapshot.balance} is below the minimum of {minimum} "
                         f"(short by {shortfall})", details)

    def _check_tenure(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        years = self.config.tenure_years
        if snapshot.registration_date is None:
            return RuleCheck(EligibilityRule.TENURE, False,
                             "Registration date is unknown, tenure cannot be established",
                             {"required_years": years})

        as_of_date = snapshot.as_of.date()
        eligible_from = add_months(snapshot.registration_date, 12 * years)
        details = {
            "registration_date": snapshot.registration_date.isoformat(),
            "eligible_from": eligible_from.isoformat(),
            "required_years": years,
        }
        if eligible_from <= as_of_date:
            return RuleCheck(EligibilityRule.TENURE, True,
                             f"Member since {snapshot.registration_date.isoformat()}", details)
        days_remaining = (eligible_from - as_of_date).days
        details["days_remaining"] = days_remaining
        return RuleCheck(EligibilityRule.TENURE, False,
                         f"Membership must be at least {years} year(s) old, "
                         f"{days_remaining} day(s) remaining", details)

    def _check_no_active_loan(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        details = {"active_loan_ids": list(snapshot.active_loan_ids)}
        if not snapshot.active_loan_ids:
            return RuleCheck(EligibilityRule.NO_ACTIVE_LOAN, True, "No active loan", details)
        return RuleCheck(EligibilityRule.NO_ACTIVE_LOAN, False,
                         f"Member already has {len(snapshot.active_loan_ids)} active loan(s)",
                         details)

    def _check_subscription(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        required = self.config.required_subscription
        months = self.config.subscription_window_months
        details = {
            "paid": str(snapshot.subscription_paid),
            "pending": str(snapshot.subscription_pending),
            "required": str(required),
            "window_months": months,
        }
        if snapshot.subscription_paid >= required:
            return RuleCheck(EligibilityRule.SUBSCRIPTION_PAID, True,
                             f"Subscriptions of {snapshot.subscription_paid} paid in the last "
                             f"{months} months", details)
        shortfall = required - snapshot.subscription_paid
        details["shortfall"] = str(shortfall)
        message = (f"Subscriptions paid in the last {months} months are "
                   f"{snapshot.subscription_paid}, {shortfall} short of {required}")
        if snapshot.subscription_pending > 0:
            message += f" ({snapshot.subscription_pending} awaiting approval)"
        return RuleCheck(EligibilityRule.SUBSCRIPTION_PAID, False, message, details)

    def _check_cooldown(self, snapshot: EligibilitySnapshot) -> RuleCheck:
        days = self.config.closure_cooldown_days
        if snapshot.last_closure_date is None:
            return RuleCheck(EligibilityRule.COOLDOWN_SINCE_CLOSURE, True,
                             "No previously closed loan", {"cooldown_days": days})

        available_at = snapshot.last_closure_date + timedelta(days=days)
        details = {
            "last_closure_date": snapshot.last_closure_date.isoformat(),
            "available_at": available_at.isoformat(),
            "cooldown_days": days,
        }
        if snapshot.as_of >= available_at:
            return RuleCheck(EligibilityRule.COOLDOWN_SINCE_CLOSURE, True,
                             f"{days} days have passed since the last loan closed", details)
        days_remaining = math.ceil((available_at - snapshot.as_of).total_seconds() / 86400)
        details["days_remaining"] = days_remaining
        return RuleCheck(EligibilityRule.COOLDOWN_SINCE_CLOSURE, False,
                         f"{days} days must pass after the last loan closed, "
                         f"{days_remaining} day(s) remaining", details)
