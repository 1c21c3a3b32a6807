"""
Records Module

Dataclasses for members, subscription credits, loan requests, loan payments
and override audit entries, plus conversion to and from storage rows.
All monetary values are Decimal; timestamps are timezone-aware UTC.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, date, time, timezone
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Any
from enum import Enum
import json
import uuid


class JoiningFeeStatus(Enum):
    """Joining fee review status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LoanStatus(Enum):
    """Loan request lifecycle states"""
    PENDING = "pending"      # Submitted, awaiting admin decision
    APPROVED = "approved"    # Approved and being repaid
    REJECTED = "rejected"    # Terminal
    CLOSED = "closed"        # Fully repaid, terminal


class PaymentStatus(Enum):
    """Loan payment review status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CreditType(Enum):
    """Types of member credit transactions"""
    SUBSCRIPTION = "subscription"
    DEPOSIT = "deposit"
    OTHER = "other"


ACTIVE_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED)
SUBSCRIPTION_CREDIT_TYPES = (CreditType.SUBSCRIPTION, CreditType.DEPOSIT)


def new_id() -> str:
    """Generate a record identifier"""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a stored or user-supplied amount to Decimal (never via float repr)"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(amount: Decimal, precision: int = 3) -> Decimal:
    """Round an amount to currency precision"""
    return amount.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def to_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp, assuming UTC when no offset is present.
    A bare date means midnight UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def to_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


@dataclass
class Member:
    """
    A fund member as seen by the engine. Balance, flags and fee status are
    owned by collaborators (transaction approval, admin screens); the engine
    only reads them, under lock when deciding.
    """
    id: str
    name: str
    balance: Decimal
    is_blocked: bool = False
    joining_fee_status: JoiningFeeStatus = JoiningFeeStatus.PENDING
    registration_date: Optional[date] = None
    owner_admin_id: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['joining_fee_status'] = self.joining_fee_status.value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'Member':
        return cls(
            id=row['id'],
            name=row['name'],
            balance=to_decimal(row['balance']),
            is_blocked=bool(row['is_blocked']),
            joining_fee_status=JoiningFeeStatus(row['joining_fee_status']),
            registration_date=to_date(row.get('registration_date')),
            owner_admin_id=row.get('owner_admin_id'),
        )


@dataclass
class CreditTransaction:
    """Subscription ledger entry credited to a member"""
    id: str
    member_id: str
    amount: Decimal
    transaction_type: CreditType
    status: PaymentStatus
    date: datetime
    memo: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['transaction_type'] = self.transaction_type.value
        row['status'] = self.status.value
        row['date'] = to_datetime(self.date)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'CreditTransaction':
        return cls(
            id=row['id'],
            member_id=row['member_id'],
            amount=to_decimal(row['amount']),
            transaction_type=CreditType(row['transaction_type']),
            status=PaymentStatus(row['status']),
            date=to_datetime(row['date']),
            memo=row.get('memo'),
        )


@dataclass
class LoanRequest:
    """
    A member's loan request and its repayment terms.

    Lifecycle:
    1. Created pending by the request serializer
    2. Approved (optionally by admin override) or rejected
    3. Closed once accepted payments cover the requested amount
    """
    id: str
    member_id: str
    requested_amount: Decimal
    installment_amount: Decimal
    implied_period: int
    status: LoanStatus = LoanStatus.PENDING
    request_date: datetime = field(default_factory=utc_now)
    approval_date: Optional[datetime] = None
    rejection_date: Optional[datetime] = None
    closure_date: Optional[datetime] = None
    deciding_admin_id: Optional[str] = None
    admin_override: bool = False
    override_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Pending or approved with no closure date"""
        return self.status in ACTIVE_LOAN_STATUSES and self.closure_date is None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['status'] = self.status.value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'LoanRequest':
        return cls(
            id=row['id'],
            member_id=row['member_id'],
            requested_amount=to_decimal(row['requested_amount']),
            installment_amount=to_decimal(row['installment_amount']),
            implied_period=int(row['implied_period']),
            status=LoanStatus(row['status']),
            request_date=to_datetime(row['request_date']),
            approval_date=to_datetime(row.get('approval_date')),
            rejection_date=to_datetime(row.get('rejection_date')),
            closure_date=to_datetime(row.get('closure_date')),
            deciding_admin_id=row.get('deciding_admin_id'),
            admin_override=bool(row.get('admin_override')),
            override_reason=row.get('override_reason'),
            rejection_reason=row.get('rejection_reason'),
            notes=row.get('notes'),
        )


@dataclass
class LoanPayment:
    """A repayment against a loan; only accepted payments count toward total paid"""
    id: str
    target_loan_id: str
    member_id: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    date: datetime = field(default_factory=utc_now)
    deciding_admin_id: Optional[str] = None
    memo: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['status'] = self.status.value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'LoanPayment':
        return cls(
            id=row['id'],
            target_loan_id=row['target_loan_id'],
            member_id=row['member_id'],
            amount=to_decimal(row['amount']),
            status=PaymentStatus(row['status']),
            date=to_datetime(row['date']),
            deciding_admin_id=row.get('deciding_admin_id'),
            memo=row.get('memo'),
        )


@dataclass
class OverrideAuditEntry:
    """
    Immutable record of an approval that bypassed failed eligibility rules,
    hash-chained to its predecessor for tamper detection
    """
    id: str
    sequence: int
    admin_id: str
    member_id: str
    loan_id: str
    failed_rules: List[str]
    reason: str
    timestamp: datetime
    previous_hash: str = ""
    current_hash: str = ""

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row['failed_rules'] = json.dumps(self.failed_rules)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'OverrideAuditEntry':
        failed_rules = row['failed_rules']
        if isinstance(failed_rules, str):
            failed_rules = json.loads(failed_rules)
        return cls(
            id=row['id'],
            sequence=int(row['sequence']),
            admin_id=row['admin_id'],
            member_id=row['member_id'],
            loan_id=row['loan_id'],
            failed_rules=list(failed_rules),
            reason=row['reason'],
            timestamp=to_datetime(row['timestamp']),
            previous_hash=row.get('previous_hash') or "",
            current_hash=row.get('current_hash') or "",
        )
