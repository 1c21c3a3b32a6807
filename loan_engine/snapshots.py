"""
Snapshot Loader Module

Builds an EligibilitySnapshot from reads performed inside one open storage
transaction, so that the evaluator and the write that follows it see the
same state.
"""

from datetime import datetime, time, timezone
from typing import Optional

from .config import LoanEngineConfig
from .eligibility import EligibilitySnapshot, add_months
from .models import Member
from .storage import StorageTransaction


def subscription_window_start(as_of: datetime, months: int) -> datetime:
    """Start of the trailing subscription window (midnight UTC, N months back)"""
    start_date = add_months(as_of.date(), -months)
    return datetime.combine(start_date, time.min, tzinfo=timezone.utc)


def load_snapshot(txn: StorageTransaction, member: Member, as_of: datetime,
                  config: LoanEngineConfig, exclude_loan_id: Optional[str] = None,
                  lock: bool = False) -> EligibilitySnapshot:
    """
    Assemble the eligibility snapshot for a member.

    Args:
        txn: Open transaction; the member row should already be locked when
            the snapshot backs a decision
        member: Member row read in ``txn``
        as_of: Evaluation time
        config: Engine configuration (subscription window)
        exclude_loan_id: Loan to leave out of the active-loan rule (the loan
            being approved)
        lock: Read the member's active loans ``FOR UPDATE``
    """
    active_loans = txn.find_active_loans(member.id, for_update=lock,
                                         exclude_loan_id=exclude_loan_id)
    paid, pending = txn.subscription_totals(
        member.id, subscription_window_start(as_of, config.subscription_window_months)
    )

    return EligibilitySnapshot(
        member_id=member.id,
        balance=member.balance,
        is_blocked=member.is_blocked,
        joining_fee_status=member.joining_fee_status,
        registration_date=member.registration_date,
        active_loan_ids=tuple(loan.id for loan in active_loans),
        last_closure_date=txn.latest_closure_date(member.id),
        subscription_paid=paid,
        subscription_pending=pending,
        as_of=as_of,
    )
