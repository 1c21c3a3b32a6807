"""
Loan Lifecycle Module

Admin decisions and repayment for loan requests:

    pending --approve--> approved --(accepted payments reach amount)--> closed
    pending --reject---> rejected

Every transition runs in one transaction holding the relevant row locks.
Locks are always taken member row first, then loan row, matching the
submission path. Payment acceptance, explicit closure and the auto-close
sweep all recompute the total paid under the loan row lock, so a closure
cannot race a late payment acceptance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple, Union, Any
import logging

from .audit import OverrideAuditLog
from .calculator import InstallmentCalculator, parse_amount
from .config import LoanEngineConfig, get_config
from .eligibility import EligibilityEvaluator, EligibilityFailure
from .errors import (
    ValidationError, InvalidStateError, NotFoundError, LoanEngineError
)
from .events import (
    EventPublisherMixin, EventDispatcher, LoanEvent, loan_event_data, payment_event_data
)
from .logging_config import log_action
from .models import (
    Member, LoanRequest, LoanPayment, LoanStatus, PaymentStatus, new_id, quantize_amount
)
from .snapshots import load_snapshot
from .storage import StorageInterface, StorageTransaction


logger = logging.getLogger(__name__)

ApproveResult = Union[LoanRequest, EligibilityFailure]


@dataclass
class SweepResult:
    """Outcome of one auto-close sweep"""
    scanned: int = 0
    closed_loan_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def closed_count(self) -> int:
        return len(self.closed_loan_ids)


@dataclass
class LoanSummary:
    """Repayment position of a loan"""
    loan_id: str
    member_id: str
    status: LoanStatus
    requested_amount: Decimal
    installment_amount: Decimal
    total_paid: Decimal
    pending_amount: Decimal
    remaining: Decimal
    payment_count: int
    closure_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "member_id": self.member_id,
            "status": self.status.value,
            "requested_amount": str(self.requested_amount),
            "installment_amount": str(self.installment_amount),
            "total_paid": str(self.total_paid),
            "pending_amount": str(self.pending_amount),
            "remaining": str(self.remaining),
            "payment_count": self.payment_count,
            "closure_date": self.closure_date.isoformat() if self.closure_date else None,
        }


def _require_text(value: Optional[str], what: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{what} is required")
    return str(value).strip()


class LoanLifecycleManager(EventPublisherMixin):
    """Approves, rejects, repays and closes loan requests"""

    def __init__(self, storage: StorageInterface, audit_log: OverrideAuditLog,
                 config: Optional[LoanEngineConfig] = None,
                 evaluator: Optional[EligibilityEvaluator] = None,
                 calculator: Optional[InstallmentCalculator] = None,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.audit_log = audit_log
        self.config = config or get_config()
        self.calculator = calculator or InstallmentCalculator(self.config)
        self.evaluator = evaluator or EligibilityEvaluator(self.config, self.calculator)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.set_event_dispatcher(event_dispatcher)

    def _quantize(self, amount: Decimal) -> Decimal:
        return quantize_amount(amount, self.config.currency_precision)

    # ------------------------------------------------------------------
    # Locking helpers
    # ------------------------------------------------------------------

    def _lock_member_and_loan(self, txn: StorageTransaction, loan_id: str) -> Tuple[Member, LoanRequest]:
        """Lock the owning member row, then the loan row"""
        loan = txn.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        member = txn.get_member(loan.member_id, for_update=True)
        if member is None:
            raise NotFoundError("Member", loan.member_id)
        return member, txn.get_loan(loan_id, for_update=True)

    def _lock_loan(self, txn: StorageTransaction, loan_id: str) -> LoanRequest:
        loan = txn.get_loan(loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return loan

    def _close_if_paid(self, txn: StorageTransaction, loan: LoanRequest,
                       now: datetime) -> Optional[LoanRequest]:
        """Close an approved loan whose accepted payments cover it; loan row must be locked"""
        if loan.status != LoanStatus.APPROVED or loan.closure_date is not None:
            return None
        total_paid, _ = txn.payment_totals(loan.id)
        if total_paid < loan.requested_amount:
            return None
        txn.update_loan(loan.id, status=LoanStatus.CLOSED, closure_date=now)
        logger.info(f"Loan {loan.id} closed: paid {total_paid} of {loan.requested_amount}")
        return replace(loan, status=LoanStatus.CLOSED, closure_date=now)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def approve(self, loan_id: str, admin_id: str, override: bool = False,
                override_reason: Optional[str] = None) -> ApproveResult:
        """
        Approve a pending loan after re-running eligibility on locked state.

        Args:
            loan_id: Pending loan to approve
            admin_id: Deciding admin
            override: Approve even if eligibility rules fail
            override_reason: Required when ``override`` is set

        Returns:
            The approved LoanRequest, or an EligibilityFailure when rules fail
            without an override (the loan stays pending)

        Raises:
            ValidationError: Missing reason, or amount above the balance ceiling
                (not waivable by override)
            InvalidStateError: Loan is not pending
        """
        admin_id = _require_text(admin_id, "Admin id")
        if override:
            override_reason = _require_text(override_reason, "An override reason")

        with self.storage.atomic() as txn:
            member, loan = self._lock_member_and_loan(txn, loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, only pending loans can be approved")

            now = self.clock()
            snapshot = load_snapshot(txn, member, now, self.config,
                                     exclude_loan_id=loan.id, lock=True)
            result = self.evaluator.evaluate(snapshot)

            if loan.requested_amount > result.max_loan_amount:
                raise ValidationError(
                    f"Loan amount {loan.requested_amount} exceeds the maximum loan of "
                    f"{result.max_loan_amount} for the current balance"
                )

            overridden = False
            if not result.eligible:
                if not override:
                    txn.set_rollback_only()
                    logger.info(f"Approval of loan {loan_id} refused: failed rules {result.failed_rules}")
                    return EligibilityFailure.from_result(result, loan_id=loan.id)
                self.audit_log.record_override(
                    txn, admin_id, member.id, loan.id, result.failed_rules,
                    override_reason, timestamp=now
                )
                overridden = True

            changes = {
                "status": LoanStatus.APPROVED,
                "approval_date": now,
                "deciding_admin_id": admin_id,
                "admin_override": overridden,
                "override_reason": override_reason if overridden else None,
            }
            txn.update_loan(loan.id, **changes)
            approved = replace(loan, **changes)

        log_action(
            logger, "info", f"Loan {loan_id} approved" + (" by override" if overridden else ""),
            user_id=admin_id, action="loan.approved", resource=f"loan:{loan_id}",
            extra={"admin_override": overridden}
        )
        self.publish_event(LoanEvent.LOAN_APPROVED, "loan", loan_id, loan_event_data(approved))
        return approved

    def reject(self, loan_id: str, admin_id: str, reason: str) -> LoanRequest:
        """Reject a pending loan; terminal"""
        admin_id = _require_text(admin_id, "Admin id")
        reason = _require_text(reason, "A rejection reason")

        with self.storage.atomic() as txn:
            _, loan = self._lock_member_and_loan(txn, loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, only pending loans can be rejected")

            changes = {
                "status": LoanStatus.REJECTED,
                "rejection_date": self.clock(),
                "deciding_admin_id": admin_id,
                "rejection_reason": reason,
            }
            txn.update_loan(loan.id, **changes)
            rejected = replace(loan, **changes)

        log_action(
            logger, "info", f"Loan {loan_id} rejected",
            user_id=admin_id, action="loan.rejected", resource=f"loan:{loan_id}",
            extra={"reason": reason}
        )
        self.publish_event(LoanEvent.LOAN_REJECTED, "loan", loan_id, loan_event_data(rejected))
        return rejected

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(self, loan_id: str, member_id: str, amount: Any,
                       memo: Optional[str] = None,
                       status: Union[PaymentStatus, str] = PaymentStatus.PENDING,
                       admin_id: Optional[str] = None) -> LoanPayment:
        """
        Record a repayment against an approved loan.

        Payments recorded ``pending`` (member self-service) wait for admin
        review; ``accepted`` payments (recorded by an admin) count toward the
        total paid immediately and may close the loan.

        Raises:
            ValidationError: Bad amount, below the installment (unless it pays
                the loan off), more than the outstanding balance, or a loan
                owned by another member
            InvalidStateError: Loan is not approved and open
        """
        status = PaymentStatus(status)
        if status == PaymentStatus.REJECTED:
            raise ValidationError("Payments can only be recorded as pending or accepted")
        if status == PaymentStatus.ACCEPTED:
            admin_id = _require_text(admin_id, "Admin id for an accepted payment")

        amount = parse_amount(amount, "amount")
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        amount = self._quantize(amount)

        closed = None
        with self.storage.atomic() as txn:
            loan = self._lock_loan(txn, loan_id)
            if loan.member_id != member_id:
                raise ValidationError(f"Loan {loan_id} does not belong to member {member_id}")
            if loan.status != LoanStatus.APPROVED or loan.closure_date is not None:
                raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, payments need an approved open loan")

            total_paid, pending = txn.payment_totals(loan.id)
            remaining = loan.requested_amount - total_paid
            outstanding = remaining - pending

            if amount > outstanding:
                raise ValidationError(
                    f"Payment of {amount} exceeds the outstanding balance of {max(outstanding, Decimal('0'))} "
                    f"(remaining {remaining}, {pending} awaiting review)"
                )
            is_final = amount == outstanding
            if amount < loan.installment_amount and not is_final:
                raise ValidationError(
                    f"Payment of {amount} is below the installment of {loan.installment_amount}; "
                    f"only a final payment of exactly {outstanding} may be smaller"
                )

            now = self.clock()
            payment = LoanPayment(
                id=new_id(),
                target_loan_id=loan.id,
                member_id=member_id,
                amount=amount,
                status=status,
                date=now,
                deciding_admin_id=admin_id if status == PaymentStatus.ACCEPTED else None,
                memo=memo,
            )
            txn.insert_payment(payment)

            if status == PaymentStatus.ACCEPTED:
                closed = self._close_if_paid(txn, loan, now)

        log_action(
            logger, "info", f"Payment {payment.id} of {amount} recorded {status.value}",
            user_id=admin_id or member_id, action="payment.recorded",
            resource=f"loan:{loan_id}", extra={"final": is_final}
        )
        self.publish_event(LoanEvent.PAYMENT_RECORDED, "payment", payment.id, payment_event_data(payment))
        if closed:
            self.publish_event(LoanEvent.LOAN_CLOSED, "loan", closed.id, loan_event_data(closed))
        return payment

    def _review_payment(self, payment_id: str, admin_id: str, accept: bool) -> LoanPayment:
        admin_id = _require_text(admin_id, "Admin id")

        closed = None
        with self.storage.atomic() as txn:
            payment = txn.get_payment(payment_id)
            if payment is None:
                raise NotFoundError("Payment", payment_id)
            loan = self._lock_loan(txn, payment.target_loan_id)
            payment = txn.get_payment(payment_id, for_update=True)
            if payment.status != PaymentStatus.PENDING:
                raise InvalidStateError(f"Payment {payment_id} is already {payment.status.value}")

            new_status = PaymentStatus.ACCEPTED if accept else PaymentStatus.REJECTED
            if accept:
                if loan.status != LoanStatus.APPROVED or loan.closure_date is not None:
                    raise InvalidStateError(f"Loan {loan.id} is {loan.status.value}, payments need an approved open loan")
                total_paid, _ = txn.payment_totals(loan.id)
                if total_paid + payment.amount > loan.requested_amount:
                    raise ValidationError(
                        f"Accepting payment of {payment.amount} would exceed the loan amount "
                        f"(paid {total_paid} of {loan.requested_amount})"
                    )

            txn.update_payment(payment.id, status=new_status, deciding_admin_id=admin_id)
            reviewed = replace(payment, status=new_status, deciding_admin_id=admin_id)

            if accept:
                closed = self._close_if_paid(txn, loan, self.clock())

        event = LoanEvent.PAYMENT_ACCEPTED if accept else LoanEvent.PAYMENT_REJECTED
        log_action(
            logger, "info", f"Payment {payment_id} {new_status.value}",
            user_id=admin_id, action=event.value, resource=f"loan:{loan.id}"
        )
        self.publish_event(event, "payment", payment_id, payment_event_data(reviewed))
        if closed:
            self.publish_event(LoanEvent.LOAN_CLOSED, "loan", closed.id, loan_event_data(closed))
        return reviewed

    def accept_payment(self, payment_id: str, admin_id: str) -> LoanPayment:
        """Accept a pending payment; closes the loan when it completes repayment"""
        return self._review_payment(payment_id, admin_id, accept=True)

    def reject_payment(self, payment_id: str, admin_id: str) -> LoanPayment:
        """Reject a pending payment; it never counts toward the total paid"""
        return self._review_payment(payment_id, admin_id, accept=False)

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def close_loan(self, loan_id: str, admin_id: str) -> LoanRequest:
        """Explicitly close a fully repaid loan"""
        admin_id = _require_text(admin_id, "Admin id")

        with self.storage.atomic() as txn:
            loan = self._lock_loan(txn, loan_id)
            if loan.status != LoanStatus.APPROVED or loan.closure_date is not None:
                raise InvalidStateError(f"Loan {loan_id} is {loan.status.value}, only approved open loans can be closed")
            closed = self._close_if_paid(txn, loan, self.clock())
            if closed is None:
                total_paid, _ = txn.payment_totals(loan.id)
                raise ValidationError(
                    f"Loan {loan_id} is not fully repaid: paid {total_paid} of {loan.requested_amount}"
                )

        log_action(
            logger, "info", f"Loan {loan_id} closed by admin",
            user_id=admin_id, action="loan.closed", resource=f"loan:{loan_id}"
        )
        self.publish_event(LoanEvent.LOAN_CLOSED, "loan", loan_id, loan_event_data(closed))
        return closed

    def run_auto_close_sweep(self) -> SweepResult:
        """
        Close every approved loan whose accepted payments cover it.

        Each candidate is re-checked in its own transaction under the loan row
        lock, so running the sweep twice (or alongside payment acceptance)
        never double-closes.
        """
        with self.storage.atomic(write=False) as txn:
            candidates = txn.find_open_approved_loan_ids()

        result = SweepResult(scanned=len(candidates))
        closed_loans = []
        for loan_id in candidates:
            try:
                with self.storage.atomic() as txn:
                    closed = self._close_if_paid(txn, self._lock_loan(txn, loan_id), self.clock())
            except LoanEngineError as e:
                logger.error(f"Auto-close sweep failed for loan {loan_id}: {e}")
                result.errors[loan_id] = str(e)
                continue
            if closed:
                result.closed_loan_ids.append(loan_id)
                closed_loans.append(closed)

        logger.info(f"Auto-close sweep scanned {result.scanned} loans, closed {result.closed_count}")
        for loan in closed_loans:
            self.publish_event(LoanEvent.LOAN_CLOSED, "loan", loan.id, loan_event_data(loan))
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> LoanRequest:
        with self.storage.atomic(write=False) as txn:
            loan = txn.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("Loan", loan_id)
        return loan

    def loan_summary(self, loan_id: str) -> LoanSummary:
        with self.storage.atomic(write=False) as txn:
            loan = txn.get_loan(loan_id)
            if loan is None:
                raise NotFoundError("Loan", loan_id)
            payments = txn.find_payments(loan_id)

        total_paid = sum((p.amount for p in payments if p.status == PaymentStatus.ACCEPTED), Decimal('0'))
        pending = sum((p.amount for p in payments if p.status == PaymentStatus.PENDING), Decimal('0'))
        return LoanSummary(
            loan_id=loan.id,
            member_id=loan.member_id,
            status=loan.status,
            requested_amount=loan.requested_amount,
            installment_amount=loan.installment_amount,
            total_paid=total_paid,
            pending_amount=pending,
            remaining=max(loan.requested_amount - total_paid, Decimal('0')),
            payment_count=sum(1 for p in payments if p.status == PaymentStatus.ACCEPTED),
            closure_date=loan.closure_date,
        )

    def loan_history(self, member_id: str) -> List[LoanRequest]:
        """All loans of a member, newest first"""
        with self.storage.atomic(write=False) as txn:
            if txn.get_member(member_id) is None:
                raise NotFoundError("Member", member_id)
            return txn.find_loans(member_id=member_id)

    def list_payments(self, loan_id: str,
                      status: Optional[PaymentStatus] = None) -> List[LoanPayment]:
        with self.storage.atomic(write=False) as txn:
            return txn.find_payments(loan_id, status)

    def list_loans(self, status: Optional[LoanStatus] = None,
                   owner_admin_id: Optional[str] = None,
                   limit: Optional[int] = None) -> List[LoanRequest]:
        """Loans filtered by status and by the admin who owns the member"""
        with self.storage.atomic(write=False) as txn:
            return txn.find_loans(status=status, owner_admin_id=owner_admin_id, limit=limit)
