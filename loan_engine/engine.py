"""
Loan Engine Facade

Single entry point a hosting service binds to its HTTP, RPC or batch
surface. Wires storage, calculator, evaluator, serializer, lifecycle
manager, audit log and notifier from one configuration.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union, Any
import logging

from .audit import OverrideAuditLog, AuditFilter
from .calculator import InstallmentCalculator, LoanTerms, parse_amount
from .config import LoanEngineConfig, get_config
from .eligibility import EligibilityEvaluator, EligibilityResult, EligibilityFailure
from .errors import ValidationError, NotFoundError
from .events import EventDispatcher, create_dispatcher
from .lifecycle import LoanLifecycleManager, SweepResult, LoanSummary
from .migrations import MigrationManager
from .models import (
    Member, CreditTransaction, LoanRequest, LoanPayment, OverrideAuditEntry,
    JoiningFeeStatus, LoanStatus, PaymentStatus, CreditType,
    new_id, quantize_amount, to_date, to_datetime
)
from .requests import LoanRequestSerializer
from .snapshots import load_snapshot
from .storage import StorageInterface, create_storage


logger = logging.getLogger(__name__)


class DecisionAction(Enum):
    """Admin decisions on a pending loan"""
    APPROVE = "approve"
    REJECT = "reject"


class LoanEngine:
    """Collaborator-facing operations of the loan engine"""

    def __init__(self, storage: StorageInterface, config: Optional[LoanEngineConfig] = None,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.config = config or get_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.event_dispatcher = event_dispatcher or create_dispatcher(self.config)

        self.migrations = MigrationManager(storage)
        if self.config.auto_migrate:
            self.migrations.migrate_up()
        # Refuse to run without the storage-level one-active-loan guard
        self.migrations.verify_active_loan_index()

        self.calculator = InstallmentCalculator(self.config)
        self.evaluator = EligibilityEvaluator(self.config, self.calculator)
        self.audit_log = OverrideAuditLog(storage)
        self.serializer = LoanRequestSerializer(
            storage, self.config, self.evaluator, self.calculator,
            self.event_dispatcher, self.clock
        )
        self.lifecycle = LoanLifecycleManager(
            storage, self.audit_log, self.config, self.evaluator, self.calculator,
            self.event_dispatcher, self.clock
        )

    @classmethod
    def from_config(cls, config: Optional[LoanEngineConfig] = None,
                    clock: Optional[Callable[[], datetime]] = None) -> 'LoanEngine':
        """Build storage and the notifier pool from configuration"""
        config = config or get_config()
        storage = create_storage(
            config.database_url,
            lock_timeout=config.lock_timeout_seconds,
            min_connections=config.database_pool_min,
            max_connections=config.database_pool_max,
        )
        logger.info(f"Starting loan engine on {storage.dialect.name} storage")
        return cls(storage, config, create_dispatcher(config), clock)

    def close(self) -> None:
        """Drain pending notifications and release storage connections"""
        self.event_dispatcher.shutdown(wait=True)
        self.storage.close()

    # ------------------------------------------------------------------
    # Terms and eligibility
    # ------------------------------------------------------------------

    def compute_terms(self, loan_amount: Any, balance: Any) -> LoanTerms:
        return self.calculator.compute(loan_amount, balance)

    def check_eligibility(self, member_id: str) -> EligibilityResult:
        """Advisory eligibility check; submission re-checks under lock"""
        with self.storage.atomic(write=False) as txn:
            member = txn.get_member(member_id)
            if member is None:
                raise NotFoundError("Member", member_id)
            snapshot = load_snapshot(txn, member, self.clock(), self.config)
        return self.evaluator.evaluate(snapshot)

    # ------------------------------------------------------------------
    # Requests and decisions
    # ------------------------------------------------------------------

    def submit_loan_request(self, member_id: str, amount: Any, notes: Optional[str] = None,
                            retry_on_conflict: bool = False) -> Union[LoanRequest, EligibilityFailure]:
        if retry_on_conflict:
            return self.serializer.submit_with_retry(member_id, amount, notes)
        return self.serializer.submit(member_id, amount, notes)

    def decide(self, loan_id: str, admin_id: str, action: Union[DecisionAction, str],
               reason: Optional[str] = None,
               override: bool = False) -> Union[LoanRequest, EligibilityFailure]:
        """
        Approve or reject a pending loan. For approvals ``reason`` is the
        override reason; for rejections it is the rejection reason.
        """
        try:
            action = DecisionAction(action)
        except ValueError:
            raise ValidationError(f"Unknown decision action: {action!r}")

        if action == DecisionAction.APPROVE:
            return self.lifecycle.approve(loan_id, admin_id, override=override,
                                          override_reason=reason)
        if override:
            raise ValidationError("Override only applies to approvals")
        return self.lifecycle.reject(loan_id, admin_id, reason)

    # ------------------------------------------------------------------
    # Payments and closure
    # ------------------------------------------------------------------

    def record_payment(self, loan_id: str, member_id: str, amount: Any,
                       memo: Optional[str] = None,
                       status: Union[PaymentStatus, str] = PaymentStatus.PENDING,
                       admin_id: Optional[str] = None) -> LoanPayment:
        return self.lifecycle.record_payment(loan_id, member_id, amount, memo, status, admin_id)

    def accept_payment(self, payment_id: str, admin_id: str) -> LoanPayment:
        return self.lifecycle.accept_payment(payment_id, admin_id)

    def reject_payment(self, payment_id: str, admin_id: str) -> LoanPayment:
        return self.lifecycle.reject_payment(payment_id, admin_id)

    def close_loan(self, loan_id: str, admin_id: str) -> LoanRequest:
        return self.lifecycle.close_loan(loan_id, admin_id)

    def run_auto_close_sweep(self) -> SweepResult:
        return self.lifecycle.run_auto_close_sweep()

    # ------------------------------------------------------------------
    # Queries and diagnostics
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> LoanRequest:
        return self.lifecycle.get_loan(loan_id)

    def loan_summary(self, loan_id: str) -> LoanSummary:
        return self.lifecycle.loan_summary(loan_id)

    def loan_history(self, member_id: str) -> List[LoanRequest]:
        return self.lifecycle.loan_history(member_id)

    def list_loans(self, status: Optional[Union[LoanStatus, str]] = None,
                   owner_admin_id: Optional[str] = None,
                   limit: Optional[int] = None) -> List[LoanRequest]:
        return self.lifecycle.list_loans(LoanStatus(status) if status else None,
                                         owner_admin_id, limit)

    def list_payments(self, loan_id: str) -> List[LoanPayment]:
        return self.lifecycle.list_payments(loan_id)

    def list_override_audit(self, audit_filter: Optional[AuditFilter] = None) -> List[OverrideAuditEntry]:
        return self.audit_log.list_entries(audit_filter)

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_log.verify_integrity()

    def find_invariant_violations(self) -> List[Dict[str, Any]]:
        """Members holding more than one active loan; empty while the unique index holds"""
        with self.storage.atomic(write=False) as txn:
            violations = txn.find_members_with_multiple_active_loans()
        for violation in violations:
            logger.critical(
                f"Member {violation['member_id']} holds {violation['active_count']} active loans"
            )
        return violations

    # ------------------------------------------------------------------
    # Collaborator seeding (members and subscription ledger)
    # ------------------------------------------------------------------

    def register_member(self, name: str, balance: Any = Decimal('0'), is_blocked: bool = False,
                        joining_fee_status: Union[JoiningFeeStatus, str] = JoiningFeeStatus.PENDING,
                        registration_date: Optional[Union[date, str]] = None,
                        owner_admin_id: Optional[str] = None,
                        member_id: Optional[str] = None) -> Member:
        """Create a member row as the member-management collaborator would"""
        if not name or not name.strip():
            raise ValidationError("Member name is required")
        member = Member(
            id=member_id or new_id(),
            name=name.strip(),
            balance=quantize_amount(parse_amount(balance, "balance"), self.config.currency_precision),
            is_blocked=is_blocked,
            joining_fee_status=JoiningFeeStatus(joining_fee_status),
            registration_date=to_date(registration_date),
            owner_admin_id=owner_admin_id,
        )
        with self.storage.atomic() as txn:
            txn.insert_member(member)
        logger.info(f"Registered member {member.id}")
        return member

    def get_member(self, member_id: str) -> Member:
        with self.storage.atomic(write=False) as txn:
            member = txn.get_member(member_id)
        if member is None:
            raise NotFoundError("Member", member_id)
        return member

    def update_member(self, member_id: str, **fields) -> Member:
        """Update member facts (balance, flags, fee status, owner) under the member row lock"""
        if 'balance' in fields:
            fields['balance'] = quantize_amount(parse_amount(fields['balance'], "balance"),
                                                self.config.currency_precision)
        if 'joining_fee_status' in fields:
            fields['joining_fee_status'] = JoiningFeeStatus(fields['joining_fee_status'])
        if 'registration_date' in fields:
            fields['registration_date'] = to_date(fields['registration_date'])

        with self.storage.atomic() as txn:
            if txn.get_member(member_id, for_update=True) is None:
                raise NotFoundError("Member", member_id)
            try:
                txn.update_member(member_id, **fields)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            return txn.get_member(member_id)

    def record_credit_transaction(self, member_id: str, amount: Any,
                                  transaction_type: Union[CreditType, str] = CreditType.SUBSCRIPTION,
                                  status: Union[PaymentStatus, str] = PaymentStatus.ACCEPTED,
                                  transaction_date: Optional[Union[datetime, date, str]] = None,
                                  memo: Optional[str] = None) -> CreditTransaction:
        """Add a subscription ledger entry for a member; a bare date is taken as midnight UTC"""
        amount = parse_amount(amount, "amount")
        if amount <= 0:
            raise ValidationError("Credit amount must be greater than zero")
        credit = CreditTransaction(
            id=new_id(),
            member_id=member_id,
            amount=quantize_amount(amount, self.config.currency_precision),
            transaction_type=CreditType(transaction_type),
            status=PaymentStatus(status),
            date=to_datetime(transaction_date) if transaction_date is not None else self.clock(),
            memo=memo,
        )
        with self.storage.atomic() as txn:
            if txn.get_member(member_id) is None:
                raise NotFoundError("Member", member_id)
            txn.insert_credit(credit)
        return credit
