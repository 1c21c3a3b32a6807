"""
Loan Request Serializer Module

The only path that creates loan requests. A submission runs in one
transaction with four layered defenses against a member ending up with two
active loans:

1. The member row is locked, serializing submissions for the same member
   (different members never wait on each other).
2. Active loans are re-read under lock and every eligibility rule is
   evaluated against data read inside the transaction.
3. The active-loan count is queried again immediately before the insert;
   a hit there is a detected race.
4. The partial unique index on active loans rejects the insert if all of
   the above were somehow bypassed.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Union, Any
import logging
import time

from .calculator import InstallmentCalculator, parse_amount
from .config import LoanEngineConfig, get_config
from .eligibility import EligibilityEvaluator, EligibilityFailure
from .errors import ConflictError, NotFoundError, ValidationError
from .events import EventPublisherMixin, EventDispatcher, LoanEvent, loan_event_data
from .logging_config import log_action
from .models import LoanRequest, LoanStatus, new_id, quantize_amount
from .snapshots import load_snapshot
from .storage import StorageInterface


logger = logging.getLogger(__name__)

SubmitResult = Union[LoanRequest, EligibilityFailure]


class LoanRequestSerializer(EventPublisherMixin):
    """Serializes loan submissions per member using database locks"""

    def __init__(self, storage: StorageInterface, config: Optional[LoanEngineConfig] = None,
                 evaluator: Optional[EligibilityEvaluator] = None,
                 calculator: Optional[InstallmentCalculator] = None,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.config = config or get_config()
        self.calculator = calculator or InstallmentCalculator(self.config)
        self.evaluator = evaluator or EligibilityEvaluator(self.config, self.calculator)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.set_event_dispatcher(event_dispatcher)

    def submit(self, member_id: str, requested_amount: Any,
               notes: Optional[str] = None) -> SubmitResult:
        """
        Submit a loan request for a member.

        Returns:
            The persisted pending LoanRequest, or an EligibilityFailure listing
            every failed rule (nothing is written in that case)

        Raises:
            ValidationError: Amount not positive or above the member's ceiling
            NotFoundError: Unknown member
            ConflictError: A concurrent duplicate was detected; safe to retry once
            FatalStorageError: Lock timeout or database failure
        """
        amount = parse_amount(requested_amount, "requested_amount")
        if amount <= 0:
            raise ValidationError("Requested amount must be greater than zero")
        amount = quantize_amount(amount, self.config.currency_precision)

        with self.storage.atomic() as txn:
            # 1. Lock the member row
            member = txn.get_member(member_id, for_update=True)
            if member is None:
                raise NotFoundError("Member", member_id)

            # 2. Locked re-check against state read in this transaction
            now = self.clock()
            snapshot = load_snapshot(txn, member, now, self.config, lock=True)
            result = self.evaluator.evaluate(snapshot)

            if not result.eligible:
                txn.set_rollback_only()
                logger.info(
                    f"Loan request for member {member_id} not eligible: {result.failed_rules}"
                )
                return EligibilityFailure.from_result(result)

            if amount > result.max_loan_amount:
                raise ValidationError(
                    f"Requested amount {amount} exceeds the maximum loan of {result.max_loan_amount}"
                )

            terms = self.calculator.compute(amount, member.balance)

            # 3. Pre-insert re-verification, unlocked
            active_count = txn.count_active_loans(member_id)
            if active_count:
                logger.error(
                    f"Race detected before insert: member {member_id} already has "
                    f"{active_count} active loan(s) after the locked check passed"
                )
                raise ConflictError(
                    "Duplicate loan request: another request for this member was just submitted",
                    member_id=member_id
                )

            # 4. Insert; the active-loan unique index is the final guard
            loan = LoanRequest(
                id=new_id(),
                member_id=member_id,
                requested_amount=amount,
                installment_amount=terms.installment,
                implied_period=terms.implied_period,
                status=LoanStatus.PENDING,
                request_date=now,
                notes=notes,
            )
            txn.insert_loan(loan)

        log_action(
            logger, "info", f"Loan request {loan.id} submitted for {amount}",
            user_id=member_id, action="loan.requested", resource=f"loan:{loan.id}",
            extra={"installment": str(loan.installment_amount),
                   "implied_period": loan.implied_period}
        )
        self.publish_event(LoanEvent.LOAN_REQUESTED, "loan", loan.id, loan_event_data(loan))
        return loan

    def submit_with_retry(self, member_id: str, requested_amount: Any,
                          notes: Optional[str] = None) -> SubmitResult:
        """Submit, retrying exactly once after a short delay on ConflictError"""
        try:
            return self.submit(member_id, requested_amount, notes)
        except ConflictError as e:
            logger.warning(f"Conflict submitting loan for member {member_id}, retrying once: {e}")
            time.sleep(self.config.conflict_retry_delay_seconds)
            return self.submit(member_id, requested_amount, notes)
