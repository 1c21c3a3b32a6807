"""
Test suite for loan request submission

Tests the submit path end to end, including concurrent duplicate
submissions and each fallback defense against a second active loan.
"""

import pytest
import threading
from datetime import timedelta
from decimal import Decimal

from loan_engine.eligibility import EligibilityFailure
from loan_engine.errors import ConflictError, NotFoundError, ValidationError
from loan_engine.models import LoanRequest, LoanStatus
from loan_engine.storage import SQLiteStorage, StorageTransaction
from loan_engine.engine import LoanEngine

from conftest import EngineTestCase


class TestSubmitLoanRequest(EngineTestCase):
    """Test single submissions"""

    def test_submit_creates_pending_loan(self):
        member = self.seed_member()

        loan = self.engine.submit_loan_request(member.id, "2000", notes="Car repair")

        assert isinstance(loan, LoanRequest)
        assert loan.status == LoanStatus.PENDING
        assert loan.requested_amount == Decimal("2000")
        assert loan.installment_amount == Decimal("30")
        assert loan.implied_period == 67
        assert loan.request_date == self.clock()
        assert loan.closure_date is None

        stored = self.engine.get_loan(loan.id)
        assert stored.notes == "Car repair"
        assert stored.installment_amount == Decimal("30")

    def test_ineligible_member_gets_failure_and_nothing_written(self):
        member = self.seed_member(balance="499", is_blocked=True)

        result = self.engine.submit_loan_request(member.id, "1000")

        assert isinstance(result, EligibilityFailure)
        assert result.failed_rules == ["not_blocked", "minimum_balance"]
        assert result.max_loan_amount == Decimal("1497")
        assert self.engine.loan_history(member.id) == []

    def test_amount_above_ceiling(self):
        member = self.seed_member(balance="1000")

        with pytest.raises(ValidationError):
            self.engine.submit_loan_request(member.id, "3000.001")

        assert self.engine.loan_history(member.id) == []

    def test_amount_at_ceiling(self):
        member = self.seed_member(balance="1000")
        loan = self.engine.submit_loan_request(member.id, "3000")
        assert loan.installment_amount == Decimal("60")

    @pytest.mark.parametrize("amount", ["0", "-100", "abc"])
    def test_invalid_amount(self, amount):
        member = self.seed_member()
        with pytest.raises(ValidationError):
            self.engine.submit_loan_request(member.id, amount)

    def test_unknown_member(self):
        with pytest.raises(NotFoundError):
            self.engine.submit_loan_request("missing", "1000")

    def test_second_request_hits_active_loan_rule(self):
        member = self.seed_member()
        self.engine.submit_loan_request(member.id, "1000")

        result = self.engine.submit_loan_request(member.id, "1000")

        assert isinstance(result, EligibilityFailure)
        assert result.failed_rules == ["no_active_loan"]

    def test_subscription_window_uses_clock(self):
        member = self.seed_member(subscription="0")
        self.engine.record_credit_transaction(
            member.id, "240", transaction_date=self.clock() - timedelta(days=800)
        )

        result = self.engine.submit_loan_request(member.id, "1000")

        assert isinstance(result, EligibilityFailure)
        assert result.failed_rules == ["subscription_paid"]

    def test_requested_event_published(self):
        received = []
        self.dispatcher.subscribe_all(received.append)
        member = self.seed_member()

        loan = self.engine.submit_loan_request(member.id, "1000")

        assert [e.event_type.value for e in received] == ["loan.requested"]
        assert received[0].entity_id == loan.id


class TestConcurrentSubmissions(EngineTestCase):
    """Duplicate submissions racing for the same member"""

    def test_exactly_one_succeeds(self):
        member = self.seed_member()
        thread_count = 8
        barrier = threading.Barrier(thread_count)
        results = []
        errors = []
        lock = threading.Lock()

        def submit():
            # Separate storage object per thread, as separate processes would have
            engine = LoanEngine(SQLiteStorage(self.db_path, lock_timeout=10.0),
                                self.config, self.dispatcher, self.clock)
            barrier.wait()
            try:
                outcome = engine.submit_loan_request(member.id, "1500")
            except ConflictError as e:
                outcome = e
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=submit) for _ in range(thread_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        successes = [r for r in results if isinstance(r, LoanRequest)]
        assert len(successes) == 1
        for outcome in results:
            if isinstance(outcome, EligibilityFailure):
                assert "no_active_loan" in outcome.failed_rules
            else:
                assert isinstance(outcome, (LoanRequest, ConflictError))

        assert len(self.engine.list_loans(status=LoanStatus.PENDING)) == 1
        assert self.engine.find_invariant_violations() == []

    def test_different_members_all_succeed(self):
        members = [self.seed_member(name=f"Member {i}") for i in range(4)]
        results = []
        lock = threading.Lock()

        def submit(member_id):
            loan = self.engine.submit_loan_request(member_id, "1000")
            with lock:
                results.append(loan)

        threads = [threading.Thread(target=submit, args=(m.id,)) for m in members]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 4
        assert all(isinstance(r, LoanRequest) for r in results)


class TestFallbackDefenses(EngineTestCase):
    """Each later defense catches a duplicate when the earlier ones are bypassed"""

    def test_pre_insert_check_detects_race(self, monkeypatch):
        member = self.seed_member()
        self.engine.submit_loan_request(member.id, "1000")

        # Locked re-check sees no active loans
        monkeypatch.setattr(StorageTransaction, "find_active_loans",
                            lambda self, member_id, for_update=False, exclude_loan_id=None: [])

        with pytest.raises(ConflictError) as exc_info:
            self.engine.submit_loan_request(member.id, "1000")

        assert exc_info.value.member_id == member.id
        assert len(self.engine.loan_history(member.id)) == 1

    def test_unique_index_is_last_line(self, monkeypatch):
        member = self.seed_member()
        self.engine.submit_loan_request(member.id, "1000")

        monkeypatch.setattr(StorageTransaction, "find_active_loans",
                            lambda self, member_id, for_update=False, exclude_loan_id=None: [])
        monkeypatch.setattr(StorageTransaction, "count_active_loans",
                            lambda self, member_id: 0)

        with pytest.raises(ConflictError):
            self.engine.submit_loan_request(member.id, "1000")

        monkeypatch.undo()
        assert len(self.engine.loan_history(member.id)) == 1
        assert self.engine.find_invariant_violations() == []


class TestSubmitWithRetry(EngineTestCase):
    """Test the single retry on conflict"""

    def test_retries_once(self, monkeypatch):
        member = self.seed_member()
        calls = []
        real_submit = self.engine.serializer.submit

        def flaky_submit(member_id, amount, notes=None):
            calls.append(member_id)
            if len(calls) == 1:
                raise ConflictError("Duplicate loan request", member_id=member_id)
            return real_submit(member_id, amount, notes)

        monkeypatch.setattr(self.engine.serializer, "submit", flaky_submit)

        loan = self.engine.submit_loan_request(member.id, "1000", retry_on_conflict=True)

        assert isinstance(loan, LoanRequest)
        assert len(calls) == 2

    def test_second_conflict_propagates(self, monkeypatch):
        member = self.seed_member()

        def always_conflict(member_id, amount, notes=None):
            raise ConflictError("Duplicate loan request", member_id=member_id)

        monkeypatch.setattr(self.engine.serializer, "submit", always_conflict)

        with pytest.raises(ConflictError):
            self.engine.submit_loan_request(member.id, "1000", retry_on_conflict=True)

    def test_no_retry_by_default(self, monkeypatch):
        member = self.seed_member()
        calls = []

        def conflict(member_id, amount, notes=None):
            calls.append(member_id)
            raise ConflictError("Duplicate loan request", member_id=member_id)

        monkeypatch.setattr(self.engine.serializer, "submit", conflict)

        with pytest.raises(ConflictError):
            self.engine.submit_loan_request(member.id, "1000")
        assert len(calls) == 1
