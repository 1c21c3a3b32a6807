"""
Tests for the engine facade and batch entry point

Covers construction from configuration, member seeding, terms and
eligibility queries, decision dispatch and invariant diagnostics.
"""

import json
import logging
import os
import shutil
import tempfile
import pytest
from datetime import date, timedelta
from decimal import Decimal

from loan_engine.engine import LoanEngine, DecisionAction
from loan_engine.eligibility import EligibilityRule
from loan_engine.errors import FatalStorageError, NotFoundError, ValidationError
from loan_engine.models import JoiningFeeStatus, LoanStatus
from loan_engine.storage import ACTIVE_LOAN_INDEX, SQLiteStorage

from conftest import EngineTestCase, FixedClock, make_config


class TestEngineConstruction:
    """Test building the engine from configuration"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "engine.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_from_config(self):
        config = make_config(database_url=f"sqlite:///{self.db_path}")
        engine = LoanEngine.from_config(config, clock=FixedClock())
        try:
            assert isinstance(engine.storage, SQLiteStorage)
            assert engine.migrations.get_current_version() == 5
            assert engine.compute_terms("2000", "1000").installment == Decimal("30")
        finally:
            engine.close()

    def test_from_config_with_notification_pool(self):
        config = make_config(database_url=f"sqlite:///{self.db_path}",
                             notification_workers=1)
        engine = LoanEngine.from_config(config)
        engine.close()

    def test_refuses_to_start_without_index(self):
        config = make_config(database_url=f"sqlite:///{self.db_path}")
        LoanEngine.from_config(config).close()

        storage = SQLiteStorage(self.db_path)
        with storage.atomic() as txn:
            txn.execute(f"DROP INDEX {ACTIVE_LOAN_INDEX}")

        with pytest.raises(FatalStorageError):
            LoanEngine(storage, config)
        storage.close()

    def test_without_auto_migrate_on_empty_database(self):
        config = make_config(database_url=f"sqlite:///{self.db_path}", auto_migrate=False)

        with pytest.raises(FatalStorageError):
            LoanEngine.from_config(config)


class TestMembers(EngineTestCase):
    """Test member seeding operations"""

    def test_register_member(self):
        member = self.engine.register_member(
            " Noura Al-Mutairi ", balance="750.5", joining_fee_status="approved",
            registration_date="2024-03-01", owner_admin_id="admin-3"
        )

        stored = self.engine.get_member(member.id)
        assert stored.name == "Noura Al-Mutairi"
        assert stored.balance == Decimal("750.5")
        assert stored.joining_fee_status == JoiningFeeStatus.APPROVED
        assert stored.registration_date == date(2024, 3, 1)
        assert stored.owner_admin_id == "admin-3"

    @pytest.mark.parametrize("name,balance", [("", "100"), ("  ", "100"), ("Valid", "lots")])
    def test_register_member_validation(self, name, balance):
        with pytest.raises(ValidationError):
            self.engine.register_member(name, balance=balance)

    def test_update_member(self):
        member = self.seed_member()

        updated = self.engine.update_member(member.id, balance="1500", is_blocked=True)

        assert updated.balance == Decimal("1500")
        assert updated.is_blocked is True

    def test_update_unknown_column(self):
        member = self.seed_member()
        with pytest.raises(ValidationError):
            self.engine.update_member(member.id, id="someone-else")

    def test_update_unknown_member(self):
        with pytest.raises(NotFoundError):
            self.engine.update_member("missing", balance="100")

    def test_credit_for_unknown_member(self):
        with pytest.raises(NotFoundError):
            self.engine.record_credit_transaction("missing", "240")

    def test_credit_amount_must_be_positive(self):
        member = self.seed_member()
        with pytest.raises(ValidationError):
            self.engine.record_credit_transaction(member.id, "0")


class TestEligibilityQueries(EngineTestCase):
    """Test the advisory eligibility check"""

    def test_eligible_member(self):
        member = self.seed_member(balance="2000")

        result = self.engine.check_eligibility(member.id)

        assert result.eligible
        assert result.max_loan_amount == Decimal("6000")

    def test_new_member(self):
        member = self.seed_member(registration_date=self.clock().date() - timedelta(days=100))

        result = self.engine.check_eligibility(member.id)

        assert result.failed_rules == ["tenure"]
        assert result.check(EligibilityRule.TENURE).details["days_remaining"] == 265

    def test_pending_subscription_not_counted(self):
        member = self.seed_member(subscription="200")
        self.engine.record_credit_transaction(member.id, "40", status="pending")

        result = self.engine.check_eligibility(member.id)

        assert result.failed_rules == ["subscription_paid"]

    @pytest.mark.parametrize("transaction_date", [date(2024, 6, 15), "2024-06-15"])
    def test_credit_dated_on_window_start_counts(self, transaction_date):
        """The 24 month window opens at midnight UTC on 2024-06-15"""
        member = self.seed_member(subscription="0")
        self.engine.record_credit_transaction(member.id, "240", transaction_date=transaction_date)

        result = self.engine.check_eligibility(member.id)

        assert result.eligible
        assert result.check(EligibilityRule.SUBSCRIPTION_PAID).details["paid"] == "240.000"

    def test_credit_dated_before_window_start_ignored(self):
        member = self.seed_member(subscription="0")
        self.engine.record_credit_transaction(member.id, "240", transaction_date=date(2024, 6, 14))

        result = self.engine.check_eligibility(member.id)

        assert result.failed_rules == ["subscription_paid"]

    def test_check_has_no_side_effects(self):
        member = self.seed_member()
        self.engine.check_eligibility(member.id)
        assert self.engine.loan_history(member.id) == []

    def test_unknown_member(self):
        with pytest.raises(NotFoundError):
            self.engine.check_eligibility("missing")


class TestDecide(EngineTestCase):
    """Test decision dispatch"""

    def test_enum_action(self):
        member = self.seed_member()
        loan = self.engine.submit_loan_request(member.id, "1000")

        decided = self.engine.decide(loan.id, "admin-1", DecisionAction.REJECT, reason="Withdrawn")

        assert decided.status == LoanStatus.REJECTED

    def test_override_on_reject(self):
        member = self.seed_member()
        loan = self.engine.submit_loan_request(member.id, "1000")

        with pytest.raises(ValidationError):
            self.engine.decide(loan.id, "admin-1", "reject", reason="No", override=True)

        assert self.engine.get_loan(loan.id).status == LoanStatus.PENDING

    def test_blank_admin(self):
        member = self.seed_member()
        loan = self.engine.submit_loan_request(member.id, "1000")

        with pytest.raises(ValidationError):
            self.engine.decide(loan.id, "", "approve")


class TestInvariantViolations(EngineTestCase):
    """Test the one-active-loan diagnostic"""

    def test_clean_database(self):
        member = self.seed_member()
        self.approved_loan(member, "1000")
        assert self.engine.find_invariant_violations() == []

    def test_reports_duplicate_active_loans(self):
        member = self.seed_member()
        self.engine.submit_loan_request(member.id, "1000")
        duplicate = self.engine.submit_loan_request(self.seed_member(name="Second").id, "1000")

        # Simulate a database that lost its guard
        with self.storage.atomic() as txn:
            txn.execute(f"DROP INDEX {ACTIVE_LOAN_INDEX}")
            txn.execute("UPDATE loan_requests SET member_id = ? WHERE id = ?",
                        [member.id, duplicate.id])

        violations = self.engine.find_invariant_violations()

        assert len(violations) == 1
        assert violations[0]['member_id'] == member.id
        assert violations[0]['active_count'] == 2


class TestRunEntryPoint:
    """Test the batch sweep entry point"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log_file = os.path.join(self.temp_dir, "engine.log")
        self.config = make_config(
            database_url=f"sqlite:///{os.path.join(self.temp_dir, 'engine.db')}",
            log_format="json", log_file=self.log_file
        )

    def teardown_method(self):
        engine_logger = logging.getLogger("loan_engine")
        for handler in engine_logger.handlers[:]:
            handler.close()
            engine_logger.removeHandler(handler)
        engine_logger.propagate = True
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_sweep_on_empty_database(self, monkeypatch):
        import run
        monkeypatch.setattr(run, "get_config", lambda: self.config)

        assert run.main() == 0

        with open(self.log_file) as f:
            entries = [json.loads(line) for line in f if line.strip()]
        finished = [e for e in entries if e.get("action") == "loan.auto_close_sweep"]
        assert len(finished) == 1
        assert finished[0]["extra"]["closed_loan_ids"] == []
