"""
Shared helpers for loan engine tests
"""

import os
import shutil
import tempfile
from datetime import datetime, date, timedelta, timezone
from decimal import Decimal

import pytest

from loan_engine.config import LoanEngineConfig
from loan_engine.engine import LoanEngine
from loan_engine.events import EventDispatcher
from loan_engine.models import JoiningFeeStatus, CreditType, PaymentStatus
from loan_engine.storage import SQLiteStorage


NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
REGISTERED = date(2024, 1, 10)


class FixedClock:
    """Controllable clock for tenure and cooldown tests"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_config(**overrides) -> LoanEngineConfig:
    settings = {
        "log_format": "text",
        "lock_timeout_seconds": 5.0,
        "conflict_retry_delay_seconds": 0.0,
    }
    settings.update(overrides)
    return LoanEngineConfig(**settings)


class EngineTestCase:
    """Base for suites running against a fresh SQLite file per test"""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "loans.db")
        self.clock = FixedClock()
        self.config = make_config()
        self.dispatcher = EventDispatcher()
        self.storage = SQLiteStorage(self.db_path, lock_timeout=self.config.lock_timeout_seconds)
        self.engine = LoanEngine(self.storage, self.config, self.dispatcher, self.clock)

    def teardown_method(self):
        self.engine.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def seed_member(self, balance="1000", name="Fatima Al-Sabah", owner_admin_id="admin-1",
                    subscription="240", **overrides):
        """Register a member who passes every eligibility rule unless overridden"""
        fields = {
            "balance": balance,
            "joining_fee_status": JoiningFeeStatus.APPROVED,
            "registration_date": REGISTERED,
            "owner_admin_id": owner_admin_id,
        }
        fields.update(overrides)
        member = self.engine.register_member(name, **fields)
        if subscription and Decimal(subscription) > 0:
            self.engine.record_credit_transaction(
                member.id, subscription, CreditType.SUBSCRIPTION, PaymentStatus.ACCEPTED,
                transaction_date=self.clock() - timedelta(days=30)
            )
        return member

    def approved_loan(self, member, amount="2000"):
        loan = self.engine.submit_loan_request(member.id, amount)
        return self.engine.decide(loan.id, "admin-1", "approve")


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def config():
    return make_config()
