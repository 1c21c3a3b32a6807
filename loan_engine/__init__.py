"""
Loan Eligibility and Request Engine

Core of a community loan-fund ledger: eligibility rules, zero-interest
installment terms, concurrency-safe loan requests and the loan lifecycle.
All monetary values use Decimal and every admin override is audited.
"""

__version__ = "1.0.0"
