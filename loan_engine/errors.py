"""
Error Taxonomy Module

Typed errors raised by the engine. Eligibility failures are not exceptions:
they are returned as ``EligibilityFailure`` results (see eligibility module).
"""

from typing import Optional


class LoanEngineError(Exception):
    """Base exception for loan engine operations"""
    pass


class ValidationError(LoanEngineError, ValueError):
    """
    Bad input or a business rule the caller must fix: invalid amount,
    missing reason, amount over the ceiling, minimum payment, overpayment.
    Never retried automatically.
    """
    pass


class InvalidStateError(ValidationError):
    """Operation is not allowed for the loan's current status"""
    pass


class NotFoundError(LoanEngineError, LookupError):
    """Member, loan or payment does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ConflictError(LoanEngineError):
    """
    A concurrent duplicate was detected, either by the pre-insert check or by
    the active-loan unique index. Safe to retry exactly once.
    """

    def __init__(self, message: str, member_id: Optional[str] = None):
        self.member_id = member_id
        super().__init__(message)


class FatalStorageError(LoanEngineError):
    """Connection loss, missing constraint or unexpected database error"""
    pass


class LockTimeoutError(FatalStorageError):
    """A row lock could not be acquired within the configured timeout"""

    def __init__(self, message: str = "Timed out waiting for a database lock, try again"):
        super().__init__(message)
