"""
error taxonomy for the commission ledger.

business-rule failures subclass ValueError (LedgerError) so callers that
already map ValueError -> HTTP 400 keep working. transient storage failures
are a RuntimeError: the idempotency key makes them safe to retry.
"""


class LedgerError(ValueError):
    pass


class InvalidAmount(LedgerError):
    pass


class InvalidTier(LedgerError):
    pass


class ReferrerNotFound(LedgerError):
    pass


class BeneficiaryNotFound(ReferrerNotFound):
    pass


class PurchaseNotFound(LedgerError):
    pass


class PurchaseNotApproved(LedgerError):
    pass


class ReferralConflict(LedgerError):
    """self-referral, cycle, or a referrer that is already assigned."""


class InvalidStatusTransition(LedgerError):
    pass


class InsufficientBalance(LedgerError):
    pass


class PersistenceFailure(RuntimeError):
    """storage error with unknown outcome. safe to retry."""
