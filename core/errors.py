"""Engine error taxonomy.

Order rejections (bad input, funds, shares, risk limits) are expected
outcomes: the OrderEngine turns them into ``ExecutionResult`` objects that
carry the reason string and ``code``. ``TransactionFailure`` is the hard
failure of the atomic cash/holdings update. ``StorageUnavailable`` marks
soft audit-write failures that are logged and never reach the caller.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class OrderRejected(EngineError):
    """An order failed validation. No state was changed."""

    code = "validation_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(OrderRejected):
    """Bad input: quantity, price, unknown symbol or event override."""

    code = "validation_error"


class InsufficientFunds(OrderRejected):
    code = "insufficient_funds"


class InsufficientShares(OrderRejected):
    code = "insufficient_shares"


class RiskLimitExceeded(OrderRejected):
    code = "risk_limit_exceeded"


class TransactionFailure(EngineError):
    """The transactional fill/placement failed; nothing was applied."""

    code = "transaction_failure"


class StorageUnavailable(EngineError):
    """A best-effort storage or cache call failed or timed out."""


_REJECTIONS: dict[str, type[OrderRejected]] = {
    cls.code: cls
    for cls in (ValidationError, InsufficientFunds, InsufficientShares, RiskLimitExceeded)
}


def rejection_for(code: str | None, reason: str) -> OrderRejected:
    """Build the rejection matching a rule's error code."""
    return _REJECTIONS.get(code or "", RiskLimitExceeded)(reason)
