"""Exceptions raised by the commission engine."""

from typing import Optional


class CommissionEngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(CommissionEngineError, LookupError):
    """A transaction, agent or commission id does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} with ID {identifier} not found")


class ConflictError(CommissionEngineError):
    """A uniqueness constraint would be violated (duplicate agent email)."""


class InvalidTransitionError(CommissionEngineError):
    """An illegal stage or status transition was requested."""

    def __init__(self, kind: str, current: str, requested: str):
        self.kind = kind
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid {kind} transition from {current} to {requested}")


class ValidationError(CommissionEngineError, ValueError):
    """Input rejected before touching storage."""


class InconsistentBreakdownError(CommissionEngineError):
    """A financial breakdown failed its arithmetic consistency check."""


class PartialCompletionError(CommissionEngineError):
    """Completion was saved but a later ledger or stats write failed.

    The transaction is already marked completed with its breakdown. The
    missing ledger entries or agent credits must be reconciled by an operator.
    """

    def __init__(self, transaction_id: str, step: str, cause: Optional[BaseException] = None):
        self.transaction_id = transaction_id
        self.step = step
        self.cause = cause
        super().__init__(
            f"Transaction {transaction_id} completed but step '{step}' failed: {cause}"
        )
