"""Engine error taxonomy.

The presentation layer tells these apart:
- ValidationError / StateConflictError: rejected by a business rule (show the rule)
- NotFoundError: stale view, prompt a refresh
- PersistenceError: temporarily unavailable, offer a retry
"""
from typing import Optional


class LedgerEngineError(Exception):
    """Base class for all engine errors."""
    retryable = False

    def __init__(self, message: str, rule: Optional[str] = None):
        self.message = message
        self.rule = rule
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "rule": self.rule,
            "retryable": self.retryable,
        }


class ValidationError(LedgerEngineError):
    """Bad input: non-positive amount, unknown type, missing field."""


class NotFoundError(LedgerEngineError):
    """Referenced vehicle, subscription, payment or claim does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", rule=f"{entity}_exists")


class StateConflictError(LedgerEngineError):
    """A transition guard is not satisfied."""


class PersistenceError(LedgerEngineError):
    """The record store failed or timed out."""
    retryable = True
