"""Error taxonomy for the reconciliation engine."""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(ReconciliationError, ValueError):
    """Malformed row, invalid regex, missing mapped column or bad setting."""


class ConflictError(ReconciliationError):
    """A write collides with an existing record (e.g. pattern bound elsewhere)."""


class NotFoundError(ReconciliationError, LookupError):
    """A referenced transaction, category or pattern does not exist."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id!r}")
        self.kind = kind
        self.record_id = record_id


class StateError(ReconciliationError):
    """An illegal match-status transition was requested."""

    def __init__(self, action: str, current, target=None, detail: Optional[str] = None):
        current_name = getattr(current, "value", current)
        if target is not None:
            message = (
                f"Cannot {action}: transition {current_name} -> "
                f"{getattr(target, 'value', target)} is not allowed"
            )
        else:
            message = f"Cannot {action} while in state {current_name}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.action = action
        self.current = current
        self.target = target


class AtomicityError(ReconciliationError):
    """Commit failed partway; the store was rolled back."""
