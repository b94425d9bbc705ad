"""
Typed exceptions for the deal reconciliation layer.

    DealError (base, code DEAL_ERROR)
    |
    +-- ValidationError       user-fixable; carries FieldError list
    +-- ConflictError         stale updated_at marker on update
    +-- DealNotFoundError     update/resave of a deal that no longer exists
    +-- InfrastructureError   the store failed; carries step + cause
    +-- SaveCancelledError    caller cancelled before the first write

    StoreError                raised by Store implementations

Callers catch by type and read structured attributes, never parse messages.
"""


class DealError(Exception):
    """Base exception for deal reconciliation errors."""

    code: str = "DEAL_ERROR"


class ValidationError(DealError):
    """One or more line items (or deal fields) failed validation. No writes happened."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"{len(self.errors)} validation error(s): " + "; ".join(
            f"{e.code} at {e.field}[{e.index}]" if e.index is not None else f"{e.code} at {e.field}"
            for e in self.errors
        ))

    def for_index(self, index: int):
        """Errors attributed to the line item at `index`."""
        return [e for e in self.errors if e.index == index]


class ConflictError(DealError):
    """The deal changed since the draft was loaded; reload and retry."""

    code: str = "CONFLICT"

    def __init__(self, deal_id, expected, actual):
        self.deal_id = deal_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Deal {deal_id} was modified by another save "
            f"(expected updated_at {expected}, found {actual})"
        )


class DealNotFoundError(DealError):
    """No deal row exists for the given id."""

    code: str = "DEAL_NOT_FOUND"

    def __init__(self, deal_id):
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


class InfrastructureError(DealError):
    """
    The persistence store failed during a save.

    step is one of 'parent', 'transaction', 'line_items' or 'read'.
    partial_write is True when earlier steps of the same save were committed
    and could not be rolled back (stores without transactions).
    """

    code: str = "INFRASTRUCTURE_FAILURE"

    STEPS = ('parent', 'transaction', 'line_items', 'read')

    def __init__(self, step: str, cause: Exception, partial_write: bool = False):
        self.step = step
        self.cause = cause
        self.partial_write = partial_write
        super().__init__(f"Deal save failed at step '{step}': {cause}")


class SaveCancelledError(DealError):
    """The caller cancelled the save before any write was issued."""

    code: str = "SAVE_CANCELLED"


class StoreError(Exception):
    """A store operation (insert/update/delete/select) failed."""

    def __init__(self, operation: str, table: str, message: str):
        self.operation = operation
        self.table = table
        super().__init__(f"{operation} on {table} failed: {message}")
