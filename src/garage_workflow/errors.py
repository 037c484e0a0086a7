"""Exception hierarchy raised by workflow operations."""


class WorkflowError(Exception):
    """Base class for every error the engine raises."""


class ValidationError(WorkflowError):
    """Malformed input, rejected before any store call."""


class HandOverRequiredError(ValidationError):
    """A sole staff assignee tried to release a task without hand-over notes."""


class PermissionDeniedError(WorkflowError):
    """The actor's role may not perform this transition."""


class NotFoundError(WorkflowError):
    """A referenced record does not exist."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record not found: {record_id}")


class ConflictError(WorkflowError):
    """The record is not in a state that allows the requested operation."""


class VersionConflict(ConflictError):
    """An optimistic update lost against a concurrent writer."""


class StoreError(WorkflowError):
    """Underlying storage failed."""


class IntegrityViolation(StoreError):
    """A write broke a uniqueness or foreign-key constraint."""
