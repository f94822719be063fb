"""
Workflow error taxonomy.

Each error maps onto one caller-visible outcome. Validation, lookup and
authorization failures subclass the builtin the rest of the codebase raises
for the same condition, so existing ``except ValueError`` / ``except
LookupError`` handlers keep working.
"""


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class ValidationError(WorkflowError, ValueError):
    """Bad action type, empty reason, malformed parameters or approvers."""


class NotFoundError(WorkflowError, LookupError):
    """Unknown action, approval or asset id."""


class AuthorizationError(WorkflowError, PermissionError):
    """Approver mismatch, or the action is not owned by the caller."""


class AlreadyRespondedError(WorkflowError):
    """A second decision on a ballot that has already been answered."""


class InvalidStateError(WorkflowError):
    """The action's status does not allow the requested operation."""


class ExecutionInProgressError(InvalidStateError):
    """Another caller holds the execution claim for this action."""


class ConcurrentUpdateError(WorkflowError):
    """Optimistic retries were exhausted while racing other writers."""


class StorageError(WorkflowError):
    """The backing store failed; the unit of work was rolled back."""


class TransientStorageError(StorageError):
    """Lock contention or a serialization failure; the unit can be re-run."""
