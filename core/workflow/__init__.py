"""
core.workflow — Governance Action Workflow Engine.

Operators propose a remediating action against an asset, approvers vote,
and once every approver has approved the action is executed against the
asset's platform exactly once. Any rejection is final. Every decision and
outcome lands in an append-only audit ledger.

Public API:
    create_action, decide, execute_action, get_status  — the four operations
    recover_stale_executions                           — claim lifecycle
    WorkflowEngine, get_engine                         — explicit wiring
    AuditLedger                                        — audit trail queries
    ActionType, ActionStatus, Decision                 — vocabulary
"""

from core.workflow.action_types import (
    ActionStatus,
    ActionType,
    Decision,
)
from core.workflow.engine import (
    WorkflowEngine,
    create_action,
    decide,
    execute_action,
    get_engine,
    get_status,
    recover_stale_executions,
)
from core.workflow.errors import (
    AlreadyRespondedError,
    AuthorizationError,
    ConcurrentUpdateError,
    ExecutionInProgressError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    TransientStorageError,
    ValidationError,
    WorkflowError,
)
from core.workflow.ledger import AuditLedger

__all__ = [
    'create_action',
    'decide',
    'execute_action',
    'get_status',
    'recover_stale_executions',
    'WorkflowEngine',
    'get_engine',
    'AuditLedger',
    'ActionType',
    'ActionStatus',
    'Decision',
    'WorkflowError',
    'ValidationError',
    'NotFoundError',
    'AuthorizationError',
    'AlreadyRespondedError',
    'InvalidStateError',
    'ExecutionInProgressError',
    'ConcurrentUpdateError',
    'StorageError',
    'TransientStorageError',
]
