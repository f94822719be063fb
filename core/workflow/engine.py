"""
Engine façade — the four workflow operations wired from app config.

Routes and scripts call these module functions; tests that need a fake
platform or a different session build WorkflowEngine directly.
"""
from __future__ import annotations

from flask import current_app

from adapters.platform import get_platform
from core.workflow.dispatcher import DEFAULT_STALE_CLAIM_MINUTES, ExecutionDispatcher
from core.workflow.ledger import AuditLedger
from core.workflow.orchestrator import DEFAULT_MAX_CONFLICT_RETRIES, WorkflowOrchestrator
from core.workflow.store import ActionStore

DEFAULT_PLATFORM_TIMEOUT_SECONDS = 30


class WorkflowEngine:
    """Orchestrator, dispatcher and ledger sharing one store."""

    def __init__(self, session=None, platform_factory=get_platform,
                 max_conflict_retries=DEFAULT_MAX_CONFLICT_RETRIES,
                 platform_timeout=DEFAULT_PLATFORM_TIMEOUT_SECONDS,
                 stale_claim_minutes=DEFAULT_STALE_CLAIM_MINUTES):
        self.store = ActionStore(session)
        self.ledger = AuditLedger(self.store.session)
        self.orchestrator = WorkflowOrchestrator(
            self.store, self.ledger, max_conflict_retries=max_conflict_retries,
        )
        self.dispatcher = ExecutionDispatcher(
            self.store, self.ledger,
            platform_factory=platform_factory, timeout=platform_timeout,
        )
        self.stale_claim_minutes = stale_claim_minutes

    @classmethod
    def from_config(cls, config, platform_factory=get_platform):
        return cls(
            platform_factory=platform_factory,
            max_conflict_retries=int(config.get(
                'WORKFLOW_MAX_CONFLICT_RETRIES', DEFAULT_MAX_CONFLICT_RETRIES)),
            platform_timeout=float(config.get(
                'WORKFLOW_PLATFORM_TIMEOUT_SECONDS', DEFAULT_PLATFORM_TIMEOUT_SECONDS)),
            stale_claim_minutes=int(config.get(
                'WORKFLOW_STALE_CLAIM_MINUTES', DEFAULT_STALE_CLAIM_MINUTES)),
        )

    def create(self, *args, **kwargs):
        return self.orchestrator.create(*args, **kwargs)

    def decide(self, *args, **kwargs):
        return self.orchestrator.decide(*args, **kwargs)

    def execute(self, *args, **kwargs):
        return self.dispatcher.execute(*args, **kwargs)

    def get_status(self, *args, **kwargs):
        return self.orchestrator.get_status(*args, **kwargs)

    def recover_stale_executions(self, max_age_minutes=None):
        if max_age_minutes is None:
            max_age_minutes = self.stale_claim_minutes
        return self.dispatcher.recover_stale_executions(max_age_minutes)


def get_engine() -> WorkflowEngine:
    """Engine for the current app. Honours ``WORKFLOW_PLATFORM_FACTORY`` in config."""
    factory = current_app.config.get('WORKFLOW_PLATFORM_FACTORY') or get_platform
    return WorkflowEngine.from_config(current_app.config, platform_factory=factory)


def create_action(owner_user_id, asset_id, action_type, requested_by_email,
                  approver_emails, reason, params=None):
    return get_engine().create(owner_user_id, asset_id, action_type,
                               requested_by_email, approver_emails, reason, params)


def decide(approval_id, decision, approver_email, comment=None):
    return get_engine().decide(approval_id, decision, approver_email, comment)


def execute_action(action_id, platform_credentials, actor_email, owner_user_id=None):
    return get_engine().execute(action_id, platform_credentials, actor_email,
                                owner_user_id=owner_user_id)


def get_status(action_id, owner_user_id=None):
    return get_engine().get_status(action_id, owner_user_id=owner_user_id)


def recover_stale_executions(max_age_minutes=None):
    return get_engine().recover_stale_executions(max_age_minutes)
