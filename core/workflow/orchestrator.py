"""
Workflow orchestrator — proposal creation and consensus over approvals.

create()   inserts an action, one pending ballot per approver, and the
           ``action.created`` ledger entry. No platform call happens here.
decide()   records one ballot and re-evaluates consensus for the parent
           action inside a single unit of work:

               claim version -> write ballot -> ledger -> reload ballots
               -> evaluate -> conditional transition -> ledger

           Losing the version claim means another ballot on the same action
           committed in between; the whole sequence is retried against the
           new state. Rejection is sticky because every transition is
           guarded by ``status = pending``.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime

from core.workflow.action_types import (
    ActionStatus,
    ActionType,
    Decision,
    evaluate_consensus,
    normalize_approvers,
    normalize_email,
    parse_action_params,
    parse_id,
)
from core.workflow.errors import (
    AlreadyRespondedError,
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from core.workflow.ledger import AuditLedger, action_resource
from core.workflow.store import ActionStore

logger = logging.getLogger(__name__)

# How many times decide() re-runs after losing a version race.
DEFAULT_MAX_CONFLICT_RETRIES = 5

_CONSENSUS_REASONS = {
    ActionStatus.APPROVED: 'All approvers approved',
    ActionStatus.REJECTED: 'One or more approvers rejected',
}


@dataclass(frozen=True)
class CreatedAction:
    action_id: int
    approval_ids: list[int]

    def to_dict(self):
        return {'action_id': self.action_id, 'approval_ids': list(self.approval_ids)}


@dataclass(frozen=True)
class DecisionResult:
    approval_id: int
    action_id: int
    decision: Decision
    action_status: ActionStatus

    def to_dict(self):
        return {
            'approval_id': self.approval_id,
            'action_id': self.action_id,
            'decision': self.decision.value,
            'action_status': self.action_status.value,
        }


def _backoff(attempt):
    return random.uniform(0, 0.01 * (2 ** min(attempt, 5)))


class _VersionConflict(Exception):
    """Internal: another writer claimed the action first."""


class WorkflowOrchestrator:
    """Creates governance actions and drives them to consensus."""

    def __init__(self, store: ActionStore, ledger: AuditLedger,
                 max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES):
        self._store = store
        self._ledger = ledger
        self._max_conflict_retries = max_conflict_retries

    # --- create ----------------------------------------------------------

    def create(self, owner_user_id, asset_id, action_type, requested_by_email,
               approver_emails, reason, params=None) -> CreatedAction:
        """Propose an action and open one ballot per approver.

        Args:
            owner_user_id: The user who owns the asset and the action.
            asset_id: The Asset row the action targets.
            action_type: An ActionType or its string value.
            requested_by_email: Who proposed the action.
            approver_emails: Non-empty list of approver emails.
            reason: Free-text justification (required).
            params: Raw parameters for the action type's variant.

        Returns:
            CreatedAction with the action id and approval ids.

        Raises:
            ValidationError: Bad type, reason, params or approvers.
            NotFoundError: Asset unknown or not owned by ``owner_user_id``.
            StorageError: The store failed; nothing was written.
        """
        asset_id = parse_id(asset_id, 'asset_id')
        action_type = ActionType.parse(action_type)
        reason = str(reason or '').strip()
        if not reason:
            raise ValidationError('reason is required')
        typed_params = parse_action_params(action_type, params)
        requested_by_email = normalize_email(requested_by_email, 'requested_by_email')
        approvers = normalize_approvers(approver_emails)

        with self._store.unit_of_work():
            asset = self._store.get_asset(asset_id, owner_user_id=owner_user_id)
            if asset is None:
                raise NotFoundError(f'Asset {asset_id} not found for user {owner_user_id}')

            action = self._store.add_action(
                owner_user_id=owner_user_id,
                asset_id=asset.id,
                action_type=action_type,
                requested_by_email=requested_by_email,
                reason=reason,
                params=typed_params.to_dict(),
            )
            approvals = self._store.add_approvals(action.id, approvers)

            self._ledger.append(
                owner_user_id=owner_user_id,
                event_type='action.created',
                actor_email=requested_by_email,
                target_resource=action_resource(action.id),
                action_id=action.id,
                details={
                    'action_id': action.id,
                    'asset_id': asset.id,
                    'action_type': action_type.value,
                    'approvers': approvers,
                    'reason': reason,
                    'params': typed_params.to_dict(),
                },
            )
            created = CreatedAction(
                action_id=action.id,
                approval_ids=[a.id for a in approvals],
            )

        logger.info('[workflow] created action=%s type=%s approvers=%d',
                    created.action_id, action_type.value, len(approvers))
        return created

    # --- decide ----------------------------------------------------------

    def decide(self, approval_id, decision, approver_email, comment=None) -> DecisionResult:
        """Record one approver's ballot and re-evaluate consensus.

        Raises:
            ValidationError: ``decision`` is not approved/rejected.
            NotFoundError: Unknown approval.
            AuthorizationError: ``approver_email`` does not own the ballot.
            AlreadyRespondedError: The ballot was already answered.
            InvalidStateError: The action has already left pending.
            ConcurrentUpdateError: Retries exhausted against other writers.
            StorageError: The store failed; nothing was written.
        """
        decision = Decision.parse_vote(decision)
        approver_email = normalize_email(approver_email, 'approver_email')
        comment = (str(comment).strip() or None) if comment is not None else None

        for attempt in range(self._max_conflict_retries + 1):
            try:
                with self._store.unit_of_work():
                    result = self._decide_once(approval_id, decision, approver_email, comment)
            except (_VersionConflict, TransientStorageError) as exc:
                logger.info('[workflow] conflict on approval=%s (%s), retry %d',
                            approval_id, type(exc).__name__, attempt + 1)
                time.sleep(_backoff(attempt))
                continue

            logger.info('[workflow] approval=%s %s -> action=%s %s',
                        approval_id, decision.value, result.action_id, result.action_status.value)
            return result

        raise ConcurrentUpdateError(
            f'Could not record decision for approval {approval_id} after '
            f'{self._max_conflict_retries + 1} attempts'
        )

    def _decide_once(self, approval_id, decision, approver_email, comment) -> DecisionResult:
        approval = self._store.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(f'Approval {approval_id} not found')
        if approval.approver_email != approver_email:
            raise AuthorizationError('You are not authorized to respond to this approval')
        if approval.decision != Decision.PENDING.value:
            raise AlreadyRespondedError(
                f'Approval {approval_id} has already been responded to ({approval.decision})'
            )

        action = self._store.get_action(approval.action_id)
        if action is None:
            raise NotFoundError(f'Action {approval.action_id} not found')
        if action.status != ActionStatus.PENDING.value:
            raise InvalidStateError(
                f'Action {action.id} is already {action.status}; decisions are closed'
            )

        # Per-action serialisation point
        if not self._store.claim_version(action.id, action.version):
            raise _VersionConflict()

        now = datetime.utcnow()
        if not self._store.record_decision(approval.id, decision, comment, now):
            raise AlreadyRespondedError(f'Approval {approval_id} has already been responded to')

        self._ledger.append(
            owner_user_id=action.owner_user_id,
            event_type=f'action.{decision.value}',
            actor_email=approver_email,
            target_resource=action_resource(action.id),
            action_id=action.id,
            details={
                'action_id': action.id,
                'approval_id': approval.id,
                'decision': decision.value,
                'comment': comment,
            },
        )

        ballots = self._store.get_approvals(action.id)
        outcome = evaluate_consensus(b.decision for b in ballots)

        if outcome is not ActionStatus.PENDING:
            if not self._store.transition(action.id, ActionStatus.PENDING, outcome):
                raise _VersionConflict()

            self._ledger.append(
                owner_user_id=action.owner_user_id,
                event_type='action.status_changed',
                actor_email=approver_email,
                target_resource=action_resource(action.id),
                action_id=action.id,
                details={
                    'action_id': action.id,
                    'old_status': ActionStatus.PENDING.value,
                    'new_status': outcome.value,
                    'reason': _CONSENSUS_REASONS[outcome],
                },
            )

        return DecisionResult(
            approval_id=approval.id,
            action_id=action.id,
            decision=decision,
            action_status=outcome,
        )

    # --- reads -----------------------------------------------------------

    def get_status(self, action_id, owner_user_id=None) -> dict:
        """Action status plus the per-approver breakdown.

        Raises:
            NotFoundError: Unknown action.
            AuthorizationError: ``owner_user_id`` given and not the owner.
        """
        action = self._load_owned_action(action_id, owner_user_id)
        ballots = self._store.get_approvals(action.id)

        counts = {d.value: 0 for d in Decision}
        for ballot in ballots:
            counts[ballot.decision] += 1

        return {
            'action': action.to_dict(),
            'action_status': action.status,
            'approvals': {'total': len(ballots), **counts},
            'approvers': [b.to_dict() for b in ballots],
        }

    def get_pending_approvals(self, approver_email) -> list[dict]:
        """Ballots still waiting on ``approver_email`` for open actions."""
        approver_email = normalize_email(approver_email, 'approver_email')
        rows = self._store.find_pending_approvals_for(approver_email)
        return [
            {
                'approval_id': approval.id,
                'action_id': action.id,
                'asset_id': action.asset_id,
                'action_type': action.action_type,
                'reason': action.reason,
                'requested_by_email': action.requested_by_email,
                'created_at': action.created_at.isoformat() if action.created_at else None,
            }
            for approval, action in rows
        ]

    def is_approver(self, action_id, email) -> bool:
        try:
            email = normalize_email(email)
        except ValidationError:
            return False
        return self._store.find_approval(action_id, email) is not None

    def list_actions(self, owner_user_id, status=None, limit=50):
        if status is not None:
            try:
                status = ActionStatus(str(status).lower())
            except ValueError:
                raise ValidationError(f'Invalid status filter {status!r}') from None
        return self._store.list_actions(owner_user_id, status=status, limit=limit)

    def _load_owned_action(self, action_id, owner_user_id):
        action = self._store.get_action(action_id)
        if action is None:
            raise NotFoundError(f'Action {action_id} not found')
        if owner_user_id is not None and action.owner_user_id != owner_user_id:
            raise AuthorizationError(f'Action {action_id} does not belong to this user')
        return action
