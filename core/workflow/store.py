"""
Action/approval store — the persistence shape the workflow needs.

Wraps a SQLAlchemy session with:
    unit_of_work()        — commit on success, roll back on any error
    fresh reads           — always bypass the identity map
    conditional updates   — every state write is an UPDATE ... WHERE guard
                            whose rowcount says whether this caller won

The conditional updates are the only serialisation the engine relies on.
Each one bumps ``version`` so that a writer who read an older version loses
the race instead of overwriting a newer state. On PostgreSQL the winning
UPDATE also holds the row lock until the unit of work commits.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from core.workflow.action_types import ActionStatus, ActionType, Decision, can_transition
from core.workflow.errors import StorageError, TransientStorageError

logger = logging.getLogger(__name__)


class ActionStore:
    """Accessor for governance actions, their approvals and their assets."""

    def __init__(self, session=None):
        if session is None:
            from models import db
            session = db.session
        self._session = session

    @property
    def session(self):
        return self._session

    @contextmanager
    def unit_of_work(self):
        """One failure-atomic transaction.

        Raises:
            TransientStorageError: Lock contention; safe to re-run the unit.
            StorageError: Any other database failure; the original is chained.
        """
        try:
            yield self
            self._session.commit()
        except OperationalError as exc:
            self._session.rollback()
            logger.warning('[store] unit of work hit contention: %s', exc)
            raise TransientStorageError(f'Storage contention: {exc}') from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.error('[store] unit of work rolled back: %s', exc)
            raise StorageError(f'Storage failure: {exc}') from exc
        except BaseException:
            self._session.rollback()
            raise

    # --- inserts ---------------------------------------------------------

    def add_action(self, owner_user_id, asset_id, action_type, requested_by_email,
                   reason, params):
        from models import GovernanceAction

        action = GovernanceAction(
            owner_user_id=owner_user_id,
            asset_id=asset_id,
            action_type=ActionType.parse(action_type).value,
            status=ActionStatus.PENDING.value,
            requested_by_email=requested_by_email,
            reason=reason,
            params=params,
            created_at=datetime.utcnow(),
            version=0,
        )
        self._session.add(action)
        self._session.flush()
        return action

    def add_approvals(self, action_id, approver_emails):
        from models import ActionApproval

        approvals = []
        for email in approver_emails:
            approval = ActionApproval(
                action_id=action_id,
                approver_email=email,
                decision=Decision.PENDING.value,
            )
            self._session.add(approval)
            approvals.append(approval)
        self._session.flush()
        return approvals

    # --- reads -----------------------------------------------------------

    def get_action(self, action_id):
        from models import GovernanceAction

        return (
            self._session.query(GovernanceAction)
            .populate_existing()
            .filter(GovernanceAction.id == action_id)
            .first()
        )

    def get_approval(self, approval_id):
        from models import ActionApproval

        return (
            self._session.query(ActionApproval)
            .populate_existing()
            .filter(ActionApproval.id == approval_id)
            .first()
        )

    def get_approvals(self, action_id):
        """The full ballot set for one action, as currently committed."""
        from models import ActionApproval

        return (
            self._session.query(ActionApproval)
            .populate_existing()
            .filter(ActionApproval.action_id == action_id)
            .order_by(ActionApproval.id.asc())
            .all()
        )

    def find_approval(self, action_id, approver_email):
        from models import ActionApproval

        return (
            self._session.query(ActionApproval)
            .filter(
                ActionApproval.action_id == action_id,
                ActionApproval.approver_email == approver_email,
            )
            .first()
        )

    def get_asset(self, asset_id, owner_user_id=None):
        from models import Asset

        q = self._session.query(Asset).filter(Asset.id == asset_id)
        if owner_user_id is not None:
            q = q.filter(Asset.owner_user_id == owner_user_id)
        return q.first()

    def list_actions(self, owner_user_id, status=None, limit=50):
        from models import GovernanceAction

        q = self._session.query(GovernanceAction).filter(
            GovernanceAction.owner_user_id == owner_user_id
        )
        if status is not None:
            q = q.filter(GovernanceAction.status == ActionStatus(status).value)
        return q.order_by(GovernanceAction.created_at.desc(), GovernanceAction.id.desc()).limit(limit).all()

    def find_pending_approvals_for(self, approver_email):
        """(approval, action) pairs still awaiting this approver's ballot."""
        from models import ActionApproval, GovernanceAction

        return (
            self._session.query(ActionApproval, GovernanceAction)
            .join(GovernanceAction, ActionApproval.action_id == GovernanceAction.id)
            .filter(
                ActionApproval.approver_email == approver_email,
                ActionApproval.decision == Decision.PENDING.value,
                GovernanceAction.status == ActionStatus.PENDING.value,
            )
            .order_by(GovernanceAction.created_at.desc(), GovernanceAction.id.desc())
            .all()
        )

    def find_stale_executions(self, cutoff):
        """Approved actions whose execution claim was taken before ``cutoff``."""
        from models import GovernanceAction

        return (
            self._session.query(GovernanceAction)
            .populate_existing()
            .filter(
                GovernanceAction.status == ActionStatus.APPROVED.value,
                GovernanceAction.execution_token.isnot(None),
                GovernanceAction.execution_started_at <= cutoff,
            )
            .order_by(GovernanceAction.execution_started_at.asc())
            .all()
        )

    # --- conditional writes ----------------------------------------------

    def claim_version(self, action_id, expected_version) -> bool:
        """Take the per-action write slot for this unit of work."""
        from models import GovernanceAction

        updated = self._session.query(GovernanceAction).filter(
            GovernanceAction.id == action_id,
            GovernanceAction.version == expected_version,
        ).update(
            {GovernanceAction.version: GovernanceAction.version + 1},
            synchronize_session=False,
        )
        return updated == 1

    def record_decision(self, approval_id, decision, comment, responded_at) -> bool:
        """Write a ballot only if it is still pending."""
        from models import ActionApproval

        updated = self._session.query(ActionApproval).filter(
            ActionApproval.id == approval_id,
            ActionApproval.decision == Decision.PENDING.value,
        ).update(
            {
                ActionApproval.decision: Decision(decision).value,
                ActionApproval.comment: comment,
                ActionApproval.responded_at: responded_at,
            },
            synchronize_session=False,
        )
        return updated == 1

    def transition(self, action_id, old_status, new_status, **fields) -> bool:
        """Move ``old_status -> new_status`` if the action is still in ``old_status``."""
        from models import GovernanceAction

        old_status = ActionStatus(old_status)
        new_status = ActionStatus(new_status)
        if not can_transition(old_status, new_status):
            raise ValueError(f'Illegal transition {old_status.value} -> {new_status.value}')

        values = {
            GovernanceAction.status: new_status.value,
            GovernanceAction.version: GovernanceAction.version + 1,
        }
        for name, value in fields.items():
            values[getattr(GovernanceAction, name)] = value

        updated = self._session.query(GovernanceAction).filter(
            GovernanceAction.id == action_id,
            GovernanceAction.status == old_status.value,
        ).update(values, synchronize_session=False)
        return updated == 1

    def claim_execution(self, action_id, token, started_at) -> bool:
        """Single-writer guard taken before the platform call."""
        from models import GovernanceAction

        updated = self._session.query(GovernanceAction).filter(
            GovernanceAction.id == action_id,
            GovernanceAction.status == ActionStatus.APPROVED.value,
            GovernanceAction.execution_token.is_(None),
        ).update(
            {
                GovernanceAction.execution_token: token,
                GovernanceAction.execution_started_at: started_at,
                GovernanceAction.version: GovernanceAction.version + 1,
            },
            synchronize_session=False,
        )
        return updated == 1

    def complete_execution(self, action_id, token, new_status, executed_at,
                           error_message=None) -> bool:
        """Resolve a claimed action; only the claim holder can do this."""
        from models import GovernanceAction

        new_status = ActionStatus(new_status)
        if not can_transition(ActionStatus.APPROVED, new_status):
            raise ValueError(f'Illegal execution outcome {new_status.value}')

        updated = self._session.query(GovernanceAction).filter(
            GovernanceAction.id == action_id,
            GovernanceAction.status == ActionStatus.APPROVED.value,
            GovernanceAction.execution_token == token,
        ).update(
            {
                GovernanceAction.status: new_status.value,
                GovernanceAction.executed_at: executed_at,
                GovernanceAction.error_message: error_message,
                GovernanceAction.version: GovernanceAction.version + 1,
            },
            synchronize_session=False,
        )
        return updated == 1
