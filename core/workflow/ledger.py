"""
Audit ledger — append-only trail of every workflow decision and outcome.

Entries are added to the caller's session and committed together with the
state write they describe, so a status change and its ledger entry either
both land or neither does. This module has no update or delete path; the
model additionally refuses ORM updates and deletes.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from core.workflow.errors import StorageError, TransientStorageError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 'system'


def action_resource(action_id: int) -> str:
    return f'action:{action_id}'


def asset_resource(asset_id: int) -> str:
    return f'asset:{asset_id}'


class AuditLedger:
    """Append-only writer and read-only query helper for ``audit_logs``."""

    def __init__(self, session=None):
        if session is None:
            from models import db
            session = db.session
        self._session = session

    def append(self, owner_user_id: int, event_type: str, actor_email: str,
               target_resource: str | None, details: dict[str, Any] | None = None,
               action_id: int | None = None):
        """Add a ledger entry to the current unit of work.

        Args:
            owner_user_id: Owner of the resource the event concerns.
            event_type: Dotted tag, e.g. ``action.created`` or
                        ``asset.delete.failed``.
            actor_email: Who caused the event (``system`` for sweeps).
            target_resource: ``action:<id>`` or ``asset:<id>``.
            details: Event-specific payload.
            action_id: The governance action involved, for per-action trails.

        Returns:
            The pending AuditLog instance (id assigned on flush).

        Raises:
            StorageError: If the backing store rejects the insert.
        """
        from models import AuditLog

        entry = AuditLog(
            owner_user_id=owner_user_id,
            event_type=event_type,
            actor_email=actor_email,
            target_resource=target_resource,
            action_id=action_id,
            timestamp=datetime.utcnow(),
            details=details or {},
        )
        try:
            self._session.add(entry)
            self._session.flush()
        except OperationalError as exc:
            raise TransientStorageError(f'Contention appending audit entry {event_type}: {exc}') from exc
        except SQLAlchemyError as exc:
            raise StorageError(f'Failed to append audit entry {event_type}: {exc}') from exc

        logger.debug('[ledger] %s actor=%s target=%s', event_type, actor_email, target_resource)
        # Caller is responsible for commit (batched with the state write).
        return entry

    # --- queries ---------------------------------------------------------

    def get_trail(self, owner_user_id: int, event_type: str | None = None,
                  actor_email: str | None = None, since: datetime | None = None,
                  until: datetime | None = None, limit: int = 100):
        """Query the trail for one owner, newest first."""
        from models import AuditLog

        q = self._session.query(AuditLog).filter(AuditLog.owner_user_id == owner_user_id)

        if event_type is not None:
            q = q.filter(AuditLog.event_type == event_type)
        if actor_email is not None:
            q = q.filter(AuditLog.actor_email == actor_email.strip().lower())
        if since is not None:
            q = q.filter(AuditLog.timestamp >= since)
        if until is not None:
            q = q.filter(AuditLog.timestamp <= until)

        return q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit).all()

    def get_action_trail(self, action_id: int):
        """Every entry for one action, in the order it was written."""
        from models import AuditLog

        return (
            self._session.query(AuditLog)
            .filter(AuditLog.action_id == action_id)
            .order_by(AuditLog.id.asc())
            .all()
        )

    def count_for_owner(self, owner_user_id: int) -> int:
        from models import AuditLog

        return self._session.query(AuditLog).filter(
            AuditLog.owner_user_id == owner_user_id
        ).count()
