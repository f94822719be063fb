"""
Database models for the governance action workflow
"""
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()


class User(db.Model):
    """User account; owns assets, actions and the audit trail"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime)

    # Admin access control
    is_admin = db.Column(db.Boolean, default=False, nullable=False, index=True)

    # Relationships
    assets = db.relationship('Asset', backref='owner', lazy='dynamic')
    governance_actions = db.relationship('GovernanceAction', backref='owner', lazy='dynamic')

    def __repr__(self):
        return f'<User {self.email}>'


class Asset(db.Model):
    """A discovered cloud asset (file, sheet, folder) on an external platform.

    Discovery and risk scoring populate this table elsewhere; the workflow
    only reads the platform and external id to address the asset.
    """
    __tablename__ = 'assets'

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    platform = db.Column(db.String(50), nullable=False, default='google_workspace')  # 'google_workspace', 'microsoft_365', ...
    external_id = db.Column(db.String(255), nullable=False)  # Platform's file/asset ID
    name = db.Column(db.String(500))
    owner_email = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Asset {self.platform}:{self.external_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'owner_user_id': self.owner_user_id,
            'platform': self.platform,
            'external_id': self.external_id,
            'name': self.name,
            'owner_email': self.owner_email,
        }


class PlatformCredential(db.Model):
    """Credentials used to act on a platform on behalf of a user.

    Stored as JSON (service account key or OAuth token payload).
    """
    __tablename__ = 'platform_credentials'

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    platform = db.Column(db.String(50), nullable=False)
    credentials = db.Column(db.JSON, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # One credential set per user per platform
    __table_args__ = (db.UniqueConstraint('owner_user_id', 'platform', name='_owner_platform_uc'),)

    def __repr__(self):
        return f'<PlatformCredential user_id={self.owner_user_id} platform={self.platform}>'


class GovernanceAction(db.Model):
    """A proposed remediation against one asset, gated by approvals"""
    __tablename__ = 'governance_actions'

    VALID_STATUSES = ('pending', 'approved', 'rejected', 'executed', 'failed')
    TERMINAL_STATUSES = ('rejected', 'executed', 'failed')

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    asset_id = db.Column(db.Integer, db.ForeignKey('assets.id'), nullable=False, index=True)

    action_type = db.Column(db.String(50), nullable=False, index=True)  # 'delete', 'change_visibility', ...
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    requested_by_email = db.Column(db.String(255), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    params = db.Column(db.JSON)  # Serialised typed parameters for action_type

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    executed_at = db.Column(db.DateTime)  # Set only on executed/failed
    error_message = db.Column(db.Text)  # Set only on failed

    # Bumped by every conditional write; the per-action serialisation point
    version = db.Column(db.Integer, nullable=False, default=0)

    # Execution claim, taken before the platform call
    execution_token = db.Column(db.String(64))
    execution_started_at = db.Column(db.DateTime)

    # Relationships
    asset = db.relationship('Asset')
    approvals = db.relationship(
        'ActionApproval',
        backref='action',
        cascade='all, delete-orphan',
        order_by='ActionApproval.id',
    )

    def __repr__(self):
        return f'<GovernanceAction {self.id} {self.action_type} ({self.status})>'

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'owner_user_id': self.owner_user_id,
            'asset_id': self.asset_id,
            'action_type': self.action_type,
            'status': self.status,
            'requested_by_email': self.requested_by_email,
            'reason': self.reason,
            'params': self.params or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'executed_at': self.executed_at.isoformat() if self.executed_at else None,
            'error_message': self.error_message,
            'execution_in_progress': self.execution_token is not None and self.status == 'approved',
        }


class ActionApproval(db.Model):
    """One approver's ballot on one governance action"""
    __tablename__ = 'action_approvals'

    VALID_DECISIONS = ('pending', 'approved', 'rejected')

    id = db.Column(db.Integer, primary_key=True)
    action_id = db.Column(
        db.Integer,
        db.ForeignKey('governance_actions.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    approver_email = db.Column(db.String(255), nullable=False, index=True)
    decision = db.Column(db.String(20), nullable=False, default='pending')
    comment = db.Column(db.Text)
    responded_at = db.Column(db.DateTime)

    # One ballot per approver per action
    __table_args__ = (db.UniqueConstraint('action_id', 'approver_email', name='_action_approver_uc'),)

    def __repr__(self):
        return f'<ActionApproval {self.id} action={self.action_id} {self.approver_email} ({self.decision})>'

    def to_dict(self):
        return {
            'approval_id': self.id,
            'action_id': self.action_id,
            'email': self.approver_email,
            'decision': self.decision,
            'comment': self.comment,
            'responded_at': self.responded_at.isoformat() if self.responded_at else None,
        }


class AuditLog(db.Model):
    """Immutable record of a workflow event. Never updated, never deleted."""
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    event_type = db.Column(db.String(100), nullable=False, index=True)  # 'action.created', 'asset.deleted', ...
    actor_email = db.Column(db.String(255), nullable=False, index=True)
    target_resource = db.Column(db.String(255))  # 'action:<id>', 'asset:<id>'
    action_id = db.Column(db.Integer, index=True)  # No FK: entries outlive any action row
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    details = db.Column(db.JSON)

    def __repr__(self):
        return f'<AuditLog {self.id} {self.event_type}>'

    def to_dict(self):
        return {
            'id': self.id,
            'owner_user_id': self.owner_user_id,
            'event_type': self.event_type,
            'actor_email': self.actor_email,
            'target_resource': self.target_resource,
            'action_id': self.action_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'details': self.details or {},
        }


class AuditLogImmutableError(RuntimeError):
    """Raised when something tries to modify or delete an audit row."""


@event.listens_for(AuditLog, 'before_update')
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f'Audit log entry {target.id} is immutable')


@event.listens_for(AuditLog, 'before_delete')
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f'Audit log entry {target.id} cannot be deleted')
