"""
Tests for the execution dispatcher: dispatch table, outcome recording,
state guards, claim handling and stale-claim recovery.
"""
import socket

import pytest
from datetime import datetime, timedelta

from models import db, Asset, AuditLog, GovernanceAction
from adapters.platform import PlatformError
from core.workflow.action_types import ActionStatus
from core.workflow.dispatcher import STALE_CLAIM_ERROR
from core.workflow.errors import (
    AuthorizationError,
    ExecutionInProgressError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)


def _approved_action(engine, user, asset, action_type='delete', params=None):
    created = engine.create(
        owner_user_id=user.id,
        asset_id=asset.id,
        action_type=action_type,
        requested_by_email=user.email,
        approver_emails=['dave@example.com'],
        reason='Remediate exposure',
        params=params,
    )
    engine.decide(created.approval_ids[0], 'approved', 'dave@example.com')
    return created.action_id


def _entries_after(action_id, count_before):
    entries = AuditLog.query.filter_by(action_id=action_id).order_by(AuditLog.id).all()
    return entries[count_before:]


def _entry_count(action_id):
    return AuditLog.query.filter_by(action_id=action_id).count()


@pytest.mark.dispatch
class TestDispatchTable:

    @pytest.mark.parametrize('action_type, params, expected_call, event', [
        ('delete', None, ('delete', 'file-42'), 'asset.deleted'),
        ('change_visibility', {'visibility': 'restricted'},
         ('change_visibility', 'file-42', 'restricted'), 'asset.visibility_changed'),
        ('remove_permission', {'permission_id': 'perm-9'},
         ('remove_permission', 'file-42', 'perm-9'), 'asset.permission_removed'),
        ('transfer_ownership', {'new_owner_email': 'carol@x.com'},
         ('transfer_ownership', 'file-42', 'carol@x.com'), 'asset.ownership_transferred'),
    ])
    def test_success_path(self, engine, user, asset, fake_platform,
                          action_type, params, expected_call, event):
        action_id = _approved_action(engine, user, asset, action_type, params)
        before = _entry_count(action_id)

        result = engine.execute(action_id, {'token': 't'}, 'owner@example.com')

        assert result.status is ActionStatus.EXECUTED
        assert result.error is None
        assert fake_platform.calls == [expected_call]
        new_entries = _entries_after(action_id, before)
        assert [e.event_type for e in new_entries] == [event]
        assert new_entries[0].target_resource == f'asset:{asset.id}'
        assert new_entries[0].details['external_id'] == 'file-42'

    @pytest.mark.parametrize('action_type, params, event', [
        ('delete', None, 'asset.delete.failed'),
        ('change_visibility', None, 'asset.visibility_change.failed'),
        ('remove_permission', {'permission_id': 'perm-9'}, 'asset.permission_remove.failed'),
        ('transfer_ownership', {'new_owner_email': 'carol@x.com'}, 'asset.ownership_transfer.failed'),
    ])
    def test_failure_path(self, engine, user, asset, fake_platform, action_type, params, event):
        fake_platform.fail_with = PlatformError('Insufficient permissions', status_code=403)
        action_id = _approved_action(engine, user, asset, action_type, params)
        before = _entry_count(action_id)

        result = engine.execute(action_id, {}, 'owner@example.com')

        assert result.status is ActionStatus.FAILED
        assert result.error == 'Insufficient permissions'
        action = db.session.get(GovernanceAction, action_id)
        assert action.status == 'failed'
        assert action.error_message == 'Insufficient permissions'
        assert action.executed_at is not None
        new_entries = _entries_after(action_id, before)
        assert [e.event_type for e in new_entries] == [event]
        assert new_entries[0].details['error'] == 'Insufficient permissions'


@pytest.mark.dispatch
class TestExecute:

    def test_transfer_ownership_scenario(self, engine, user, fake_platform):
        """create(asset 7, transfer to carol) -> dave approves -> execute."""
        asset = Asset(id=7, owner_user_id=user.id, platform='google_workspace',
                      external_id='7', name='Board deck')
        db.session.add(asset)
        db.session.commit()

        created = engine.create(user.id, 7, 'transfer_ownership', user.email,
                                ['dave@example.com'], 'Owner is leaving',
                                params={'new_owner_email': 'carol@x.com'})
        assert engine.get_status(created.action_id)['action_status'] == 'pending'

        decision = engine.decide(created.approval_ids[0], 'approved', 'dave@example.com')
        assert decision.action_status is ActionStatus.APPROVED

        before = _entry_count(created.action_id)
        result = engine.execute(created.action_id, {'token': 't'}, 'owner@example.com')

        assert fake_platform.calls == [('transfer_ownership', '7', 'carol@x.com')]
        assert result.status is ActionStatus.EXECUTED
        action = db.session.get(GovernanceAction, created.action_id)
        assert action.status == 'executed'
        assert action.executed_at is not None
        assert action.error_message is None
        new_entries = _entries_after(created.action_id, before)
        assert len(new_entries) == 1
        assert new_entries[0].event_type == 'asset.ownership_transferred'
        assert new_entries[0].details['new_owner_email'] == 'carol@x.com'

    def test_pending_action_is_refused(self, engine, user, asset, fake_platform):
        created = engine.create(user.id, asset.id, 'delete', user.email,
                                ['dave@example.com'], 'why')
        before = _entry_count(created.action_id)

        with pytest.raises(InvalidStateError):
            engine.execute(created.action_id, {}, 'owner@example.com')

        assert fake_platform.calls == []
        assert _entry_count(created.action_id) == before
        assert db.session.get(GovernanceAction, created.action_id).execution_token is None

    @pytest.mark.parametrize('terminal', ['executed', 'failed'])
    def test_terminal_action_is_refused(self, engine, user, asset, fake_platform, terminal):
        if terminal == 'failed':
            fake_platform.fail_with = PlatformError('nope')
        action_id = _approved_action(engine, user, asset)
        engine.execute(action_id, {}, 'owner@example.com')
        fake_platform.calls.clear()
        before = _entry_count(action_id)

        with pytest.raises(InvalidStateError):
            engine.execute(action_id, {}, 'owner@example.com')

        assert db.session.get(GovernanceAction, action_id).status == terminal
        assert fake_platform.calls == []
        assert _entry_count(action_id) == before

    def test_claimed_action_is_refused(self, engine, user, asset, fake_platform):
        action_id = _approved_action(engine, user, asset)
        assert engine.store.claim_execution(action_id, 'other-token', datetime.utcnow())
        db.session.commit()

        with pytest.raises(ExecutionInProgressError):
            engine.execute(action_id, {}, 'owner@example.com')
        assert fake_platform.calls == []

    def test_unknown_action(self, engine):
        with pytest.raises(NotFoundError):
            engine.execute(98765, {}, 'owner@example.com')

    def test_owner_mismatch(self, engine, user, other_user, asset, fake_platform):
        action_id = _approved_action(engine, user, asset)
        with pytest.raises(AuthorizationError):
            engine.execute(action_id, {}, other_user.email, owner_user_id=other_user.id)
        assert fake_platform.calls == []

    def test_unknown_platform_is_refused_before_claim(self, engine, user, asset, fake_platform):
        action_id = _approved_action(engine, user, asset)
        asset.platform = 'dropbox'
        db.session.commit()

        with pytest.raises(ValidationError, match='dropbox'):
            engine.execute(action_id, {}, 'owner@example.com')

        action = db.session.get(GovernanceAction, action_id)
        assert action.status == 'approved'
        assert action.execution_token is None
        assert fake_platform.calls == []

    def test_credentials_and_timeout_reach_factory(self, engine, user, asset, platform_factory):
        action_id = _approved_action(engine, user, asset)
        engine.execute(action_id, {'access_token': 'abc'}, 'owner@example.com')
        assert platform_factory.requests == [('google_workspace', {'access_token': 'abc'}, 5)]

    def test_timeout_resolves_to_failed(self, engine, user, asset, fake_platform):
        fake_platform.fail_with = socket.timeout('timed out')
        action_id = _approved_action(engine, user, asset)

        result = engine.execute(action_id, {}, 'owner@example.com')

        assert result.status is ActionStatus.FAILED
        assert 'timed out' in result.error
        assert db.session.get(GovernanceAction, action_id).status == 'failed'

    def test_unexpected_exception_resolves_to_failed(self, engine, user, asset, fake_platform):
        fake_platform.fail_with = RuntimeError('socket closed')
        action_id = _approved_action(engine, user, asset)

        result = engine.execute(action_id, {}, 'owner@example.com')

        assert result.status is ActionStatus.FAILED
        assert result.error == 'RuntimeError: socket closed'

    def test_adapter_details_are_recorded(self, engine, user, asset, fake_platform):
        fake_platform.returns = {'removed_permissions': [{'id': 'anyoneWithLink', 'type': 'anyone'}]}
        action_id = _approved_action(engine, user, asset, 'change_visibility', {'visibility': 'private'})

        engine.execute(action_id, {}, 'owner@example.com')

        entry = AuditLog.query.filter_by(
            action_id=action_id, event_type='asset.visibility_changed',
        ).one()
        assert entry.details['visibility'] == 'private'
        assert entry.details['removed_permissions'][0]['type'] == 'anyone'

    def test_adapter_details_cannot_replace_action_identifiers(self, engine, user, asset,
                                                               fake_platform):
        fake_platform.returns = {
            'action_id': 999, 'asset_id': 1234, 'action_type': 'transfer_ownership',
            'external_id': 'other-file', 'trashed': True,
        }
        action_id = _approved_action(engine, user, asset)

        engine.execute(action_id, {}, 'owner@example.com')

        entry = AuditLog.query.filter_by(action_id=action_id, event_type='asset.deleted').one()
        assert entry.details['action_id'] == action_id
        assert entry.details['asset_id'] == asset.id
        assert entry.details['action_type'] == 'delete'
        assert entry.details['external_id'] == 'file-42'
        assert entry.details['trashed'] is True

    def test_outcome_write_failure_leaves_claim_for_recovery(self, engine, user, asset,
                                                             fake_platform, monkeypatch):
        from sqlalchemy.exc import SQLAlchemyError

        action_id = _approved_action(engine, user, asset)
        entries_before = _entry_count(action_id)

        def broken_append(*args, **kwargs):
            raise StorageError('ledger down') from SQLAlchemyError('boom')

        monkeypatch.setattr(engine.ledger, 'append', broken_append)
        with pytest.raises(StorageError):
            engine.execute(action_id, {}, 'owner@example.com')
        monkeypatch.undo()

        # The platform ran once, but neither the status nor the ledger moved
        assert fake_platform.calls == [('delete', 'file-42')]
        db.session.expire_all()
        action = db.session.get(GovernanceAction, action_id)
        assert action.status == 'approved'
        assert action.execution_token is not None
        assert action.executed_at is None
        assert _entry_count(action_id) == entries_before

        with pytest.raises(ExecutionInProgressError):
            engine.execute(action_id, {}, 'owner@example.com')
        stale = engine.store.find_stale_executions(datetime.utcnow() + timedelta(minutes=1))
        assert [a.id for a in stale] == [action_id]

    def test_failed_is_terminal_no_retry(self, engine, user, asset, fake_platform):
        fake_platform.fail_with = PlatformError('quota exceeded')
        action_id = _approved_action(engine, user, asset)
        engine.execute(action_id, {}, 'owner@example.com')

        fake_platform.fail_with = None
        with pytest.raises(InvalidStateError):
            engine.execute(action_id, {}, 'owner@example.com')
        assert len(fake_platform.calls) == 1


@pytest.mark.dispatch
class TestStaleClaimRecovery:

    def _claim(self, engine, action_id, minutes_ago):
        assert engine.store.claim_execution(
            action_id, 'lost-worker', datetime.utcnow() - timedelta(minutes=minutes_ago),
        )
        db.session.commit()

    def test_expired_claim_is_failed(self, engine, user, asset):
        action_id = _approved_action(engine, user, asset)
        self._claim(engine, action_id, minutes_ago=60)

        assert engine.recover_stale_executions(max_age_minutes=15) == 1

        action = db.session.get(GovernanceAction, action_id)
        assert action.status == 'failed'
        assert action.error_message == STALE_CLAIM_ERROR
        entry = AuditLog.query.filter_by(action_id=action_id, event_type='asset.delete.failed').one()
        assert entry.actor_email == 'system'
        assert entry.details['outcome_unknown'] is True

    def test_fresh_claim_is_left_alone(self, engine, user, asset):
        action_id = _approved_action(engine, user, asset)
        self._claim(engine, action_id, minutes_ago=1)

        assert engine.recover_stale_executions(max_age_minutes=15) == 0
        assert db.session.get(GovernanceAction, action_id).status == 'approved'

    def test_unclaimed_approved_action_is_left_alone(self, engine, user, asset):
        action_id = _approved_action(engine, user, asset)
        assert engine.recover_stale_executions(max_age_minutes=0) == 0
        assert db.session.get(GovernanceAction, action_id).status == 'approved'

    def test_default_age_comes_from_engine(self, app, platform_factory, user, asset):
        from core.workflow.engine import WorkflowEngine

        engine = WorkflowEngine(platform_factory=platform_factory, stale_claim_minutes=30)
        action_id = _approved_action(engine, user, asset)
        self._claim(engine, action_id, minutes_ago=20)
        assert engine.recover_stale_executions() == 0

    def test_late_outcome_after_recovery_is_still_logged(self, engine, user, asset, fake_platform):
        action_id = _approved_action(engine, user, asset)

        def sweep_then_succeed(asset_id):
            # Simulate the sweep resolving this claim while the call is in flight
            db.session.query(GovernanceAction).filter_by(id=action_id).update(
                {'execution_started_at': datetime.utcnow() - timedelta(hours=2)},
            )
            db.session.commit()
            engine.recover_stale_executions(max_age_minutes=15)
            return {'external_id': asset_id}

        fake_platform.delete = sweep_then_succeed
        result = engine.execute(action_id, {}, 'owner@example.com')

        assert result.status is ActionStatus.FAILED
        assert db.session.get(GovernanceAction, action_id).error_message == STALE_CLAIM_ERROR
        late = AuditLog.query.filter_by(action_id=action_id, event_type='asset.deleted').one()
        assert late.details['recorded_after_recovery'] is True
