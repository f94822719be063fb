"""
Workflow routes — governance action proposals, approvals, execution and audit.

Actions:
    POST /api/actions                        — Propose an action on an asset
    GET  /api/actions                        — List the caller's actions
    GET  /api/actions/<id>                   — Status + per-approver breakdown
    GET  /api/actions/<id>/audit             — Ledger entries for one action
    POST /api/actions/<id>/execute           — Run an approved action
    POST /api/actions/internal/recover       — Cron: fail expired execution claims
Approvals:
    POST /api/approvals/<id>/approve         — Approver approves
    POST /api/approvals/<id>/reject          — Approver rejects
    GET  /api/approvals/pending              — Ballots waiting on the caller
Audit:
    GET  /api/audit                          — Owner's audit trail with filters
"""
import logging
import os
from datetime import datetime

from flask import jsonify, request, session

from core.workflow.errors import (
    AlreadyRespondedError,
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
    WorkflowError,
)
from rate_limiter import limiter

logger = logging.getLogger(__name__)

# Workflow error -> HTTP status
_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (AlreadyRespondedError, 409),
    (InvalidStateError, 409),
    (ConcurrentUpdateError, 409),
)


def _error_response(exc: WorkflowError):
    if isinstance(exc, StorageError):
        # Driver messages carry SQL and bound parameters; keep them server-side
        logger.error('[workflow] storage failure: %s', exc, exc_info=exc)
        return jsonify({
            'error': 'Storage is temporarily unavailable, please retry',
            'error_type': type(exc).__name__,
        }), 503
    for exc_type, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return jsonify({'error': str(exc), 'error_type': type(exc).__name__}), status
    return jsonify({'error': str(exc), 'error_type': type(exc).__name__}), 500


def _current_user():
    """(user_id, email) for the session, or (None, None)."""
    user_id = session.get('user_id')
    if not user_id:
        return None, None

    email = session.get('user_email')
    if not email:
        from models import db, User
        user = db.session.get(User, user_id)
        if user is None:
            return None, None
        email = user.email
    return user_id, email


def _parse_timestamp(value, name):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f'{name} must be an ISO-8601 timestamp') from None


def register_workflow_routes(app):

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @app.route('/api/actions', methods=['POST'])
    def workflow_create_action():
        """Propose a governance action.

        Body:
            asset_id (int): Asset to act on.
            action_type (str): delete | change_visibility | remove_permission
                               | transfer_ownership
            approvers (list[str]): Approver emails.
            reason (str): Justification.
            params (dict, optional): Per-type parameters.
        """
        user_id, email = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400
        if data.get('asset_id') is None:
            return jsonify({'error': 'asset_id is required'}), 400

        from core.workflow.engine import get_engine

        try:
            created = get_engine().create(
                owner_user_id=user_id,
                asset_id=data.get('asset_id'),
                action_type=data.get('action_type'),
                requested_by_email=email,
                approver_emails=data.get('approvers'),
                reason=data.get('reason'),
                params=data.get('params'),
            )
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({'success': True, **created.to_dict()}), 201

    @app.route('/api/actions', methods=['GET'])
    def workflow_list_actions():
        """List the caller's actions.

        Query params:
            status (str, optional): Filter by status.
            limit (int, optional): Max results (default 50).
        """
        user_id, _ = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        limit = request.args.get('limit', 50, type=int)
        limit = min(max(limit, 1), 200)

        from core.workflow.engine import get_engine

        try:
            actions = get_engine().orchestrator.list_actions(
                user_id, status=request.args.get('status'), limit=limit,
            )
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({
            'actions': [a.to_dict() for a in actions],
            'count': len(actions),
        })

    @app.route('/api/actions/<int:action_id>', methods=['GET'])
    def workflow_get_action(action_id):
        user_id, _ = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        from core.workflow.engine import get_engine

        try:
            status = get_engine().get_status(action_id, owner_user_id=user_id)
        except WorkflowError as e:
            return _error_response(e)

        return jsonify(status)

    @app.route('/api/actions/<int:action_id>/audit', methods=['GET'])
    def workflow_action_audit(action_id):
        """Every ledger entry for one action, oldest first."""
        user_id, _ = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        from core.workflow.engine import get_engine

        engine = get_engine()
        try:
            engine.get_status(action_id, owner_user_id=user_id)
        except WorkflowError as e:
            return _error_response(e)

        entries = engine.ledger.get_action_trail(action_id)
        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'count': len(entries),
        })

    @app.route('/api/actions/<int:action_id>/execute', methods=['POST'])
    @limiter.limit("10 per minute")
    def workflow_execute_action(action_id):
        """Execute an approved action with the caller's stored credentials."""
        user_id, email = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        from models import PlatformCredential
        from core.workflow.dispatcher import check_executable
        from core.workflow.engine import get_engine

        engine = get_engine()
        action = engine.store.get_action(action_id)
        if action is None:
            return jsonify({'error': f'Action {action_id} not found'}), 404
        if action.owner_user_id != user_id:
            return jsonify({'error': f'Action {action_id} does not belong to this user'}), 403

        # State errors outrank missing credentials
        try:
            check_executable(action)
        except WorkflowError as e:
            return _error_response(e)

        platform = action.asset.platform if action.asset else None
        credential = PlatformCredential.query.filter_by(
            owner_user_id=user_id, platform=platform,
        ).first()
        if credential is None:
            return jsonify({'error': f'No credentials stored for platform {platform!r}'}), 400

        try:
            result = engine.execute(
                action_id, credential.credentials, email, owner_user_id=user_id,
            )
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({
            'success': result.error is None,
            **result.to_dict(),
        })

    @app.route('/api/actions/internal/recover', methods=['POST'])
    def workflow_internal_recover():
        """Cron endpoint: resolve execution claims that never finished."""
        # Auth: CRON_SECRET or ADMIN_PASSWORD
        auth_header = request.headers.get('Authorization', '')
        body = request.get_json(silent=True) or {}
        cron_secret = os.environ.get('CRON_SECRET', '')
        admin_password = os.environ.get('ADMIN_PASSWORD', '')

        authorized = False
        if cron_secret and auth_header == f'Bearer {cron_secret}':
            authorized = True
        elif admin_password and body.get('password') == admin_password:
            authorized = True

        if not authorized:
            return jsonify({'error': 'Unauthorized'}), 401

        from core.workflow.engine import get_engine

        max_age = body.get('max_age_minutes')
        try:
            recovered = get_engine().recover_stale_executions(
                int(max_age) if max_age is not None else None
            )
        except (TypeError, ValueError):
            return jsonify({'error': 'max_age_minutes must be an integer'}), 400
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({'success': True, 'recovered': recovered})

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def _decide(approval_id, decision):
        user_id, email = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        body = request.get_json(silent=True) or {}

        from core.workflow.engine import get_engine

        try:
            result = get_engine().decide(
                approval_id, decision, email, comment=body.get('comment'),
            )
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({'success': True, **result.to_dict()})

    @app.route('/api/approvals/<int:approval_id>/approve', methods=['POST'])
    @limiter.limit("30 per minute")
    def workflow_approve(approval_id):
        return _decide(approval_id, 'approved')

    @app.route('/api/approvals/<int:approval_id>/reject', methods=['POST'])
    @limiter.limit("30 per minute")
    def workflow_reject(approval_id):
        return _decide(approval_id, 'rejected')

    @app.route('/api/approvals/pending', methods=['GET'])
    def workflow_pending_approvals():
        """Ballots waiting on the caller, for the approval UI."""
        user_id, email = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        from core.workflow.engine import get_engine

        try:
            pending = get_engine().orchestrator.get_pending_approvals(email)
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({'approvals': pending, 'count': len(pending)})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @app.route('/api/audit', methods=['GET'])
    def workflow_audit_trail():
        """Query the caller's audit trail.

        Query params:
            event_type (str, optional): Exact event tag.
            actor_email (str, optional): Who caused the event.
            since / until (ISO-8601, optional): Time window.
            limit (int, optional): Max results (default 100).
        """
        user_id, _ = _current_user()
        if not user_id:
            return jsonify({'error': 'Authentication required'}), 401

        limit = request.args.get('limit', 100, type=int)
        limit = min(max(limit, 1), 500)

        from core.workflow.engine import get_engine

        try:
            entries = get_engine().ledger.get_trail(
                owner_user_id=user_id,
                event_type=request.args.get('event_type'),
                actor_email=request.args.get('actor_email'),
                since=_parse_timestamp(request.args.get('since'), 'since'),
                until=_parse_timestamp(request.args.get('until'), 'until'),
                limit=limit,
            )
        except WorkflowError as e:
            return _error_response(e)

        return jsonify({
            'entries': [e.to_dict() for e in entries],
            'count': len(entries),
        })
