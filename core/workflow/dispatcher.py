"""
Execution dispatcher — turns an approved action into exactly one platform call.

    check state -> resolve platform -> claim (commit) -> platform call
    -> outcome + ledger (commit)

The claim is a conditional write on ``execution_token`` committed before the
network call, so no database lock is held while the platform works and a
second caller sees the claim and backs off. The outcome write is guarded by
the same token.

Maps each ActionType to a platform operation and its ledger event names.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from adapters.platform import PlatformError, get_platform
from core.workflow.action_types import (
    ActionStatus,
    ActionType,
    normalize_email,
    parse_action_params,
)
from core.workflow.errors import (
    AuthorizationError,
    ExecutionInProgressError,
    InvalidStateError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from core.workflow.ledger import SYSTEM_ACTOR, AuditLedger, asset_resource
from core.workflow.store import ActionStore

logger = logging.getLogger(__name__)

DEFAULT_STALE_CLAIM_MINUTES = 15
STALE_CLAIM_ERROR = 'Execution outcome unknown: claim expired'

# Attempts for each unit of work that loses to lock contention
_CONTENTION_ATTEMPTS = 5


@dataclass(frozen=True)
class _Operation:
    call: Callable[[Any, str, Any], dict | None]
    success_event: str
    failure_event: str


# Dispatch table: action type -> (platform call, success event, failure event)
_OPERATIONS: dict[ActionType, _Operation] = {
    ActionType.DELETE: _Operation(
        call=lambda platform, external_id, params: platform.delete(external_id),
        success_event='asset.deleted',
        failure_event='asset.delete.failed',
    ),
    ActionType.CHANGE_VISIBILITY: _Operation(
        call=lambda platform, external_id, params: platform.change_visibility(
            external_id, params.visibility),
        success_event='asset.visibility_changed',
        failure_event='asset.visibility_change.failed',
    ),
    ActionType.REMOVE_PERMISSION: _Operation(
        call=lambda platform, external_id, params: platform.remove_permission(
            external_id, params.permission_id),
        success_event='asset.permission_removed',
        failure_event='asset.permission_remove.failed',
    ),
    ActionType.TRANSFER_OWNERSHIP: _Operation(
        call=lambda platform, external_id, params: platform.transfer_ownership(
            external_id, params.new_owner_email),
        success_event='asset.ownership_transferred',
        failure_event='asset.ownership_transfer.failed',
    ),
}


def get_operation(action_type) -> _Operation:
    return _OPERATIONS[ActionType.parse(action_type)]


@dataclass(frozen=True)
class ExecutionResult:
    action_id: int
    status: ActionStatus
    error: str | None = None

    def to_dict(self):
        return {
            'action_id': self.action_id,
            'status': self.status.value,
            'error': self.error,
        }


@dataclass(frozen=True)
class _Claim:
    action_id: int
    owner_user_id: int
    asset_id: int
    external_id: str
    action_type: ActionType
    operation: _Operation
    params: Any
    platform: Any


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, PlatformError):
        return exc.message
    return f'{type(exc).__name__}: {exc}' if str(exc) else type(exc).__name__


def check_executable(action) -> None:
    """Raise unless ``action`` is approved and not already claimed."""
    if action.status != ActionStatus.APPROVED.value:
        raise InvalidStateError(
            f'Action {action.id} is {action.status}; only approved actions can be executed'
        )
    if action.execution_token is not None:
        raise ExecutionInProgressError(f'Action {action.id} is already being executed')


class ExecutionDispatcher:
    """Runs approved actions against their asset's platform."""

    def __init__(self, store: ActionStore, ledger: AuditLedger,
                 platform_factory=get_platform, timeout: float | None = None):
        self._store = store
        self._ledger = ledger
        self._platform_factory = platform_factory
        self._timeout = timeout

    def execute(self, action_id, platform_credentials, actor_email,
                owner_user_id=None) -> ExecutionResult:
        """Execute an approved action once.

        Platform failures do not raise; they come back as a Failed result
        and are recorded on the action and in the ledger.

        Raises:
            NotFoundError: Unknown action or asset.
            AuthorizationError: ``owner_user_id`` given and not the owner.
            InvalidStateError: The action is not approved.
            ExecutionInProgressError: Another caller holds the claim.
            ValidationError: The platform could not be resolved.
            StorageError: The store failed.
        """
        actor_email = normalize_email(actor_email, 'actor_email')
        token = uuid.uuid4().hex

        claim = self._retry_on_contention(
            lambda: self._claim(action_id, token, platform_credentials, owner_user_id)
        )
        logger.info('[dispatch] claimed action=%s type=%s asset=%s',
                    action_id, claim.action_type.value, claim.external_id)

        # Blocking network call; nothing is locked while it runs
        error = None
        returned = None
        try:
            returned = claim.operation.call(claim.platform, claim.external_id, claim.params)
        except Exception as exc:
            error = _describe_failure(exc)
            logger.warning('[dispatch] action=%s failed: %s', action_id, error)

        status = ActionStatus.FAILED if error else ActionStatus.EXECUTED
        # Adapter payload first; the action's own identifiers always win
        details = dict(returned) if not error and isinstance(returned, dict) else {}
        details.update({
            'action_id': claim.action_id,
            'asset_id': claim.asset_id,
            'external_id': claim.external_id,
            'action_type': claim.action_type.value,
            **claim.params.to_dict(),
        })
        if error:
            details['error'] = error

        recorded = self._retry_on_contention(
            lambda: self._record_outcome(claim, token, status, error, actor_email, details)
        )

        if not recorded:
            # A recovery sweep resolved the claim first; its status stands
            current = self._store.get_action(claim.action_id)
            logger.warning('[dispatch] action=%s outcome %s arrived after recovery (%s)',
                           action_id, status.value, current.status)
            return ExecutionResult(claim.action_id, ActionStatus(current.status),
                                   current.error_message)

        logger.info('[dispatch] action=%s -> %s', action_id, status.value)
        return ExecutionResult(claim.action_id, status, error)

    def recover_stale_executions(self, max_age_minutes=DEFAULT_STALE_CLAIM_MINUTES) -> int:
        """Fail approved actions whose execution claim was never resolved.

        The platform-side outcome of such an action is unknown; the ledger
        entry says so. Returns the number of actions resolved.
        """
        cutoff = datetime.utcnow() - timedelta(minutes=max_age_minutes)
        recovered = 0

        with self._store.unit_of_work():
            stale = self._store.find_stale_executions(cutoff)
            for action in stale:
                if not self._store.complete_execution(
                    action.id, action.execution_token, ActionStatus.FAILED,
                    datetime.utcnow(), error_message=STALE_CLAIM_ERROR,
                ):
                    continue
                self._ledger.append(
                    owner_user_id=action.owner_user_id,
                    event_type=get_operation(action.action_type).failure_event,
                    actor_email=SYSTEM_ACTOR,
                    target_resource=asset_resource(action.asset_id),
                    action_id=action.id,
                    details={
                        'action_id': action.id,
                        'asset_id': action.asset_id,
                        'action_type': action.action_type,
                        'error': STALE_CLAIM_ERROR,
                        'outcome_unknown': True,
                        'claimed_at': action.execution_started_at.isoformat(),
                    },
                )
                recovered += 1

        if recovered:
            logger.warning('[dispatch] recovered %d stale execution claim(s)', recovered)
        return recovered

    # --- internal --------------------------------------------------------

    def _resolve_platform(self, platform, credentials):
        try:
            return self._platform_factory(platform, credentials or {}, self._timeout)
        except (ValueError, PlatformError) as exc:
            raise ValidationError(f'Cannot reach platform {platform!r}: {exc}') from exc

    def _claim(self, action_id, token, platform_credentials, owner_user_id) -> _Claim:
        with self._store.unit_of_work():
            action = self._store.get_action(action_id)
            if action is None:
                raise NotFoundError(f'Action {action_id} not found')
            if owner_user_id is not None and action.owner_user_id != owner_user_id:
                raise AuthorizationError(f'Action {action_id} does not belong to this user')
            check_executable(action)

            asset = self._store.get_asset(action.asset_id)
            if asset is None:
                raise NotFoundError(f'Asset {action.asset_id} not found')

            params = parse_action_params(action.action_type, action.params)
            platform = self._resolve_platform(asset.platform, platform_credentials)

            if not self._store.claim_execution(action.id, token, datetime.utcnow()):
                # Lost the race; report what the winner left behind
                check_executable(self._store.get_action(action.id))
                raise ExecutionInProgressError(f'Action {action_id} is already being executed')

            return _Claim(
                action_id=action.id,
                owner_user_id=action.owner_user_id,
                asset_id=asset.id,
                external_id=asset.external_id,
                action_type=ActionType.parse(action.action_type),
                operation=get_operation(action.action_type),
                params=params,
                platform=platform,
            )

    def _record_outcome(self, claim, token, status, error, actor_email, details) -> bool:
        with self._store.unit_of_work():
            recorded = self._store.complete_execution(
                claim.action_id, token, status, datetime.utcnow(), error_message=error,
            )
            entry_details = dict(details)
            if not recorded:
                entry_details['recorded_after_recovery'] = True
            self._ledger.append(
                owner_user_id=claim.owner_user_id,
                event_type=claim.operation.failure_event if error else claim.operation.success_event,
                actor_email=actor_email,
                target_resource=asset_resource(claim.asset_id),
                action_id=claim.action_id,
                details=entry_details,
            )
        return recorded

    @staticmethod
    def _retry_on_contention(unit, attempts=_CONTENTION_ATTEMPTS):
        for attempt in range(attempts):
            try:
                return unit()
            except TransientStorageError:
                if attempt == attempts - 1:
                    raise
                logger.info('[dispatch] storage contention, retry %d', attempt + 1)
                time.sleep(0.05 * (attempt + 1))
