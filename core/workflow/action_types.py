"""
Workflow vocabulary — action types, statuses, ballot decisions, typed
parameters and the consensus rule.

Parameters are a tagged union keyed by action type. They are validated when
an action is created and stored as plain JSON on the action row; the
dispatcher rebuilds the same variant from that JSON before calling the
platform, so a missing field can never surface at execution time.
"""
from __future__ import annotations

import enum
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from core.workflow.errors import ValidationError

_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class ActionType(str, enum.Enum):
    DELETE = 'delete'
    CHANGE_VISIBILITY = 'change_visibility'
    REMOVE_PERMISSION = 'remove_permission'
    TRANSFER_OWNERSHIP = 'transfer_ownership'

    @classmethod
    def parse(cls, value) -> ActionType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f'Invalid action_type {value!r}. '
                f'Must be one of: {sorted(t.value for t in cls)}'
            ) from None


class ActionStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    EXECUTED = 'executed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ActionStatus.REJECTED,
    ActionStatus.EXECUTED,
    ActionStatus.FAILED,
})

# Every edge the state machine allows. Anything else is a bug.
ALLOWED_TRANSITIONS = frozenset({
    (ActionStatus.PENDING, ActionStatus.APPROVED),
    (ActionStatus.PENDING, ActionStatus.REJECTED),
    (ActionStatus.APPROVED, ActionStatus.EXECUTED),
    (ActionStatus.APPROVED, ActionStatus.FAILED),
})


def can_transition(old: ActionStatus, new: ActionStatus) -> bool:
    return (ActionStatus(old), ActionStatus(new)) in ALLOWED_TRANSITIONS


class Decision(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'

    @classmethod
    def parse_vote(cls, value) -> Decision:
        """Parse a ballot an approver is casting. Pending is not a vote."""
        if isinstance(value, cls):
            decision = value
        else:
            try:
                decision = cls(str(value).strip().lower())
            except ValueError:
                decision = None
        if decision is None or decision is cls.PENDING:
            raise ValidationError(
                f'Invalid decision {value!r}. Must be "approved" or "rejected"'
            )
        return decision


# ---------------------------------------------------------------------------
# Typed parameters
# ---------------------------------------------------------------------------

VISIBILITY_PRIVATE = 'private'
VISIBILITY_RESTRICTED = 'restricted'
VALID_VISIBILITIES = frozenset({VISIBILITY_PRIVATE, VISIBILITY_RESTRICTED})


@dataclass(frozen=True)
class DeleteParams:
    action_type = ActionType.DELETE

    def to_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class ChangeVisibilityParams:
    action_type = ActionType.CHANGE_VISIBILITY

    visibility: str = VISIBILITY_PRIVATE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RemovePermissionParams:
    action_type = ActionType.REMOVE_PERMISSION

    permission_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TransferOwnershipParams:
    action_type = ActionType.TRANSFER_OWNERSHIP

    new_owner_email: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ActionParams = DeleteParams | ChangeVisibilityParams | RemovePermissionParams | TransferOwnershipParams


def _check_keys(raw: dict, allowed: set[str], action_type: ActionType) -> None:
    unknown = set(raw) - allowed
    if unknown:
        raise ValidationError(
            f'Unexpected params for {action_type.value}: {sorted(unknown)}. '
            f'Allowed: {sorted(allowed)}'
        )


def parse_action_params(action_type, raw: dict | None) -> ActionParams:
    """Validate raw parameters against the variant for ``action_type``.

    Raises:
        ValidationError: If the parameters do not fit the variant.
    """
    action_type = ActionType.parse(action_type)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError('params must be an object')

    if action_type is ActionType.DELETE:
        _check_keys(raw, set(), action_type)
        return DeleteParams()

    if action_type is ActionType.CHANGE_VISIBILITY:
        _check_keys(raw, {'visibility'}, action_type)
        visibility = str(raw.get('visibility') or VISIBILITY_PRIVATE).strip().lower()
        if visibility not in VALID_VISIBILITIES:
            raise ValidationError(
                f'Invalid visibility {visibility!r}. '
                f'Must be one of: {sorted(VALID_VISIBILITIES)}'
            )
        return ChangeVisibilityParams(visibility=visibility)

    if action_type is ActionType.REMOVE_PERMISSION:
        _check_keys(raw, {'permission_id'}, action_type)
        permission_id = str(raw.get('permission_id') or '').strip()
        if not permission_id:
            raise ValidationError('params.permission_id is required for remove_permission')
        return RemovePermissionParams(permission_id=permission_id)

    _check_keys(raw, {'new_owner_email'}, action_type)
    new_owner_email = normalize_email(raw.get('new_owner_email'), 'params.new_owner_email')
    return TransferOwnershipParams(new_owner_email=new_owner_email)


# ---------------------------------------------------------------------------
# Identifier and e-mail helpers
# ---------------------------------------------------------------------------

def parse_id(value, field_name='id') -> int:
    """Row id from an int or a string of digits."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f'{field_name} must be an integer')
    try:
        parsed = int(value)
    except ValueError:
        raise ValidationError(f'{field_name} must be an integer: {value!r}') from None
    if parsed < 1:
        raise ValidationError(f'{field_name} must be positive')
    return parsed


def normalize_email(value, field_name='email') -> str:
    email = str(value or '').strip().lower()
    if not email:
        raise ValidationError(f'{field_name} is required')
    if not _EMAIL_RE.match(email):
        raise ValidationError(f'{field_name} is not a valid email address: {value!r}')
    return email


def normalize_approvers(approver_emails: Iterable[str] | None) -> list[str]:
    """Normalise, validate and de-duplicate approver emails, keeping order."""
    if approver_emails is None or isinstance(approver_emails, (str, bytes)):
        raise ValidationError('approvers must be a list of email addresses')

    approvers: list[str] = []
    for raw in approver_emails:
        email = normalize_email(raw, 'approver email')
        if email not in approvers:
            approvers.append(email)

    if not approvers:
        raise ValidationError('At least one approver is required')
    return approvers


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

def evaluate_consensus(decisions: Iterable) -> ActionStatus:
    """Resolve a set of ballots to an action-level status.

    Any rejection wins. Otherwise a non-empty, fully approved set is
    approved. Everything else is still pending.
    """
    decisions = [Decision(d) for d in decisions]
    if any(d is Decision.REJECTED for d in decisions):
        return ActionStatus.REJECTED
    if decisions and all(d is Decision.APPROVED for d in decisions):
        return ActionStatus.APPROVED
    return ActionStatus.PENDING
