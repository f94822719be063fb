"""
adapters.google_drive — Google Workspace remediation via the Drive v3 API.

Accepts either a service account key (``type == 'service_account'``) or an
OAuth token payload. All API and transport failures are raised as
PlatformError so callers only ever handle one exception type.
"""
from __future__ import annotations

import logging
import os
import socket
from typing import Any

import httplib2
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from adapters.platform import PlatformError

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ['https://www.googleapis.com/auth/drive']
DEFAULT_TIMEOUT_SECONDS = 30


def _error_message(exc: HttpError) -> str:
    reason = getattr(exc, 'reason', None) or ''
    if not reason and hasattr(exc, '_get_reason'):
        reason = exc._get_reason()
    status = getattr(exc.resp, 'status', None)
    return f'Google Drive API error {status}: {reason}'.strip()


def build_credentials(credentials: dict[str, Any]):
    """Turn a stored credential payload into google-auth credentials."""
    if not isinstance(credentials, dict) or not credentials:
        raise PlatformError('Google Workspace credentials are missing')

    if credentials.get('type') == 'service_account':
        creds = service_account.Credentials.from_service_account_info(
            credentials, scopes=DRIVE_SCOPES,
        )
        subject = credentials.get('delegated_subject')
        return creds.with_subject(subject) if subject else creds

    token = credentials.get('access_token') or credentials.get('token')
    if not token and not credentials.get('refresh_token'):
        raise PlatformError('Google OAuth credentials need an access or refresh token')

    return Credentials(
        token=token,
        refresh_token=credentials.get('refresh_token'),
        token_uri='https://oauth2.googleapis.com/token',
        client_id=credentials.get('client_id') or os.environ.get('GOOGLE_CLIENT_ID'),
        client_secret=credentials.get('client_secret') or os.environ.get('GOOGLE_CLIENT_SECRET'),
        scopes=credentials.get('scopes') or DRIVE_SCOPES,
    )


class GoogleDrivePlatform:
    """PlatformCapability backed by a Drive v3 service object."""

    def __init__(self, service):
        self._service = service

    @classmethod
    def from_credentials(cls, credentials: dict[str, Any],
                         timeout: float | None = None) -> GoogleDrivePlatform:
        creds = build_credentials(credentials)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout or DEFAULT_TIMEOUT_SECONDS))
        service = build('drive', 'v3', http=http, cache_discovery=False)
        return cls(service)

    # --- operations ------------------------------------------------------

    def delete(self, asset_id: str) -> dict[str, Any]:
        self._call(
            'delete asset',
            self._service.files().delete(fileId=asset_id, supportsAllDrives=True),
        )
        logger.info('[drive] deleted file=%s', asset_id)
        return {'external_id': asset_id}

    def change_visibility(self, asset_id: str, visibility: str) -> dict[str, Any]:
        """Strip public sharing; ``private`` also strips domain sharing."""
        listed = self._call(
            'list permissions',
            self._service.permissions().list(
                fileId=asset_id,
                fields='permissions(id, type, role)',
                supportsAllDrives=True,
            ),
        )

        removed = []
        for perm in listed.get('permissions', []):
            perm_type = perm.get('type')
            if perm_type == 'anyone' or (visibility == 'private' and perm_type == 'domain'):
                self._call(
                    'remove permission',
                    self._service.permissions().delete(
                        fileId=asset_id,
                        permissionId=perm['id'],
                        supportsAllDrives=True,
                    ),
                )
                removed.append({'id': perm['id'], 'type': perm_type, 'role': perm.get('role')})
                logger.info('[drive] removed %s permission=%s file=%s', perm_type, perm['id'], asset_id)

        return {'external_id': asset_id, 'visibility': visibility, 'removed_permissions': removed}

    def remove_permission(self, asset_id: str, permission_id: str) -> dict[str, Any]:
        # Capture the grantee before it disappears, for the audit trail
        details = self._call(
            'get permission',
            self._service.permissions().get(
                fileId=asset_id,
                permissionId=permission_id,
                fields='id, emailAddress, role, type',
                supportsAllDrives=True,
            ),
        )
        self._call(
            'remove permission',
            self._service.permissions().delete(
                fileId=asset_id,
                permissionId=permission_id,
                supportsAllDrives=True,
            ),
        )
        logger.info('[drive] removed permission=%s file=%s', permission_id, asset_id)
        return {
            'external_id': asset_id,
            'permission_id': permission_id,
            'removed_permission': {
                'email': details.get('emailAddress'),
                'role': details.get('role'),
                'type': details.get('type'),
            },
        }

    def transfer_ownership(self, asset_id: str, new_owner_email: str) -> dict[str, Any]:
        created = self._call(
            'transfer ownership',
            self._service.permissions().create(
                fileId=asset_id,
                transferOwnership=True,
                supportsAllDrives=True,
                body={
                    'type': 'user',
                    'role': 'owner',
                    'emailAddress': new_owner_email,
                },
            ),
        )
        logger.info('[drive] transferred file=%s to %s', asset_id, new_owner_email)
        return {
            'external_id': asset_id,
            'new_owner_email': new_owner_email,
            'permission_id': (created or {}).get('id'),
        }

    # --- internal --------------------------------------------------------

    @staticmethod
    def _call(operation: str, request):
        """Execute one API request, translating every failure to PlatformError."""
        try:
            return request.execute() or {}
        except HttpError as exc:
            raise PlatformError(
                f'Failed to {operation}: {_error_message(exc)}',
                status_code=getattr(exc.resp, 'status', None),
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise PlatformError(f'Failed to {operation}: request timed out') from exc
        except (OSError, httplib2.HttpLib2Error) as exc:
            raise PlatformError(f'Failed to {operation}: {exc}') from exc
