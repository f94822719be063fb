"""
adapters.platform — the capability every asset-owning platform provides.

A platform implementation exposes the four remediation operations. Each
one either returns (optionally with a details dict for the audit trail) or
raises PlatformError with a human-readable message.
"""
from __future__ import annotations

from typing import Any, Callable, Protocol

# Platform identifiers as stored on Asset.platform
GOOGLE_WORKSPACE = 'google_workspace'


class PlatformError(Exception):
    """A platform call failed. ``message`` is safe to show to users."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PlatformCapability(Protocol):
    """Remediation operations against one platform, for one credential set."""

    def delete(self, asset_id: str) -> dict[str, Any] | None:
        ...

    def change_visibility(self, asset_id: str, visibility: str) -> dict[str, Any] | None:
        ...

    def remove_permission(self, asset_id: str, permission_id: str) -> dict[str, Any] | None:
        ...

    def transfer_ownership(self, asset_id: str, new_owner_email: str) -> dict[str, Any] | None:
        ...


# Factory signature: (credentials, timeout_seconds) -> PlatformCapability
PlatformFactory = Callable[[dict[str, Any], float | None], PlatformCapability]


def _google_workspace(credentials: dict[str, Any], timeout: float | None) -> PlatformCapability:
    from adapters.google_drive import GoogleDrivePlatform
    return GoogleDrivePlatform.from_credentials(credentials, timeout=timeout)


# Registry: platform id -> factory
_PLATFORMS: dict[str, PlatformFactory] = {
    GOOGLE_WORKSPACE: _google_workspace,
}


def supported_platforms() -> list[str]:
    return sorted(_PLATFORMS)


def get_platform(platform: str, credentials: dict[str, Any],
                 timeout: float | None = None) -> PlatformCapability:
    """Build the capability for ``platform`` using ``credentials``.

    Raises:
        ValueError: If no implementation is registered for ``platform``.
    """
    factory = _PLATFORMS.get(platform)
    if factory is None:
        raise ValueError(
            f'Unsupported platform {platform!r}. Supported: {supported_platforms()}'
        )
    return factory(credentials, timeout)
