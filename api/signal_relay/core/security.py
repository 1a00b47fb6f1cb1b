from fastapi import Depends, Header, HTTPException, status

from signal_relay.core.auth import (
    CredentialKind,
    CredentialMismatchError,
    CredentialNotConfiguredError,
    Principal,
    parse_bearer_token,
    verify_token,
)
from signal_relay.core.config import Settings, get_settings


def mirror_worker_tokens(settings: Settings) -> list[str | None]:
    # Mirror workers fall back to the role-sync credential when no dedicated one exists.
    dedicated = (settings.mirror_worker_token or "").strip()
    if dedicated:
        return [dedicated]
    return [settings.role_sync_worker_token]


async def get_internal_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    return _authenticate(
        authorization,
        accepted=[(CredentialKind.INTERNAL, settings.internal_api_token)],
        not_configured_code="internal_api_token_not_configured",
    )


async def get_mirror_worker_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    return _authenticate(
        authorization,
        accepted=[(CredentialKind.MIRROR_WORKER, token) for token in mirror_worker_tokens(settings)],
        not_configured_code="mirror_worker_token_not_configured",
    )


async def get_role_sync_worker_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    return _authenticate(
        authorization,
        accepted=[(CredentialKind.ROLE_SYNC_WORKER, settings.role_sync_worker_token)],
        not_configured_code="role_sync_worker_token_not_configured",
    )


async def get_any_worker_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    return _authenticate(
        authorization,
        accepted=[
            (CredentialKind.MIRROR_WORKER, settings.mirror_worker_token),
            (CredentialKind.ROLE_SYNC_WORKER, settings.role_sync_worker_token),
        ],
        not_configured_code="worker_wake_token_not_configured",
    )


def _authenticate(
    authorization: str | None,
    *,
    accepted: list[tuple[CredentialKind, str | None]],
    not_configured_code: str,
) -> Principal:
    token = parse_bearer_token(authorization)
    try:
        matched = verify_token(token, [value for _, value in accepted], not_configured_code=not_configured_code)
    except CredentialNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except CredentialMismatchError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    kind = accepted[matched][0]
    return Principal(kind=kind, subject=kind.value)
