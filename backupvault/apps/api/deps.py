from __future__ import annotations

import secrets

from fastapi import Header, HTTPException, Request, status

from backupvault.services.engine import BackupVault


def get_vault(request: Request) -> BackupVault:
    vault = getattr(request.app.state, "vault", None)
    if vault is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Backup engine is not initialized"},
        )
    return vault


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_ops_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    # Ops routes stay closed until a token is configured.
    expected = get_vault(request).settings.ops_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "OPS_DISABLED", "message": "Ops API token is not configured"},
        )
    token = _parse_bearer_token(authorization)
    if token is None or not secrets.compare_digest(token, expected):
        raise _auth_error("Missing or invalid bearer token")
