from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backupvault.apps.api.response import error_response
from backupvault.core import errors


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    410: "GONE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; BackupCancelledError subclasses BackupFailedError.
_STATUS_BY_ERROR: tuple[tuple[type[errors.BackupVaultError], int], ...] = (
    (errors.ArtifactNotFoundError, 404),
    (errors.ComplianceRequestNotFoundError, 404),
    (errors.KeyNotFoundError, 404),
    (errors.RecoveryInProgressError, 409),
    (errors.InvalidJobTransitionError, 409),
    (errors.BackupCancelledError, 409),
    (errors.ComplianceProcessingError, 409),
    (errors.ExportExpiredError, 410),
    (errors.NoBaseBackupError, 422),
    (errors.TablesNotInArtifactError, 422),
    (errors.BrokenChainError, 422),
    (errors.IntegrityError, 422),
    (errors.TransientStorageError, 503),
    (errors.CryptoUnavailableError, 503),
    (errors.BackupFailedError, 500),
    (errors.RestoreFailedError, 500),
    (errors.ConfigurationError, 500),
)

# Structured attributes worth returning to operators.
_DETAIL_ATTRIBUTES = ("job_id", "failed_tables", "retry_eligible", "artifact_id", "missing", "request_id", "failed_artifacts")


def status_for_error(exc: errors.BackupVaultError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def backupvault_exception_handler(request: Request, exc: errors.BackupVaultError) -> JSONResponse:
    status_code = status_for_error(exc)
    details = {name: getattr(exc, name) for name in _DETAIL_ATTRIBUTES if getattr(exc, name, None) is not None}
    if status_code >= 500:
        logger.warning("ops_request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    payload = error_response(request=request, code=exc.code, message=str(exc), details=details or None)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException | HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("ops_request_unhandled path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
