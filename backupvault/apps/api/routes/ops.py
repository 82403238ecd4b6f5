from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from backupvault.apps.api.deps import get_vault, require_ops_token
from backupvault.apps.api.response import SuccessEnvelope, success_response
from backupvault.domain.models import BackupArtifact, ComplianceRequest
from backupvault.services.engine import BackupVault


router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


class BackupTriggerRequest(BaseModel):
    backup_type: Literal["full", "incremental", "differential"] = "full"


class RestoreCompleteRequest(BaseModel):
    artifact_id: str


class RestoreSelectiveRequest(BaseModel):
    artifact_id: str
    tables: list[str] = Field(min_length=1)


class RestorePointInTimeRequest(BaseModel):
    target_timestamp: datetime


class LegalHoldRequest(BaseModel):
    hold: bool
    reason: str | None = None


class ComplianceRequestBody(BaseModel):
    request_type: str
    subject_id: str
    payload: dict[str, Any] | None = None


class KeyRotateRequest(BaseModel):
    reason: str | None = None


def _artifact_view(artifact: BackupArtifact | None) -> dict[str, Any] | None:
    # Inventory fields safe for operators; storage keys and checksums included, no key material.
    if artifact is None:
        return None
    return {
        "id": artifact.id,
        "artifact_type": artifact.artifact_type,
        "status": artifact.status,
        "created_at": artifact.created_at,
        "base_artifact_id": artifact.base_artifact_id,
        "size_bytes": artifact.size_bytes,
        "storage_location": artifact.storage_location,
        "storage_tier": artifact.storage_tier,
        "checksum_sha256": artifact.checksum_sha256,
        "encryption_key_id": artifact.encryption_key_id,
        "tables": sorted(artifact.table_manifest or {}),
        "retry_tables": list(artifact.retry_tables or []),
        "legal_hold": artifact.legal_hold,
    }


def _request_view(request: ComplianceRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "request_type": request.request_type,
        "status": request.status,
        "requested_at": request.requested_at,
        "completed_at": request.completed_at,
        "affected_artifact_ids": list(request.affected_artifact_ids or []),
        "result_log": list(request.result_log or []),
        "rejection_reason": request.rejection_reason,
    }


def _ok(request: Request, data: Any) -> dict[str, Any]:
    return success_response(request=request, data=jsonable_encoder(data))


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(request: Request, vault: BackupVault = Depends(get_vault)) -> dict[str, Any]:
    storage_ok = await vault.storage.exists()
    return _ok(
        request,
        {
            "status": "ok" if storage_ok else "degraded",
            "storage": {"provider": vault.storage.provider, "reachable": storage_ok},
            "active_recovery": vault.recovery.active_operation,
        },
    )


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(request: Request, vault: BackupVault = Depends(get_vault)) -> dict[str, Any]:
    return _ok(request, await vault.get_metrics())


@router.post("/backups", response_model=SuccessEnvelope[dict[str, Any]])
async def trigger_backup(
    request: Request,
    body: BackupTriggerRequest,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    if body.backup_type == "full":
        artifact = await vault.run_full_backup()
    elif body.backup_type == "incremental":
        artifact = await vault.run_incremental_backup()
    else:
        artifact = await vault.run_differential_backup()
    return _ok(request, {"backup_type": body.backup_type, "artifact": _artifact_view(artifact)})


@router.get("/backups/jobs", response_model=SuccessEnvelope[dict[str, Any]])
async def list_backup_jobs(
    request: Request,
    status: str | None = Query(default=None),
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    return _ok(request, {"items": [job.to_dict() for job in vault.list_jobs(status=status)]})


@router.post("/backups/jobs/{job_id}/cancel", response_model=SuccessEnvelope[dict[str, Any]])
async def cancel_backup_job(request: Request, job_id: str, vault: BackupVault = Depends(get_vault)) -> dict[str, Any]:
    return _ok(request, {"job_id": job_id, "cancel_requested": vault.cancel_job(job_id)})


@router.post("/restores/complete", response_model=SuccessEnvelope[dict[str, Any]])
async def restore_complete(
    request: Request,
    body: RestoreCompleteRequest,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    result = await vault.restore_complete(body.artifact_id)
    return _ok(request, result.to_dict())


@router.post("/restores/selective", response_model=SuccessEnvelope[dict[str, Any]])
async def restore_selective(
    request: Request,
    body: RestoreSelectiveRequest,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    result = await vault.restore_selective(body.artifact_id, body.tables)
    return _ok(request, result.to_dict())


@router.post("/restores/point-in-time", response_model=SuccessEnvelope[dict[str, Any]])
async def restore_point_in_time(
    request: Request,
    body: RestorePointInTimeRequest,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    result = await vault.restore_point_in_time(body.target_timestamp)
    return _ok(request, result.to_dict())


@router.post("/retention/apply", response_model=SuccessEnvelope[dict[str, Any]])
async def apply_retention(request: Request, vault: BackupVault = Depends(get_vault)) -> dict[str, Any]:
    result = await vault.apply_retention()
    return _ok(request, result.to_dict())


@router.post("/artifacts/{artifact_id}/legal-hold", response_model=SuccessEnvelope[dict[str, Any]])
async def set_legal_hold(
    request: Request,
    artifact_id: str,
    body: LegalHoldRequest,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    artifact = await vault.set_legal_hold(artifact_id, hold=body.hold, reason=body.reason)
    return _ok(request, _artifact_view(artifact))


@router.post("/compliance/requests", response_model=SuccessEnvelope[dict[str, Any]])
async def process_compliance_request(
    request: Request,
    body: ComplianceRequestBody,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    processed = await vault.process_compliance_request(body.model_dump())
    return _ok(request, _request_view(processed))


@router.get("/compliance/exports/{handle_id}")
async def download_export(handle_id: str, vault: BackupVault = Depends(get_vault)) -> Response:
    handle, body = await vault.fetch_export(handle_id)
    media_type = "text/csv" if handle.export_format == "csv" else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{handle.id}.{handle.export_format}"'},
    )


@router.post("/keys/rotate", response_model=SuccessEnvelope[dict[str, Any]])
async def rotate_key(
    request: Request,
    body: KeyRotateRequest | None = None,
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    key_id = await vault.rotate_key(reason=body.reason if body else None)
    return _ok(request, {"key_id": key_id})


@router.get("/reports/compliance", response_model=SuccessEnvelope[dict[str, Any]])
async def compliance_report(
    request: Request,
    start: datetime = Query(...),
    end: datetime = Query(...),
    vault: BackupVault = Depends(get_vault),
) -> dict[str, Any]:
    report = await vault.generate_compliance_report(start, end)
    return _ok(request, report.to_dict())
