from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
import logging.handlers
from pathlib import Path
import re
from typing import Any, Protocol
from uuid import uuid4

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.domain.models import AuditEvent
from backupvault.services.resilience import RetryPolicy, retry_async
from backupvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "passwd", "token", "secret", "auth", "credential", "key"]
# Identifiers that contain "key" but never carry key material.
_SAFE_KEY_NAMES = {"key_id", "encryption_key_id", "pii_key_id", "rotated_from", "storage_key", "primary_key"}
_REDACTED_VALUE = "[REDACTED]"

_EMAIL_RE = re.compile(r"(?<![\w.+-])([\w.+-])[\w.+-]*@([\w-]+(?:\.[\w-]+)+)")
_SSN_RE = re.compile(r"(?<!\w)\d{3}-\d{2}-\d{4}(?!\w)")
_CARD_RE = re.compile(r"(?<!\w)(?:\d[ -]?){12,18}\d(?!\w)")
_PHONE_RE = re.compile(r"(?<!\w)\+?\d{1,3}[\s.-]?\(?\d{2,3}\)?[\s.-]?\d{4,5}[\s.-]?\d{4}(?!\w)")

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}
_FAN_OUT_LEVELS = {"warning", "error"}


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively; *_key_id names are identifiers.
    lowered = key.lower()
    if lowered in _SAFE_KEY_NAMES or lowered.endswith("_key_id"):
        return False
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def mask_value(value: str) -> str:
    # Keep the first and last two characters so operators can still correlate.
    if len(value) <= 4:
        return "*" * len(value)
    return value[:2] + "*" * (len(value) - 4) + value[-2:]


def mask_pii(text: str) -> str:
    # Redact PII-shaped substrings; emails keep the first letter and the domain.
    text = _EMAIL_RE.sub(lambda match: f"{match.group(1)}***@{match.group(2)}", text)
    text = _SSN_RE.sub("***-**-****", text)
    text = _CARD_RE.sub(lambda match: mask_value(match.group(0)), text)
    return _PHONE_RE.sub(lambda match: mask_value(match.group(0)), text)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive keys and PII-shaped values while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple, set)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str):
        return mask_pii(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditSink(Protocol):
    name: str

    async def send(self, event: dict[str, Any]) -> None:
        ...


class WebhookSink:
    # Deliver structured JSON events to an alerting or SIEM HTTP endpoint.

    def __init__(
        self,
        name: str,
        url: str,
        *,
        token: str | None = None,
        timeout_ms: int = 5000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self._url = url
        self._token = token
        self._timeout_ms = timeout_ms
        self._transport = transport

    async def send(self, event: dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json", "X-Event-Type": str(event.get("event_type"))}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        body = json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout_ms / 1000.0, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=headers)
                response.raise_for_status()
                return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        await retry_async(
            _call,
            policy=RetryPolicy(timeout_ms=self._timeout_ms, max_attempts=2, backoff_ms=200),
            retryable=_retryable,
            operation=f"sink.{self.name}",
        )


def _build_file_logger(log_dir: str | Path, max_bytes: int, backup_count: int) -> logging.Logger:
    # Dedicated non-propagating logger so audit lines land only in the rotating JSON file.
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    file_logger = logging.getLogger(f"backupvault.audit.file.{uuid4().hex[:8]}")
    file_logger.setLevel(logging.DEBUG)
    file_logger.propagate = False
    handler = logging.handlers.RotatingFileHandler(
        directory / "audit.jsonl",
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    file_logger.addHandler(handler)
    return file_logger


class AuditLogger:
    """Structured, PII-redacting event log shared by every component.

    Each event is sanitized once, then written to the rotating JSON-lines file,
    stored as an ``audit_events`` row when a session factory is configured, and
    for warning/error levels handed to the alert and SIEM sinks in background
    tasks. Persistence and sink failures are logged locally and never raised.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        log_dir: str | Path | None = None,
        max_bytes: int | None = None,
        backup_count: int | None = None,
        alert_sink: AuditSink | None = None,
        siem_sink: AuditSink | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._file_logger = _build_file_logger(
            log_dir or settings.audit_log_dir,
            max_bytes if max_bytes is not None else settings.audit_log_max_bytes,
            backup_count if backup_count is not None else settings.audit_log_backup_count,
        )
        self._sinks = [sink for sink in (alert_sink, siem_sink) if sink is not None]
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> "AuditLogger":
        settings = settings or get_settings()
        alert_sink = None
        siem_sink = None
        if settings.alert_webhook_url:
            alert_sink = WebhookSink("alert", settings.alert_webhook_url, timeout_ms=settings.sink_timeout_ms)
        if settings.siem_endpoint_url:
            siem_sink = WebhookSink(
                "siem",
                settings.siem_endpoint_url,
                token=settings.siem_api_token,
                timeout_ms=settings.sink_timeout_ms,
            )
        return cls(
            session_factory=session_factory,
            log_dir=settings.audit_log_dir,
            max_bytes=settings.audit_log_max_bytes,
            backup_count=settings.audit_log_backup_count,
            alert_sink=alert_sink,
            siem_sink=siem_sink,
        )

    async def log(
        self,
        level: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        *,
        event_type: str = "system.event",
        component: str | None = None,
        outcome: str = "success",
        error_code: str | None = None,
    ) -> dict[str, Any]:
        level = level.lower()
        if level not in _LEVELS:
            level = "info"
        occurred_at = datetime.now(timezone.utc)
        event = {
            "occurred_at": occurred_at.isoformat(),
            "level": level,
            "event_type": event_type,
            "component": component,
            "outcome": outcome,
            "message": mask_pii(message),
            "metadata": sanitize_metadata(metadata or {}),
            "error_code": error_code,
        }
        increment_counter(f"audit_events_total.{level}")
        self._file_logger.log(
            _LEVELS[level],
            json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str),
        )
        await self._persist(event, occurred_at)
        if level in _FAN_OUT_LEVELS and self._sinks:
            task = asyncio.create_task(self._fan_out(event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return event

    async def info(self, message: str, metadata: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return await self.log("info", message, metadata, **kwargs)

    async def warning(self, message: str, metadata: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return await self.log("warning", message, metadata, **kwargs)

    async def error(self, message: str, metadata: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        return await self.log("error", message, metadata, **kwargs)

    async def security_event(
        self,
        event_type: str,
        metadata: dict[str, Any] | None = None,
        *,
        outcome: str = "success",
        component: str | None = None,
        error_code: str | None = None,
        level: str | None = None,
    ) -> dict[str, Any]:
        # Security events default to warning on failure so they reach the alert sink.
        resolved_level = level or ("info" if outcome == "success" else "warning")
        return await self.log(
            resolved_level,
            f"{event_type} {outcome}",
            metadata,
            event_type=event_type,
            component=component or event_type.split(".", 1)[0],
            outcome=outcome,
            error_code=error_code,
        )

    async def _persist(self, event: dict[str, Any], occurred_at: datetime) -> None:
        if self._session_factory is None:
            return
        row = AuditEvent(
            occurred_at=occurred_at,
            level=event["level"],
            event_type=event["event_type"],
            component=event["component"],
            outcome=event["outcome"],
            message=event["message"],
            metadata_json=event["metadata"],
            error_code=event["error_code"],
        )
        async with self._session_factory() as session:
            try:
                session.add(row)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("audit_event_write_failed event_type=%s", event["event_type"], exc_info=exc)

    async def _fan_out(self, event: dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                await sink.send(event)
                increment_counter(f"audit_sink_delivered_total.{sink.name}")
            except Exception as exc:  # noqa: BLE001 - sink failures never block the primary write
                increment_counter(f"audit_sink_failed_total.{sink.name}")
                logger.warning(
                    "audit_sink_delivery_failed sink=%s event_type=%s",
                    sink.name,
                    event.get("event_type"),
                    exc_info=exc,
                )

    async def flush(self) -> None:
        # Await pending sink deliveries; used at shutdown and in tests.
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        for handler in list(self._file_logger.handlers):
            handler.close()
            self._file_logger.removeHandler(handler)
