from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import os
import secrets
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.errors import CryptoUnavailableError, KeyNotFoundError, TransientStorageError
from backupvault.domain.models import EncryptionKey
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.keystore.base import KeyStore
from backupvault.services.resilience import RetryPolicy, retry_async, storage_retry_policy
from backupvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

KEY_STATUS_ACTIVE = "active"
KEY_STATUS_RETIRED = "retired"
KEY_BYTES = 32


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_key_id(now: datetime) -> str:
    # Immutable, timestamped identifier; material is stored under this id forever.
    return f"key_{now.strftime('%Y%m%dT%H%M%S%f')}Z_{secrets.token_hex(4)}"


class Keyring:
    """Resolves master keys by id and owns the single "current" pointer.

    Retired keys stay resolvable so artifacts encrypted under them can still
    be read. Rotation is serialized by a lock: a caller that waited on an
    in-flight rotation returns the winner's key instead of rotating again.
    """

    def __init__(
        self,
        keystore: KeyStore,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger | None = None,
        rotation_interval_days: int = 90,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._keystore = keystore
        self._session_factory = session_factory
        self._audit = audit
        self._rotation_interval = timedelta(days=rotation_interval_days)
        self._retry_policy = retry_policy
        self._clock = clock
        self._cache: dict[str, bytes] = {}
        self._current_key_id: str | None = None
        self._bootstrap_lock = asyncio.Lock()
        self._rotation_lock = asyncio.Lock()

    async def current_key_id(self) -> str:
        if self._current_key_id is not None:
            return self._current_key_id
        async with self._bootstrap_lock:
            if self._current_key_id is None:
                active = await self._load_active()
                if active is None:
                    self._current_key_id = await self._create_key(rotated_from=None, reason="bootstrap")
                else:
                    self._current_key_id = active.key_id
        return self._current_key_id

    async def current_key(self) -> tuple[str, bytes]:
        key_id = await self.current_key_id()
        return key_id, await self.resolve(key_id)

    async def refresh(self) -> str:
        # Pick up rotations performed by other processes.
        active = await self._load_active()
        if active is not None:
            self._current_key_id = active.key_id
        return await self.current_key_id()

    async def resolve(self, key_id: str) -> bytes:
        # Resolve current and retired keys alike; a missing id is fatal to the caller.
        cached = self._cache.get(key_id)
        if cached is not None:
            return cached
        try:
            material = await retry_async(
                lambda: self._keystore.get_secret(key_id),
                policy=self._retry_policy or storage_retry_policy(),
                operation="kms.get",
            )
        except (TransientStorageError, TimeoutError) as exc:
            increment_counter("crypto_failures_total")
            raise CryptoUnavailableError(f"key store unavailable while resolving {key_id}") from exc
        if material is None:
            increment_counter("crypto_failures_total")
            raise KeyNotFoundError(key_id)
        if len(material) != KEY_BYTES:
            raise CryptoUnavailableError(f"key material for {key_id} has invalid length")
        self._cache[key_id] = material
        return material

    async def rotate(self, *, reason: str | None = None) -> str:
        observed = self._current_key_id or await self.current_key_id()
        async with self._rotation_lock:
            current = await self.current_key_id()
            if current != observed:
                # A concurrent caller already rotated; share its result.
                return current
            new_key_id_value = await self._create_key(rotated_from=current, reason=reason)
            self._current_key_id = new_key_id_value
        increment_counter("key_rotations_total")
        logger.info("key_rotated key_id=%s rotated_from=%s", new_key_id_value, current)
        if self._audit is not None:
            await self._audit.security_event(
                "crypto.key.rotated",
                {"key_id": new_key_id_value, "rotated_from": current, "reason": reason},
                component="crypto",
            )
        return new_key_id_value

    async def rotation_due(self, now: datetime | None = None) -> bool:
        current_id = await self.current_key_id()
        async with self._session_factory() as session:
            row = await session.get(EncryptionKey, current_id)
        if row is None:
            return True
        return row.created_at + self._rotation_interval <= (now or self._clock())

    async def rotate_if_due(self, *, now: datetime | None = None) -> str | None:
        # Scheduler hook: rotate only when the compliance interval has elapsed.
        if not await self.rotation_due(now):
            return None
        return await self.rotate(reason="scheduled")

    async def _load_active(self) -> EncryptionKey | None:
        async with self._session_factory() as session:
            stmt = (
                select(EncryptionKey)
                .where(EncryptionKey.status == KEY_STATUS_ACTIVE)
                .order_by(EncryptionKey.created_at.desc())
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _create_key(self, *, rotated_from: str | None, reason: str | None) -> str:
        # Persist material before switching the pointer so the new id is always resolvable.
        now = self._clock()
        key_id = new_key_id(now)
        material = os.urandom(KEY_BYTES)
        try:
            await retry_async(
                lambda: self._keystore.put_secret(key_id, material),
                policy=self._retry_policy or storage_retry_policy(),
                operation="kms.put",
            )
        except (TransientStorageError, TimeoutError) as exc:
            increment_counter("crypto_failures_total")
            raise CryptoUnavailableError("key store unavailable while storing new key") from exc
        async with self._session_factory() as session:
            if rotated_from is not None:
                previous = await session.get(EncryptionKey, rotated_from)
                if previous is not None:
                    previous.status = KEY_STATUS_RETIRED
                    previous.retired_at = now
            session.add(
                EncryptionKey(
                    key_id=key_id,
                    status=KEY_STATUS_ACTIVE,
                    provider=self._keystore.provider,
                    created_at=now,
                    rotated_from=rotated_from,
                    reason=reason,
                )
            )
            await session.commit()
        self._cache[key_id] = material
        if rotated_from is None and self._audit is not None:
            await self._audit.security_event(
                "crypto.key.created",
                {"key_id": key_id, "provider": self._keystore.provider, "reason": reason},
                component="crypto",
            )
        return key_id
