from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
from pathlib import Path
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from backupvault.core.config import Settings
from backupvault.core.errors import CryptoUnavailableError
from backupvault.services.crypto.utils import decode_key_material


logger = logging.getLogger(__name__)


class LocalKeyStore:
    """Process-local key store for development and tests.

    Without a directory and master key, secrets live only in process memory and
    are lost on restart. With both configured, each secret is wrapped with
    AES-GCM under a KEK derived from the master key and written to disk.
    """

    provider: Final[str] = "local"

    def __init__(self, *, directory: str | Path | None = None, master_key: bytes | None = None) -> None:
        self._directory = Path(directory) if directory else None
        self._master_key = _ensure_32_bytes(master_key) if master_key else None
        self._memory: dict[str, bytes] = {}
        if self._directory is None or self._master_key is None:
            logger.warning(
                "keystore_degraded_security provider=local persistent=false "
                "detail=process-held key material; not for production"
            )
        else:
            logger.warning("keystore_degraded_security provider=local persistent=true directory=%s", self._directory)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalKeyStore":
        master_key = decode_key_material(settings.kms_local_master_key) if settings.kms_local_master_key else None
        return cls(directory=settings.kms_local_dir, master_key=master_key)

    @property
    def persistent(self) -> bool:
        return self._directory is not None and self._master_key is not None

    async def get_secret(self, secret_id: str) -> bytes | None:
        if not self.persistent:
            return self._memory.get(secret_id)
        return await asyncio.to_thread(self._read, secret_id)

    async def put_secret(self, secret_id: str, value: bytes) -> None:
        if not self.persistent:
            self._memory[secret_id] = bytes(value)
            return
        await asyncio.to_thread(self._write, secret_id, bytes(value))

    def _path(self, secret_id: str) -> Path:
        directory = self._require_directory()
        safe = secret_id.replace("/", "__")
        return directory / f"{safe}.key"

    def _require_directory(self) -> Path:
        if self._directory is None:
            raise CryptoUnavailableError("local key store has no key directory configured")
        return self._directory

    def _read(self, secret_id: str) -> bytes | None:
        path = self._path(secret_id)
        if not path.exists():
            return None
        payload = path.read_bytes()
        nonce, ciphertext = payload[:12], payload[12:]
        try:
            return AESGCM(self._kek(secret_id)).decrypt(nonce, ciphertext, secret_id.encode("utf-8"))
        except InvalidTag as exc:
            raise CryptoUnavailableError(f"local key store entry failed verification: {secret_id}") from exc

    def _write(self, secret_id: str, value: bytes) -> None:
        self._require_directory().mkdir(parents=True, exist_ok=True)
        nonce = os.urandom(12)
        ciphertext = AESGCM(self._kek(secret_id)).encrypt(nonce, value, secret_id.encode("utf-8"))
        path = self._path(secret_id)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(nonce + ciphertext)
        os.replace(tmp_path, path)

    def _kek(self, secret_id: str) -> bytes:
        # HMAC-based derivation keeps KEKs per secret without persisting them.
        if self._master_key is None:
            raise CryptoUnavailableError("local key store has no master key configured")
        return hmac.new(self._master_key, secret_id.encode("utf-8"), hashlib.sha256).digest()


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()
