from __future__ import annotations

from dataclasses import dataclass
import os
import struct
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from backupvault.core.errors import IntegrityError
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.keyring import Keyring
from backupvault.services.telemetry import increment_counter


# Frame: MAGIC | u16 len | key id | u16 len | wrapped DEK | IV(12) | tag(16) | ciphertext.
# Everything before the IV is authenticated as associated data.
MAGIC = b"BVE1"
IV_BYTES = 12
TAG_BYTES = 16
_WRAP_NONCE_BYTES = 12
_MIN_WRAPPED_BYTES = _WRAP_NONCE_BYTES + 32 + TAG_BYTES


@dataclass(frozen=True)
class EnvelopeHeader:
    key_id: str
    wrapped_dek: bytes
    aad: bytes
    iv: bytes
    tag: bytes
    body_offset: int


def parse_header(blob: bytes) -> EnvelopeHeader:
    # Structural parse only; authenticity is established by the AEAD tags.
    try:
        if blob[: len(MAGIC)] != MAGIC:
            raise IntegrityError("envelope magic mismatch")
        offset = len(MAGIC)
        (key_len,) = struct.unpack_from(">H", blob, offset)
        offset += 2
        key_bytes = blob[offset : offset + key_len]
        if len(key_bytes) != key_len:
            raise IntegrityError("envelope truncated in key id")
        offset += key_len
        (wrapped_len,) = struct.unpack_from(">H", blob, offset)
        offset += 2
        wrapped = blob[offset : offset + wrapped_len]
        if len(wrapped) != wrapped_len or wrapped_len < _MIN_WRAPPED_BYTES:
            raise IntegrityError("envelope truncated in wrapped key")
        offset += wrapped_len
        aad = blob[:offset]
        iv = blob[offset : offset + IV_BYTES]
        tag = blob[offset + IV_BYTES : offset + IV_BYTES + TAG_BYTES]
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise IntegrityError("envelope truncated in iv/tag")
        key_id = key_bytes.decode("utf-8")
    except (struct.error, UnicodeDecodeError) as exc:
        raise IntegrityError("malformed envelope header") from exc
    return EnvelopeHeader(
        key_id=key_id,
        wrapped_dek=wrapped,
        aad=aad,
        iv=iv,
        tag=tag,
        body_offset=offset + IV_BYTES + TAG_BYTES,
    )


class EnvelopeCipher:
    """AES-256-GCM envelope encryption with a per-payload data key.

    The data key is wrapped by the master key named in the header, and the
    header is bound to the body as associated data, so a ciphertext only opens
    under the key context it was produced for.
    """

    def __init__(self, keyring: Keyring, *, audit: AuditLogger | None = None) -> None:
        self._keyring = keyring
        self._audit = audit

    @property
    def keyring(self) -> Keyring:
        return self._keyring

    async def encrypt(
        self,
        plaintext: bytes,
        key_id: str | None = None,
        *,
        context: dict[str, Any] | None = None,
    ) -> tuple[bytes, str]:
        # Fails closed: key resolution errors propagate, plaintext is never returned.
        if key_id is None:
            key_id, master = await self._keyring.current_key()
        else:
            master = await self._keyring.resolve(key_id)
        dek = AESGCM.generate_key(bit_length=256)
        key_bytes = key_id.encode("utf-8")
        wrap_nonce = os.urandom(_WRAP_NONCE_BYTES)
        wrapped = wrap_nonce + AESGCM(master).encrypt(wrap_nonce, dek, key_bytes)
        header = (
            MAGIC
            + struct.pack(">H", len(key_bytes))
            + key_bytes
            + struct.pack(">H", len(wrapped))
            + wrapped
        )
        iv = os.urandom(IV_BYTES)
        sealed = AESGCM(dek).encrypt(iv, plaintext, header)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        blob = header + iv + tag + ciphertext
        increment_counter("crypto_encrypt_ops_total")
        if self._audit is not None:
            await self._audit.security_event(
                "crypto.encrypt",
                {"key_id": key_id, "plaintext_bytes": len(plaintext), "ciphertext_bytes": len(blob), **(context or {})},
                component="crypto",
            )
        return blob, key_id

    async def decrypt(self, blob: bytes, key_id: str, *, context: dict[str, Any] | None = None) -> bytes:
        try:
            header = parse_header(blob)
            if header.key_id != key_id:
                raise IntegrityError("envelope key id does not match the requested key")
            master = await self._keyring.resolve(key_id)
            try:
                dek = AESGCM(master).decrypt(
                    header.wrapped_dek[:_WRAP_NONCE_BYTES],
                    header.wrapped_dek[_WRAP_NONCE_BYTES:],
                    key_id.encode("utf-8"),
                )
                plaintext = AESGCM(dek).decrypt(
                    header.iv,
                    blob[header.body_offset :] + header.tag,
                    header.aad,
                )
            except InvalidTag as exc:
                raise IntegrityError("authentication tag verification failed") from exc
        except IntegrityError:
            increment_counter("crypto_failures_total")
            if self._audit is not None:
                await self._audit.security_event(
                    "crypto.decrypt",
                    {"key_id": key_id, "ciphertext_bytes": len(blob), **(context or {})},
                    outcome="failure",
                    component="crypto",
                    error_code=IntegrityError.code,
                )
            raise
        increment_counter("crypto_decrypt_ops_total")
        if self._audit is not None:
            await self._audit.security_event(
                "crypto.decrypt",
                {"key_id": key_id, "ciphertext_bytes": len(blob), "plaintext_bytes": len(plaintext), **(context or {})},
                component="crypto",
            )
        return plaintext
