from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any, Callable, Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings
from backupvault.core.errors import CryptoUnavailableError
from backupvault.domain.models import PseudonymMapping
from backupvault.domain.tables import TableSpec
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.keyring import Keyring
from backupvault.services.crypto.utils import canonical_json


logger = logging.getLogger(__name__)

PII_MODE_PSEUDONYMIZE = "pseudonymize"
PII_MODE_HASH = "hash"
PSEUDONYM_PREFIX = "pseudo_"
HASH_PREFIX = "hash_"
_TOKEN_HEX_CHARS = 16
# Separates the hashing key from the pseudonym key derived from the same master key.
_HASH_KEY_LABEL = b"backupvault.pii.hash"
# Bound IN-lists on mapping lookups.
_LOOKUP_CHUNK = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_pii_mode(settings: Settings) -> tuple[str, bool]:
    """Return (mode, retain_reverse_mappings) for the configured policy.

    ``auto`` pseudonymizes and keeps encrypted reverse mappings when a regime
    that grants data portability (GDPR, LGPD) is enabled, and hashes otherwise.
    """
    portability_required = settings.compliance_gdpr_enabled or settings.compliance_lgpd_enabled
    mode = settings.pii_protection_mode
    if mode == "auto":
        if portability_required:
            return PII_MODE_PSEUDONYMIZE, True
        return PII_MODE_HASH, False
    if mode == PII_MODE_PSEUDONYMIZE:
        return PII_MODE_PSEUDONYMIZE, portability_required
    return PII_MODE_HASH, False


def _value_text(value: Any) -> str:
    # Strings are used verbatim; structured values use canonical JSON for stability.
    if isinstance(value, str):
        return value
    return canonical_json(value).decode("utf-8")


def pseudonym(key: bytes, field: str, value: Any) -> str:
    digest = hmac.new(key, f"{field}:{_value_text(value)}".encode("utf-8"), hashlib.sha256).hexdigest()
    return PSEUDONYM_PREFIX + digest[:_TOKEN_HEX_CHARS]


def hash_value(key: bytes, field: str, value: Any) -> str:
    hash_key = hmac.new(key, _HASH_KEY_LABEL, hashlib.sha256).digest()
    digest = hmac.new(hash_key, f"{field}:{_value_text(value)}".encode("utf-8"), hashlib.sha256).hexdigest()
    return HASH_PREFIX + digest[:_TOKEN_HEX_CHARS]


def is_protected_token(value: Any) -> bool:
    return isinstance(value, str) and (value.startswith(PSEUDONYM_PREFIX) or value.startswith(HASH_PREFIX))


class PIIProtector:
    """Replaces PII field values with pseudonyms or one-way hashes.

    Pseudonyms are HMAC-SHA256 over ``field:value`` keyed by a master key, so
    the same value always maps to the same token under the same key. When
    reverse mappings are retained, the original value is stored encrypted in
    ``pseudonym_mappings`` and can be revealed for portability exports.

    Hashes are keyed too, under a subkey of the same master key, and no
    mapping is kept. Without the key material a low-entropy value such as an
    email address cannot be recovered by hashing candidate values.
    """

    def __init__(
        self,
        keyring: Keyring,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        mode: str = PII_MODE_PSEUDONYMIZE,
        retain_mappings: bool = True,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._keyring = keyring
        self._session_factory = session_factory
        self._mode = mode
        self._retain_mappings = retain_mappings and mode == PII_MODE_PSEUDONYMIZE
        self._audit = audit
        self._clock = clock
        # Mapping ciphertexts are audited once per batch, not per value.
        self._mapping_cipher = EnvelopeCipher(keyring)

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def retain_mappings(self) -> bool:
        return self._retain_mappings

    async def active_key_id(self) -> str:
        # Pseudonyms and hashes alike are bound to the current master key.
        return await self._keyring.current_key_id()

    async def protect_rows(
        self,
        spec: TableSpec,
        rows: list[dict[str, Any]],
        *,
        key_id: str | None,
        mode: str | None = None,
    ) -> list[dict[str, Any]]:
        if not spec.pii or not spec.pii_fields or not rows:
            return rows
        mode = mode or self._mode
        key = await self._resolve(key_id)
        mappings: dict[tuple[str, str], Any] = {}
        protected_rows: list[dict[str, Any]] = []
        protected_values = 0
        for row in rows:
            protected = dict(row)
            for field in spec.pii_fields:
                value = protected.get(field)
                if value is None or is_protected_token(value):
                    continue
                if mode == PII_MODE_PSEUDONYMIZE:
                    token = pseudonym(key, field, value)
                    if self._retain_mappings:
                        mappings[(token, field)] = value
                else:
                    token = hash_value(key, field, value)
                protected[field] = token
                protected_values += 1
            protected_rows.append(protected)
        if mappings:
            await self._store_mappings(key_id, mappings)
        if self._audit is not None:
            await self._audit.security_event(
                "pii.protect",
                {
                    "table": spec.name,
                    "mode": mode,
                    "key_id": key_id,
                    "records": len(rows),
                    "fields": len(spec.pii_fields),
                    "values_protected": protected_values,
                    "mappings_retained": len(mappings),
                },
                component="crypto",
            )
        return protected_rows

    async def protect_value(self, field: str, value: Any, *, key_id: str | None, mode: str | None) -> Any:
        # Used by rectification so corrected values match how the artifact was protected.
        if value is None:
            return None
        key = await self._resolve(key_id)
        if (mode or self._mode) == PII_MODE_PSEUDONYMIZE:
            token = pseudonym(key, field, value)
            if self._retain_mappings:
                await self._store_mappings(key_id, {(token, field): value})
            return token
        return hash_value(key, field, value)

    async def subject_tokens(self, field: str, subject_id: str, *, key_id: str | None) -> set[str]:
        # Every form the subject id may take inside an artifact protected under key_id.
        tokens = {str(subject_id)}
        if key_id:
            key = await self._keyring.resolve(key_id)
            tokens.add(pseudonym(key, field, subject_id))
            tokens.add(hash_value(key, field, subject_id))
        return tokens

    async def reveal_rows(self, spec: TableSpec, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # Hashed values and pseudonyms without a retained mapping are left as-is.
        if not spec.pii or not rows:
            return rows
        wanted: set[tuple[str, str]] = set()
        for row in rows:
            for field in spec.pii_fields:
                value = row.get(field)
                if isinstance(value, str) and value.startswith(PSEUDONYM_PREFIX):
                    wanted.add((value, field))
        if not wanted:
            return rows
        originals = await self._load_mappings(wanted)
        revealed: list[dict[str, Any]] = []
        for row in rows:
            restored = dict(row)
            for field in spec.pii_fields:
                value = restored.get(field)
                if isinstance(value, str) and (value, field) in originals:
                    restored[field] = originals[(value, field)]
            revealed.append(restored)
        return revealed

    async def _resolve(self, key_id: str | None) -> bytes:
        if not key_id:
            raise CryptoUnavailableError("PII protection requires a master key id")
        return await self._keyring.resolve(key_id)

    async def delete_mappings(self, pairs: Iterable[tuple[str, str]]) -> int:
        # Erasure removes the reverse path so stripped pseudonyms can never be resolved again.
        pairs = list(pairs)
        if not pairs:
            return 0
        deleted = 0
        async with self._session_factory() as session:
            for field in {field for _, field in pairs}:
                tokens = [token for token, name in pairs if name == field]
                for start in range(0, len(tokens), _LOOKUP_CHUNK):
                    result = await session.execute(
                        delete(PseudonymMapping).where(
                            PseudonymMapping.field_name == field,
                            PseudonymMapping.pseudonym.in_(tokens[start : start + _LOOKUP_CHUNK]),
                        )
                    )
                    deleted += result.rowcount or 0
            await session.commit()
        return deleted

    async def _store_mappings(self, key_id: str, mappings: dict[tuple[str, str], Any]) -> None:
        existing = await self._existing_pairs(set(mappings))
        rows: list[PseudonymMapping] = []
        now = self._clock()
        for (token, field), value in mappings.items():
            if (token, field) in existing:
                continue
            ciphertext, _ = await self._mapping_cipher.encrypt(canonical_json(value), key_id)
            rows.append(
                PseudonymMapping(
                    pseudonym=token,
                    field_name=field,
                    key_id=key_id,
                    ciphertext=ciphertext,
                    created_at=now,
                )
            )
        if not rows:
            return
        async with self._session_factory() as session:
            session.add_all(rows)
            try:
                await session.commit()
                return
            except SQLAlchemyIntegrityError:
                await session.rollback()
                logger.info("pseudonym_mapping_conflict count=%s", len(rows))
        # A concurrent writer stored some of the same pairs; insert the rest one by one.
        for row in rows:
            async with self._session_factory() as session:
                session.add(
                    PseudonymMapping(
                        pseudonym=row.pseudonym,
                        field_name=row.field_name,
                        key_id=row.key_id,
                        ciphertext=row.ciphertext,
                        created_at=row.created_at,
                    )
                )
                try:
                    await session.commit()
                except SQLAlchemyIntegrityError:
                    await session.rollback()

    async def _existing_pairs(self, pairs: set[tuple[str, str]]) -> set[tuple[str, str]]:
        found: set[tuple[str, str]] = set()
        tokens = sorted({token for token, _ in pairs})
        async with self._session_factory() as session:
            for start in range(0, len(tokens), _LOOKUP_CHUNK):
                result = await session.execute(
                    select(PseudonymMapping.pseudonym, PseudonymMapping.field_name).where(
                        PseudonymMapping.pseudonym.in_(tokens[start : start + _LOOKUP_CHUNK])
                    )
                )
                found.update((token, field) for token, field in result.all())
        return found & pairs

    async def _load_mappings(self, pairs: set[tuple[str, str]]) -> dict[tuple[str, str], Any]:
        tokens = sorted({token for token, _ in pairs})
        mappings: list[PseudonymMapping] = []
        async with self._session_factory() as session:
            for start in range(0, len(tokens), _LOOKUP_CHUNK):
                result = await session.execute(
                    select(PseudonymMapping).where(
                        PseudonymMapping.pseudonym.in_(tokens[start : start + _LOOKUP_CHUNK])
                    )
                )
                mappings.extend(result.scalars().all())
        originals: dict[tuple[str, str], Any] = {}
        for mapping in mappings:
            pair = (mapping.pseudonym, mapping.field_name)
            if pair not in pairs:
                continue
            plaintext = await self._mapping_cipher.decrypt(mapping.ciphertext, mapping.key_id)
            originals[pair] = json.loads(plaintext)
        return originals
