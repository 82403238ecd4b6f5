from __future__ import annotations

import asyncio
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, TransientStorageError


class GcpSecretManagerKeyStore:
    # Store key material as secret versions in Google Secret Manager.
    provider: Final[str] = "gcp"

    def __init__(self, *, project: str, prefix: str, client: Any | None = None) -> None:
        self._project = project
        self._prefix = prefix.strip("/").replace("/", "-")
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "GcpSecretManagerKeyStore":
        if not settings.kms_gcp_project:
            raise ConfigurationError("KMS_GCP_PROJECT is required for the gcp key store")
        return cls(project=settings.kms_gcp_project, prefix=settings.kms_secret_prefix)

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from google.cloud import secretmanager
            except ImportError as exc:
                raise ConfigurationError(
                    "google-cloud-secret-manager is required for the gcp key store; install backupvault[gcp]"
                ) from exc
            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def _secret_id(self, secret_id: str) -> str:
        # Secret Manager ids allow letters, digits, dashes and underscores only.
        name = secret_id.replace("/", "-")
        return f"{self._prefix}-{name}" if self._prefix else name

    async def get_secret(self, secret_id: str) -> bytes | None:
        return await asyncio.to_thread(self._get_sync, secret_id)

    async def put_secret(self, secret_id: str, value: bytes) -> None:
        await asyncio.to_thread(self._put_sync, secret_id, value)

    def _get_sync(self, secret_id: str) -> bytes | None:
        from google.api_core import exceptions as gexc

        client = self._get_client()
        name = f"projects/{self._project}/secrets/{self._secret_id(secret_id)}/versions/latest"
        try:
            response = client.access_secret_version(request={"name": name})
        except gexc.NotFound:
            return None
        except (gexc.ServiceUnavailable, gexc.DeadlineExceeded, gexc.InternalServerError) as exc:
            raise TransientStorageError(f"secret manager unavailable: {exc}") from exc
        return bytes(response.payload.data)

    def _put_sync(self, secret_id: str, value: bytes) -> None:
        from google.api_core import exceptions as gexc

        client = self._get_client()
        parent = f"projects/{self._project}"
        secret_name = f"{parent}/secrets/{self._secret_id(secret_id)}"
        try:
            client.create_secret(
                request={
                    "parent": parent,
                    "secret_id": self._secret_id(secret_id),
                    "secret": {"replication": {"automatic": {}}},
                }
            )
        except gexc.AlreadyExists:
            pass
        except (gexc.ServiceUnavailable, gexc.DeadlineExceeded, gexc.InternalServerError) as exc:
            raise TransientStorageError(f"secret manager unavailable: {exc}") from exc
        client.add_secret_version(request={"parent": secret_name, "payload": {"data": value}})
