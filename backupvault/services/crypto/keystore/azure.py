from __future__ import annotations

import asyncio
import base64
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, TransientStorageError


class AzureKeyVaultKeyStore:
    # Store key material base64-encoded as Azure Key Vault secrets.
    provider: Final[str] = "azure"

    def __init__(self, *, vault_url: str, prefix: str, client: Any | None = None) -> None:
        self._vault_url = vault_url
        self._prefix = prefix.strip("/").replace("/", "-").replace("_", "-")
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AzureKeyVaultKeyStore":
        if not settings.kms_azure_vault_url:
            raise ConfigurationError("KMS_AZURE_VAULT_URL is required for the azure key store")
        return cls(vault_url=settings.kms_azure_vault_url, prefix=settings.kms_secret_prefix)

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from azure.identity import DefaultAzureCredential
                from azure.keyvault.secrets import SecretClient
            except ImportError as exc:
                raise ConfigurationError(
                    "azure-keyvault-secrets and azure-identity are required; install backupvault[azure]"
                ) from exc
            self._client = SecretClient(vault_url=self._vault_url, credential=DefaultAzureCredential())
        return self._client

    def _name(self, secret_id: str) -> str:
        # Key Vault names allow alphanumerics and dashes only.
        name = secret_id.replace("/", "-").replace("_", "-")
        return f"{self._prefix}-{name}" if self._prefix else name

    async def get_secret(self, secret_id: str) -> bytes | None:
        return await asyncio.to_thread(self._get_sync, secret_id)

    async def put_secret(self, secret_id: str, value: bytes) -> None:
        await asyncio.to_thread(self._put_sync, secret_id, value)

    def _get_sync(self, secret_id: str) -> bytes | None:
        from azure.core.exceptions import ResourceNotFoundError, ServiceRequestError, ServiceResponseError

        try:
            secret = self._get_client().get_secret(self._name(secret_id))
        except ResourceNotFoundError:
            return None
        except (ServiceRequestError, ServiceResponseError) as exc:
            raise TransientStorageError(f"key vault unreachable: {exc}") from exc
        return base64.b64decode(secret.value)

    def _put_sync(self, secret_id: str, value: bytes) -> None:
        from azure.core.exceptions import ServiceRequestError, ServiceResponseError

        try:
            self._get_client().set_secret(self._name(secret_id), base64.b64encode(value).decode("ascii"))
        except (ServiceRequestError, ServiceResponseError) as exc:
            raise TransientStorageError(f"key vault unreachable: {exc}") from exc
