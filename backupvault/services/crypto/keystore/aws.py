from __future__ import annotations

import asyncio
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, TransientStorageError


class AwsSecretsKeyStore:
    # Store key material as binary secrets in AWS Secrets Manager.
    provider: Final[str] = "aws"

    def __init__(self, *, prefix: str, region: str | None = None, client: Any | None = None) -> None:
        self._prefix = prefix.strip("/")
        self._region = region
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AwsSecretsKeyStore":
        return cls(prefix=settings.kms_secret_prefix, region=settings.kms_aws_region or settings.storage_region)

    def _get_client(self) -> Any:
        # Import lazily so the AWS SDK stays an optional extra.
        if self._client is None:
            try:
                import boto3
            except ImportError as exc:
                raise ConfigurationError("boto3 is required for the aws key store; install backupvault[aws]") from exc
            self._client = boto3.client("secretsmanager", region_name=self._region)
        return self._client

    def _name(self, secret_id: str) -> str:
        return f"{self._prefix}/{secret_id}" if self._prefix else secret_id

    async def get_secret(self, secret_id: str) -> bytes | None:
        return await asyncio.to_thread(self._get_sync, secret_id)

    async def put_secret(self, secret_id: str, value: bytes) -> None:
        await asyncio.to_thread(self._put_sync, secret_id, value)

    def _get_sync(self, secret_id: str) -> bytes | None:
        client = self._get_client()
        try:
            response = client.get_secret_value(SecretId=self._name(secret_id))
        except client.exceptions.ResourceNotFoundException:
            return None
        except Exception as exc:  # noqa: BLE001 - botocore error classes are resolved at runtime
            raise _classify(exc) from exc
        return bytes(response["SecretBinary"])

    def _put_sync(self, secret_id: str, value: bytes) -> None:
        client = self._get_client()
        try:
            client.create_secret(Name=self._name(secret_id), SecretBinary=value)
        except client.exceptions.ResourceExistsException:
            client.put_secret_value(SecretId=self._name(secret_id), SecretBinary=value)
        except Exception as exc:  # noqa: BLE001 - botocore error classes are resolved at runtime
            raise _classify(exc) from exc


def _classify(exc: Exception) -> Exception:
    # Network and throttling failures are retryable; anything else is a configuration defect.
    name = type(exc).__name__
    if name in {"EndpointConnectionError", "ConnectTimeoutError", "ReadTimeoutError", "ConnectionClosedError"}:
        return TransientStorageError(f"aws secrets manager unreachable: {name}")
    response = getattr(exc, "response", None) or {}
    code = response.get("Error", {}).get("Code", "")
    if code in {"ThrottlingException", "InternalServiceError", "ServiceUnavailable"}:
        return TransientStorageError(f"aws secrets manager error: {code}")
    return ConfigurationError(f"aws secrets manager rejected the request: {code or name}")
