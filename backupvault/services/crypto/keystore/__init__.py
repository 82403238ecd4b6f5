from __future__ import annotations

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import ConfigurationError
from backupvault.services.crypto.keystore.aws import AwsSecretsKeyStore
from backupvault.services.crypto.keystore.azure import AzureKeyVaultKeyStore
from backupvault.services.crypto.keystore.base import KeyStore
from backupvault.services.crypto.keystore.gcp import GcpSecretManagerKeyStore
from backupvault.services.crypto.keystore.local import LocalKeyStore


_KEYSTORES = {
    "local": LocalKeyStore,
    "aws": AwsSecretsKeyStore,
    "gcp": GcpSecretManagerKeyStore,
    "azure": AzureKeyVaultKeyStore,
}


def build_keystore(settings: Settings | None = None) -> KeyStore:
    # Resolve the configured key store once at startup.
    settings = settings or get_settings()
    keystore_cls = _KEYSTORES.get(settings.kms_provider)
    if keystore_cls is None:
        raise ConfigurationError(f"Unsupported KMS provider: {settings.kms_provider}")
    return keystore_cls.from_settings(settings)


__all__ = [
    "AwsSecretsKeyStore",
    "AzureKeyVaultKeyStore",
    "GcpSecretManagerKeyStore",
    "KeyStore",
    "LocalKeyStore",
    "build_keystore",
]
