"""
Secret / Configuration Store

Read-only key-value access to API keys, recipient lists, feature flags and the
exclusion token. Values are read once at run start and treated as opaque strings.
"""

import os
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional

import structlog
from azure.core.exceptions import ResourceNotFoundError
from azure.identity.aio import DefaultAzureCredential
from azure.keyvault.secrets.aio import SecretClient

logger = structlog.get_logger()


class SecretStore(ABC):
    """Abstract read-only key-value store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None when it is not set."""
        pass

    async def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        values = {}
        for key in keys:
            value = await self.get(key)
            if value is not None:
                values[key] = value
        return values

    async def close(self) -> None:
        return None


class EnvSecretStore(SecretStore):
    """Environment-backed store. An explicit mapping replaces os.environ (tests, local runs)."""

    def __init__(self, values: Optional[Mapping[str, str]] = None, prefix: str = "COSTPULSE_"):
        self._values = values
        self.prefix = prefix

    async def get(self, key: str) -> Optional[str]:
        source = self._values if self._values is not None else os.environ
        value = source.get(f"{self.prefix}{key}")
        if value is None or value == "":
            return None
        return value


class KeyVaultSecretStore(SecretStore):
    """
    Azure Key Vault-backed store.

    Key Vault secret names only allow alphanumerics and dashes, so
    `REPORT_RECIPIENTS` is looked up as `REPORT-RECIPIENTS`.
    """

    def __init__(self, vault_url: str, credential=None):
        self.vault_url = vault_url
        self._credential = credential or DefaultAzureCredential()
        self._client = SecretClient(vault_url=vault_url, credential=self._credential)

    @staticmethod
    def _secret_name(key: str) -> str:
        return key.replace("_", "-")

    async def get(self, key: str) -> Optional[str]:
        try:
            secret = await self._client.get_secret(self._secret_name(key))
        except ResourceNotFoundError:
            return None
        return secret.value

    async def close(self) -> None:
        await self._client.close()
        await self._credential.close()


def get_secret_store(settings) -> SecretStore:
    """Key Vault when KEY_VAULT_URL is configured, environment otherwise."""
    if settings.KEY_VAULT_URL:
        logger.info("secret_store_selected", backend="key_vault")
        return KeyVaultSecretStore(settings.KEY_VAULT_URL)
    logger.info("secret_store_selected", backend="environment")
    return EnvSecretStore()
