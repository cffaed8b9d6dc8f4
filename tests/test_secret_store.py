import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from azure.core.exceptions import ResourceNotFoundError

from costpulse.core.secrets import EnvSecretStore, KeyVaultSecretStore, get_secret_store


@pytest.mark.asyncio
async def test_env_store_reads_prefixed_keys_and_ignores_empty():
    store = EnvSecretStore({"COSTPULSE_EXCLUSION_TOKEN": "AVD", "COSTPULSE_REPORT_RECIPIENTS": ""})

    assert await store.get("EXCLUSION_TOKEN") == "AVD"
    assert await store.get("REPORT_RECIPIENTS") is None
    assert await store.get_many(["EXCLUSION_TOKEN", "MISSING"]) == {"EXCLUSION_TOKEN": "AVD"}


@pytest.mark.asyncio
async def test_env_store_defaults_to_process_environment(monkeypatch):
    monkeypatch.setenv("COSTPULSE_ENABLE_FORECASTING", "yes")

    assert await EnvSecretStore().get("ENABLE_FORECASTING") == "yes"


@pytest.mark.asyncio
async def test_key_vault_store_maps_names_and_missing_secrets():
    client = MagicMock()
    client.close = AsyncMock()

    async def get_secret(name):
        if name == "REPORT-RECIPIENTS":
            return SimpleNamespace(value="finops@example.com")
        raise ResourceNotFoundError("not found")

    client.get_secret = AsyncMock(side_effect=get_secret)
    credential = MagicMock()
    credential.close = AsyncMock()

    with patch("costpulse.core.secrets.SecretClient", return_value=client):
        store = KeyVaultSecretStore("https://vault.example.net", credential=credential)

        assert await store.get("REPORT_RECIPIENTS") == "finops@example.com"
        assert await store.get("EXCLUSION_TOKEN") is None
        await store.close()

    client.close.assert_awaited_once()
    credential.close.assert_awaited_once()


def test_store_selection_follows_key_vault_url(test_settings):
    assert isinstance(get_secret_store(test_settings), EnvSecretStore)

    with patch("costpulse.core.secrets.KeyVaultSecretStore") as MockStore:
        store = get_secret_store(test_settings.model_copy(update={"KEY_VAULT_URL": "https://vault.example.net"}))

    MockStore.assert_called_once_with("https://vault.example.net")
    assert store is MockStore.return_value
