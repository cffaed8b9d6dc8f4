import pytest

from costpulse import runtime
from costpulse.core.exceptions import ConfigurationError


@pytest.mark.asyncio
async def test_weekly_run_requires_mail_relay_key(test_settings):
    with pytest.raises(ConfigurationError) as exc:
        await runtime.run_weekly_analysis(settings=test_settings)

    assert exc.value.code == "mail_not_configured"


def test_missing_llm_key_degrades_to_template_narrative(test_settings, config):
    builder = runtime.build_narrative_builder(test_settings.model_copy(update={"OPENAI_API_KEY": None}), config)

    assert builder.llm is None


def test_configured_llm_key_builds_model(test_settings, config):
    settings = test_settings.model_copy(update={"LLM_PROVIDER": "openai", "OPENAI_API_KEY": "sk-test"})

    builder = runtime.build_narrative_builder(settings, config)

    assert builder.llm is not None
    assert builder.llm.max_tokens == config.llm_max_tokens


@pytest.mark.asyncio
async def test_pipeline_context_creates_schema(test_settings):
    async with runtime.pipeline_context(test_settings) as (settings, config, sink):
        assert await sink.get_report_run("2025-W30") is None
        assert config.lookback_days == 1
