from typing import Optional

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from costpulse.core.config import Settings, get_settings
from costpulse.core.exceptions import ConfigurationError

logger = structlog.get_logger()


class LLMFactory:
    """Factory for the chat model behind the narrative builder."""

    @staticmethod
    def create(
        settings: Optional[Settings] = None,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> BaseChatModel:
        """
        Create a chat model with a bounded output token budget.

        Raises:
            ConfigurationError: unknown provider or missing credentials.
        """
        settings = settings or get_settings()
        effective_provider = provider or settings.LLM_PROVIDER
        max_tokens = max_tokens or settings.LLM_MAX_OUTPUT_TOKENS
        logger.info("llm_initializing", provider=effective_provider, max_tokens=max_tokens)

        if effective_provider == "openai":
            key = api_key or settings.OPENAI_API_KEY
            if not key:
                raise ConfigurationError("OPENAI_API_KEY not configured", code="llm_not_configured")
            return ChatOpenAI(
                api_key=key,
                model=settings.OPENAI_MODEL,
                temperature=0,
                max_tokens=max_tokens,
                max_retries=0,
            )

        if effective_provider == "azure_openai":
            key = api_key or settings.AZURE_OPENAI_API_KEY
            if not key or not settings.AZURE_OPENAI_ENDPOINT or not settings.AZURE_OPENAI_DEPLOYMENT:
                raise ConfigurationError(
                    "AZURE_OPENAI_API_KEY, AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT are required",
                    code="llm_not_configured",
                )
            return AzureChatOpenAI(
                api_key=key,
                azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
                azure_deployment=settings.AZURE_OPENAI_DEPLOYMENT,
                api_version=settings.AZURE_OPENAI_API_VERSION,
                temperature=0,
                max_tokens=max_tokens,
                max_retries=0,
            )

        if effective_provider in ("anthropic", "claude"):
            key = api_key or settings.ANTHROPIC_API_KEY
            if not key:
                raise ConfigurationError("ANTHROPIC_API_KEY not configured", code="llm_not_configured")
            return ChatAnthropic(
                api_key=key,
                model=settings.ANTHROPIC_MODEL,
                temperature=0,
                max_tokens=max_tokens,
                max_retries=0,
            )

        raise ConfigurationError(f"Unsupported provider: {effective_provider}", code="llm_not_configured")
