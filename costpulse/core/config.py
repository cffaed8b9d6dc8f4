from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator
from typing import Optional


class Settings(BaseSettings):
    """
    Process-level configuration for CostPulse.
    Uses Pydantic-Settings for environment variable parsing from .env.

    Run-level knobs (feature flags, thresholds, recipients) live here as defaults
    and are resolved per run into a PipelineConfig, where the secret store may
    override them.
    """
    APP_NAME: str = "CostPulse"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"

    # Database (time-series sink)
    DATABASE_URL: str = "sqlite+aiosqlite:///./costpulse.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5

    # Azure Credentials (Service Principal). Falls back to DefaultAzureCredential.
    AZURE_TENANT_ID: Optional[str] = None
    AZURE_CLIENT_ID: Optional[str] = None
    AZURE_CLIENT_SECRET: Optional[str] = None
    KEY_VAULT_URL: Optional[str] = None  # Enables the Key Vault secret store

    # Target subscriptions (comma separated, overridable from the secret store)
    TARGET_SUBSCRIPTION_IDS: str = ""

    # LLM Provider
    LLM_PROVIDER: str = "openai"  # Options: openai, azure_openai, anthropic
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    AZURE_OPENAI_API_KEY: Optional[str] = None
    AZURE_OPENAI_ENDPOINT: Optional[str] = None
    AZURE_OPENAI_DEPLOYMENT: Optional[str] = None
    AZURE_OPENAI_API_VERSION: str = "2024-06-01"
    ANTHROPIC_API_KEY: Optional[str] = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    LLM_MAX_OUTPUT_TOKENS: int = 1500
    LLM_TIMEOUT_SECONDS: float = 90.0

    # Mail relay (SendGrid v3)
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_API_URL: str = "https://api.sendgrid.com/v3/mail/send"
    MAIL_FROM: str = "finops-reports@costpulse.local"
    REPORT_RECIPIENTS: str = ""
    MAIL_MAX_ATTEMPTS: int = 2

    # Feature flags
    ENABLE_ADVANCED_PROMPTING: bool = False
    ENABLE_ANOMALY_DETECTION: bool = True
    ENABLE_CHARGEBACK_ANALYSIS: bool = False
    ENABLE_FORECASTING: bool = False
    ENABLE_OPTIMIZATION_RECOMMENDATIONS: bool = True
    INCLUDE_RESERVATIONS: bool = True
    INCLUDE_BUDGETS: bool = True
    INCLUDE_ADVISOR: bool = True

    # Resource classification
    EXCLUSION_TOKEN: str = "VD"
    EXCLUSION_MATCH_STRATEGY: str = "substring"  # Options: substring, segment

    # Collection
    COLLECTION_LOOKBACK_DAYS: int = 1
    COLLECTION_MAX_CONCURRENCY: int = 4
    RUN_TIMEOUT_SECONDS: float = 1800.0
    SOURCE_REQUEST_TIMEOUT_SECONDS: float = 120.0

    # Retry policy for the billing source
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_INITIAL_DELAY_SECONDS: float = 2.0
    RETRY_MAX_DELAY_SECONDS: float = 60.0

    # Baseline & anomaly engine
    ANOMALY_THRESHOLD_SIGMA: float = 2.0
    ANOMALY_MIN_SAMPLES: int = 3
    BASELINE_WINDOW_WEEKS: int = 8

    # Chargeback
    CHARGEBACK_TAG_KEY: str = "CostCenter"

    # Scheduler (built-in mode only)
    SCHEDULER_COLLECTION_HOUR: int = 6
    SCHEDULER_ANALYSIS_DAY_OF_WEEK: str = "mon"
    SCHEDULER_ANALYSIS_HOUR: int = 7
    METRICS_PORT: Optional[int] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return not (self.DEBUG or self.TESTING)

    @model_validator(mode='after')
    def validate_provider_keys(self) -> 'Settings':
        """Fail-closed: the configured LLM provider must have credentials in production."""
        provider_keys = {
            "openai": self.OPENAI_API_KEY,
            "azure_openai": self.AZURE_OPENAI_API_KEY,
            "anthropic": self.ANTHROPIC_API_KEY,
        }
        if self.LLM_PROVIDER not in provider_keys:
            raise ValueError(f"Unsupported LLM_PROVIDER '{self.LLM_PROVIDER}'. Use: {', '.join(provider_keys)}")

        if self.EXCLUSION_MATCH_STRATEGY not in ("substring", "segment"):
            raise ValueError("EXCLUSION_MATCH_STRATEGY must be 'substring' or 'segment'.")

        if self.is_production and not provider_keys[self.LLM_PROVIDER]:
            # Plain reports fall back to template sections without a model.
            if self.ENABLE_ADVANCED_PROMPTING:
                raise ValueError(
                    f"LLM_PROVIDER is set to '{self.LLM_PROVIDER}' but corresponding API key is missing."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Returns a singleton instance of the process settings."""
    return Settings()
