"""
Per-run pipeline configuration.

Built once at run start from process Settings plus secret-store overrides and
passed explicitly to every component. Frozen so no component can mutate it
mid-run.
"""

import re
from typing import List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from costpulse.core.config import Settings
from costpulse.core.exceptions import ConfigurationError
from costpulse.core.secrets import SecretStore

logger = structlog.get_logger()

MAX_RECIPIENTS = 50
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_ids: Tuple[str, ...] = ()
    recipients: Tuple[str, ...] = ()
    mail_from: str = "finops-reports@costpulse.local"

    # Resource classification
    exclusion_token: str = "VD"
    exclusion_match_strategy: str = "substring"

    # Feature flags
    advanced_prompting: bool = False
    anomaly_detection: bool = True
    chargeback_analysis: bool = False
    forecasting: bool = False
    optimization_recommendations: bool = True
    include_reservations: bool = True
    include_budgets: bool = True
    include_advisor: bool = True

    # Collection
    lookback_days: int = Field(1, ge=1)
    max_concurrency: int = Field(4, ge=1)
    run_timeout_seconds: float = Field(1800.0, gt=0)
    request_timeout_seconds: float = Field(120.0, gt=0)

    # Retry policy
    retry_max_attempts: int = Field(5, ge=1)
    retry_initial_delay: float = Field(2.0, ge=0)
    retry_max_delay: float = Field(60.0, ge=0)

    # Baseline & anomaly engine
    anomaly_threshold: float = Field(2.0, gt=0)
    min_samples: int = Field(3, ge=2)
    baseline_weeks: int = Field(8, ge=2)

    # Narrative & dispatch
    llm_max_tokens: int = Field(1500, ge=64)
    llm_timeout_seconds: float = Field(90.0, gt=0)
    mail_max_attempts: int = Field(2, ge=1, le=3)

    chargeback_tag_key: str = "CostCenter"

    @field_validator("exclusion_match_strategy")
    @classmethod
    def _check_strategy(cls, value: str) -> str:
        if value not in ("substring", "segment"):
            raise ValueError("exclusion_match_strategy must be 'substring' or 'segment'")
        return value

    @field_validator("exclusion_token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("exclusion_token must not be blank")
        return value.strip()

    @field_validator("recipients")
    @classmethod
    def _check_recipients(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        if len(value) > MAX_RECIPIENTS:
            raise ValueError(f"at most {MAX_RECIPIENTS} recipients are allowed, got {len(value)}")
        invalid = [r for r in value if not _EMAIL_PATTERN.match(r)]
        if invalid:
            raise ValueError(f"invalid recipient address(es): {', '.join(invalid)}")
        return value


def parse_list(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma/semicolon separated value, dropping blanks and duplicates."""
    if not raw:
        return ()
    seen: List[str] = []
    for part in re.split(r"[,;]", raw):
        item = part.strip()
        if item and item not in seen:
            seen.append(item)
    return tuple(seen)


def parse_bool(raw: str, key: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got '{raw}'", code="invalid_flag")


# Secret-store key -> (PipelineConfig field, kind)
SECRET_OVERRIDES = {
    "TARGET_SUBSCRIPTION_IDS": ("subscription_ids", "list"),
    "REPORT_RECIPIENTS": ("recipients", "list"),
    "MAIL_FROM": ("mail_from", "str"),
    "EXCLUSION_TOKEN": ("exclusion_token", "str"),
    "EXCLUSION_MATCH_STRATEGY": ("exclusion_match_strategy", "str"),
    "ENABLE_ADVANCED_PROMPTING": ("advanced_prompting", "bool"),
    "ENABLE_ANOMALY_DETECTION": ("anomaly_detection", "bool"),
    "ENABLE_CHARGEBACK_ANALYSIS": ("chargeback_analysis", "bool"),
    "ENABLE_FORECASTING": ("forecasting", "bool"),
    "ENABLE_OPTIMIZATION_RECOMMENDATIONS": ("optimization_recommendations", "bool"),
    "INCLUDE_RESERVATIONS": ("include_reservations", "bool"),
    "INCLUDE_BUDGETS": ("include_budgets", "bool"),
    "INCLUDE_ADVISOR": ("include_advisor", "bool"),
    "CHARGEBACK_TAG_KEY": ("chargeback_tag_key", "str"),
}


def config_from_settings(settings: Settings) -> dict:
    return {
        "subscription_ids": parse_list(settings.TARGET_SUBSCRIPTION_IDS),
        "recipients": parse_list(settings.REPORT_RECIPIENTS),
        "mail_from": settings.MAIL_FROM,
        "exclusion_token": settings.EXCLUSION_TOKEN,
        "exclusion_match_strategy": settings.EXCLUSION_MATCH_STRATEGY,
        "advanced_prompting": settings.ENABLE_ADVANCED_PROMPTING,
        "anomaly_detection": settings.ENABLE_ANOMALY_DETECTION,
        "chargeback_analysis": settings.ENABLE_CHARGEBACK_ANALYSIS,
        "forecasting": settings.ENABLE_FORECASTING,
        "optimization_recommendations": settings.ENABLE_OPTIMIZATION_RECOMMENDATIONS,
        "include_reservations": settings.INCLUDE_RESERVATIONS,
        "include_budgets": settings.INCLUDE_BUDGETS,
        "include_advisor": settings.INCLUDE_ADVISOR,
        "lookback_days": settings.COLLECTION_LOOKBACK_DAYS,
        "max_concurrency": settings.COLLECTION_MAX_CONCURRENCY,
        "run_timeout_seconds": settings.RUN_TIMEOUT_SECONDS,
        "request_timeout_seconds": settings.SOURCE_REQUEST_TIMEOUT_SECONDS,
        "retry_max_attempts": settings.RETRY_MAX_ATTEMPTS,
        "retry_initial_delay": settings.RETRY_INITIAL_DELAY_SECONDS,
        "retry_max_delay": settings.RETRY_MAX_DELAY_SECONDS,
        "anomaly_threshold": settings.ANOMALY_THRESHOLD_SIGMA,
        "min_samples": settings.ANOMALY_MIN_SAMPLES,
        "baseline_weeks": settings.BASELINE_WINDOW_WEEKS,
        "llm_max_tokens": settings.LLM_MAX_OUTPUT_TOKENS,
        "llm_timeout_seconds": settings.LLM_TIMEOUT_SECONDS,
        "mail_max_attempts": settings.MAIL_MAX_ATTEMPTS,
        "chargeback_tag_key": settings.CHARGEBACK_TAG_KEY,
    }


async def build_pipeline_config(settings: Settings, secret_store: Optional[SecretStore] = None) -> PipelineConfig:
    """
    Resolve the run configuration: Settings defaults, then secret-store overrides.

    Raises:
        ConfigurationError: if any resolved value is invalid.
    """
    values = config_from_settings(settings)

    if secret_store is not None:
        overrides = await secret_store.get_many(SECRET_OVERRIDES.keys())
        for key, raw in overrides.items():
            field, kind = SECRET_OVERRIDES[key]
            if kind == "list":
                values[field] = parse_list(raw)
            elif kind == "bool":
                values[field] = parse_bool(raw, key)
            else:
                values[field] = raw
        if overrides:
            logger.info("pipeline_config_overrides_applied", keys=sorted(overrides))

    try:
        return PipelineConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid pipeline configuration: {e}", code="invalid_config") from e
