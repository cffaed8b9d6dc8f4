"""
Job wiring: builds the per-run configuration and collaborators from Settings
and exposes the two pipeline entry points used by the CLI and the scheduler.
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Optional, Sequence

import structlog

from costpulse.core.config import Settings, get_settings
from costpulse.core.exceptions import ConfigurationError
from costpulse.core.pipeline_config import PipelineConfig, build_pipeline_config
from costpulse.core.secrets import get_secret_store
from costpulse.db.session import create_engine, create_schema, create_session_maker
from costpulse.schemas.analysis import AnalysisRunResult, CollectionSummary
from costpulse.services.adapters.azure import AzureBillingSource
from costpulse.services.costs.persistence import SinkService
from costpulse.services.jobs.collection import CollectionOrchestrator
from costpulse.services.jobs.weekly_analysis import WeeklyAnalysisJob
from costpulse.services.llm.factory import LLMFactory
from costpulse.services.llm.narrative import NarrativeBuilder
from costpulse.services.notifications.email_service import EmailService
from costpulse.services.notifications.report import ReportComposer

logger = structlog.get_logger()


@asynccontextmanager
async def pipeline_context(settings: Optional[Settings] = None) -> AsyncIterator[tuple]:
    """Yields (settings, config, sink); disposes the engine and secret store afterwards."""
    settings = settings or get_settings()
    secret_store = get_secret_store(settings)
    engine = create_engine(settings)
    try:
        config = await build_pipeline_config(settings, secret_store)
        await create_schema(engine)
        yield settings, config, SinkService(create_session_maker(engine))
    finally:
        await secret_store.close()
        await engine.dispose()


def build_narrative_builder(settings: Settings, config: PipelineConfig) -> NarrativeBuilder:
    try:
        llm = LLMFactory.create(settings, max_tokens=config.llm_max_tokens)
    except ConfigurationError as e:
        # Reports still go out with template-only sections
        logger.warning("llm_unavailable", error=e.message)
        llm = None
    return NarrativeBuilder(llm, config)


async def run_collection(
    subscription_ids: Optional[Sequence[str]] = None,
    run_date: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> CollectionSummary:
    async with pipeline_context(settings) as (settings, config, sink):
        source = AzureBillingSource(settings)
        try:
            orchestrator = CollectionOrchestrator(source, sink, config)
            return await orchestrator.run_collection(subscription_ids, run_date)
        finally:
            await source.close()


async def run_weekly_analysis(
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> AnalysisRunResult:
    async with pipeline_context(settings) as (settings, config, sink):
        if not settings.SENDGRID_API_KEY:
            raise ConfigurationError("SENDGRID_API_KEY is not configured", code="mail_not_configured")
        email_service = EmailService(
            api_key=settings.SENDGRID_API_KEY,
            from_email=config.mail_from,
            api_url=settings.SENDGRID_API_URL,
            max_attempts=config.mail_max_attempts,
        )
        job = WeeklyAnalysisJob(
            sink,
            config,
            build_narrative_builder(settings, config),
            email_service,
            ReportComposer(settings.APP_NAME),
        )
        return await job.run_weekly_analysis(period_start, period_end)
