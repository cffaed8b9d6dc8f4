"""
Weekly Analysis Job

Aggregates the reporting period, recomputes baselines and anomalies, builds
the AI narrative (with template fallback), renders the HTML report and sends
it. At most one successful send per ISO week: the week is claimed in the
report ledger before any work and marked sent only after the relay accepts
the email. Once the relay has accepted it the week is never released again,
even when recording the send fails.
"""

import time
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from costpulse.core.exceptions import CostPulseException, SinkError
from costpulse.core.logging import bind_run_context
from costpulse.core.pipeline_config import PipelineConfig
from costpulse.core.timeout import with_deadline
from costpulse.schemas.analysis import AnalysisReport, AnalysisRunResult, AnalysisStatus, Anomaly
from costpulse.services.analysis.baseline import BaselineEngine
from costpulse.services.analysis.chargeback import ChargebackAnalyzer
from costpulse.services.analysis.forecaster import CostForecaster
from costpulse.services.costs.aggregator import CostAggregator
from costpulse.services.costs.persistence import SinkService
from costpulse.services.llm.narrative import NarrativeBuilder, NarrativeContext
from costpulse.services.notifications.email_service import EmailService
from costpulse.services.notifications.report import ReportComposer
from costpulse.services.scheduler.metrics import JOB_DURATION, JOB_RUNS, REPORTS_SENT

logger = structlog.get_logger()

JOB_NAME = "weekly_analysis"

FORECAST_HISTORY_DAYS = 56
FORECAST_HORIZON_DAYS = 30
ADVISOR_LOOKBACK_DAYS = 7
LEDGER_ATTEMPTS = 3


def week_key_for(period_end: date) -> str:
    iso_year, iso_week, _ = period_end.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def previous_week(today: date) -> Tuple[date, date]:
    """Monday..Sunday of the last complete ISO week before `today`."""
    this_monday = today - timedelta(days=today.weekday())
    start = this_monday - timedelta(days=7)
    return start, start + timedelta(days=6)


def _budget_view(row: Any) -> Dict[str, Any]:
    utilization = (row.current_spend / row.amount * 100).quantize(Decimal("0.1")) if row.amount else Decimal("0")
    return {
        "subscription_id": row.subscription_id,
        "budget_name": row.budget_name,
        "amount": row.amount,
        "current_spend": row.current_spend,
        "forecast_spend": row.forecast_spend,
        "time_grain": row.time_grain,
        "currency": row.currency,
        "utilization_percent": utilization,
    }


def _recommendation_view(row: Any) -> Dict[str, Any]:
    return {
        "subscription_id": row.subscription_id,
        "impact": row.impact,
        "impacted_field": row.impacted_field,
        "impacted_value": row.impacted_value,
        "problem": row.problem,
        "solution": row.solution,
        "potential_savings": row.potential_savings,
        "savings_currency": row.savings_currency,
    }


class WeeklyAnalysisJob:
    def __init__(
        self,
        sink: SinkService,
        config: PipelineConfig,
        narrative_builder: NarrativeBuilder,
        email_service: EmailService,
        composer: Optional[ReportComposer] = None,
        ledger_wait=None,
    ):
        self.sink = sink
        self.config = config
        self.narrative_builder = narrative_builder
        self.email_service = email_service
        self.composer = composer or ReportComposer()
        self.baseline_engine = BaselineEngine(sink, config)
        self.ledger_wait = ledger_wait or wait_exponential(multiplier=1, min=1, max=5)

    async def run_weekly_analysis(
        self,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
    ) -> AnalysisRunResult:
        if period_start is None or period_end is None:
            period_start, period_end = previous_week(datetime.now(timezone.utc).date())
        if period_end < period_start:
            raise ValueError("period_end must not precede period_start")

        week_key = week_key_for(period_end)
        run_id = str(uuid.uuid4())
        bind_run_context(JOB_NAME, run_id, week_key=week_key)
        started = time.monotonic()
        result = AnalysisRunResult(
            run_id=run_id, week_key=week_key, period_start=period_start, period_end=period_end,
            status=AnalysisStatus.FAILED,
        )

        try:
            claimed = await self.sink.claim_week(week_key, run_id, period_start, period_end)
        except SinkError as e:
            logger.error("weekly_analysis_failed", stage="claim", error=e.message)
            return self._finish(result.model_copy(update={"error": e.message}), started)

        if not claimed:
            logger.info("weekly_analysis_duplicate", period_start=str(period_start), period_end=str(period_end))
            return self._finish(result.model_copy(update={"status": AnalysisStatus.SKIPPED_DUPLICATE}), started)

        try:
            result, ledger = await with_deadline(
                self._analyze_and_send(result, period_start, period_end, week_key),
                self.config.run_timeout_seconds,
                JOB_NAME,
            )
        except CostPulseException as e:
            logger.error("weekly_analysis_failed", error_type=type(e).__name__, code=e.code, error=e.message)
            return self._finish(await self._fail(result, week_key, e.message), started)
        except Exception as e:
            logger.error("weekly_analysis_failed", error_type=type(e).__name__, error=str(e), exc_info=True)
            return self._finish(await self._fail(result, week_key, f"{type(e).__name__}: {e}"), started)

        return self._finish(await self._record_sent(result, week_key, ledger), started)

    async def _fail(self, result: AnalysisRunResult, week_key: str, error: str) -> AnalysisRunResult:
        """Nothing was sent: release the week so a later run can retry it."""
        try:
            await self.sink.mark_failed(week_key, error)
        except SinkError as mark_error:
            logger.error("report_ledger_update_failed", stage="mark_failed", error=mark_error.message)
        return result.model_copy(update={"status": AnalysisStatus.FAILED, "error": error})

    async def _record_sent(
        self,
        result: AnalysisRunResult,
        week_key: str,
        ledger: Dict[str, Any],
    ) -> AnalysisRunResult:
        """
        Record a delivered report in the ledger.

        The email is already out, so the week is never released for another
        send: the summary write is retried, and when it keeps failing the week
        is marked `sent_unconfirmed` instead.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(LEDGER_ATTEMPTS),
                wait=self.ledger_wait,
                retry=retry_if_exception_type(SinkError),
                reraise=True,
            ):
                with attempt:
                    await self.sink.mark_sent(week_key, **ledger)
            return result
        except SinkError as e:
            error = f"Report sent but not recorded: {e.message}"
            logger.error("report_ledger_update_failed", stage="mark_sent", attempts=LEDGER_ATTEMPTS, error=e.message)

        try:
            await self.sink.mark_sent_unconfirmed(week_key, ledger.get("provider_message_id"), error)
        except SinkError as e:
            logger.critical("report_sent_unrecorded", week_key=week_key, error=e.message)
        return result.model_copy(update={"error": error})

    async def _analyze_and_send(
        self,
        result: AnalysisRunResult,
        period_start: date,
        period_end: date,
        week_key: str,
    ) -> Tuple[AnalysisRunResult, Dict[str, Any]]:
        breakdown = await CostAggregator.get_breakdown(self.sink, period_start, period_end)

        anomalies: List[Anomaly] = []
        baselines_computed = 0
        if self.config.anomaly_detection:
            baselines, anomalies = await self.baseline_engine.run(period_start, period_end, week_key)
            baselines_computed = len(baselines)

        budgets = []
        if self.config.include_budgets:
            budgets = [_budget_view(row) for row in await self.sink.get_latest_budgets(period_end)]

        recommendations = []
        if self.config.optimization_recommendations:
            rows = await self.sink.get_advisor_recommendations(
                period_end - timedelta(days=ADVISOR_LOOKBACK_DAYS), period_end
            )
            recommendations = sorted(
                (_recommendation_view(r) for r in rows),
                key=lambda r: r["potential_savings"] or Decimal("0"),
                reverse=True,
            )

        forecast = None
        if self.config.forecasting:
            history = await self.sink.get_cost_records(
                period_end - timedelta(days=FORECAST_HISTORY_DAYS - 1), period_end, include_excluded=False
            )
            forecast = CostForecaster.summarize(
                CostForecaster.forecast(history, days=FORECAST_HORIZON_DAYS), period_end
            )

        chargeback = None
        if self.config.chargeback_analysis:
            period_records = await self.sink.get_cost_records(period_start, period_end, include_excluded=False)
            chargeback = ChargebackAnalyzer(self.config.chargeback_tag_key).analyze(period_records)

        narrative = await self.narrative_builder.build(NarrativeContext(
            period_start=period_start,
            period_end=period_end,
            week_key=week_key,
            breakdown=breakdown,
            anomalies=anomalies,
            budgets=budgets,
            recommendations=recommendations,
            forecast=forecast,
            chargeback=chargeback,
        ))

        report = AnalysisReport(
            period_start=period_start,
            period_end=period_end,
            week_key=week_key,
            breakdown=breakdown,
            narrative_sections=narrative.sections,
            anomalies=anomalies,
            budgets=budgets,
            recommendations=recommendations,
            forecast=forecast,
            chargeback_summary=chargeback,
            ai_available=narrative.ai_available,
        )

        subject = self.composer.subject(report)
        html_body = self.composer.render(report)
        recipients = list(self.config.recipients)
        message_id = await self.email_service.send_report(subject, html_body, recipients)

        ledger = {
            "total_cost": breakdown.total_cost,
            "anomaly_count": len(anomalies),
            "recipient_count": len(recipients),
            "provider_message_id": message_id,
        }
        return result.model_copy(update={
            "status": AnalysisStatus.SENT,
            "anomalies": anomalies,
            "baselines_computed": baselines_computed,
            "ai_available": narrative.ai_available,
            "email_sent": True,
        }), ledger

    def _finish(self, result: AnalysisRunResult, started: float) -> AnalysisRunResult:
        duration = time.monotonic() - started
        JOB_RUNS.labels(job_name=JOB_NAME, status=result.status.value).inc()
        JOB_DURATION.labels(job_name=JOB_NAME).observe(duration)
        REPORTS_SENT.labels(status=result.status.value).inc()
        log = logger.error if result.status == AnalysisStatus.FAILED else logger.info
        log(
            "weekly_analysis_finished",
            status=result.status.value,
            anomalies=len(result.anomalies),
            ai_available=result.ai_available,
            email_sent=result.email_sent,
            duration_seconds=round(duration, 2),
        )
        return result
