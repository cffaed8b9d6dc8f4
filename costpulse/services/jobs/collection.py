"""
Daily Collection Job

Fans out over subscription x dataset pairs with bounded parallelism, pulls each
dataset through the retrying client, validates and classifies the rows, and
upserts accepted records into the sink. A failing pair is recorded and never
aborts its siblings; credential and sink failures abort the whole run.
"""

import asyncio
import threading
import time
import uuid
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from costpulse.core.exceptions import (
    CostPulseException,
    CredentialError,
    SourceError,
    SourceRejectionError,
)
from costpulse.core.logging import bind_run_context
from costpulse.core.pipeline_config import PipelineConfig
from costpulse.schemas.analysis import CollectionSummary, Dataset, DatasetResult, DatasetStatus, RunStatus
from costpulse.schemas.costs import CostRecord
from costpulse.services.adapters.base import BillingSource
from costpulse.services.adapters.retry import RetryingClient, RetryPolicy
from costpulse.services.costs.classifier import ResourceClassifier
from costpulse.services.costs.persistence import SinkService
from costpulse.services.costs.validator import RecordValidator
from costpulse.services.scheduler.metrics import DATASET_OUTCOMES, JOB_DURATION, JOB_RUNS, RECORDS_VALIDATED

logger = structlog.get_logger()

JOB_NAME = "daily_collection"

DATASET_ORDER = (Dataset.COSTS, Dataset.RESERVATIONS, Dataset.BUDGETS, Dataset.ADVISOR)


def merge_cost_records(records: Iterable[CostRecord]) -> List[CostRecord]:
    """
    Collapse rows sharing a natural key by summing their cost.

    The source may return several meter rows for one resource/category/day;
    the sink keeps one row per key.
    """
    merged: "OrderedDict[tuple, CostRecord]" = OrderedDict()
    for record in records:
        key = record.natural_key
        if key in merged:
            existing = merged[key]
            merged[key] = existing.model_copy(update={"cost": existing.cost + record.cost})
        else:
            merged[key] = record
    return list(merged.values())


def compute_run_status(results: Iterable[DatasetResult], fatal: bool = False) -> RunStatus:
    enabled = [r for r in results if r.status != DatasetStatus.DISABLED]
    if fatal or not any(r.status == DatasetStatus.SUCCEEDED for r in enabled):
        return RunStatus.FAILED
    if any(r.status == DatasetStatus.FAILED for r in enabled):
        return RunStatus.COMPLETED_WITH_FAILURES
    if any(r.status == DatasetStatus.SKIPPED for r in enabled):
        return RunStatus.COMPLETED_WITH_SKIPS
    return RunStatus.COMPLETED


class _RunCounters:
    """Per-run totals shared by concurrent pair workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self.accepted = 0
        self.rejected = 0
        self.failed = 0
        self.skipped = 0

    def record(self, result: DatasetResult) -> None:
        with self._lock:
            self.accepted += result.records_accepted
            self.rejected += result.records_rejected
            if result.status == DatasetStatus.FAILED:
                self.failed += 1
            elif result.status == DatasetStatus.SKIPPED:
                self.skipped += 1


class CollectionOrchestrator:
    """
    Runs the daily collection for a list of subscriptions.

    Args:
        source: billing/usage source.
        sink: time-series sink.
        config: frozen per-run configuration.
        retry_client: overrides the client built from the config retry policy.
    """

    def __init__(
        self,
        source: BillingSource,
        sink: SinkService,
        config: PipelineConfig,
        retry_client: Optional[RetryingClient] = None,
        validator: Optional[RecordValidator] = None,
    ):
        self.source = source
        self.sink = sink
        self.config = config
        self.retry_client = retry_client or RetryingClient(RetryPolicy.from_config(config))
        self.validator = validator or RecordValidator()
        self.classifier = ResourceClassifier.from_config(config)

    def _enabled(self, dataset: Dataset) -> bool:
        if dataset == Dataset.RESERVATIONS:
            return self.config.include_reservations
        if dataset == Dataset.BUDGETS:
            return self.config.include_budgets
        if dataset == Dataset.ADVISOR:
            return self.config.include_advisor
        return True

    def collection_window(self, run_date: date) -> Tuple[date, date]:
        """Days before the run date; the run date itself is still accruing."""
        end = run_date - timedelta(days=1)
        start = run_date - timedelta(days=self.config.lookback_days)
        return start, end

    async def run_collection(
        self,
        subscription_ids: Optional[Sequence[str]] = None,
        run_date: Optional[date] = None,
    ) -> CollectionSummary:
        subscription_ids = list(subscription_ids if subscription_ids is not None else self.config.subscription_ids)
        run_date = run_date or datetime.now(timezone.utc).date()
        run_id = str(uuid.uuid4())
        bind_run_context(JOB_NAME, run_id, run_date=str(run_date))
        started = time.monotonic()

        results: Dict[str, Dict[Dataset, DatasetResult]] = {sub: {} for sub in subscription_ids}
        counters = _RunCounters()

        if not subscription_ids:
            logger.error("collection_no_subscriptions")
            return self._finish(run_id, run_date, results, counters, started,
                                fatal_error="no target subscriptions configured")

        start, end = self.collection_window(run_date)
        logger.info("collection_started", subscriptions=len(subscription_ids),
                    window_start=str(start), window_end=str(end))

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        collected_at = datetime.now(timezone.utc)
        tasks: Dict[asyncio.Task, Tuple[str, Dataset]] = {}

        for sub in subscription_ids:
            for dataset in DATASET_ORDER:
                if not self._enabled(dataset):
                    results[sub][dataset] = DatasetResult(status=DatasetStatus.DISABLED)
                    continue
                task = asyncio.create_task(
                    self._collect_pair(semaphore, counters, sub, dataset, start, end, run_date, run_id, collected_at)
                )
                tasks[task] = (sub, dataset)

        fatal_error = None
        done, pending = await asyncio.wait(
            tasks, timeout=self.config.run_timeout_seconds, return_when=asyncio.FIRST_EXCEPTION
        )

        for task in done:
            sub, dataset = tasks[task]
            if task.exception() is None:
                results[sub][dataset] = task.result()
                continue
            exc = task.exception()
            fatal_error = fatal_error or (exc.message if isinstance(exc, CostPulseException) else repr(exc))
            logger.error("collection_aborted", subscription_id=sub, dataset=dataset.value,
                         error_type=type(exc).__name__, error=str(exc))
            results[sub][dataset] = DatasetResult(status=DatasetStatus.FAILED, error=str(exc))

        if pending:
            reason = "run aborted" if fatal_error else "run deadline exceeded"
            if not fatal_error:
                logger.warning("collection_deadline_exceeded", timeout_seconds=self.config.run_timeout_seconds,
                               pending_pairs=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in pending:
                sub, dataset = tasks[task]
                results[sub][dataset] = DatasetResult(status=DatasetStatus.FAILED, error=reason)

        for task, (sub, dataset) in tasks.items():
            if task in pending or task.exception() is not None:
                counters.record(results[sub][dataset])

        return self._finish(run_id, run_date, results, counters, started, fatal_error=fatal_error)

    def _finish(
        self,
        run_id: str,
        run_date: date,
        results: Dict[str, Dict[Dataset, DatasetResult]],
        counters: _RunCounters,
        started: float,
        fatal_error: Optional[str] = None,
    ) -> CollectionSummary:
        ordered = {
            sub: {d: by_dataset[d] for d in DATASET_ORDER if d in by_dataset}
            for sub, by_dataset in results.items()
        }
        all_results = [r for by_dataset in ordered.values() for r in by_dataset.values()]
        status = compute_run_status(all_results, fatal=fatal_error is not None)

        summary = CollectionSummary(
            run_id=run_id,
            run_date=run_date,
            status=status,
            subscriptions=ordered,
            accepted=counters.accepted,
            rejected=counters.rejected,
            failed=counters.failed,
            skipped=counters.skipped,
            error=fatal_error,
        )

        duration = time.monotonic() - started
        JOB_RUNS.labels(job_name=JOB_NAME, status=status.value).inc()
        JOB_DURATION.labels(job_name=JOB_NAME).observe(duration)
        log = logger.error if status == RunStatus.FAILED else logger.info
        log(
            "collection_finished",
            status=status.value,
            accepted=summary.accepted,
            rejected=summary.rejected,
            failed_pairs=summary.failed,
            skipped_pairs=summary.skipped,
            duration_seconds=round(duration, 2),
        )
        return summary

    async def _fetch(self, subscription_id: str, dataset: Dataset, start: date, end: date, run_date: date):
        if dataset == Dataset.COSTS:
            return await self.source.get_costs(subscription_id, start, end)
        if dataset == Dataset.RESERVATIONS:
            return await self.source.get_reservations(subscription_id, start, end)
        if dataset == Dataset.BUDGETS:
            return await self.source.get_budgets(subscription_id, run_date)
        return await self.source.get_advisor_recommendations(subscription_id, run_date)

    async def _collect_pair(
        self,
        semaphore: asyncio.Semaphore,
        counters: _RunCounters,
        subscription_id: str,
        dataset: Dataset,
        start: date,
        end: date,
        run_date: date,
        run_id: str,
        collected_at: datetime,
    ) -> DatasetResult:
        """
        Fetch, validate and write one subscription x dataset pair.

        Raises:
            CredentialError, SinkError: fatal for the run.
        """
        async with semaphore:
            log = logger.bind(subscription_id=subscription_id, dataset=dataset.value)
            try:
                raw = await self.retry_client.execute(
                    lambda: self._fetch(subscription_id, dataset, start, end, run_date),
                    timeout=self.config.request_timeout_seconds,
                    description=f"get_{dataset.value}",
                    subscription_id=subscription_id,
                )
            except CredentialError:
                raise
            except SourceRejectionError as e:
                log.info("dataset_skipped", reason=e.message)
                return self._result(dataset, DatasetResult(status=DatasetStatus.SKIPPED, error=e.message), counters)
            except SourceError as e:
                log.error("dataset_failed", error_type=type(e).__name__, error=e.message)
                return self._result(dataset, DatasetResult(status=DatasetStatus.FAILED, error=e.message), counters)

            outcome = self.validator.validate_batch(dataset, raw, subscription_id=subscription_id)
            RECORDS_VALIDATED.labels(dataset=dataset.value, result="accepted").inc(len(outcome.accepted))
            RECORDS_VALIDATED.labels(dataset=dataset.value, result="rejected").inc(outcome.rejected)

            records = outcome.accepted
            if dataset == Dataset.COSTS:
                records = await self._prepare_costs(subscription_id, records)

            written = await self.sink.write_records(dataset, records, run_id=run_id, collected_at=collected_at)
            log.info("dataset_collected", fetched=len(raw), accepted=len(outcome.accepted),
                     rejected=outcome.rejected, written=written)
            return self._result(dataset, DatasetResult(
                status=DatasetStatus.SUCCEEDED,
                records_fetched=len(raw),
                records_accepted=len(outcome.accepted),
                records_rejected=outcome.rejected,
                records_written=written,
            ), counters)

    def _result(self, dataset: Dataset, result: DatasetResult, counters: _RunCounters) -> DatasetResult:
        DATASET_OUTCOMES.labels(dataset=dataset.value, status=result.status.value).inc()
        counters.record(result)
        return result

    async def _prepare_costs(self, subscription_id: str, records: List[CostRecord]) -> List[CostRecord]:
        """Tag excluded resources, join inventory when chargeback is on, merge duplicate keys."""
        inventory = {}
        if self.config.chargeback_analysis:
            try:
                inventory = await self.retry_client.execute(
                    lambda: self.source.get_resource_inventory(subscription_id),
                    timeout=self.config.request_timeout_seconds,
                    description="get_inventory",
                    subscription_id=subscription_id,
                )
            except CredentialError:
                raise
            except SourceError as e:
                # Costs are still written, just without tags
                logger.warning("inventory_unavailable", subscription_id=subscription_id, error=e.message)

        prepared = []
        for record in records:
            update = {"is_excluded_resource": self.classifier.is_excluded(record.resource_name)}
            item = inventory.get((record.resource_id or "").lower())
            if item:
                update["tags"] = item.get("tags") or {}
                if not record.location and item.get("location"):
                    update["location"] = item["location"]
            prepared.append(record.model_copy(update=update))
        return merge_cost_records(prepared)
