"""
Baseline & Anomaly Engine

Rolling per-subscription/service baselines over trailing periods of the same
length as the reporting period (weekly by default), and deviation flags for the
current period.

Statistics:
- mean and population standard deviation of the per-period totals
- a zero standard deviation is floored at a fraction of the mean (or an
  absolute floor when the mean is zero) so flat history never yields an
  infinite score
- a period counts as a sample only when the subscription has cost data in it;
  a service absent from a covered period counts as zero spend
- each subscription is baselined in its most common billing currency; rows in
  any other currency are left out
"""

from datetime import date, timedelta
from typing import Any, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
import structlog

from costpulse.core.pipeline_config import PipelineConfig
from costpulse.schemas.analysis import Anomaly, Baseline, Severity
from costpulse.services.costs.persistence import SinkService
from costpulse.services.scheduler.metrics import ANOMALIES_FLAGGED

logger = structlog.get_logger()

ZERO_STD_FLOOR_RATIO = 0.05
MIN_STD_FLOOR = 1.0


def floor_std(std_dev: float, mean: float) -> float:
    if std_dev > 0:
        return std_dev
    return max(abs(mean) * ZERO_STD_FLOOR_RATIO, MIN_STD_FLOOR)


def _dominant_currency(currencies: pd.Series) -> str:
    counts = currencies.value_counts()
    return min(counts.index, key=lambda code: (-counts[code], code))


def classify_severity(score: float, threshold: float) -> Severity:
    if score >= 2 * threshold:
        return Severity.HIGH
    if score >= 1.5 * threshold:
        return Severity.MEDIUM
    return Severity.LOW


def evaluate_observation(
    subscription_id: str,
    service_name: str,
    observed: float,
    mean: float,
    std_dev: float,
    sample_count: int,
    threshold: float = 2.0,
    min_samples: int = 3,
) -> Optional[Anomaly]:
    """
    Flag `observed` against a baseline.

    Returns None when history is insufficient or the deviation does not exceed
    the threshold.
    """
    if sample_count < min_samples:
        return None
    effective_std = floor_std(std_dev, mean)
    score = abs(observed - mean) / effective_std
    if score <= threshold:
        return None
    return Anomaly(
        subscription_id=subscription_id,
        service_name=service_name,
        observed_cost=round(observed, 4),
        baseline_mean=round(mean, 4),
        baseline_std_dev=round(std_dev, 4),
        deviation_score=round(score, 3),
        severity=classify_severity(score, threshold),
        sample_count=sample_count,
    )


class BaselineEngine:
    def __init__(self, sink: SinkService, config: PipelineConfig):
        self.sink = sink
        self.config = config

    @staticmethod
    def history_window(period_start: date, period_end: date, periods: int) -> Tuple[date, date]:
        span = (period_end - period_start).days + 1
        return period_start - timedelta(days=span * periods), period_start - timedelta(days=1)

    @staticmethod
    def compute(
        records: Iterable[Any],
        period_start: date,
        period_end: date,
        periods: int = 8,
        threshold: float = 2.0,
        min_samples: int = 3,
    ) -> Tuple[List[Baseline], List[Anomaly]]:
        """
        Pure computation over cost rows (ORM or schema objects).

        Excluded resources are dropped before any aggregation.
        """
        rows = [
            {
                "subscription_id": r.subscription_id,
                "service_name": r.service_name,
                "collection_date": r.collection_date,
                "cost": float(r.cost),
                "currency": r.currency,
            }
            for r in records
            if not r.is_excluded_resource
        ]
        if not rows:
            return [], []

        span = (period_end - period_start).days + 1
        window_start, window_end = BaselineEngine.history_window(period_start, period_end, periods)

        df = pd.DataFrame(rows)
        dominant = df.groupby("subscription_id")["currency"].agg(_dominant_currency)
        in_currency = df["currency"] == df["subscription_id"].map(dominant)
        if not in_currency.all():
            logger.warning(
                "baseline_mixed_currencies",
                subscriptions=sorted(str(s) for s in df.loc[~in_currency, "subscription_id"].unique()),
                rows_left_out=int((~in_currency).sum()),
            )
            df = df[in_currency].copy()
        offsets = df["collection_date"].map(lambda d: (period_start - d).days)
        # 0 = current period, 1..periods = trailing periods (1 is the most recent)
        df["bucket"] = np.where(offsets <= 0, 0, (offsets - 1) // span + 1)
        df = df[(df["collection_date"] <= period_end) & (df["bucket"] <= periods)]
        if df.empty:
            return [], []

        totals = df.groupby(["subscription_id", "service_name", "bucket"])["cost"].sum()
        coverage = df.groupby("subscription_id")["bucket"].apply(lambda b: sorted(set(b)))

        baselines: List[Baseline] = []
        anomalies: List[Anomaly] = []

        for (sub, service), per_bucket in totals.groupby(level=[0, 1]):
            by_bucket = per_bucket.droplevel([0, 1])
            covered = coverage[sub]
            history_buckets = [b for b in covered if b > 0]
            if not history_buckets:
                continue

            samples = np.array([float(by_bucket.get(b, 0.0)) for b in history_buckets])
            mean = float(samples.mean())
            std_dev = float(samples.std(ddof=0))
            baselines.append(Baseline(
                subscription_id=sub,
                service_name=service,
                window_start=window_start,
                window_end=window_end,
                mean_cost=round(mean, 4),
                std_dev_cost=round(std_dev, 4),
                sample_count=len(samples),
            ))

            if 0 not in covered:
                # No data for the current period yet; nothing to compare
                continue
            observed = float(by_bucket.get(0, 0.0))
            anomaly = evaluate_observation(sub, service, observed, mean, std_dev, len(samples),
                                           threshold=threshold, min_samples=min_samples)
            if anomaly:
                anomalies.append(anomaly)

        anomalies.sort(key=lambda a: a.deviation_score, reverse=True)
        return baselines, anomalies

    async def run(self, period_start: date, period_end: date, week_key: str) -> Tuple[List[Baseline], List[Anomaly]]:
        """Compute baselines and anomalies for the period and write both back to the sink."""
        window_start, _ = self.history_window(period_start, period_end, self.config.baseline_weeks)
        records = await self.sink.get_cost_records(window_start, period_end, include_excluded=False)

        baselines, anomalies = self.compute(
            records,
            period_start,
            period_end,
            periods=self.config.baseline_weeks,
            threshold=self.config.anomaly_threshold,
            min_samples=self.config.min_samples,
        )
        await self.sink.upsert_baselines(baselines)
        await self.sink.replace_anomalies(anomalies, period_start, period_end, week_key)

        for anomaly in anomalies:
            ANOMALIES_FLAGGED.labels(severity=anomaly.severity.value).inc()
        logger.info(
            "baseline_engine_complete",
            baselines=len(baselines),
            anomalies=len(anomalies),
            high=sum(1 for a in anomalies if a.severity == Severity.HIGH),
        )
        return baselines, anomalies
