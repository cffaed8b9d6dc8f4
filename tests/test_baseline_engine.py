import pytest
from datetime import date, timedelta

from costpulse.schemas.analysis import Dataset, Severity
from costpulse.services.analysis.baseline import (
    BaselineEngine,
    classify_severity,
    evaluate_observation,
    floor_std,
)

PERIOD_START = date(2025, 7, 21)
PERIOD_END = date(2025, 7, 27)


def _weekly_history(cost_factory, weekly_costs, current=None, service="Microsoft.Compute", sub="sub-A"):
    """One cost row per trailing week (oldest first), plus the current week when given."""
    records = []
    for i, amount in enumerate(reversed(weekly_costs), start=1):
        records.append(cost_factory(subscription_id=sub, service_name=service, cost=amount,
                                    collection_date=PERIOD_START - timedelta(days=7 * i)))
    if current is not None:
        records.append(cost_factory(subscription_id=sub, service_name=service, cost=current,
                                    collection_date=PERIOD_START + timedelta(days=2)))
    return records


def test_observation_beyond_threshold_is_flagged(cost_factory):
    records = _weekly_history(cost_factory, [90, 110, 90, 110], current=125)

    baselines, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    assert len(baselines) == 1
    assert baselines[0].mean_cost == 100.0
    assert baselines[0].std_dev_cost == 10.0
    assert baselines[0].sample_count == 4
    assert len(anomalies) == 1
    assert anomalies[0].deviation_score == 2.5
    assert anomalies[0].severity == Severity.LOW


def test_observation_within_threshold_is_not_flagged(cost_factory):
    records = _weekly_history(cost_factory, [90, 110, 90, 110], current=105)

    _, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    assert anomalies == []


def test_insufficient_history_never_flags(cost_factory):
    records = _weekly_history(cost_factory, [100, 100], current=10_000)

    baselines, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END, min_samples=3)

    assert baselines[0].sample_count == 2
    assert anomalies == []


def test_flat_history_uses_floored_deviation(cost_factory):
    records = _weekly_history(cost_factory, [200, 200, 200, 200], current=240)

    _, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    # std floored at 5% of the mean (10.0): score 4.0 -> high
    assert anomalies[0].deviation_score == 4.0
    assert anomalies[0].severity == Severity.HIGH


def test_excluded_resources_never_enter_baselines(cost_factory):
    records = _weekly_history(cost_factory, [90, 110, 90, 110], current=100)
    records.append(cost_factory(resource_name="avd-vd-pool01", cost=5000, is_excluded_resource=True,
                                collection_date=PERIOD_START + timedelta(days=1)))

    _, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    assert anomalies == []


def test_service_missing_from_covered_week_counts_as_zero(cost_factory):
    records = _weekly_history(cost_factory, [100, 100, 100, 100], current=100)
    # Storage appears only in the current week
    records.append(cost_factory(service_name="Microsoft.Storage", cost=80,
                                collection_date=PERIOD_START + timedelta(days=1)))

    baselines, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    storage = next(b for b in baselines if b.service_name == "Microsoft.Storage")
    assert storage.mean_cost == 0.0
    assert storage.sample_count == 4
    assert [a.service_name for a in anomalies] == ["Microsoft.Storage"]


def test_severity_and_floor_helpers():
    assert classify_severity(2.1, 2.0) == Severity.LOW
    assert classify_severity(3.0, 2.0) == Severity.MEDIUM
    assert classify_severity(4.0, 2.0) == Severity.HIGH
    assert floor_std(0.0, 0.0) == 1.0
    assert floor_std(3.0, 100.0) == 3.0
    assert evaluate_observation("sub-A", "svc", 130, 100, 10, sample_count=2) is None


@pytest.mark.asyncio
async def test_run_persists_baselines_and_anomalies(sink, config, cost_factory, collected_at):
    records = _weekly_history(cost_factory, [90, 110, 90, 110], current=125)
    await sink.write_records(Dataset.COSTS, records, run_id="run-1", collected_at=collected_at)

    engine = BaselineEngine(sink, config)
    baselines, anomalies = await engine.run(PERIOD_START, PERIOD_END, "2025-W30")

    assert len(baselines) == 1
    assert len(anomalies) == 1
    # Re-running the same week supersedes instead of duplicating
    await engine.run(PERIOD_START, PERIOD_END, "2025-W30")


@pytest.mark.asyncio
async def test_rerun_drops_flags_that_no_longer_hold(sink, config, cost_factory, collected_at):
    await sink.write_records(Dataset.COSTS, _weekly_history(cost_factory, [90, 110, 90, 110], current=125),
                             run_id="run-1", collected_at=collected_at)
    engine = BaselineEngine(sink, config)
    await engine.run(PERIOD_START, PERIOD_END, "2025-W30")
    assert len(await sink.get_anomalies("2025-W30")) == 1

    # Late-arriving correction brings the week back within range
    await sink.write_records(Dataset.COSTS, _weekly_history(cost_factory, [90, 110, 90, 110], current=105),
                             run_id="run-2", collected_at=collected_at)
    _, anomalies = await engine.run(PERIOD_START, PERIOD_END, "2025-W30")

    assert anomalies == []
    assert await sink.get_anomalies("2025-W30") == []


def test_baseline_ignores_rows_outside_subscription_currency(cost_factory):
    records = _weekly_history(cost_factory, [90, 110, 90, 110], current=125)
    records.append(cost_factory(resource_name="vm-eur", cost="5000", currency="EUR",
                                collection_date=PERIOD_START - timedelta(days=7)))

    baselines, anomalies = BaselineEngine.compute(records, PERIOD_START, PERIOD_END)

    assert baselines[0].mean_cost == 100.0
    assert len(anomalies) == 1
