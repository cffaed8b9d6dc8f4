from collections import Counter, defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import structlog

from costpulse.schemas.analysis import CostBreakdown
from costpulse.services.costs.persistence import SinkService

logger = structlog.get_logger()

TOP_RESOURCES = 10
DEFAULT_CURRENCY = "USD"


def _sorted_desc(totals: Dict[str, Decimal]) -> Dict[str, Decimal]:
    return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))


def reporting_currency(records: Iterable[Any]) -> str:
    """Currency of most rows; ties go to the alphabetically first code."""
    counts = Counter(r.currency for r in records)
    if not counts:
        return DEFAULT_CURRENCY
    return min(counts, key=lambda code: (-counts[code], code))


class CostAggregator:
    """Centralizes cost aggregation for the weekly report."""

    @staticmethod
    def build_breakdown(
        records: Iterable[Any],
        period_start: date,
        period_end: date,
        previous_total: Optional[Decimal] = None,
        top_n: int = TOP_RESOURCES,
    ) -> CostBreakdown:
        """
        Aggregate cost rows into totals by service, subscription and location.

        Rows flagged as excluded (virtual-desktop resources) are reported
        separately and never counted in the totals. Totals are kept in a single
        reporting currency; rows billed in any other currency are summed per
        currency into `other_currency_costs` instead.
        """
        records = list(records)
        included = [r for r in records if not r.is_excluded_resource]
        currency = reporting_currency(included or records)

        total = Decimal("0")
        excluded_cost = Decimal("0")
        excluded_resources = set()
        other_currency_costs: Dict[str, Decimal] = defaultdict(Decimal)
        by_service: Dict[str, Decimal] = defaultdict(Decimal)
        by_subscription: Dict[str, Decimal] = defaultdict(Decimal)
        by_location: Dict[str, Decimal] = defaultdict(Decimal)
        by_resource: Dict[tuple, Decimal] = defaultdict(Decimal)
        count = 0

        for r in records:
            if r.is_excluded_resource:
                excluded_resources.add((r.subscription_id, r.resource_name))
                if r.currency == currency:
                    excluded_cost += r.cost
                continue
            if r.currency != currency:
                other_currency_costs[r.currency] += r.cost
                continue
            count += 1
            total += r.cost
            by_service[r.service_name] += r.cost
            by_subscription[r.subscription_id] += r.cost
            by_location[r.location or "Unknown"] += r.cost
            by_resource[(r.subscription_id, r.resource_name, r.service_name)] += r.cost

        if other_currency_costs:
            logger.warning("mixed_currencies_in_period", reporting_currency=currency,
                           left_out=sorted(other_currency_costs))

        top = sorted(by_resource.items(), key=lambda item: item[1], reverse=True)[:top_n]

        return CostBreakdown(
            period_start=period_start,
            period_end=period_end,
            total_cost=total,
            currency=currency,
            excluded_cost=excluded_cost,
            excluded_resource_count=len(excluded_resources),
            record_count=count,
            by_service=_sorted_desc(by_service),
            by_subscription=_sorted_desc(by_subscription),
            by_location=_sorted_desc(by_location),
            top_resources=[
                {"subscription_id": sub, "resource_name": name, "service_name": service, "cost": cost}
                for (sub, name, service), cost in top
            ],
            previous_total_cost=previous_total,
            other_currency_costs=dict(sorted(other_currency_costs.items())),
        )

    @staticmethod
    async def get_breakdown(sink: SinkService, period_start: date, period_end: date) -> CostBreakdown:
        """Breakdown for the period, compared against the preceding period of equal length."""
        records = await sink.get_cost_records(period_start, period_end)
        breakdown = CostAggregator.build_breakdown(records, period_start, period_end)

        span = (period_end - period_start).days + 1
        prev_end = period_start - timedelta(days=1)
        prev_start = prev_end - timedelta(days=span - 1)
        previous = [
            r for r in await sink.get_cost_records(prev_start, prev_end, include_excluded=False)
            if r.currency == breakdown.currency
        ]
        if previous:
            breakdown = breakdown.model_copy(
                update={"previous_total_cost": sum((r.cost for r in previous), Decimal("0"))}
            )

        logger.info(
            "cost_breakdown_built",
            period_start=str(period_start),
            period_end=str(period_end),
            total_cost=str(breakdown.total_cost),
            currency=breakdown.currency,
            records=breakdown.record_count,
            excluded_resources=breakdown.excluded_resource_count,
        )
        return breakdown
