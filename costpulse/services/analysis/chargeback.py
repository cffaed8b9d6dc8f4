"""
Chargeback Analyzer

Attributes period cost to organizational units through a configured tag key
and reports tag compliance. Excluded (virtual desktop) resources are left out.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Iterable

import structlog

logger = structlog.get_logger()

UNALLOCATED = "Unallocated"
TOP_UNTAGGED = 10


class ChargebackAnalyzer:
    def __init__(self, tag_key: str = "CostCenter"):
        self.tag_key = tag_key

    def _unit_for(self, tags: Dict[str, str]) -> str:
        # Tag keys are case-insensitive in Azure
        wanted = self.tag_key.lower()
        for key, value in (tags or {}).items():
            if key.lower() == wanted and value and str(value).strip():
                return str(value).strip()
        return UNALLOCATED

    def analyze(self, records: Iterable[Any]) -> Dict[str, Any]:
        by_unit: Dict[str, Decimal] = defaultdict(Decimal)
        untagged_resources: Dict[tuple, Decimal] = defaultdict(Decimal)
        tagged_resources = set()
        total = Decimal("0")

        for r in records:
            if r.is_excluded_resource:
                continue
            unit = self._unit_for(r.tags)
            by_unit[unit] += r.cost
            total += r.cost
            key = (r.subscription_id, r.resource_name)
            if unit == UNALLOCATED:
                untagged_resources[key] += r.cost
            else:
                tagged_resources.add(key)

        untagged_cost = by_unit.get(UNALLOCATED, Decimal("0"))
        resource_count = len(tagged_resources | set(untagged_resources))
        compliance = (
            round(float((total - untagged_cost) / total * 100), 1) if total > 0 else 100.0
        )
        top_untagged = sorted(untagged_resources.items(), key=lambda item: item[1], reverse=True)[:TOP_UNTAGGED]

        result = {
            "tag_key": self.tag_key,
            "total_cost": total,
            "by_unit": dict(sorted(by_unit.items(), key=lambda item: item[1], reverse=True)),
            "untagged_cost": untagged_cost,
            "untagged_resource_count": len(untagged_resources),
            "resource_count": resource_count,
            "compliance_percent": compliance,
            "top_untagged": [
                {"subscription_id": sub, "resource_name": name, "cost": cost}
                for (sub, name), cost in top_untagged
            ],
        }
        logger.info(
            "chargeback_analysis_complete",
            tag_key=self.tag_key,
            units=len(by_unit),
            compliance_percent=compliance,
        )
        return result
