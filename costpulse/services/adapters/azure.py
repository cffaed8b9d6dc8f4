from datetime import date, datetime, time, timezone
from typing import List, Dict, Any, Optional
import structlog
from azure.identity.aio import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.advisor.aio import AdvisorManagementClient
from azure.mgmt.consumption.aio import ConsumptionManagementClient
from azure.mgmt.costmanagement.aio import CostManagementClient
from azure.mgmt.costmanagement.models import (
    QueryAggregation, QueryDataset, QueryDefinition, QueryGrouping, QueryTimePeriod
)
from azure.mgmt.resource.resources.aio import ResourceManagementClient

from costpulse.core.config import Settings
from costpulse.services.adapters.base import BillingSource

logger = structlog.get_logger()

UNASSIGNED_RESOURCE = "(unassigned)"


def _first(obj: Any, *names: str) -> Any:
    """First non-empty attribute among names (SDK model fields vary by API version)."""
    for name in names:
        value = getattr(obj, name, None)
        if value not in (None, ""):
            return value
    return None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return None


def _plain(value: Any) -> Any:
    """Keep numbers as they come; SDK floats are stringified for exact Decimal parsing."""
    if isinstance(value, float):
        return str(value)
    return value


def parse_resource_id(resource_id: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Split an ARM resource ID into name, resource group and provider namespace.

    /subscriptions/s/resourceGroups/rg/providers/Microsoft.Compute/virtualMachines/vm-1
    -> {"resource_name": "vm-1", "resource_group": "rg", "provider": "Microsoft.Compute"}
    """
    parts = [p for p in (resource_id or "").split("/") if p]
    lowered = [p.lower() for p in parts]
    group = parts[lowered.index("resourcegroups") + 1] if "resourcegroups" in lowered[:-1] else None
    provider = parts[lowered.index("providers") + 1] if "providers" in lowered[:-1] else None
    return {"resource_name": parts[-1] if parts else None, "resource_group": group, "provider": provider}


def map_query_rows(columns: List[Any], rows: List[List[Any]], subscription_id: str) -> List[Dict[str, Any]]:
    """
    Map Cost Management query rows into raw cost record maps.

    Column order depends on the query, so values are looked up by column name.
    """
    names = [c.name for c in columns]
    records = []
    for row in rows:
        values = dict(zip(names, row))
        resource_id = values.get("ResourceId") or None
        parsed = parse_resource_id(resource_id)
        meter_category = values.get("MeterCategory")
        usage_date = values.get("UsageDate")
        records.append({
            "subscription_id": subscription_id,
            "resource_id": resource_id,
            "resource_name": parsed["resource_name"] or UNASSIGNED_RESOURCE,
            "resource_group": parsed["resource_group"],
            "service_name": parsed["provider"] or meter_category,
            "meter_category": meter_category,
            "cost": _plain(values.get("PreTaxCost", values.get("Cost"))),
            "currency": values.get("Currency"),
            "location": values.get("ResourceLocation"),
            "collection_date": (
                datetime.strptime(str(usage_date).strip(), "%Y%m%d").date() if usage_date is not None else None
            ),
        })
    return records


def map_budget(budget: Any, subscription_id: str, as_of: date) -> Dict[str, Any]:
    current = getattr(budget, "current_spend", None)
    forecast = getattr(budget, "forecast_spend", None)
    return {
        "subscription_id": subscription_id,
        "budget_name": budget.name,
        "amount": _plain(budget.amount),
        "current_spend": _plain(getattr(current, "amount", None) if current is not None else 0),
        "forecast_spend": _plain(getattr(forecast, "amount", None)) if forecast is not None else None,
        "time_grain": str(getattr(budget, "time_grain", None) or "Monthly"),
        "currency": (getattr(current, "unit", None) if current is not None else None) or "USD",
        "collection_date": as_of,
    }


def map_reservation_summary(summary: Any, subscription_id: str, as_of: date) -> Dict[str, Any]:
    return {
        "subscription_id": subscription_id,
        "reservation_id": _first(summary, "reservation_id", "reservation_order_id"),
        "sku_name": _first(summary, "sku_name"),
        "avg_utilization_percent": _plain(_first(summary, "avg_utilization_percentage")),
        "min_utilization_percent": _plain(_first(summary, "min_utilization_percentage")),
        "max_utilization_percent": _plain(_first(summary, "max_utilization_percentage")),
        "reserved_hours": _plain(_first(summary, "reserved_hours")),
        "used_hours": _plain(_first(summary, "used_hours")),
        "usage_date": _as_date(_first(summary, "usage_date")),
        "collection_date": as_of,
    }


def map_recommendation(rec: Any, subscription_id: str, as_of: date) -> Dict[str, Any]:
    short = getattr(rec, "short_description", None)
    extended = getattr(rec, "extended_properties", None) or {}
    savings = extended.get("annualSavingsAmount") or extended.get("savingsAmount")
    return {
        "subscription_id": subscription_id,
        "recommendation_id": rec.name,
        "category": str(rec.category) if rec.category else None,
        "impact": str(rec.impact) if rec.impact else None,
        "impacted_field": rec.impacted_field,
        "impacted_value": rec.impacted_value,
        "problem": getattr(short, "problem", None),
        "solution": getattr(short, "solution", None),
        "potential_savings": savings,
        "savings_currency": extended.get("savingsCurrency"),
        "collection_date": as_of,
    }


class AzureBillingSource(BillingSource):
    """
    Azure billing source using the official Azure SDK (async clients).

    - Costs: Cost Management query, daily PreTaxCost by resource and meter category
    - Reservations: Consumption reservation summaries (daily grain)
    - Budgets: Consumption budgets at subscription scope
    - Advisor: Advisor recommendations
    - Inventory: Resource Manager resource listing (location and tags)
    """

    def __init__(self, settings: Settings, credential=None):
        self.settings = settings
        self._credential = credential

    def _get_credentials(self):
        if not self._credential:
            if self.settings.AZURE_TENANT_ID and self.settings.AZURE_CLIENT_ID and self.settings.AZURE_CLIENT_SECRET:
                self._credential = ClientSecretCredential(
                    tenant_id=self.settings.AZURE_TENANT_ID,
                    client_id=self.settings.AZURE_CLIENT_ID,
                    client_secret=self.settings.AZURE_CLIENT_SECRET,
                )
            else:
                # Managed identity on the automation host
                self._credential = DefaultAzureCredential()
        return self._credential

    async def get_costs(self, subscription_id: str, start_date: date, end_date: date) -> List[Dict[str, Any]]:
        # The query API allows two group-by dimensions; location comes from the resource inventory.
        query_definition = QueryDefinition(
            type="ActualCost",
            timeframe="Custom",
            time_period=QueryTimePeriod(
                from_property=datetime.combine(start_date, time.min, tzinfo=timezone.utc),
                to=datetime.combine(end_date, time.max, tzinfo=timezone.utc),
            ),
            dataset=QueryDataset(
                granularity="Daily",
                aggregation={"totalCost": QueryAggregation(name="PreTaxCost", function="Sum")},
                grouping=[
                    QueryGrouping(type="Dimension", name="ResourceId"),
                    QueryGrouping(type="Dimension", name="MeterCategory"),
                ],
            ),
        )
        async with CostManagementClient(credential=self._get_credentials()) as client:
            response = await client.query.usage(scope=f"subscriptions/{subscription_id}", parameters=query_definition)

        records = map_query_rows(response.columns, response.rows, subscription_id) if response and response.rows else []
        logger.info("azure_costs_fetched", subscription_id=subscription_id, rows=len(records))
        return records

    async def get_reservations(
        self, subscription_id: str, start_date: date, end_date: date
    ) -> List[Dict[str, Any]]:
        records = []
        async with ConsumptionManagementClient(self._get_credentials(), subscription_id) as client:
            summaries = client.reservations_summaries.list(
                resource_scope=f"subscriptions/{subscription_id}",
                grain="daily",
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
            async for summary in summaries:
                records.append(map_reservation_summary(summary, subscription_id, end_date))
        logger.info("azure_reservations_fetched", subscription_id=subscription_id, rows=len(records))
        return records

    async def get_budgets(self, subscription_id: str, as_of: date) -> List[Dict[str, Any]]:
        records = []
        async with ConsumptionManagementClient(self._get_credentials(), subscription_id) as client:
            async for budget in client.budgets.list(scope=f"/subscriptions/{subscription_id}"):
                records.append(map_budget(budget, subscription_id, as_of))
        logger.info("azure_budgets_fetched", subscription_id=subscription_id, rows=len(records))
        return records

    async def get_advisor_recommendations(self, subscription_id: str, as_of: date) -> List[Dict[str, Any]]:
        records = []
        async with AdvisorManagementClient(self._get_credentials(), subscription_id) as client:
            async for rec in client.recommendations.list():
                records.append(map_recommendation(rec, subscription_id, as_of))
        logger.info("azure_advisor_fetched", subscription_id=subscription_id, rows=len(records))
        return records

    async def get_resource_inventory(self, subscription_id: str) -> Dict[str, Dict[str, Any]]:
        inventory = {}
        async with ResourceManagementClient(self._get_credentials(), subscription_id) as client:
            async for resource in client.resources.list():
                inventory[resource.id.lower()] = {
                    "location": resource.location,
                    "tags": dict(resource.tags or {}),
                }
        logger.info("azure_inventory_fetched", subscription_id=subscription_id, resources=len(inventory))
        return inventory

    async def close(self) -> None:
        if self._credential is not None:
            await self._credential.close()
            self._credential = None

