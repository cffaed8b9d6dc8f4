import pytest
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from costpulse.core.config import Settings
from costpulse.schemas.analysis import Dataset
from costpulse.services.adapters.azure import (
    UNASSIGNED_RESOURCE,
    AzureBillingSource,
    map_budget,
    map_query_rows,
    map_recommendation,
    parse_resource_id,
)
from costpulse.services.costs.validator import RecordValidator

VM_ID = "/subscriptions/sub-A/resourceGroups/rg-app/providers/Microsoft.Compute/virtualMachines/vm-app-01"


class AsyncIter:
    """Async pageable stand-in for SDK list() results."""

    def __init__(self, items):
        self.items = list(items)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.items:
            raise StopAsyncIteration
        return self.items.pop(0)


def _columns(*names):
    return [SimpleNamespace(name=n) for n in names]


def test_parse_resource_id():
    parsed = parse_resource_id(VM_ID)

    assert parsed == {"resource_name": "vm-app-01", "resource_group": "rg-app", "provider": "Microsoft.Compute"}
    assert parse_resource_id(None)["resource_name"] is None


def test_map_query_rows_by_column_name():
    columns = _columns("PreTaxCost", "UsageDate", "ResourceId", "MeterCategory", "Currency")
    rows = [
        [12.5, 20250723, VM_ID, "Virtual Machines", "USD"],
        [0.75, 20250723, "", "Bandwidth", "USD"],
    ]

    records = map_query_rows(columns, rows, "sub-A")

    assert records[0]["resource_name"] == "vm-app-01"
    assert records[0]["service_name"] == "Microsoft.Compute"
    assert records[0]["cost"] == "12.5"
    assert records[0]["collection_date"] == date(2025, 7, 23)
    # Usage without a resource (support plans, bandwidth) keeps the meter category as service
    assert records[1]["resource_name"] == UNASSIGNED_RESOURCE
    assert records[1]["service_name"] == "Bandwidth"


def test_mapped_rows_pass_validation():
    columns = _columns("ResourceId", "MeterCategory", "PreTaxCost", "Currency", "UsageDate")
    raw = map_query_rows(columns, [[VM_ID, "Virtual Machines", 12.5, "USD", 20250723]], "sub-A")

    outcome = RecordValidator().validate_batch(Dataset.COSTS, raw)

    assert outcome.rejected == 0
    assert outcome.accepted[0].resource_group == "rg-app"


def test_map_budget_and_recommendation():
    budget = SimpleNamespace(
        name="monthly-cap", amount=1000.0, time_grain="Monthly",
        current_spend=SimpleNamespace(amount=420.25, unit="EUR"), forecast_spend=None,
    )
    rec = SimpleNamespace(
        name="rec-1", category="Cost", impact="High", impacted_field="Microsoft.Compute/virtualMachines",
        impacted_value="vm-app-01",
        short_description=SimpleNamespace(problem="Underutilized VM", solution="Right-size or shutdown"),
        extended_properties={"annualSavingsAmount": "1200", "savingsCurrency": "USD"},
    )

    mapped_budget = map_budget(budget, "sub-A", date(2025, 7, 24))
    mapped_rec = map_recommendation(rec, "sub-A", date(2025, 7, 24))

    assert mapped_budget["current_spend"] == "420.25"
    assert mapped_budget["currency"] == "EUR"
    assert mapped_budget["forecast_spend"] is None
    assert mapped_rec["potential_savings"] == "1200"
    assert mapped_rec["solution"] == "Right-size or shutdown"


@pytest.mark.asyncio
async def test_get_costs_queries_subscription_scope():
    response = SimpleNamespace(
        columns=_columns("PreTaxCost", "UsageDate", "ResourceId", "MeterCategory", "Currency"),
        rows=[[12.5, 20250723, VM_ID, "Virtual Machines", "USD"]],
    )
    client = MagicMock()
    client.query.usage = AsyncMock(return_value=response)

    with patch("costpulse.services.adapters.azure.CostManagementClient") as MockClient:
        MockClient.return_value.__aenter__.return_value = client
        source = AzureBillingSource(Settings(TESTING=True), credential=MagicMock())

        records = await source.get_costs("sub-A", date(2025, 7, 23), date(2025, 7, 23))

    assert len(records) == 1
    kwargs = client.query.usage.call_args.kwargs
    assert kwargs["scope"] == "subscriptions/sub-A"
    period = kwargs["parameters"].time_period
    assert period.from_property == datetime(2025, 7, 23, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_get_budgets_iterates_pages():
    client = MagicMock()
    client.budgets.list.return_value = AsyncIter([
        SimpleNamespace(name="cap", amount=100.0, time_grain="Monthly",
                        current_spend=SimpleNamespace(amount=50.0, unit="USD"), forecast_spend=None),
    ])

    with patch("costpulse.services.adapters.azure.ConsumptionManagementClient") as MockClient:
        MockClient.return_value.__aenter__.return_value = client
        source = AzureBillingSource(Settings(TESTING=True), credential=MagicMock())

        records = await source.get_budgets("sub-A", date(2025, 7, 24))

    assert records[0]["budget_name"] == "cap"
    client.budgets.list.assert_called_once_with(scope="/subscriptions/sub-A")


@pytest.mark.asyncio
async def test_get_resource_inventory_lowercases_ids():
    client = MagicMock()
    client.resources.list.return_value = AsyncIter([
        SimpleNamespace(id=VM_ID, location="westeurope", tags={"CostCenter": "Finance"}),
    ])

    with patch("costpulse.services.adapters.azure.ResourceManagementClient") as MockClient:
        MockClient.return_value.__aenter__.return_value = client
        source = AzureBillingSource(Settings(TESTING=True), credential=MagicMock())

        inventory = await source.get_resource_inventory("sub-A")

    assert inventory[VM_ID.lower()] == {"location": "westeurope", "tags": {"CostCenter": "Finance"}}
