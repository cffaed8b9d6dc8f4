import os
# Configure the process settings BEFORE any costpulse imports
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["KEY_VAULT_URL"] = ""

import pytest
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from costpulse.core.config import Settings
from costpulse.core.pipeline_config import PipelineConfig
from costpulse.db.session import create_engine, create_schema, create_session_maker
from costpulse.schemas.analysis import Dataset
from costpulse.schemas.costs import CostRecord
from costpulse.services.adapters.base import BillingSource
from costpulse.services.adapters.retry import RetryingClient, RetryPolicy
from costpulse.services.costs.persistence import SinkService


@pytest.fixture
def test_settings() -> Settings:
    return Settings(DATABASE_URL="sqlite+aiosqlite:///:memory:", TESTING=True)


@pytest.fixture
async def engine(test_settings):
    """Fresh in-memory sink per test."""
    engine = create_engine(test_settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sink(engine) -> SinkService:
    return SinkService(create_session_maker(engine))


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(
        subscription_ids=("sub-A", "sub-B"),
        recipients=("finops@example.com", "cto@example.com"),
        retry_max_attempts=3,
        retry_initial_delay=1.0,
        max_concurrency=1,
        run_timeout_seconds=30,
        request_timeout_seconds=5,
    )


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested waits without delaying."""

    def __init__(self):
        self.waits: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def retry_client(sleeper) -> RetryingClient:
    return RetryingClient(RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=60.0), sleep=sleeper,
                          rand=lambda: 0.0)


def make_cost(
    subscription_id: str = "sub-A",
    resource_name: str = "vm-app-01",
    service_name: str = "Microsoft.Compute",
    cost: Any = "10.00",
    collection_date: date = date(2025, 7, 23),
    meter_category: str = "Virtual Machines",
    **extra,
) -> CostRecord:
    return CostRecord(
        subscription_id=subscription_id,
        resource_name=resource_name,
        service_name=service_name,
        meter_category=meter_category,
        cost=Decimal(str(cost)),
        collection_date=collection_date,
        **extra,
    )


def raw_cost(subscription_id: str, resource_name: str, cost: Any, collection_date: date,
             meter_category: str = "Virtual Machines") -> Dict[str, Any]:
    return {
        "subscription_id": subscription_id,
        "resource_id": f"/subscriptions/{subscription_id}/resourceGroups/rg/providers/"
                       f"Microsoft.Compute/virtualMachines/{resource_name}",
        "resource_name": resource_name,
        "resource_group": "rg",
        "service_name": "Microsoft.Compute",
        "meter_category": meter_category,
        "cost": cost,
        "currency": "USD",
        "location": "westeurope",
        "collection_date": collection_date,
    }


class FakeBillingSource(BillingSource):
    """
    In-memory billing source.

    `data` maps (subscription_id, dataset) -> raw rows; `errors` maps the same
    key to an exception raised on every call.
    """

    def __init__(
        self,
        data: Optional[Dict[Tuple[str, Dataset], List[Dict[str, Any]]]] = None,
        errors: Optional[Dict[Tuple[str, Dataset], Exception]] = None,
        inventory: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
    ):
        self.data = data or {}
        self.errors = errors or {}
        self.inventory = inventory or {}
        self.calls: List[Tuple[str, Dataset]] = []

    async def _respond(self, subscription_id: str, dataset: Dataset):
        self.calls.append((subscription_id, dataset))
        error = self.errors.get((subscription_id, dataset))
        if error is not None:
            raise error
        return list(self.data.get((subscription_id, dataset), []))

    async def get_costs(self, subscription_id, start_date, end_date):
        return await self._respond(subscription_id, Dataset.COSTS)

    async def get_reservations(self, subscription_id, start_date, end_date):
        return await self._respond(subscription_id, Dataset.RESERVATIONS)

    async def get_budgets(self, subscription_id, as_of):
        return await self._respond(subscription_id, Dataset.BUDGETS)

    async def get_advisor_recommendations(self, subscription_id, as_of):
        return await self._respond(subscription_id, Dataset.ADVISOR)

    async def get_resource_inventory(self, subscription_id):
        return self.inventory.get(subscription_id, {})


@pytest.fixture
def fake_source_factory():
    return FakeBillingSource


@pytest.fixture
def collected_at() -> datetime:
    return datetime(2025, 7, 24, 6, 0)


@pytest.fixture
def cost_factory():
    return make_cost


@pytest.fixture
def raw_cost_factory():
    return raw_cost
