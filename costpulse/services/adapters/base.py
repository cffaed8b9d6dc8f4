from abc import ABC, abstractmethod
from datetime import date
from typing import List, Dict, Any


class BillingSource(ABC):
    """
    Abstract read-only billing/usage source keyed by subscription and date range.

    Every method returns raw record maps. Values are not trusted: they go through
    the Record Validator before reaching the sink.
    """

    @abstractmethod
    async def get_costs(self, subscription_id: str, start_date: date, end_date: date) -> List[Dict[str, Any]]:
        """Cost by resource and meter category, one map per usage row."""
        pass

    @abstractmethod
    async def get_reservations(
        self, subscription_id: str, start_date: date, end_date: date
    ) -> List[Dict[str, Any]]:
        """Daily reservation utilization summaries."""
        pass

    @abstractmethod
    async def get_budgets(self, subscription_id: str, as_of: date) -> List[Dict[str, Any]]:
        """Budgets with their current and forecast spend."""
        pass

    @abstractmethod
    async def get_advisor_recommendations(self, subscription_id: str, as_of: date) -> List[Dict[str, Any]]:
        """Advisor recommendations (all categories)."""
        pass

    async def get_resource_inventory(self, subscription_id: str) -> Dict[str, Dict[str, Any]]:
        """Lower-cased resource ID -> {"location", "tags"}. Used for chargeback attribution."""
        return {}

    async def close(self) -> None:
        return None
