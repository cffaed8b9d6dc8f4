"""
Cloud Cost and Usage Schemas - Normalization Layer

Validated, typed records produced by the Record Validator and consumed by the
sink, the analysis engine and the report.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Optional
from pydantic import BaseModel, Field


class CostRecord(BaseModel):
    """Normalized cost entry for one resource/meter category on one collection date."""
    subscription_id: str
    resource_name: str
    service_name: str
    meter_category: str
    cost: Decimal = Field(..., ge=0, description="Pre-tax cost in the billing currency")
    currency: str = "USD"
    location: Optional[str] = None
    collection_date: date
    is_excluded_resource: bool = False
    resource_id: Optional[str] = None
    resource_group: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def natural_key(self) -> tuple:
        return (self.subscription_id, self.resource_name, self.collection_date, self.meter_category)


class BudgetRecord(BaseModel):
    subscription_id: str
    budget_name: str
    amount: Decimal = Field(..., ge=0)
    current_spend: Decimal = Field(..., ge=0)
    forecast_spend: Optional[Decimal] = Field(None, ge=0)
    time_grain: str = "Monthly"
    currency: str = "USD"
    collection_date: date

    @property
    def utilization_percent(self) -> Decimal:
        if self.amount == 0:
            return Decimal("0")
        return (self.current_spend / self.amount * 100).quantize(Decimal("0.1"))


class ReservationRecord(BaseModel):
    subscription_id: str
    reservation_id: str
    sku_name: Optional[str] = None
    avg_utilization_percent: Decimal = Field(..., ge=0)
    min_utilization_percent: Optional[Decimal] = Field(None, ge=0)
    max_utilization_percent: Optional[Decimal] = Field(None, ge=0)
    reserved_hours: Optional[Decimal] = Field(None, ge=0)
    used_hours: Optional[Decimal] = Field(None, ge=0)
    usage_date: date
    collection_date: date


class AdvisorRecord(BaseModel):
    subscription_id: str
    recommendation_id: str
    category: str
    impact: str
    impacted_field: Optional[str] = None
    impacted_value: Optional[str] = None
    problem: Optional[str] = None
    solution: Optional[str] = None
    potential_savings: Optional[Decimal] = Field(None, ge=0)
    savings_currency: Optional[str] = None
    collection_date: date
