"""
Run results and analysis schemas.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class Dataset(str, Enum):
    COSTS = "costs"
    RESERVATIONS = "reservations"
    BUDGETS = "budgets"
    ADVISOR = "advisor"


class DatasetStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"      # SourceRejection: unsupported for this subscription
    FAILED = "failed"
    DISABLED = "disabled"    # turned off by feature flag


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_SKIPS = "completed_with_skips"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    FAILED = "failed"


class DatasetResult(BaseModel):
    status: DatasetStatus
    records_fetched: int = 0
    records_accepted: int = 0
    records_rejected: int = 0
    records_written: int = 0
    error: Optional[str] = None


class CollectionSummary(BaseModel):
    run_id: str
    run_date: date
    status: RunStatus
    subscriptions: Dict[str, Dict[Dataset, DatasetResult]] = Field(default_factory=dict)
    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None

    def datasets_with_status(self, subscription_id: str, status: DatasetStatus) -> List[Dataset]:
        return [d for d, r in self.subscriptions.get(subscription_id, {}).items() if r.status == status]


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Baseline(BaseModel):
    subscription_id: str
    service_name: str
    window_start: date
    window_end: date
    mean_cost: float
    std_dev_cost: float
    sample_count: int


class Anomaly(BaseModel):
    subscription_id: str
    service_name: str
    observed_cost: float
    baseline_mean: float
    baseline_std_dev: float
    deviation_score: float
    severity: Severity
    sample_count: int


class CostBreakdown(BaseModel):
    """Aggregated views for one reporting period (excluded resources left out of totals)."""
    period_start: date
    period_end: date
    total_cost: Decimal = Decimal("0")
    currency: str = "USD"
    excluded_cost: Decimal = Decimal("0")
    excluded_resource_count: int = 0
    record_count: int = 0
    by_service: Dict[str, Decimal] = Field(default_factory=dict)
    by_subscription: Dict[str, Decimal] = Field(default_factory=dict)
    by_location: Dict[str, Decimal] = Field(default_factory=dict)
    top_resources: List[Dict[str, Any]] = Field(default_factory=list)
    previous_total_cost: Optional[Decimal] = None
    # Spend billed in currencies other than `currency`, not included in any total
    other_currency_costs: Dict[str, Decimal] = Field(default_factory=dict)

    @property
    def change_percent(self) -> Optional[float]:
        if not self.previous_total_cost:
            return None
        return round(float((self.total_cost - self.previous_total_cost) / self.previous_total_cost * 100), 1)


class NarrativeSection(BaseModel):
    name: str     # summary, anomalies, recommendations, forecast
    title: str
    body: str


class AnalysisReport(BaseModel):
    """Transient, assembled once per weekly run and not mutated after composition."""
    period_start: date
    period_end: date
    week_key: str
    breakdown: CostBreakdown
    narrative_sections: List[NarrativeSection]
    anomalies: List[Anomaly] = Field(default_factory=list)
    budgets: List[Dict[str, Any]] = Field(default_factory=list)
    recommendations: List[Dict[str, Any]] = Field(default_factory=list)
    forecast: Optional[Dict[str, Any]] = None
    chargeback_summary: Optional[Dict[str, Any]] = None
    ai_available: bool = True

    model_config = {"frozen": True}


class AnalysisStatus(str, Enum):
    SENT = "sent"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"


class AnalysisRunResult(BaseModel):
    run_id: str
    week_key: str
    period_start: date
    period_end: date
    status: AnalysisStatus
    anomalies: List[Anomaly] = Field(default_factory=list)
    baselines_computed: int = 0
    ai_available: bool = False
    email_sent: bool = False
    error: Optional[str] = None
