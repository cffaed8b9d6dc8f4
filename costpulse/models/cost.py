"""
Collected datasets: cost, budget, reservation and advisor records.

Rows are immutable once written and keyed by their natural uniqueness key so
concurrent writers can upsert without ordering. Retention (365 days) belongs to
the sink; the pipeline never deletes.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Boolean, Numeric, Date, DateTime, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from costpulse.db.base import Base


class CollectedMixin:
    """Lineage columns stamped by the collection run."""
    run_id: Mapped[str] = mapped_column(String(36), index=True)
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CostRecord(CollectedMixin, Base):
    __tablename__ = "cost_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    resource_name: Mapped[str] = mapped_column(String)
    resource_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resource_group: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    service_name: Mapped[str] = mapped_column(String, index=True)   # e.g. "Virtual Machines"
    meter_category: Mapped[str] = mapped_column(String)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Financials (DECIMAL for money!)
    cost: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    is_excluded_resource: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    tags: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    collection_date: Mapped[date] = mapped_column(Date, index=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "resource_name", "collection_date", "meter_category",
            name="uix_cost_record_natural_key",
        ),
    )


class BudgetRecord(CollectedMixin, Base):
    __tablename__ = "budget_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    budget_name: Mapped[str] = mapped_column(String)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    current_spend: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    forecast_spend: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    time_grain: Mapped[str] = mapped_column(String, default="Monthly")
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    collection_date: Mapped[date] = mapped_column(Date, index=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "budget_name", "collection_date", name="uix_budget_record_natural_key"),
    )


class ReservationRecord(CollectedMixin, Base):
    __tablename__ = "reservation_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    reservation_id: Mapped[str] = mapped_column(String)
    sku_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avg_utilization_percent: Mapped[Decimal] = mapped_column(Numeric(7, 3))
    min_utilization_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 3), nullable=True)
    max_utilization_percent: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 3), nullable=True)
    reserved_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    used_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    usage_date: Mapped[date] = mapped_column(Date)
    collection_date: Mapped[date] = mapped_column(Date, index=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "reservation_id", "usage_date", name="uix_reservation_record_natural_key"),
    )


class AdvisorRecord(CollectedMixin, Base):
    __tablename__ = "advisor_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    recommendation_id: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String, index=True)     # Cost, Security, HighAvailability...
    impact: Mapped[str] = mapped_column(String)                   # High, Medium, Low
    impacted_field: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    impacted_value: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    problem: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    solution: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    potential_savings: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    savings_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    collection_date: Mapped[date] = mapped_column(Date, index=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "recommendation_id", "collection_date", name="uix_advisor_record_natural_key"
        ),
    )
