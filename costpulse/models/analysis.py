"""
Derived analysis records written back to the sink by the weekly run.
"""

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import String, Integer, Float, Numeric, Date, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from costpulse.db.base import Base


class BaselineRecord(Base):
    """Weekly-cost baseline per subscription/service. Superseded by the next run for the same window."""
    __tablename__ = "baseline_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    service_name: Mapped[str] = mapped_column(String, index=True)
    window_start: Mapped[date] = mapped_column(Date)
    window_end: Mapped[date] = mapped_column(Date)
    mean_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    std_dev_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    sample_count: Mapped[int] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "service_name", "window_start", "window_end", name="uix_baseline_window_key"
        ),
    )


class AnomalyFlag(Base):
    """Cost deviation beyond the configured threshold. Consumed by the report cycle of its week."""
    __tablename__ = "anomaly_flags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[str] = mapped_column(String, index=True)
    service_name: Mapped[str] = mapped_column(String)
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    week_key: Mapped[str] = mapped_column(String(8), index=True)
    observed_cost: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    baseline_mean: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    baseline_std_dev: Mapped[Decimal] = mapped_column(Numeric(18, 4))
    deviation_score: Mapped[float] = mapped_column(Float)
    severity: Mapped[str] = mapped_column(String(8))

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "service_name", "period_start", "period_end", name="uix_anomaly_period_key"
        ),
    )
