"""
Weekly report ledger.

One row per ISO week key. Guarantees at most one successful send per week.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, Numeric, Date, DateTime, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from costpulse.db.base import Base


class ReportStatus(str, Enum):
    """Report lifecycle states."""
    PENDING = "pending"   # claimed, send in progress
    SENT = "sent"
    SENT_UNCONFIRMED = "sent_unconfirmed"   # relay accepted, summary not recorded; never reclaimed
    FAILED = "failed"     # may be reclaimed by a later run


class ReportRun(Base):
    __tablename__ = "report_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    week_key: Mapped[str] = mapped_column(String(8), unique=True, index=True)
    run_id: Mapped[str] = mapped_column(String(36))
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default=ReportStatus.PENDING.value)

    # Summary record persisted alongside the sent email
    total_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    anomaly_count: Mapped[int] = mapped_column(Integer, default=0)
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
