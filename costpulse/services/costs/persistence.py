"""
Sink Service - time-series store for collected and derived cost data.

Idempotent storage keyed by each dataset's natural uniqueness key: re-running a
collection for the same date upserts instead of duplicating. Every batch uses
its own session, so concurrent subscription workers never share one.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from costpulse.core.exceptions import SinkError
from costpulse.models.analysis import AnomalyFlag, BaselineRecord
from costpulse.models.cost import AdvisorRecord, BudgetRecord, CostRecord, ReservationRecord
from costpulse.models.report_run import ReportRun, ReportStatus
from costpulse.schemas.analysis import Anomaly, Baseline, Dataset

logger = structlog.get_logger()

BATCH_SIZE = 500

# A pending ledger row older than this is considered abandoned by a crashed run.
STALE_CLAIM_AFTER = timedelta(hours=2)

# Dataset -> (ORM model, natural key columns)
DATASET_TABLES: Dict[Dataset, Tuple[Type, Tuple[str, ...]]] = {
    Dataset.COSTS: (CostRecord, ("subscription_id", "resource_name", "collection_date", "meter_category")),
    Dataset.BUDGETS: (BudgetRecord, ("subscription_id", "budget_name", "collection_date")),
    Dataset.RESERVATIONS: (ReservationRecord, ("subscription_id", "reservation_id", "usage_date")),
    Dataset.ADVISOR: (AdvisorRecord, ("subscription_id", "recommendation_id", "collection_date")),
}

_NEVER_UPDATED = {"id", "created_at"}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SinkService:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @asynccontextmanager
    async def _session(self, operation: str):
        """Session scope that commits on success and maps driver errors to SinkError."""
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("sink_operation_failed", operation=operation, error=str(e))
                raise SinkError(f"Sink {operation} failed: {e}", code="sink_error") from e

    def _insert_for(self, session: AsyncSession, model: Type):
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise SinkError(f"Unsupported sink dialect: {dialect}", code="sink_unsupported")

    async def _bulk_upsert(
        self,
        session: AsyncSession,
        model: Type,
        key_columns: Sequence[str],
        values: List[Dict[str, Any]],
    ) -> None:
        """Dialect-aware ON CONFLICT DO UPDATE bulk insert."""
        stmt = self._insert_for(session, model).values(values)
        update_columns = [
            c.name for c in model.__table__.columns
            if c.name not in key_columns and c.name not in _NEVER_UPDATED and c.name in values[0]
        ]
        stmt = stmt.on_conflict_do_update(
            index_elements=list(key_columns),
            set_={name: stmt.excluded[name] for name in update_columns},
        )
        await session.execute(stmt)

    async def write_records(
        self,
        dataset: Dataset,
        records: Sequence[BaseModel],
        run_id: str,
        collected_at: Optional[datetime] = None,
    ) -> int:
        """
        Upsert validated records for one dataset.

        Returns:
            Number of records written (inserted or updated).
        """
        if not records:
            return 0
        model, key_columns = DATASET_TABLES[dataset]
        collected_at = collected_at or datetime.now(timezone.utc)

        written = 0
        for i in range(0, len(records), BATCH_SIZE):
            batch = records[i : i + BATCH_SIZE]
            values = [{**r.model_dump(), "run_id": run_id, "collected_at": collected_at} for r in batch]
            async with self._session(f"write_{dataset.value}") as session:
                await self._bulk_upsert(session, model, key_columns, values)
            written += len(values)

        logger.info("sink_write_success", dataset=dataset.value, records=written, run_id=run_id)
        return written

    # --- Reads ---

    async def get_cost_records(
        self,
        start_date: date,
        end_date: date,
        subscription_ids: Optional[Iterable[str]] = None,
        include_excluded: bool = True,
    ) -> List[CostRecord]:
        """Cost rows with collection_date in [start_date, end_date]."""
        stmt = select(CostRecord).where(
            CostRecord.collection_date >= start_date,
            CostRecord.collection_date <= end_date,
        )
        if subscription_ids:
            stmt = stmt.where(CostRecord.subscription_id.in_(list(subscription_ids)))
        if not include_excluded:
            stmt = stmt.where(CostRecord.is_excluded_resource.is_(False))
        async with self._session("read_costs") as session:
            result = await session.execute(stmt.order_by(CostRecord.collection_date))
            return list(result.scalars().all())

    async def get_latest_budgets(self, as_of: date, lookback_days: int = 7) -> List[BudgetRecord]:
        """Most recent budget snapshot per subscription/budget within the lookback."""
        stmt = (
            select(BudgetRecord)
            .where(
                BudgetRecord.collection_date <= as_of,
                BudgetRecord.collection_date >= as_of - timedelta(days=lookback_days),
            )
            .order_by(BudgetRecord.collection_date.desc())
        )
        async with self._session("read_budgets") as session:
            rows = (await session.execute(stmt)).scalars().all()

        latest: Dict[Tuple[str, str], BudgetRecord] = {}
        for row in rows:
            latest.setdefault((row.subscription_id, row.budget_name), row)
        return list(latest.values())

    async def get_advisor_recommendations(
        self, start_date: date, end_date: date, category: Optional[str] = "Cost"
    ) -> List[AdvisorRecord]:
        """Latest copy of each recommendation collected in the window."""
        stmt = select(AdvisorRecord).where(
            AdvisorRecord.collection_date >= start_date,
            AdvisorRecord.collection_date <= end_date,
        )
        if category:
            stmt = stmt.where(AdvisorRecord.category == category)
        async with self._session("read_advisor") as session:
            rows = (await session.execute(stmt.order_by(AdvisorRecord.collection_date.desc()))).scalars().all()

        latest: Dict[Tuple[str, str], AdvisorRecord] = {}
        for row in rows:
            latest.setdefault((row.subscription_id, row.recommendation_id), row)
        return list(latest.values())

    async def get_reservations(self, start_date: date, end_date: date) -> List[ReservationRecord]:
        stmt = select(ReservationRecord).where(
            ReservationRecord.usage_date >= start_date,
            ReservationRecord.usage_date <= end_date,
        )
        async with self._session("read_reservations") as session:
            return list((await session.execute(stmt)).scalars().all())

    # --- Derived analysis records ---

    async def upsert_baselines(self, baselines: Sequence[Baseline]) -> int:
        if not baselines:
            return 0
        values = [
            {
                "subscription_id": b.subscription_id,
                "service_name": b.service_name,
                "window_start": b.window_start,
                "window_end": b.window_end,
                "mean_cost": Decimal(str(round(b.mean_cost, 4))),
                "std_dev_cost": Decimal(str(round(b.std_dev_cost, 4))),
                "sample_count": b.sample_count,
            }
            for b in baselines
        ]
        for i in range(0, len(values), BATCH_SIZE):
            async with self._session("write_baselines") as session:
                await self._bulk_upsert(
                    session, BaselineRecord,
                    ("subscription_id", "service_name", "window_start", "window_end"),
                    values[i : i + BATCH_SIZE],
                )
        return len(values)

    async def replace_anomalies(
        self,
        anomalies: Sequence[Anomaly],
        period_start: date,
        period_end: date,
        week_key: str,
    ) -> int:
        """Swap the week's anomaly flags for `anomalies` in one transaction."""
        values = [
            {
                "subscription_id": a.subscription_id,
                "service_name": a.service_name,
                "period_start": period_start,
                "period_end": period_end,
                "week_key": week_key,
                "observed_cost": Decimal(str(round(a.observed_cost, 4))),
                "baseline_mean": Decimal(str(round(a.baseline_mean, 4))),
                "baseline_std_dev": Decimal(str(round(a.baseline_std_dev, 4))),
                "deviation_score": a.deviation_score,
                "severity": a.severity.value,
            }
            for a in anomalies
        ]
        async with self._session("write_anomalies") as session:
            await session.execute(delete(AnomalyFlag).where(AnomalyFlag.week_key == week_key))
            if values:
                await self._bulk_upsert(
                    session, AnomalyFlag,
                    ("subscription_id", "service_name", "period_start", "period_end"),
                    values,
                )
        return len(values)

    async def get_anomalies(self, week_key: str) -> List[AnomalyFlag]:
        stmt = select(AnomalyFlag).where(AnomalyFlag.week_key == week_key)
        async with self._session("read_anomalies") as session:
            return list((await session.execute(stmt)).scalars().all())

    # --- Weekly report ledger ---

    async def get_report_run(self, week_key: str) -> Optional[ReportRun]:
        async with self._session("read_ledger") as session:
            result = await session.execute(select(ReportRun).where(ReportRun.week_key == week_key))
            return result.scalar_one_or_none()

    async def claim_week(self, week_key: str, run_id: str, period_start: date, period_end: date) -> bool:
        """
        Claim the report slot for an ISO week.

        Returns False when the week was already sent (confirmed or not) or
        another run holds a fresh claim. A failed or abandoned claim is taken
        over.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self._session("claim_week") as session:
                existing = (
                    await session.execute(select(ReportRun).where(ReportRun.week_key == week_key))
                ).scalar_one_or_none()

                if existing is None:
                    session.add(ReportRun(
                        week_key=week_key,
                        run_id=run_id,
                        period_start=period_start,
                        period_end=period_end,
                        status=ReportStatus.PENDING.value,
                    ))
                    await session.flush()
                    return True

                if existing.status in (ReportStatus.SENT.value, ReportStatus.SENT_UNCONFIRMED.value):
                    logger.info("report_already_sent", week_key=week_key, sent_by=existing.run_id,
                                status=existing.status)
                    return False

                if existing.status == ReportStatus.PENDING.value:
                    if now - _as_utc(existing.updated_at) < STALE_CLAIM_AFTER:
                        logger.info("report_claim_held", week_key=week_key, held_by=existing.run_id)
                        return False
                    logger.warning("report_claim_stale", week_key=week_key, held_by=existing.run_id)

                existing.run_id = run_id
                existing.status = ReportStatus.PENDING.value
                existing.error = None
                existing.updated_at = now
                return True
        except IntegrityError:
            # Lost the insert race to a concurrent run
            logger.info("report_claim_race_lost", week_key=week_key)
            return False

    async def mark_sent(
        self,
        week_key: str,
        total_cost: Decimal,
        anomaly_count: int,
        recipient_count: int,
        provider_message_id: Optional[str] = None,
    ) -> None:
        async with self._session("mark_sent") as session:
            run = (await session.execute(select(ReportRun).where(ReportRun.week_key == week_key))).scalar_one()
            run.status = ReportStatus.SENT.value
            run.total_cost = total_cost
            run.anomaly_count = anomaly_count
            run.recipient_count = recipient_count
            run.provider_message_id = provider_message_id
            run.sent_at = datetime.now(timezone.utc)
            run.error = None

    async def mark_failed(self, week_key: str, error: str) -> None:
        async with self._session("mark_failed") as session:
            run = (
                await session.execute(select(ReportRun).where(ReportRun.week_key == week_key))
            ).scalar_one_or_none()
            if run is None:
                return
            run.status = ReportStatus.FAILED.value
            run.error = error[:2000]

    async def mark_sent_unconfirmed(self, week_key: str, provider_message_id: Optional[str], error: str) -> None:
        """Record that the relay accepted the report even though the summary could not be saved."""
        async with self._session("mark_sent_unconfirmed") as session:
            run = (await session.execute(select(ReportRun).where(ReportRun.week_key == week_key))).scalar_one()
            run.status = ReportStatus.SENT_UNCONFIRMED.value
            run.provider_message_id = provider_message_id
            run.sent_at = datetime.now(timezone.utc)
            run.error = error[:2000]
