import asyncio
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.ar_models import ArAccountFilters, AutomatedActionThresholds, RiskPrediction
from ...core.clock import Clock, utcnow
from ...core.config.settings import Settings
from ...core.database.db_session import SessionFactory
from ...core.database.models.account_db import AccountModel
from ...core.database.models.claims_db import ClaimModel
from ...core.database.models.collection_db import CollectionTaskModel
from ...core.database.models.risk_score_db import RiskScoreModel
from ...core.exceptions import EntityNotFoundError
from ...core.monitoring.app_metrics import MetricsCollector
from .feature_extractor import BUCKET_DAYS, BUCKETS, AccountFeatureExtractor, aging_bucket, days_outstanding
from .risk_model import RiskModel, build_risk_model

logger = structlog.get_logger(__name__)

ACTION_PRIORITIES = {
    "escalation": "high",
    "reminder_call": "medium",
    "payment_plan_offer": "medium",
    "statement": "low",
}

PAYMENT_PLAN_OFFER_MIN_BALANCE = Decimal("500")


def choose_action(days: int, probability: float, balance: Decimal) -> str:
    """Maps an at-risk account to the collection action the aging trigger enqueues."""
    if days > 120 or probability < 0.25:
        return "escalation"
    if days > 90:
        return "reminder_call"
    if balance > PAYMENT_PLAN_OFFER_MIN_BALANCE and days > 60:
        return "payment_plan_offer"
    return "statement"


def balance_since_in_bucket(bucket: str, now: datetime):
    """SQL condition equivalent to aging_bucket(days_outstanding(account, now)) == bucket."""
    low, high = BUCKET_DAYS[bucket]
    clauses = []
    if low > 0:
        clauses.append(AccountModel.balance_since <= now - timedelta(days=low))
    if high is not None:
        clauses.append(AccountModel.balance_since > now - timedelta(days=high + 1))
    condition = and_(*clauses)
    if low == 0:
        condition = or_(condition, AccountModel.balance_since.is_(None))
    return condition


class ARAgingService:
    """
    Batch-side AR intelligence: aging buckets, collection-probability scores and
    the automated enqueueing of collection work for at-risk accounts. Scores are
    a replaceable snapshot, one row per account.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings,
        metrics_collector: MetricsCollector,
        risk_model: Optional[RiskModel] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.risk_model = risk_model or build_risk_model(settings)
        self.clock = clock
        self.feature_extractor = AccountFeatureExtractor()

    async def analyze_ar_accounts(self, filters: Optional[ArAccountFilters] = None) -> Dict[str, Any]:
        filters = filters or ArAccountFilters()
        now = self.clock()

        query = (
            select(AccountModel)
            .where(AccountModel.outstanding_balance > 0)
            .where(AccountModel.outstanding_balance >= filters.min_balance)
            .order_by(AccountModel.balance_since, AccountModel.id)
            .limit(filters.limit)
        )
        if filters.aging_bucket:
            query = query.where(balance_since_in_bucket(filters.aging_bucket, now))
        if filters.payer_id:
            query = query.where(AccountModel.id.in_(
                select(ClaimModel.account_id).where(ClaimModel.payer_id == filters.payer_id)
            ))

        async with self.session_factory() as session:
            with self.metrics_collector.time_db_query("ar_accounts"):
                accounts = list((await session.execute(query)).scalars().all())

        bucket_totals = {bucket: {"count": 0, "balance": Decimal("0")} for bucket in BUCKETS}
        rows = []
        for account in accounts:
            days = days_outstanding(account, now)
            bucket = aging_bucket(days)
            balance = Decimal(account.outstanding_balance)
            bucket_totals[bucket]["count"] += 1
            bucket_totals[bucket]["balance"] += balance
            rows.append({
                "account_id": account.id,
                "account_number": account.account_number,
                "outstanding_balance": balance,
                "balance_since": account.balance_since,
                "days_outstanding": days,
                "aging_bucket": bucket,
            })

        total = sum((row["outstanding_balance"] for row in rows), Decimal("0"))
        logger.info("AR accounts analyzed", account_count=len(rows), total_outstanding=str(total))
        return {
            "as_of": now,
            "account_count": len(rows),
            "total_outstanding": total,
            "bucket_totals": bucket_totals,
            "accounts": rows,
        }

    async def _predict(self, session: AsyncSession, account: AccountModel, now: datetime) -> RiskPrediction:
        signals = await self.feature_extractor.extract(session, account, now)
        probability, factors = self.risk_model.predict(signals)
        return RiskPrediction(
            account_id=account.id,
            collection_probability=probability,
            aging_bucket=signals.aging_bucket,
            days_outstanding=signals.days_outstanding,
            outstanding_balance=Decimal(account.outstanding_balance or 0),
            risk_factors=factors,
            model_name=self.risk_model.name,
            computed_at=now,
        )

    async def predict_collection_probability(self, account_id: int) -> RiskPrediction:
        async with self.session_factory() as session:
            account = await session.get(AccountModel, account_id)
            if account is None:
                raise EntityNotFoundError("Account", account_id)
            prediction = await self._predict(session, account, self.clock())

        self.metrics_collector.record_risk_score("predicted", prediction.collection_probability)
        return prediction

    async def _upsert_risk_score(self, session: AsyncSession, prediction: RiskPrediction) -> None:
        values = {
            "account_id": prediction.account_id,
            "collection_probability": Decimal(str(prediction.collection_probability)),
            "aging_bucket": prediction.aging_bucket,
            "days_outstanding": prediction.days_outstanding,
            "outstanding_balance": prediction.outstanding_balance,
            "risk_factors": prediction.risk_factors,
            "model_name": prediction.model_name,
            "computed_at": prediction.computed_at,
        }
        dialect = session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = postgresql_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(RiskScoreModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[RiskScoreModel.account_id],
                set_={key: stmt.excluded[key] for key in values if key != "account_id"},
            )
            await session.execute(stmt)
            return

        existing = (await session.execute(
            select(RiskScoreModel).where(RiskScoreModel.account_id == prediction.account_id)
        )).scalar_one_or_none()
        if existing is None:
            session.add(RiskScoreModel(**values))
        else:
            for key, value in values.items():
                setattr(existing, key, value)

    async def generate_risk_scores(
        self,
        account_ids: Optional[List[int]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Scores the given accounts (every account carrying a balance when None) and
        replaces their stored snapshot. Each account commits on its own.
        """
        start_time = time.perf_counter()
        now = self.clock()

        if account_ids is None:
            async with self.session_factory() as session:
                account_ids = list((await session.execute(
                    select(AccountModel.id).where(AccountModel.outstanding_balance > 0).order_by(AccountModel.id)
                )).scalars().all())

        summary = {"requested": len(account_ids), "scored": 0, "not_found": 0, "failed": 0, "stopped_early": False}
        for account_id in account_ids:
            if stop_event is not None and stop_event.is_set():
                summary["stopped_early"] = True
                break
            try:
                async with self.session_factory() as session:
                    account = await session.get(AccountModel, account_id)
                    if account is None:
                        summary["not_found"] += 1
                        continue
                    prediction = await self._predict(session, account, now)
                    await self._upsert_risk_score(session, prediction)
                    await session.commit()
            except Exception as e:
                summary["failed"] += 1
                self.metrics_collector.record_risk_score("failed")
                logger.error("Risk scoring failed for account", account_id=account_id, error=str(e), exc_info=True)
                continue
            summary["scored"] += 1
            self.metrics_collector.record_risk_score("scored", prediction.collection_probability)

        self.metrics_collector.record_job_duration("risk_scoring", time.perf_counter() - start_time)
        logger.info("Risk scores generated", **summary)
        return summary

    async def _current_probability(self, session: AsyncSession, account: AccountModel, now: datetime) -> float:
        fresh_after = now - timedelta(hours=self.settings.RISK_SCORE_MAX_AGE_HOURS)
        stored = (await session.execute(
            select(RiskScoreModel).where(RiskScoreModel.account_id == account.id)
        )).scalar_one_or_none()
        if stored is not None and stored.computed_at >= fresh_after:
            return float(stored.collection_probability)
        prediction = await self._predict(session, account, now)
        return prediction.collection_probability

    async def trigger_automated_actions(
        self,
        thresholds: Optional[AutomatedActionThresholds] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Enqueues a CollectionTask for every account past the aging threshold whose
        collection probability is below the configured bound. Creates work items
        only; execution belongs to the collection workflow driver.
        """
        thresholds = thresholds or AutomatedActionThresholds()
        now = self.clock()
        aged_before = now - timedelta(days=thresholds.min_days_outstanding)

        async with self.session_factory() as session:
            candidate_ids = list((await session.execute(
                select(AccountModel.id)
                .where(AccountModel.outstanding_balance > 0)
                .where(AccountModel.outstanding_balance >= thresholds.min_balance)
                .where(AccountModel.balance_since.is_not(None))
                .where(AccountModel.balance_since <= aged_before)
                .order_by(AccountModel.id)
            )).scalars().all())

        summary: Dict[str, Any] = {
            "evaluated": 0, "tasks_created": 0, "above_threshold": 0,
            "skipped_existing": 0, "failed": 0, "task_ids": [], "stopped_early": False,
        }
        for account_id in candidate_ids:
            if stop_event is not None and stop_event.is_set():
                summary["stopped_early"] = True
                break
            summary["evaluated"] += 1
            try:
                async with self.session_factory() as session:
                    account = await session.get(AccountModel, account_id)
                    probability = await self._current_probability(session, account, now)
                    if probability >= thresholds.max_collection_probability:
                        summary["above_threshold"] += 1
                        continue

                    balance = Decimal(account.outstanding_balance)
                    action_type = choose_action(days_outstanding(account, now), probability, balance)
                    existing = (await session.execute(
                        select(CollectionTaskModel.id)
                        .where(CollectionTaskModel.account_id == account_id)
                        .where(CollectionTaskModel.action_type == action_type)
                        .where(CollectionTaskModel.status == "scheduled")
                        .limit(1)
                    )).scalar_one_or_none()
                    if existing is not None:
                        summary["skipped_existing"] += 1
                        continue

                    task = CollectionTaskModel(
                        account_id=account_id,
                        action_type=action_type,
                        description=f"Automated {action_type.replace('_', ' ')}: balance {balance}, "
                                    f"collection probability {probability:.2f}",
                        priority=ACTION_PRIORITIES[action_type],
                        scheduled_for=now,
                        status="scheduled",
                        source="aging_trigger",
                        on_hold=False,
                        attempt_count=0,
                        created_at=now,
                    )
                    session.add(task)
                    await session.commit()
            except Exception as e:
                summary["failed"] += 1
                logger.error("Automated action failed for account", account_id=account_id, error=str(e), exc_info=True)
                continue

            summary["tasks_created"] += 1
            summary["task_ids"].append(task.id)
            self.metrics_collector.record_collection_task(action_type, "enqueued")
            logger.info("Collection task enqueued", account_id=account_id, task_id=task.id,
                        action_type=action_type, probability=probability)

        logger.info("Automated actions evaluated", **{k: v for k, v in summary.items() if k != "task_ids"})
        return summary
