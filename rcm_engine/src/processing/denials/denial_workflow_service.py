from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, literal_column, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.denial_models import ResolutionAction
from ...core.clock import Clock, utcnow
from ...core.config.settings import Settings
from ...core.database.db_session import SessionFactory
from ...core.database.models.claims_db import ClaimModel
from ...core.database.models.denial_db import AppealModel, DenialModel
from ...core.events import APPEAL_RESOLVED
from ...core.exceptions import EntityNotFoundError, ValidationError
from ...core.monitoring.app_metrics import MetricsCollector
from .denial_records import build_appeal, categorize, pending_appeal
from .denial_rules import CATEGORIES, resolution_actions

logger = structlog.get_logger(__name__)

APPEAL_OUTCOMES = ("overturned", "upheld", "partial")


class DenialWorkflowService:
    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings,
        metrics_collector: MetricsCollector,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.clock = clock
        self.lifecycle_service = None

    def attach_lifecycle(self, lifecycle_service) -> None:
        """The lifecycle engine calls into this service and back; wired after both exist."""
        self.lifecycle_service = lifecycle_service

    async def _load_denial(self, session: AsyncSession, denial_id: int) -> DenialModel:
        denial = await session.get(DenialModel, denial_id)
        if denial is None:
            raise EntityNotFoundError("Denial", denial_id)
        return denial

    async def categorize_denial(self, denial_id: int) -> DenialModel:
        async with self.session_factory() as session:
            denial = await self._load_denial(session, denial_id)
            category = categorize(denial, self.clock())
            await session.commit()

        self.metrics_collector.record_denial_categorized(category)
        logger.info("Denial categorized", denial_id=denial_id, reason_code=denial.reason_code,
                    category=category, priority=denial.priority)
        return denial

    def suggest_resolution(self, category: str) -> List[ResolutionAction]:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown denial category '{category}'.", [f"expected one of {', '.join(CATEGORIES)}"])
        return resolution_actions(category)

    async def generate_appeal(self, denial_id: int, appeal_type: str = "standard") -> AppealModel:
        async with self.session_factory() as session:
            denial = await self._load_denial(session, denial_id)
            if denial.status not in ("new", "analyzed"):
                raise ValidationError(f"Denial {denial_id} is {denial.status}; appeals can only be generated for open denials.")

            existing = pending_appeal(denial)
            if existing is not None:
                return existing

            claim = await session.get(ClaimModel, denial.claim_id)
            appeal = build_appeal(session, claim, denial, appeal_type, self.clock(), self.settings.APPEAL_DEADLINE_DAYS)
            await session.commit()

        logger.info("Appeal generated", denial_id=denial_id, appeal_id=appeal.id,
                    deadline=appeal.resubmission_deadline.isoformat())
        return appeal

    async def track_outcome(
        self,
        appeal_id: int,
        outcome: str,
        recovered_amount: Optional[Decimal] = None,
        notes: Optional[str] = None,
    ) -> AppealModel:
        """
        Records the payer's answer to a filed appeal and drives the claim through
        the lifecycle engine: overturned/partial re-adjudicates, upheld denies again.
        """
        if outcome not in APPEAL_OUTCOMES:
            raise ValidationError(f"Unknown appeal outcome '{outcome}'.")
        if self.lifecycle_service is None:
            raise RuntimeError("DenialWorkflowService has no lifecycle service attached.")

        async with self.session_factory() as session:
            appeal = await session.get(AppealModel, appeal_id)
            if appeal is None:
                raise EntityNotFoundError("Appeal", appeal_id)
            if appeal.outcome != "pending":
                raise ValidationError(f"Appeal {appeal_id} already has outcome '{appeal.outcome}'.")
            if appeal.submitted_at is None:
                raise ValidationError(f"Appeal {appeal_id} has not been filed.")

            denial = await self._load_denial(session, appeal.denial_id)
            now = self.clock()

            if outcome == "upheld":
                _, uow = await self.lifecycle_service.uphold_denial_in_session(session, denial.claim_id)
                denial.status = self.settings.UPHELD_DENIAL_POLICY
            else:
                _, uow = await self.lifecycle_service.readjudicate_in_session(
                    session, denial.claim_id, recovered_amount, partial=(outcome == "partial")
                )
                denial.status = "resolved"
            denial.resolved_at = now

            appeal.outcome = outcome
            appeal.recovered_amount = recovered_amount
            appeal.notes = notes
            appeal.outcome_recorded_at = now
            uow.events.append((APPEAL_RESOLVED, {
                "appeal_id": appeal.id,
                "denial_id": denial.id,
                "claim_id": denial.claim_id,
                "outcome": outcome,
                "recovered_amount": recovered_amount,
            }))
            await self.lifecycle_service.commit_unit_of_work(session, uow)

        self.metrics_collector.record_appeal_outcome(outcome)
        logger.info("Appeal outcome recorded", appeal_id=appeal_id, outcome=outcome,
                    recovered_amount=str(recovered_amount) if recovered_amount is not None else None)
        return appeal

    async def analyze_denial_patterns(self, timeframe_days: int = 90) -> Dict[str, Any]:
        """Read-only aggregation of denials created within the timeframe."""
        since = self.clock() - timedelta(days=timeframe_days)
        category_col = func.coalesce(DenialModel.category, literal_column("'uncategorized'"))
        payer_col = func.coalesce(ClaimModel.payer_name, ClaimModel.payer_id, literal_column("'unknown'"))

        async with self.session_factory() as session:
            by_category_rows = (await session.execute(
                select(category_col.label("category"), func.count(DenialModel.id), func.sum(DenialModel.denied_amount))
                .where(DenialModel.created_at >= since)
                .group_by(category_col)
            )).all()

            by_payer_rows = (await session.execute(
                select(payer_col.label("payer"), func.count(DenialModel.id), func.sum(DenialModel.denied_amount))
                .select_from(DenialModel)
                .join(ClaimModel, ClaimModel.id == DenialModel.claim_id)
                .where(DenialModel.created_at >= since)
                .group_by(payer_col)
            )).all()

            matrix_rows = (await session.execute(
                select(category_col.label("category"), payer_col.label("payer"), func.count(DenialModel.id))
                .select_from(DenialModel)
                .join(ClaimModel, ClaimModel.id == DenialModel.claim_id)
                .where(DenialModel.created_at >= since)
                .group_by(category_col, payer_col)
            )).all()

            outcome_rows = (await session.execute(
                select(AppealModel.outcome, func.count(AppealModel.id), func.sum(AppealModel.recovered_amount))
                .select_from(AppealModel)
                .join(DenialModel, DenialModel.id == AppealModel.denial_id)
                .where(DenialModel.created_at >= since)
                .group_by(AppealModel.outcome)
            )).all()

        by_category = {
            row[0]: {"count": row[1], "denied_amount": Decimal(row[2] or 0)} for row in by_category_rows
        }
        by_payer = {
            row[0]: {"count": row[1], "denied_amount": Decimal(row[2] or 0)} for row in by_payer_rows
        }
        by_category_and_payer: Dict[str, Dict[str, int]] = {}
        for category, payer, count in matrix_rows:
            by_category_and_payer.setdefault(category, {})[payer] = count

        appeal_outcomes = {row[0]: row[1] for row in outcome_rows}
        recovered_total = sum((Decimal(row[2] or 0) for row in outcome_rows), Decimal("0"))
        decided = sum(count for outcome, count in appeal_outcomes.items() if outcome != "pending")
        won = appeal_outcomes.get("overturned", 0) + appeal_outcomes.get("partial", 0)

        total_count = sum(entry["count"] for entry in by_category.values())
        top_category = None
        if by_category:
            # Ties broken by name so the answer is stable
            top_category = sorted(by_category.items(), key=lambda item: (-item[1]["count"], item[0]))[0][0]

        return {
            "timeframe_days": timeframe_days,
            "since": since,
            "total_denials": total_count,
            "total_denied_amount": sum((entry["denied_amount"] for entry in by_category.values()), Decimal("0")),
            "by_category": by_category,
            "by_payer": by_payer,
            "by_category_and_payer": by_category_and_payer,
            "appeal_outcomes": appeal_outcomes,
            "appeal_success_rate": round(won / decided, 4) if decided else None,
            "recovered_amount": recovered_total,
            "top_category": top_category,
        }

    async def list_denials_for_claim(self, claim_id: int) -> List[DenialModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DenialModel).where(DenialModel.claim_id == claim_id).order_by(DenialModel.id)
            )
            return list(result.scalars().all())

    async def on_claim_denied(self, event: Dict[str, Any]) -> None:
        """Consumer of claim.denied: categorizes every new denial."""
        for denial_id in event.get("denial_ids", []):
            await self.categorize_denial(denial_id)
