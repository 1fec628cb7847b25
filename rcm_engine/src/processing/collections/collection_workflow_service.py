import asyncio
import calendar
import time
from datetime import date, datetime, timedelta
from decimal import ROUND_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.collection_models import PaymentPlanRequest, ProcessActionsResult
from ...core.clock import Clock, utcnow
from ...core.config.settings import Settings
from ...core.database.db_session import SessionFactory
from ...core.database.models.account_db import AccountModel
from ...core.database.models.claims_db import ClaimModel
from ...core.database.models.collection_db import (
    CollectionTaskModel,
    CollectionWorkflowModel,
    PaymentPlanInstallmentModel,
    PaymentPlanModel,
)
from ...core.exceptions import EntityNotFoundError, ValidationError
from ...core.monitoring.app_metrics import MetricsCollector
from ..accounts.account_service import apply_patient_payment
from ..aging.feature_extractor import days_outstanding
from .action_dispatcher import CollectionActionDispatcher, LoggingActionDispatcher
from .workflow_templates import (
    ACTION_DESCRIPTIONS,
    FOLLOW_UP_DELAY_DAYS,
    WORKFLOW_TEMPLATES,
    determine_workflow_type,
    stage_priority,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
OPEN_WORKFLOW_STATUSES = ("active", "paused")


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(start.day, calendar.monthrange(year, month)[1]))


class CollectionWorkflowService:
    """
    Schedules and executes collection follow-up per account. Task state machine:
    scheduled -> executed | skipped | failed. An active payment plan holds every
    non-statement task until the plan completes or defaults.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings,
        metrics_collector: MetricsCollector,
        dispatcher: Optional[CollectionActionDispatcher] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.dispatcher = dispatcher or LoggingActionDispatcher()
        self.clock = clock

    async def _load_account(self, session: AsyncSession, account_id: int) -> AccountModel:
        account = await session.get(AccountModel, account_id)
        if account is None:
            raise EntityNotFoundError("Account", account_id)
        return account

    async def _open_workflow(self, session: AsyncSession, account_id: int) -> Optional[CollectionWorkflowModel]:
        result = await session.execute(
            select(CollectionWorkflowModel)
            .where(CollectionWorkflowModel.account_id == account_id)
            .where(CollectionWorkflowModel.status.in_(OPEN_WORKFLOW_STATUSES))
            .order_by(CollectionWorkflowModel.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _active_plan(self, session: AsyncSession, account_id: int) -> Optional[PaymentPlanModel]:
        result = await session.execute(
            select(PaymentPlanModel)
            .where(PaymentPlanModel.account_id == account_id)
            .where(PaymentPlanModel.status == "active")
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_tasks(self, account_id: int) -> List[CollectionTaskModel]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CollectionTaskModel)
                .where(CollectionTaskModel.account_id == account_id)
                .order_by(CollectionTaskModel.scheduled_for, CollectionTaskModel.id)
            )
            return list(result.scalars().all())

    async def initiate_workflow(
        self, account_id: int, workflow_type: str = "auto"
    ) -> Tuple[CollectionWorkflowModel, List[CollectionTaskModel]]:
        now = self.clock()
        async with self.session_factory() as session:
            account = await self._load_account(session, account_id)
            balance = Decimal(account.outstanding_balance or 0)
            if balance <= ZERO:
                raise ValidationError(f"Account {account_id} has no outstanding balance.")
            if await self._open_workflow(session, account_id) is not None:
                raise ValidationError("Active workflow already exists for this account.")

            resolved_type = determine_workflow_type(workflow_type, balance, days_outstanding(account, now))
            if resolved_type not in WORKFLOW_TEMPLATES:
                raise ValidationError(f"Unknown workflow type '{workflow_type}'.")

            workflow = CollectionWorkflowModel(
                account_id=account_id, workflow_type=resolved_type, status="active", started_at=now
            )
            session.add(workflow)
            await session.flush()

            plan_active = await self._active_plan(session, account_id) is not None
            tasks = []
            for sequence, stage in enumerate(WORKFLOW_TEMPLATES[resolved_type], start=1):
                task = CollectionTaskModel(
                    account_id=account_id,
                    workflow_id=workflow.id,
                    sequence=sequence,
                    action_type=stage.action_type,
                    description=f"{stage.name}: {ACTION_DESCRIPTIONS[stage.action_type]}",
                    priority=stage_priority(stage, balance),
                    scheduled_for=now + timedelta(days=stage.delay_days),
                    status="scheduled",
                    source="workflow",
                    on_hold=plan_active and stage.action_type != "statement",
                    attempt_count=0,
                    created_at=now,
                )
                session.add(task)
                tasks.append(task)
            await session.commit()

        logger.info("Collection workflow initiated", account_id=account_id, workflow_id=workflow.id,
                    workflow_type=resolved_type, stages=len(tasks))
        return workflow, tasks

    async def get_workflow(self, workflow_id: int) -> Tuple[CollectionWorkflowModel, List[CollectionTaskModel]]:
        async with self.session_factory() as session:
            workflow = await session.get(CollectionWorkflowModel, workflow_id)
            if workflow is None:
                raise EntityNotFoundError("CollectionWorkflow", workflow_id)
            tasks = (await session.execute(
                select(CollectionTaskModel)
                .where(CollectionTaskModel.workflow_id == workflow_id)
                .order_by(CollectionTaskModel.sequence, CollectionTaskModel.id)
            )).scalars().all()
            return workflow, list(tasks)

    async def _build_statement(self, session: AsyncSession, account: AccountModel, now: datetime) -> Dict[str, Any]:
        claims = (await session.execute(
            select(ClaimModel)
            .where(ClaimModel.account_id == account.id)
            .where(ClaimModel.patient_responsibility > 0)
            .order_by(ClaimModel.service_date.desc(), ClaimModel.id.desc())
            .limit(10)
        )).scalars().all()

        balance = Decimal(account.outstanding_balance or 0)
        payment_options: List[Dict[str, Any]] = [
            {"type": "full_payment", "amount": balance, "description": "Pay full balance"}
        ]
        for months, minimum in ((6, Decimal("500")), (12, Decimal("1000"))):
            if balance > minimum:
                payment_options.append({
                    "type": f"payment_plan_{months}",
                    "monthly_amount": (balance / months).quantize(CENT, rounding=ROUND_UP),
                    "number_of_payments": months,
                    "description": f"{months}-month payment plan",
                })

        return {
            "statement_id": f"STMT-{account.id}-{now:%Y%m%d%H%M%S}",
            "statement_date": now,
            "account": {
                "account_id": account.id,
                "account_number": account.account_number,
                "guarantor_name": account.guarantor_name,
                "current_balance": balance,
                "total_payments": Decimal(account.total_payments or 0),
                "last_payment_at": account.last_payment_at,
                "days_outstanding": days_outstanding(account, now),
            },
            "charges": [
                {
                    "claim_number": claim.claim_number,
                    "service_date": claim.service_date,
                    "payer_name": claim.payer_name,
                    "billed_amount": claim.billed_amount,
                    "paid_amount": claim.paid_amount,
                    "patient_responsibility": claim.patient_responsibility,
                }
                for claim in claims
            ],
            "payment_options": payment_options,
        }

    async def generate_statement(self, account_id: int) -> Dict[str, Any]:
        now = self.clock()
        async with self.session_factory() as session:
            account = await self._load_account(session, account_id)
            statement = await self._build_statement(session, account, now)
            account.last_statement_date = now
            account.version = account.version + 1
            await session.commit()

        logger.info("Statement generated", account_id=account_id, statement_id=statement["statement_id"],
                    balance=str(statement["account"]["current_balance"]))
        return statement

    async def schedule_follow_up(
        self,
        account_id: int,
        action_type: str,
        scheduled_for: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> CollectionTaskModel:
        if action_type not in FOLLOW_UP_DELAY_DAYS:
            raise ValidationError(f"Unknown collection action '{action_type}'.")
        now = self.clock()
        when = scheduled_for or now + timedelta(days=FOLLOW_UP_DELAY_DAYS[action_type])

        async with self.session_factory() as session:
            await self._load_account(session, account_id)
            workflow = await self._open_workflow(session, account_id)
            sequence = 0
            if workflow is not None:
                sequence = (await session.execute(
                    select(func.coalesce(func.max(CollectionTaskModel.sequence), 0))
                    .where(CollectionTaskModel.workflow_id == workflow.id)
                )).scalar_one() + 1
            plan_active = await self._active_plan(session, account_id) is not None

            task = CollectionTaskModel(
                account_id=account_id,
                workflow_id=workflow.id if workflow is not None else None,
                sequence=sequence,
                action_type=action_type,
                description=description or ACTION_DESCRIPTIONS[action_type],
                priority="high" if action_type == "escalation" else "medium",
                scheduled_for=when,
                status="scheduled",
                source="manual",
                on_hold=plan_active and action_type != "statement",
                attempt_count=0,
                created_at=now,
            )
            session.add(task)
            await session.commit()

        logger.info("Follow-up scheduled", account_id=account_id, task_id=task.id,
                    action_type=action_type, scheduled_for=when.isoformat())
        return task

    def _validate_plan(self, balance: Decimal, total: Decimal, monthly: Decimal, count: int) -> List[str]:
        errors = []
        if monthly <= ZERO:
            errors.append("Monthly payment amount must be positive")
        if count <= 0:
            errors.append("Number of payments must be positive")
        if count > self.settings.PAYMENT_PLAN_MAX_PAYMENTS:
            errors.append(f"Payment plans cannot exceed {self.settings.PAYMENT_PLAN_MAX_PAYMENTS} payments")
        if total <= ZERO:
            errors.append("Plan total must be positive")
        if total > balance:
            errors.append("Plan total cannot exceed the outstanding balance")
        if errors:
            return errors
        coverage = Decimal(str(self.settings.PAYMENT_PLAN_MIN_COVERAGE))
        if monthly * count < total * coverage:
            errors.append(f"Payment plan total must cover at least {coverage * 100:.0f}% of the balance")
        if monthly * (count - 1) >= total:
            errors.append("Too many payments for the plan total")
        return errors

    async def _set_holds(self, session: AsyncSession, account_id: int, on_hold: bool) -> None:
        stmt = (
            update(CollectionTaskModel)
            .where(CollectionTaskModel.account_id == account_id)
            .where(CollectionTaskModel.status == "scheduled")
            .values(on_hold=on_hold)
        )
        if on_hold:
            stmt = stmt.where(CollectionTaskModel.action_type != "statement")
        await session.execute(stmt)

    async def _set_workflow_status(self, session: AsyncSession, account_id: int, from_status: str, to_status: str) -> None:
        await session.execute(
            update(CollectionWorkflowModel)
            .where(CollectionWorkflowModel.account_id == account_id)
            .where(CollectionWorkflowModel.status == from_status)
            .values(status=to_status)
        )

    async def setup_payment_plan(self, plan_in: PaymentPlanRequest) -> PaymentPlanModel:
        now = self.clock()
        async with self.session_factory() as session:
            account = await self._load_account(session, plan_in.account_id)
            if await self._active_plan(session, account.id) is not None:
                raise ValidationError("Account already has an active payment plan.")

            balance = Decimal(account.outstanding_balance or 0)
            total = Decimal(plan_in.total_amount) if plan_in.total_amount is not None else balance
            monthly = Decimal(plan_in.monthly_payment)
            errors = self._validate_plan(balance, total, monthly, plan_in.number_of_payments)
            if errors:
                raise ValidationError(f"Payment plan validation failed: {', '.join(errors)}", errors)

            start_date = plan_in.start_date or now.date()
            plan = PaymentPlanModel(
                account_id=account.id,
                total_amount=total,
                monthly_payment=monthly,
                number_of_payments=plan_in.number_of_payments,
                remaining_balance=total,
                start_date=start_date,
                status="active",
                created_at=now,
            )
            last_amount = total - monthly * (plan_in.number_of_payments - 1)
            plan.installments = [
                PaymentPlanInstallmentModel(
                    installment_number=number,
                    due_date=add_months(start_date, number - 1),
                    amount=monthly if number < plan_in.number_of_payments else last_amount,
                    status="pending",
                )
                for number in range(1, plan_in.number_of_payments + 1)
            ]
            session.add(plan)

            await self._set_holds(session, account.id, True)
            await self._set_workflow_status(session, account.id, "active", "paused")
            await session.commit()

        logger.info("Payment plan created", account_id=plan_in.account_id, plan_id=plan.id,
                    total=str(total), monthly_payment=str(monthly), payments=plan_in.number_of_payments)
        return plan

    async def record_plan_payment(self, plan_id: int, amount: Decimal) -> PaymentPlanModel:
        """Pays installments oldest first; a fully paid plan releases the held collection work."""
        now = self.clock()
        async with self.session_factory() as session:
            plan = await session.get(PaymentPlanModel, plan_id)
            if plan is None:
                raise EntityNotFoundError("PaymentPlan", plan_id)
            if plan.status != "active":
                raise ValidationError(f"Payment plan {plan_id} is {plan.status}.")
            remaining = Decimal(plan.remaining_balance)
            if amount > remaining:
                raise ValidationError(f"Payment of {amount} exceeds the plan's remaining balance of {remaining}.")

            account = await self._load_account(session, plan.account_id)
            apply_patient_payment(account, amount, now)

            # An installment counts as paid once cumulative payments cover it
            paid_to_date = Decimal(plan.total_amount) - remaining + amount
            covered = ZERO
            for installment in plan.installments:
                covered += Decimal(installment.amount)
                if covered > paid_to_date:
                    break
                if installment.status != "paid":
                    installment.status = "paid"
                    installment.paid_at = now

            plan.remaining_balance = remaining - amount
            completed = plan.remaining_balance == ZERO
            if completed:
                plan.status = "completed"
                for installment in plan.installments:
                    if installment.status != "paid":
                        installment.status = "paid"
                        installment.paid_at = now
                await self._set_holds(session, plan.account_id, False)
                await self._set_workflow_status(session, plan.account_id, "paused", "active")
            await session.commit()

        logger.info("Plan payment recorded", plan_id=plan_id, amount=str(amount),
                    remaining_balance=str(plan.remaining_balance), plan_status=plan.status)
        return plan

    async def get_payment_plan(self, plan_id: int) -> PaymentPlanModel:
        async with self.session_factory() as session:
            plan = await session.get(PaymentPlanModel, plan_id)
            if plan is None:
                raise EntityNotFoundError("PaymentPlan", plan_id)
            return plan

    async def _check_payment_plans(self, now: datetime, result: ProcessActionsResult) -> None:
        cutoff = now.date() - timedelta(days=self.settings.PAYMENT_PLAN_GRACE_DAYS)
        async with self.session_factory() as session:
            plan_ids = list((await session.execute(
                select(PaymentPlanModel.id)
                .where(PaymentPlanModel.status == "active")
                .where(PaymentPlanModel.installments.any(
                    (PaymentPlanInstallmentModel.status == "pending") & (PaymentPlanInstallmentModel.due_date < cutoff)
                ))
                .order_by(PaymentPlanModel.id)
            )).scalars().all())

        for plan_id in plan_ids:
            try:
                async with self.session_factory() as session:
                    plan = await session.get(PaymentPlanModel, plan_id)
                    for installment in plan.installments:
                        if installment.status == "pending" and installment.due_date < cutoff:
                            installment.status = "missed"
                    plan.status = "defaulted"

                    await self._set_holds(session, plan.account_id, False)
                    await self._set_workflow_status(session, plan.account_id, "paused", "active")
                    workflow = await self._open_workflow(session, plan.account_id)

                    pending_escalation = (await session.execute(
                        select(CollectionTaskModel.id)
                        .where(CollectionTaskModel.account_id == plan.account_id)
                        .where(CollectionTaskModel.action_type == "escalation")
                        .where(CollectionTaskModel.status == "scheduled")
                        .limit(1)
                    )).scalar_one_or_none()
                    if pending_escalation is None:
                        session.add(CollectionTaskModel(
                            account_id=plan.account_id,
                            workflow_id=workflow.id if workflow is not None else None,
                            sequence=0,
                            action_type="escalation",
                            description=f"Payment plan {plan.id} defaulted: missed installment",
                            priority="high",
                            scheduled_for=now,
                            status="scheduled",
                            source="plan_default",
                            on_hold=False,
                            attempt_count=0,
                            created_at=now,
                        ))
                    await session.commit()
            except Exception as e:
                logger.error("Failed to default payment plan", plan_id=plan_id, error=str(e), exc_info=True)
                continue
            result.plans_defaulted += 1
            logger.warning("Payment plan defaulted, escalation resumed", plan_id=plan_id)

    async def _execute_task(self, task_id: int, now: datetime, result: ProcessActionsResult) -> None:
        async with self.session_factory() as session:
            task = await session.get(CollectionTaskModel, task_id)
            if task is None or task.status != "scheduled" or task.on_hold:
                return
            account = await self._load_account(session, task.account_id)
            if Decimal(account.outstanding_balance or 0) <= ZERO:
                task.status = "skipped"
                task.executed_at = now
                task.result = {"reason": "zero_balance"}
                await session.commit()
                result.skipped += 1
                self.metrics_collector.record_collection_task(task.action_type, "skipped")
                return
            statement = await self._build_statement(session, account, now) if task.action_type == "statement" else None

        # The dispatcher talks to external systems, so no transaction is held open around it
        error: Optional[str] = None
        try:
            outcome = await self.dispatcher.dispatch(task, statement)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning("Collection action failed", task_id=task_id, action_type=task.action_type, error=error)

        async with self.session_factory() as session:
            task = await session.get(CollectionTaskModel, task_id)
            task.attempt_count = task.attempt_count + 1
            if error is None:
                task.status = "executed"
                task.executed_at = now
                task.result = outcome
                task.last_error = None
                if statement is not None:
                    account = await self._load_account(session, task.account_id)
                    account.last_statement_date = now
                    account.version = account.version + 1
                result.executed += 1
                label = "executed"
            elif task.attempt_count >= self.settings.COLLECTION_MAX_ATTEMPTS:
                task.status = "failed"
                task.last_error = error
                result.failed += 1
                label = "failed"
            else:
                delay = timedelta(minutes=self.settings.COLLECTION_RETRY_BASE_MINUTES * 2 ** (task.attempt_count - 1))
                task.scheduled_for = now + delay
                task.last_error = error
                result.retried += 1
                label = "retried"
            await session.commit()
        self.metrics_collector.record_collection_task(task.action_type, label)

    async def _complete_finished_workflows(self, now: datetime) -> int:
        open_task = exists().where(
            (CollectionTaskModel.workflow_id == CollectionWorkflowModel.id)
            & (CollectionTaskModel.status == "scheduled")
        )
        async with self.session_factory() as session:
            workflows = (await session.execute(
                select(CollectionWorkflowModel)
                .where(CollectionWorkflowModel.status == "active")
                .where(~open_task)
            )).scalars().all()
            for workflow in workflows:
                workflow.status = "completed"
                workflow.completed_at = now
            await session.commit()
        return len(workflows)

    async def process_workflow_actions(self, stop_event: Optional[asyncio.Event] = None) -> ProcessActionsResult:
        """
        Periodic driver: defaults lapsed payment plans, executes due tasks one by
        one and closes workflows with nothing left to do. Each task commits on its
        own, so an interrupted run resumes where it stopped.
        """
        start_time = time.perf_counter()
        now = self.clock()
        result = ProcessActionsResult()

        await self._check_payment_plans(now, result)

        async with self.session_factory() as session:
            due_ids = list((await session.execute(
                select(CollectionTaskModel.id)
                .where(CollectionTaskModel.status == "scheduled")
                .where(CollectionTaskModel.on_hold.is_(False))
                .where(CollectionTaskModel.scheduled_for <= now)
                .order_by(CollectionTaskModel.scheduled_for, CollectionTaskModel.id)
                .limit(self.settings.COLLECTION_BATCH_SIZE)
            )).scalars().all())
        result.due = len(due_ids)

        for task_id in due_ids:
            if stop_event is not None and stop_event.is_set():
                result.stopped_early = True
                break
            try:
                await self._execute_task(task_id, now, result)
            except Exception as e:
                result.failed += 1
                logger.error("Collection task processing error", task_id=task_id, error=str(e), exc_info=True)

        result.workflows_completed = await self._complete_finished_workflows(now)
        self.metrics_collector.record_job_duration("collection_driver", time.perf_counter() - start_time)
        logger.info("Collection workflow actions processed", **result.model_dump())
        return result
