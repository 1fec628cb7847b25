from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from rcm_engine.src.api.models.account_models import AccountCreate
from rcm_engine.src.api.models.collection_models import PaymentPlanRequest
from rcm_engine.src.core.exceptions import EntityNotFoundError, ValidationError


@pytest.fixture
def open_account(container):
    async def _create(balance: str, account_number: str = "ACC-2001"):
        return await container.account_service.create_account(
            AccountCreate(account_number=account_number, guarantor_name="Sam Rivera", opening_balance=Decimal(balance))
        )

    return _create


async def test_initiate_builds_template_schedule(container, open_account, clock):
    account = await open_account("1200.00")

    workflow, tasks = await container.collection_service.initiate_workflow(account.id)

    assert workflow.workflow_type == "standard"
    assert workflow.status == "active"
    assert [t.action_type for t in tasks] == [
        "statement", "reminder_call", "reminder_call", "escalation", "reminder_call", "escalation",
    ]
    assert [t.sequence for t in tasks] == [1, 2, 3, 4, 5, 6]
    assert tasks[0].scheduled_for == clock()
    assert tasks[1].scheduled_for == clock() + timedelta(days=30)
    assert tasks[-1].priority == "high"
    assert all(not t.on_hold for t in tasks)


async def test_initiate_small_recent_balance_is_gentle(container, open_account):
    account = await open_account("300.00")
    workflow, tasks = await container.collection_service.initiate_workflow(account.id)
    assert workflow.workflow_type == "gentle"
    assert tasks[3].action_type == "payment_plan_offer"


async def test_only_one_open_workflow_per_account(container, open_account):
    account = await open_account("1200.00")
    await container.collection_service.initiate_workflow(account.id, "aggressive")

    with pytest.raises(ValidationError, match="Active workflow already exists for this account."):
        await container.collection_service.initiate_workflow(account.id)


async def test_initiate_requires_balance(container, account):
    with pytest.raises(ValidationError):
        await container.collection_service.initiate_workflow(account.id)
    with pytest.raises(EntityNotFoundError):
        await container.collection_service.initiate_workflow(404)


async def test_driver_executes_due_statement(container, open_account, clock):
    account = await open_account("1200.00")
    workflow, _ = await container.collection_service.initiate_workflow(account.id)

    result = await container.collection_service.process_workflow_actions()

    assert (result.due, result.executed, result.failed) == (1, 1, 0)
    _, tasks = await container.collection_service.get_workflow(workflow.id)
    statement_task = tasks[0]
    assert statement_task.status == "executed"
    assert statement_task.attempt_count == 1
    assert statement_task.result["channel"] == "mail"
    assert statement_task.result["statement_id"].startswith(f"STMT-{account.id}-")
    assert [t.status for t in tasks[1:]] == ["scheduled"] * 5
    assert (await container.account_service.get_account(account.id)).last_statement_date == clock()

    # Nothing else is due until the first reminder
    assert (await container.collection_service.process_workflow_actions()).due == 0


async def test_failing_dispatch_is_retried_then_failed(container, open_account, clock):
    dispatcher = AsyncMock()
    dispatcher.dispatch.side_effect = ConnectionError("print vendor down")
    container.collection_service.dispatcher = dispatcher
    account = await open_account("1200.00")
    workflow, _ = await container.collection_service.initiate_workflow(account.id)

    first = await container.collection_service.process_workflow_actions()
    assert first.retried == 1
    _, tasks = await container.collection_service.get_workflow(workflow.id)
    assert tasks[0].status == "scheduled"
    assert tasks[0].scheduled_for == clock() + timedelta(minutes=60)
    assert "print vendor down" in tasks[0].last_error

    clock.advance(minutes=61)
    assert (await container.collection_service.process_workflow_actions()).retried == 1
    clock.advance(minutes=121)
    last = await container.collection_service.process_workflow_actions()

    assert last.failed == 1
    _, tasks = await container.collection_service.get_workflow(workflow.id)
    assert tasks[0].status == "failed"
    assert tasks[0].attempt_count == container.settings.COLLECTION_MAX_ATTEMPTS


async def test_task_for_settled_account_is_skipped(container, open_account):
    account = await open_account("1200.00")
    await container.collection_service.initiate_workflow(account.id)
    await container.account_service.record_patient_payment(account.id, Decimal("1200.00"))

    result = await container.collection_service.process_workflow_actions()

    assert (result.skipped, result.executed) == (1, 0)
    tasks = await container.collection_service.list_tasks(account.id)
    assert tasks[0].result == {"reason": "zero_balance"}


async def test_payment_plan_holds_collection_work(container, open_account):
    account = await open_account("1200.00")
    workflow, _ = await container.collection_service.initiate_workflow(account.id)

    plan = await container.collection_service.setup_payment_plan(
        PaymentPlanRequest(account_id=account.id, monthly_payment=Decimal("200.00"), number_of_payments=6)
    )

    assert plan.status == "active"
    assert plan.remaining_balance == Decimal("1200.00")
    assert [i.amount for i in plan.installments] == [Decimal("200.00")] * 6
    workflow, tasks = await container.collection_service.get_workflow(workflow.id)
    assert workflow.status == "paused"
    assert [t.on_hold for t in tasks] == [False, True, True, True, True, True]

    with pytest.raises(ValidationError, match="already has an active payment plan"):
        await container.collection_service.setup_payment_plan(
            PaymentPlanRequest(account_id=account.id, monthly_payment=Decimal("100.00"), number_of_payments=12)
        )


@pytest.mark.parametrize("monthly,count,message", [
    ("100.00", 6, "at least 95%"),
    ("50.00", 30, "cannot exceed 24 payments"),
    ("300.00", 6, "Too many payments"),
])
async def test_payment_plan_validation(container, open_account, monthly, count, message):
    account = await open_account("1200.00")
    with pytest.raises(ValidationError) as exc_info:
        await container.collection_service.setup_payment_plan(
            PaymentPlanRequest(account_id=account.id, monthly_payment=Decimal(monthly), number_of_payments=count)
        )
    assert any(message in error for error in exc_info.value.errors)


async def test_completed_plan_releases_holds(container, open_account):
    account = await open_account("1200.00")
    workflow, _ = await container.collection_service.initiate_workflow(account.id)
    plan = await container.collection_service.setup_payment_plan(
        PaymentPlanRequest(account_id=account.id, monthly_payment=Decimal("200.00"), number_of_payments=6)
    )

    plan = await container.collection_service.record_plan_payment(plan.id, Decimal("200.00"))
    assert plan.remaining_balance == Decimal("1000.00")
    assert [i.status for i in plan.installments[:2]] == ["paid", "pending"]
    with pytest.raises(ValidationError, match="exceeds the plan's remaining balance"):
        await container.collection_service.record_plan_payment(plan.id, Decimal("1000.01"))

    plan = await container.collection_service.record_plan_payment(plan.id, Decimal("1000.00"))

    assert plan.status == "completed"
    assert all(i.status == "paid" for i in plan.installments)
    assert (await container.account_service.get_account(account.id)).outstanding_balance == Decimal("0")
    workflow, tasks = await container.collection_service.get_workflow(workflow.id)
    assert workflow.status == "active"
    assert not any(t.on_hold for t in tasks)


async def test_missed_installment_defaults_plan_and_escalates(container, open_account, clock):
    account = await open_account("1200.00")
    plan = await container.collection_service.setup_payment_plan(
        PaymentPlanRequest(account_id=account.id, monthly_payment=Decimal("200.00"), number_of_payments=6)
    )
    clock.advance(days=container.settings.PAYMENT_PLAN_GRACE_DAYS + 1)

    result = await container.collection_service.process_workflow_actions()

    assert result.plans_defaulted == 1
    plan = await container.collection_service.get_payment_plan(plan.id)
    assert plan.status == "defaulted"
    assert plan.installments[0].status == "missed"
    tasks = await container.collection_service.list_tasks(account.id)
    assert [(t.action_type, t.source, t.status) for t in tasks] == [("escalation", "plan_default", "executed")]


async def test_generate_statement_offers_payment_options(container, open_account, clock):
    account = await open_account("1200.00")

    statement = await container.collection_service.generate_statement(account.id)

    assert statement["statement_id"] == f"STMT-{account.id}-20260302090000"
    assert statement["account"]["current_balance"] == Decimal("1200.00")
    options = {option["type"]: option for option in statement["payment_options"]}
    assert options["full_payment"]["amount"] == Decimal("1200.00")
    assert options["payment_plan_6"]["monthly_amount"] == Decimal("200.00")
    assert options["payment_plan_12"]["monthly_amount"] == Decimal("100.00")
    assert (await container.account_service.get_account(account.id)).last_statement_date == clock()


async def test_statement_lists_patient_charges(container, accepted_claim, era_command):
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "400.00", "250.00"))

    statement = await container.collection_service.generate_statement(accepted_claim.account_id)

    assert [c["claim_number"] for c in statement["charges"]] == ["CLM-1001"]
    assert statement["charges"][0]["patient_responsibility"] == Decimal("150.00")
    assert [o["type"] for o in statement["payment_options"]] == ["full_payment"]


async def test_schedule_follow_up(container, open_account, clock):
    account = await open_account("1200.00")

    task = await container.collection_service.schedule_follow_up(account.id, "reminder_call")

    assert task.scheduled_for == clock() + timedelta(days=7)
    assert (task.source, task.priority, task.workflow_id) == ("manual", "medium", None)
    with pytest.raises(ValidationError):
        await container.collection_service.schedule_follow_up(account.id, "carrier_pigeon")


async def test_patient_payment_cannot_overpay(container, open_account):
    account = await open_account("100.00")

    with pytest.raises(ValidationError, match="exceeds the outstanding balance"):
        await container.account_service.record_patient_payment(account.id, Decimal("100.01"))

    account = await container.account_service.record_patient_payment(account.id, Decimal("100.00"))
    assert account.outstanding_balance == Decimal("0")
    assert account.balance_since is None
    assert account.payment_count == 1
