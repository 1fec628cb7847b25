from decimal import Decimal

import pytest
from sqlalchemy import func, select

from rcm_engine.src.api.models.account_models import AccountCreate
from rcm_engine.src.api.models.ar_models import ArAccountFilters, AutomatedActionThresholds
from rcm_engine.src.core.database.models.collection_db import CollectionTaskModel
from rcm_engine.src.core.database.models.risk_score_db import RiskScoreModel
from rcm_engine.src.core.exceptions import EntityNotFoundError

THRESHOLDS = AutomatedActionThresholds(min_days_outstanding=60, max_collection_probability=0.5)


@pytest.fixture
async def aged_account(container, accepted_claim, era_command, clock):
    """Payer paid 250 of 400 allowed; the 150 residual has aged 60 days."""
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "400.00", "250.00"))
    clock.advance(days=60)
    return await container.account_service.get_account(accepted_claim.account_id)


async def test_analyze_groups_balances_by_bucket(container, aged_account):
    report = await container.aging_service.analyze_ar_accounts()

    assert report["account_count"] == 1
    assert report["total_outstanding"] == Decimal("150.00")
    assert report["bucket_totals"]["31-60"] == {"count": 1, "balance": Decimal("150.00")}
    assert report["bucket_totals"]["0-30"]["count"] == 0
    row = report["accounts"][0]
    assert (row["account_number"], row["days_outstanding"], row["aging_bucket"]) == ("ACC-1001", 60, "31-60")

    filtered = await container.aging_service.analyze_ar_accounts(ArAccountFilters(aging_bucket="0-30"))
    assert filtered["account_count"] == 0
    assert (await container.aging_service.analyze_ar_accounts(ArAccountFilters(payer_id="OTHER")))["account_count"] == 0


async def test_zero_balance_accounts_are_not_aged(container, account):
    report = await container.aging_service.analyze_ar_accounts()
    assert report["account_count"] == 0


async def test_predict_collection_probability(container, aged_account, clock):
    prediction = await container.aging_service.predict_collection_probability(aged_account.id)

    assert prediction.collection_probability == pytest.approx(0.45)
    assert prediction.aging_bucket == "31-60"
    assert prediction.risk_factors == ["aging_bucket_31-60", "no_payment_history"]
    assert prediction.model_name == "rule_based"
    assert prediction.computed_at == clock()


async def test_predict_unknown_account(container):
    with pytest.raises(EntityNotFoundError):
        await container.aging_service.predict_collection_probability(404)


async def test_risk_scores_are_replaced_not_appended(container, aged_account, clock):
    first = await container.aging_service.generate_risk_scores()
    clock.advance(days=20)
    second = await container.aging_service.generate_risk_scores()

    assert first["scored"] == second["scored"] == 1
    async with container.session_factory() as session:
        rows = (await session.execute(select(RiskScoreModel))).scalars().all()
    assert len(rows) == 1
    # 80 days outstanding now
    assert rows[0].aging_bucket == "61-90"
    assert float(rows[0].collection_probability) == pytest.approx(0.35)
    assert rows[0].computed_at == clock()


async def test_risk_scores_for_unknown_accounts(container):
    summary = await container.aging_service.generate_risk_scores(account_ids=[404])
    assert (summary["requested"], summary["scored"], summary["not_found"]) == (1, 0, 1)


async def test_trigger_enqueues_collection_task(container, aged_account, clock):
    summary = await container.aging_service.trigger_automated_actions(THRESHOLDS)

    assert (summary["evaluated"], summary["tasks_created"]) == (1, 1)
    async with container.session_factory() as session:
        task = await session.get(CollectionTaskModel, summary["task_ids"][0])
    assert task.action_type == "statement"
    assert task.source == "aging_trigger"
    assert task.status == "scheduled"
    assert task.scheduled_for == clock()

    again = await container.aging_service.trigger_automated_actions(THRESHOLDS)
    assert (again["tasks_created"], again["skipped_existing"]) == (0, 1)


async def test_trigger_respects_thresholds(container, aged_account):
    not_old_enough = await container.aging_service.trigger_automated_actions(
        AutomatedActionThresholds(min_days_outstanding=90, max_collection_probability=0.5)
    )
    assert not_old_enough["evaluated"] == 0

    likely_to_pay = await container.aging_service.trigger_automated_actions(
        AutomatedActionThresholds(min_days_outstanding=30, max_collection_probability=0.4)
    )
    assert (likely_to_pay["evaluated"], likely_to_pay["above_threshold"]) == (1, 1)

    async with container.session_factory() as session:
        count = (await session.execute(select(func.count(CollectionTaskModel.id)))).scalar_one()
    assert count == 0


async def test_bucket_filter_applies_before_limit(container, clock):
    old = await container.account_service.create_account(
        AccountCreate(account_number="ACC-OLD", guarantor_name="Riley Chen", opening_balance=Decimal("800.00"))
    )
    clock.advance(days=100)
    new = await container.account_service.create_account(
        AccountCreate(account_number="ACC-NEW", guarantor_name="Drew Patel", opening_balance=Decimal("120.00"))
    )

    young = await container.aging_service.analyze_ar_accounts(ArAccountFilters(aging_bucket="0-30", limit=1))
    assert [row["account_id"] for row in young["accounts"]] == [new.id]

    aged = await container.aging_service.analyze_ar_accounts(ArAccountFilters(aging_bucket="91-120", limit=1))
    assert [row["account_id"] for row in aged["accounts"]] == [old.id]
    assert aged["accounts"][0]["days_outstanding"] == 100
