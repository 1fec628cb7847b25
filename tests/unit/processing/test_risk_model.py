from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from rcm_engine.src.core.config.settings import Settings
from rcm_engine.src.core.database.models.account_db import AccountModel
from rcm_engine.src.processing.aging.feature_extractor import (
    FEATURE_NAMES,
    AccountSignals,
    aging_bucket,
    days_outstanding,
)
from rcm_engine.src.processing.aging.risk_model import LogisticRiskModel, RuleBasedRiskModel, build_risk_model

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def rule_model(settings: Settings) -> RuleBasedRiskModel:
    return RuleBasedRiskModel(settings.RISK_RULE_WEIGHTS, settings.HIGH_BALANCE_THRESHOLD)


def make_signals(days=0, balance=200.0, denials=0, payer_mix=None, payment_count=0, since_payment=None) -> AccountSignals:
    return AccountSignals(
        account_id=1,
        days_outstanding=days,
        aging_bucket=aging_bucket(days),
        outstanding_balance=balance,
        denial_count=denials,
        payer_mix=payer_mix if payer_mix is not None else {"commercial": 1.0},
        payment_count=payment_count,
        days_since_last_payment=since_payment,
    )


@pytest.mark.parametrize("days,bucket", [
    (0, "0-30"), (30, "0-30"), (31, "31-60"), (60, "31-60"),
    (61, "61-90"), (90, "61-90"), (91, "91-120"), (120, "91-120"), (121, "120+"),
])
def test_aging_bucket_boundaries(days, bucket):
    assert aging_bucket(days) == bucket


def test_days_outstanding_counts_from_balance_since():
    account = AccountModel(outstanding_balance=Decimal("100.00"), balance_since=NOW - timedelta(days=45, hours=3))
    assert days_outstanding(account, NOW) == 45


def test_days_outstanding_is_zero_without_balance():
    assert days_outstanding(AccountModel(outstanding_balance=Decimal("0"), balance_since=NOW - timedelta(days=90)), NOW) == 0
    assert days_outstanding(AccountModel(outstanding_balance=Decimal("50"), balance_since=None), NOW) == 0


def test_current_account_with_recent_payment_scores_high(rule_model: RuleBasedRiskModel):
    probability, factors = rule_model.predict(make_signals(days=10, payment_count=2, since_payment=5))
    assert probability == 1.0
    assert factors == []


def test_aged_account_without_payments_scores_below_half(rule_model: RuleBasedRiskModel):
    probability, factors = rule_model.predict(make_signals(days=75))
    assert probability == pytest.approx(0.35)
    assert probability < 0.5
    assert factors == ["aging_bucket_61-90", "no_payment_history"]


def test_sixty_days_without_payment_is_at_risk(rule_model: RuleBasedRiskModel):
    probability, _ = rule_model.predict(make_signals(days=60))
    assert probability == pytest.approx(0.45)


def test_prediction_is_deterministic(rule_model: RuleBasedRiskModel):
    signals = make_signals(days=95, denials=2, payer_mix={"self_pay": 0.5, "medicare": 0.5}, payment_count=1, since_payment=80)
    first = rule_model.predict(signals)
    assert all(rule_model.predict(signals) == first for _ in range(5))


def test_score_is_clipped_to_zero(rule_model: RuleBasedRiskModel):
    signals = make_signals(days=200, balance=25000.0, denials=6, payer_mix={"self_pay": 1.0})
    probability, factors = rule_model.predict(signals)
    assert probability == 0.0
    assert "high_balance" in factors
    assert "self_pay_heavy" in factors
    assert "denials:6" in factors


def test_government_payers_raise_the_score(rule_model: RuleBasedRiskModel):
    commercial, _ = rule_model.predict(make_signals(days=45, payment_count=1, since_payment=10))
    government, _ = rule_model.predict(make_signals(days=45, payer_mix={"medicare": 1.0}, payment_count=1, since_payment=10))
    assert government > commercial


def test_logistic_model_stays_in_bounds_and_orders_by_age(settings: Settings):
    model = LogisticRiskModel(settings.RISK_LOGISTIC_INTERCEPT, settings.RISK_LOGISTIC_COEFFICIENTS)
    young, _ = model.predict(make_signals(days=5, payment_count=1, since_payment=5))
    old, factors = model.predict(make_signals(days=200, denials=3))

    assert 0.0 <= old < young <= 1.0
    assert 0 < len(factors) <= 3
    assert set(factors) <= set(FEATURE_NAMES)
    assert factors[0] == "days_outstanding"


def test_build_risk_model_honours_setting():
    assert build_risk_model(Settings(_env_file=None)).name == "rule_based"
    assert build_risk_model(Settings(_env_file=None, RISK_MODEL="logistic")).name == "logistic"
