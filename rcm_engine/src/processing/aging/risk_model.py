"""
Collection-probability models. Both are pure functions of AccountSignals and
their configured weights: the same snapshot always yields the same score.
"""
from typing import Dict, List, Protocol, Tuple

import numpy as np

from ...core.config.settings import Settings
from .feature_extractor import FEATURE_NAMES, AccountSignals

BUCKET_WEIGHT_KEYS: Dict[str, str] = {
    "31-60": "bucket_31_60",
    "61-90": "bucket_61_90",
    "91-120": "bucket_91_120",
    "120+": "bucket_120_plus",
}

STALE_PAYMENT_DAYS = 60


class RiskModel(Protocol):
    name: str

    def predict(self, signals: AccountSignals) -> Tuple[float, List[str]]:
        ...


def _clip(probability: float) -> float:
    return round(float(np.clip(probability, 0.0, 1.0)), 4)


class RuleBasedRiskModel:
    name = "rule_based"

    def __init__(self, weights: Dict[str, float], high_balance_threshold: float):
        self.weights = dict(weights)
        self.high_balance_threshold = high_balance_threshold

    def _w(self, key: str) -> float:
        return float(self.weights.get(key, 0.0))

    def predict(self, signals: AccountSignals) -> Tuple[float, List[str]]:
        score = 1.0
        factors: List[str] = []

        bucket_key = BUCKET_WEIGHT_KEYS.get(signals.aging_bucket)
        if bucket_key:
            score -= self._w(bucket_key)
            factors.append(f"aging_bucket_{signals.aging_bucket}")

        if signals.payment_count == 0:
            score -= self._w("no_payment_history")
            factors.append("no_payment_history")
        elif signals.days_since_last_payment is not None and signals.days_since_last_payment > STALE_PAYMENT_DAYS:
            score -= self._w("stale_payment")
            factors.append("stale_payment")

        if signals.denial_count:
            score -= min(self._w("per_denial") * signals.denial_count, self._w("max_denial_penalty"))
            factors.append(f"denials:{signals.denial_count}")

        if signals.outstanding_balance >= self.high_balance_threshold:
            score -= self._w("high_balance")
            factors.append("high_balance")

        if signals.self_pay_share > 0:
            score -= self._w("self_pay_share") * signals.self_pay_share
            if signals.self_pay_share >= 0.5:
                factors.append("self_pay_heavy")

        if signals.government_share > 0:
            score -= self._w("government_share") * signals.government_share

        return _clip(score), factors


class LogisticRiskModel:
    name = "logistic"

    def __init__(self, intercept: float, coefficients: Dict[str, float]):
        self.intercept = float(intercept)
        self.coefficients = np.array([float(coefficients.get(name, 0.0)) for name in FEATURE_NAMES], dtype=np.float64)

    def predict(self, signals: AccountSignals) -> Tuple[float, List[str]]:
        features = signals.to_vector()
        contributions = features * self.coefficients
        z = self.intercept + float(np.sum(contributions))
        probability = 1.0 / (1.0 + np.exp(-z))

        # Report the features pulling the score down the most, strongest first
        order = np.argsort(contributions, kind="stable")
        factors = [FEATURE_NAMES[i] for i in order if contributions[i] < 0][:3]
        return _clip(probability), factors


def build_risk_model(settings: Settings) -> RiskModel:
    if settings.RISK_MODEL == "logistic":
        return LogisticRiskModel(settings.RISK_LOGISTIC_INTERCEPT, settings.RISK_LOGISTIC_COEFFICIENTS)
    return RuleBasedRiskModel(settings.RISK_RULE_WEIGHTS, settings.HIGH_BALANCE_THRESHOLD)
