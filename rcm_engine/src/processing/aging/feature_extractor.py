from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...core.database.models.account_db import AccountModel
from ...core.database.models.claims_db import ClaimModel
from ...core.database.models.denial_db import DenialModel

logger = structlog.get_logger(__name__)

BUCKETS = ("0-30", "31-60", "61-90", "91-120", "120+")
# Inclusive day bounds per bucket; None is open-ended
BUCKET_DAYS: Dict[str, Tuple[int, Optional[int]]] = {
    "0-30": (0, 30),
    "31-60": (31, 60),
    "61-90": (61, 90),
    "91-120": (91, 120),
    "120+": (121, None),
}
GOVERNMENT_PAYER_TYPES = frozenset({"medicare", "medicaid"})

# Order of the numeric feature vector consumed by the logistic model
FEATURE_NAMES: List[str] = [
    "days_outstanding",
    "log_balance",
    "denial_count",
    "self_pay_share",
    "government_share",
    "payment_count",
    "days_since_last_payment",
]


def aging_bucket(days_outstanding: int) -> str:
    if days_outstanding <= 30:
        return "0-30"
    if days_outstanding <= 60:
        return "31-60"
    if days_outstanding <= 90:
        return "61-90"
    if days_outstanding <= 120:
        return "91-120"
    return "120+"


def days_outstanding(account: AccountModel, now: datetime) -> int:
    if account.balance_since is None or Decimal(account.outstanding_balance or 0) <= 0:
        return 0
    return max((now - account.balance_since).days, 0)


@dataclass(frozen=True)
class AccountSignals:
    """Point-in-time snapshot of everything the risk models look at."""

    account_id: int
    days_outstanding: int
    aging_bucket: str
    outstanding_balance: float
    denial_count: int
    payer_mix: Dict[str, float] = field(default_factory=dict)
    payment_count: int = 0
    days_since_last_payment: Optional[int] = None

    @property
    def self_pay_share(self) -> float:
        return self.payer_mix.get("self_pay", 0.0)

    @property
    def government_share(self) -> float:
        return sum(share for payer_type, share in self.payer_mix.items() if payer_type in GOVERNMENT_PAYER_TYPES)

    def to_vector(self) -> np.ndarray:
        since_payment = self.days_since_last_payment if self.days_since_last_payment is not None else self.days_outstanding
        return np.array([
            float(self.days_outstanding),
            float(np.log1p(max(self.outstanding_balance, 0.0))),
            float(self.denial_count),
            self.self_pay_share,
            self.government_share,
            float(self.payment_count),
            float(since_payment),
        ], dtype=np.float64)


class AccountFeatureExtractor:
    async def extract(self, session: AsyncSession, account: AccountModel, now: datetime) -> AccountSignals:
        days = days_outstanding(account, now)

        mix_rows = (await session.execute(
            select(ClaimModel.payer_type, func.count(ClaimModel.id))
            .where(ClaimModel.account_id == account.id)
            .group_by(ClaimModel.payer_type)
        )).all()
        total_claims = sum(count for _, count in mix_rows)
        payer_mix = {
            payer_type: round(count / total_claims, 4) for payer_type, count in sorted(mix_rows)
        } if total_claims else {}

        denial_count = (await session.execute(
            select(func.count(DenialModel.id))
            .select_from(DenialModel)
            .join(ClaimModel, ClaimModel.id == DenialModel.claim_id)
            .where(ClaimModel.account_id == account.id)
        )).scalar_one()

        since_payment = None
        if account.last_payment_at is not None:
            since_payment = max((now - account.last_payment_at).days, 0)

        return AccountSignals(
            account_id=account.id,
            days_outstanding=days,
            aging_bucket=aging_bucket(days),
            outstanding_balance=float(account.outstanding_balance or 0),
            denial_count=int(denial_count or 0),
            payer_mix=payer_mix,
            payment_count=int(account.payment_count or 0),
            days_since_last_payment=since_payment,
        )
