from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal

AgingBucket = Literal["0-30", "31-60", "61-90", "91-120", "120+"]


class ArAccountFilters(BaseModel):
    payer_id: Optional[str] = None
    min_balance: Decimal = Decimal("0")
    aging_bucket: Optional[AgingBucket] = None
    limit: int = Field(500, gt=0, le=5000)


class RiskPrediction(BaseModel):
    account_id: int
    collection_probability: float
    aging_bucket: str
    days_outstanding: int
    outstanding_balance: Decimal
    risk_factors: List[str] = []
    model_name: str
    computed_at: datetime


class RiskScoreBatchRequest(BaseModel):
    account_ids: Optional[List[int]] = None


class AutomatedActionThresholds(BaseModel):
    min_days_outstanding: int = Field(60, ge=0)
    max_collection_probability: float = Field(0.5, ge=0.0, le=1.0)
    min_balance: Decimal = Decimal("0")
