from pydantic import BaseModel, Field, condecimal
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .claim_models import Money


class AccountCreate(BaseModel):
    account_number: str = Field(..., min_length=1, max_length=100)
    guarantor_name: Optional[str] = None
    opening_balance: Money = Decimal("0")


class AccountResponse(BaseModel):
    id: int
    account_number: str
    guarantor_name: Optional[str] = None
    outstanding_balance: Decimal
    balance_since: Optional[datetime] = None
    last_statement_date: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    payment_count: int
    total_payments: Decimal
    version: int

    model_config = {"from_attributes": True}


class PatientPaymentRequest(BaseModel):
    amount: condecimal(max_digits=12, decimal_places=2, gt=Decimal(0))
