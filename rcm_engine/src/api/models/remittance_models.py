from pydantic import BaseModel, Field, condecimal
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .claim_models import Money


class Adjustment(BaseModel):
    group_code: str = Field(..., max_length=5)  # CO, PR, OA, PI, CR
    reason_code: str = Field(..., max_length=20)
    amount: condecimal(max_digits=12, decimal_places=2)


class LineAdjustment(BaseModel):
    line_number: Optional[int] = None
    procedure_code: Optional[str] = None
    billed_amount: Money = Decimal("0")
    paid_amount: Money = Decimal("0")
    adjustments: List[Adjustment] = []


class RemittanceClaimRecord(BaseModel):
    claim_reference: str = Field(..., min_length=1)
    status_code: Optional[str] = None
    billed_amount: Money
    allowed_amount: Money
    paid_amount: Money
    patient_responsibility: Money = Decimal("0")
    adjustments: List[Adjustment] = []
    line_adjustments: List[LineAdjustment] = []


class RemittanceAdviceCommand(BaseModel):
    batch_id: str = Field(..., min_length=1, max_length=100)
    payer_name: Optional[str] = None
    payer_id: Optional[str] = None
    payment_amount: Money = Decimal("0")
    payment_date: Optional[datetime] = None
    records: List[RemittanceClaimRecord] = []


class RawEraRequest(BaseModel):
    content: str = Field(..., min_length=1)
    batch_id: Optional[str] = None  # Overrides the trace number found in the file


class RemittanceApplyResult(BaseModel):
    remittance_id: int
    batch_id: str
    status: str
    already_processed: bool = False
    applied: int = 0
    skipped_unknown_claim: int = 0
    skipped_invalid_state: int = 0
    rejected_invalid_amounts: int = 0
    failed: int = 0


class SyncSweepResult(BaseModel):
    examined: int = 0
    updated: int = 0
    unchanged: int = 0
    resubmitted: int = 0
    failed: int = 0
    stopped_early: bool = False


class RemittanceSyncResult(BaseModel):
    available: int = 0
    applied_batches: int = 0
    already_processed: int = 0
    failed: int = 0
