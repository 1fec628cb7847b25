from pydantic import BaseModel, Field, condecimal, model_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Literal

Money = condecimal(max_digits=12, decimal_places=2, ge=Decimal(0))

PayerType = Literal["commercial", "medicare", "medicaid", "self_pay", "other"]


class ClaimLineItemCreate(BaseModel):
    line_number: Optional[int] = Field(None, gt=0)
    service_date: Optional[date] = None
    procedure_code: Optional[str] = Field(None, max_length=20)
    diagnosis_codes: List[str] = []
    modifiers: List[str] = []
    quantity: int = 1
    unit_price: Money


class ClaimCreate(BaseModel):
    claim_number: str = Field(..., min_length=1, max_length=100)
    account_id: int
    payer_id: Optional[str] = None
    payer_name: Optional[str] = None
    payer_type: PayerType = "commercial"
    service_date: Optional[date] = None
    clinical_summary: Optional[str] = None
    billed_amount: Optional[Money] = None  # Defaults to the sum of the line charges
    line_items: List[ClaimLineItemCreate] = []


class ClaimLineItemResponse(BaseModel):
    id: int
    line_number: int
    service_date: Optional[date] = None
    procedure_code: Optional[str] = None
    diagnosis_codes: List[str] = []
    modifiers: List[str] = []
    quantity: int
    unit_price: Decimal
    line_outcome: str
    paid_amount: Decimal

    model_config = {"from_attributes": True}


class ClaimResponse(BaseModel):
    id: int
    claim_number: str
    account_id: int
    payer_id: Optional[str] = None
    payer_name: Optional[str] = None
    payer_type: str
    service_date: Optional[date] = None
    status: str
    billed_amount: Decimal
    allowed_amount: Optional[Decimal] = None
    paid_amount: Decimal
    patient_responsibility: Decimal
    clearinghouse_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    rejection_reasons: Optional[List[str]] = None
    version: int
    created_at: datetime
    updated_at: datetime
    line_items: List[ClaimLineItemResponse] = []

    model_config = {"from_attributes": True}


class ClaimStatusHistoryResponse(BaseModel):
    from_status: str
    to_status: str
    reason: Optional[str] = None
    source: str
    created_at: datetime

    model_config = {"from_attributes": True}


class VersionedCommand(BaseModel):
    # Optimistic concurrency: when set, the command fails if the claim moved on
    expected_version: Optional[int] = None


class SubmitClaimRequest(VersionedCommand):
    pass


class DenialReason(BaseModel):
    group_code: Optional[str] = Field(None, max_length=5)
    reason_code: str = Field(..., min_length=1, max_length=20)
    reason_text: Optional[str] = None
    amount: Money = Decimal("0")
    line_number: Optional[int] = None


class MarkDeniedRequest(VersionedCommand):
    denial_reasons: List[DenialReason] = Field(..., min_length=1)


class FileAppealRequest(VersionedCommand):
    denial_id: Optional[int] = None
    appeal_type: str = "standard"


class VoidClaimRequest(VersionedCommand):
    reason: str = Field(..., min_length=1)


ClearinghouseStatus = Literal[
    "pending", "accepted", "rejected", "adjudicated", "paid", "partially_paid", "denied"
]


class ClaimStatusUpdate(BaseModel):
    """Normalised result of a clearinghouse status poll or submission response."""

    status: ClearinghouseStatus
    clearinghouse_id: Optional[str] = None
    allowed_amount: Optional[Money] = None
    paid_amount: Optional[Money] = None
    patient_responsibility: Optional[Money] = None
    rejection_reasons: List[str] = []
    denial_reasons: List[DenialReason] = []

    @model_validator(mode="after")
    def _check_amounts(self):
        if self.paid_amount is not None and self.allowed_amount is not None and self.paid_amount > self.allowed_amount:
            raise ValueError("paid_amount cannot exceed allowed_amount")
        return self
