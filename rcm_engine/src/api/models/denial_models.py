from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal, Dict, Any

from .claim_models import Money

DenialCategory = Literal[
    "eligibility", "coding_documentation", "authorization", "timely_filing", "bundling", "other"
]

AppealOutcome = Literal["overturned", "upheld", "partial"]


class DenialResponse(BaseModel):
    id: int
    claim_id: int
    line_item_id: Optional[int] = None
    group_code: Optional[str] = None
    reason_code: str
    reason_text: Optional[str] = None
    denied_amount: Decimal
    category: Optional[str] = None
    priority: Optional[str] = None
    status: str
    created_at: datetime
    analyzed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AppealResponse(BaseModel):
    id: int
    denial_id: int
    appeal_type: str
    letter_content: Dict[str, Any]
    supporting_documents: List[str] = []
    generated_at: datetime
    resubmission_deadline: datetime
    submitted_at: Optional[datetime] = None
    outcome: str
    recovered_amount: Optional[Decimal] = None
    outcome_recorded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class GenerateAppealRequest(BaseModel):
    appeal_type: str = "standard"


class AppealOutcomeRequest(BaseModel):
    outcome: AppealOutcome
    recovered_amount: Optional[Money] = None
    notes: Optional[str] = None


class ResolutionAction(BaseModel):
    action: str
    description: str
    required_documents: List[str] = []
    steps: List[str] = []
    estimated_days: int = 0


class DenialPatternQuery(BaseModel):
    timeframe_days: int = Field(90, gt=0, le=3650)
