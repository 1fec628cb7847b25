from pydantic import BaseModel, condecimal
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Literal, Dict, Any

from .claim_models import Money

ActionType = Literal["statement", "reminder_call", "payment_plan_offer", "escalation"]
WorkflowType = Literal["standard", "aggressive", "gentle", "auto"]


class InitiateWorkflowRequest(BaseModel):
    account_id: int
    workflow_type: WorkflowType = "auto"


class FollowUpRequest(BaseModel):
    account_id: int
    action_type: ActionType
    scheduled_for: Optional[datetime] = None
    description: Optional[str] = None


class PaymentPlanRequest(BaseModel):
    account_id: int
    monthly_payment: Money
    number_of_payments: int
    start_date: Optional[date] = None
    total_amount: Optional[Money] = None  # Defaults to the outstanding balance


class PlanPaymentRequest(BaseModel):
    amount: condecimal(max_digits=12, decimal_places=2, gt=Decimal(0))


class CollectionTaskResponse(BaseModel):
    id: int
    account_id: int
    workflow_id: Optional[int] = None
    sequence: int
    action_type: str
    description: Optional[str] = None
    priority: str
    scheduled_for: datetime
    status: str
    source: str
    on_hold: bool
    attempt_count: int
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    executed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CollectionWorkflowResponse(BaseModel):
    id: int
    account_id: int
    workflow_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    tasks: List[CollectionTaskResponse] = []


class PaymentPlanInstallmentResponse(BaseModel):
    installment_number: int
    due_date: date
    amount: Decimal
    status: str
    paid_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentPlanResponse(BaseModel):
    id: int
    account_id: int
    total_amount: Decimal
    monthly_payment: Decimal
    number_of_payments: int
    remaining_balance: Decimal
    start_date: date
    status: str
    installments: List[PaymentPlanInstallmentResponse] = []

    model_config = {"from_attributes": True}


class ProcessActionsResult(BaseModel):
    due: int = 0
    executed: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    plans_defaulted: int = 0
    workflows_completed: int = 0
    stopped_early: bool = False
