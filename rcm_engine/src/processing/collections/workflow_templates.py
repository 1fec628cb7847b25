from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple


@dataclass(frozen=True)
class WorkflowStage:
    name: str
    action_type: str
    delay_days: int


WORKFLOW_TEMPLATES: Dict[str, Tuple[WorkflowStage, ...]] = {
    "standard": (
        WorkflowStage("initial_statement", "statement", 0),
        WorkflowStage("first_reminder", "reminder_call", 30),
        WorkflowStage("second_reminder", "reminder_call", 60),
        WorkflowStage("final_notice", "escalation", 90),
        WorkflowStage("collection_call", "reminder_call", 105),
        WorkflowStage("external_collection", "escalation", 120),
    ),
    "aggressive": (
        WorkflowStage("initial_statement", "statement", 0),
        WorkflowStage("first_reminder", "reminder_call", 15),
        WorkflowStage("collection_call", "reminder_call", 30),
        WorkflowStage("final_notice", "escalation", 45),
        WorkflowStage("external_collection", "escalation", 60),
    ),
    "gentle": (
        WorkflowStage("initial_statement", "statement", 0),
        WorkflowStage("first_reminder", "reminder_call", 45),
        WorkflowStage("second_reminder", "reminder_call", 90),
        WorkflowStage("payment_plan_offer", "payment_plan_offer", 120),
        WorkflowStage("final_notice", "escalation", 150),
    ),
}

# Default delay for a manually scheduled follow-up
FOLLOW_UP_DELAY_DAYS: Dict[str, int] = {
    "statement": 0,
    "reminder_call": 7,
    "payment_plan_offer": 3,
    "escalation": 14,
}

ACTION_DESCRIPTIONS: Dict[str, str] = {
    "statement": "Generate and send patient statement",
    "reminder_call": "Payment reminder call",
    "payment_plan_offer": "Offer a payment plan",
    "escalation": "Escalate account",
}


def determine_workflow_type(requested: str, balance: Decimal, days_outstanding: int) -> str:
    """Resolves "auto" from balance and age; an explicit type is kept."""
    if requested != "auto":
        return requested
    if balance > Decimal("10000") or days_outstanding > 120:
        return "aggressive"
    if balance < Decimal("500") and days_outstanding < 60:
        return "gentle"
    return "standard"


def stage_priority(stage: WorkflowStage, balance: Decimal) -> str:
    if stage.name == "external_collection" or balance > Decimal("5000"):
        return "high"
    if stage.action_type == "statement" or balance < Decimal("500"):
        return "low"
    return "medium"
