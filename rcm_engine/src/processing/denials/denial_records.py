"""
Session-level helpers that write denials and appeals. They never commit: the
caller owns the transaction, so the claim transition and the denial/appeal rows
land together.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...api.models.claim_models import DenialReason
from ...core.database.models.claims_db import ClaimModel, ClaimLineItemModel
from ...core.database.models.denial_db import DenialModel, AppealModel
from ...core.exceptions import InsufficientDataError
from .denial_rules import (
    AUTHORIZATION,
    CODING_DOCUMENTATION,
    categorize_reason_code,
    denial_priority,
    normalize_reason_code,
    resolution_actions,
)

# Categories whose appeal argues medical necessity and needs the clinical summary
CLINICAL_SUMMARY_CATEGORIES = frozenset({CODING_DOCUMENTATION, AUTHORIZATION})

REQUESTED_ACTIONS: Dict[str, str] = {
    "eligibility": "reprocess the claim against the coverage in effect on the date of service",
    "coding_documentation": "reconsider the claim based on the enclosed clinical documentation",
    "authorization": "honor the authorization on file or grant retroactive authorization",
    "timely_filing": "accept the enclosed proof that the claim was filed within the filing limit",
    "bundling": "allow separate payment for the distinct service documented in the enclosed records",
    "other": "review the adjustment and reprocess the claim",
}


def record_denials(
    session: AsyncSession,
    claim: ClaimModel,
    reasons: Iterable[DenialReason],
    now: datetime,
) -> List[DenialModel]:
    """One new denial per distinct (group, reason code, line). Duplicates in the input collapse."""
    lines_by_number = {li.line_number: li for li in claim.line_items}
    seen = set()
    denials: List[DenialModel] = []
    for reason in reasons:
        group_code, code = normalize_reason_code(reason.reason_code, reason.group_code)
        key = (group_code, code, reason.line_number)
        if key in seen:
            continue
        seen.add(key)
        line_item = lines_by_number.get(reason.line_number) if reason.line_number is not None else None
        denial = DenialModel(
            claim_id=claim.id,
            line_item_id=line_item.id if line_item is not None else None,
            group_code=group_code,
            reason_code=code,
            reason_text=reason.reason_text,
            denied_amount=reason.amount,
            status="new",
            created_at=now,
        )
        session.add(denial)
        denials.append(denial)
    return denials


def categorize(denial: DenialModel, now: datetime) -> str:
    category = categorize_reason_code(denial.reason_code)
    denial.category = category
    denial.priority = denial_priority(category, Decimal(denial.denied_amount or 0))
    if denial.status == "new":
        denial.status = "analyzed"
    denial.analyzed_at = now
    return category


def _lines_under_appeal(claim: ClaimModel, denial: DenialModel) -> List[ClaimLineItemModel]:
    if denial.line_item_id is not None:
        return [li for li in claim.line_items if li.id == denial.line_item_id]
    return list(claim.line_items)


def _missing_fields(claim: ClaimModel, denial: DenialModel, category: str) -> List[str]:
    missing: List[str] = []
    lines = _lines_under_appeal(claim, denial)
    if not lines:
        missing.append("line_items")
    for line in lines:
        if not line.procedure_code:
            missing.append(f"line {line.line_number}: procedure_code")
        if not line.diagnosis_codes:
            missing.append(f"line {line.line_number}: diagnosis_codes")
        if not (line.service_date or claim.service_date):
            missing.append(f"line {line.line_number}: service_date")
    if category in CLINICAL_SUMMARY_CATEGORIES and not (claim.clinical_summary or "").strip():
        missing.append("clinical_summary")
    return missing


def compose_appeal_letter(claim: ClaimModel, denial: DenialModel, category: str, appeal_type: str) -> Dict[str, Any]:
    lines = _lines_under_appeal(claim, denial)
    reason_label = f"{denial.group_code}-{denial.reason_code}" if denial.group_code else denial.reason_code
    service_date = claim.service_date.isoformat() if claim.service_date else None

    body = [
        f"We are writing to request a {appeal_type} appeal of claim {claim.claim_number}"
        f"{' for services on ' + service_date if service_date else ''}, "
        f"denied with reason code {reason_label}.",
        f"We ask that you {REQUESTED_ACTIONS.get(category, REQUESTED_ACTIONS['other'])}.",
    ]
    if claim.clinical_summary:
        body.append(f"Clinical summary: {claim.clinical_summary.strip()}")

    enclosures: List[str] = []
    for action in resolution_actions(category):
        for document in action.required_documents:
            if document not in enclosures:
                enclosures.append(document)

    return {
        "subject": f"Appeal of denied claim {claim.claim_number}",
        "payer": {"payer_id": claim.payer_id, "payer_name": claim.payer_name},
        "claim_number": claim.claim_number,
        "service_date": service_date,
        "appeal_type": appeal_type,
        "denial": {
            "reason_code": reason_label,
            "reason_text": denial.reason_text,
            "category": category,
            "denied_amount": str(denial.denied_amount),
        },
        "line_items": [
            {
                "line_number": line.line_number,
                "procedure_code": line.procedure_code,
                "diagnosis_codes": list(line.diagnosis_codes or []),
                "modifiers": list(line.modifiers or []),
                "service_date": (line.service_date or claim.service_date).isoformat(),
                "charge_amount": str(line.unit_price * line.quantity),
            }
            for line in lines
        ],
        "body": body,
        "clinical_summary": claim.clinical_summary,
        "enclosures": enclosures,
    }


def build_appeal(
    session: AsyncSession,
    claim: ClaimModel,
    denial: DenialModel,
    appeal_type: str,
    now: datetime,
    deadline_days: int,
) -> AppealModel:
    category = denial.category or categorize(denial, now)
    missing = _missing_fields(claim, denial, category)
    if missing:
        raise InsufficientDataError(
            f"Cannot generate appeal for denial {denial.id}: missing {', '.join(missing)}.", missing
        )

    letter = compose_appeal_letter(claim, denial, category, appeal_type)
    appeal = AppealModel(
        denial_id=denial.id,
        appeal_type=appeal_type,
        letter_content=letter,
        supporting_documents=letter["enclosures"],
        generated_at=now,
        resubmission_deadline=now + timedelta(days=deadline_days),
        outcome="pending",
    )
    session.add(appeal)
    return appeal


async def open_denial_for_claim(session: AsyncSession, claim_id: int, denial_id: Optional[int] = None) -> Optional[DenialModel]:
    stmt = select(DenialModel).where(DenialModel.claim_id == claim_id)
    if denial_id is not None:
        stmt = stmt.where(DenialModel.id == denial_id)
    else:
        stmt = stmt.where(DenialModel.status.in_(("new", "analyzed"))).order_by(DenialModel.denied_amount.desc(), DenialModel.id)
    result = await session.execute(stmt.limit(1))
    return result.scalars().first()


def pending_appeal(denial: DenialModel) -> Optional[AppealModel]:
    for appeal in reversed(denial.appeals or []):
        if appeal.outcome == "pending" and appeal.submitted_at is None:
            return appeal
    return None
