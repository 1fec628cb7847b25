from fastapi import APIRouter, Depends, Query
import structlog

from ..dependencies import AuditContext, get_denial_service
from ..error_handlers import success_envelope
from ..models.denial_models import AppealOutcomeRequest, AppealResponse, DenialResponse, GenerateAppealRequest
from ...core.exceptions import RCMError
from ...processing.denials.denial_workflow_service import DenialWorkflowService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/denials/patterns")
async def analyze_denial_patterns(
    timeframe_days: int = Query(90, gt=0, le=3650),
    denial_service: DenialWorkflowService = Depends(get_denial_service),
):
    return success_envelope(await denial_service.analyze_denial_patterns(timeframe_days))


@router.get("/denials/resolutions/{category}")
async def suggest_resolution(category: str, denial_service: DenialWorkflowService = Depends(get_denial_service)):
    return success_envelope(denial_service.suggest_resolution(category))


@router.post("/denials/{denial_id}/categorize")
async def categorize_denial(
    denial_id: int,
    audit: AuditContext = Depends(),
    denial_service: DenialWorkflowService = Depends(get_denial_service),
):
    denial = await denial_service.categorize_denial(denial_id)
    await audit.record("CATEGORIZE_DENIAL", "Denial", denial_id, details={"category": denial.category})
    return success_envelope({
        "denial": DenialResponse.model_validate(denial),
        "suggested_actions": denial_service.suggest_resolution(denial.category),
    })


@router.post("/denials/{denial_id}/appeals", status_code=201)
async def generate_appeal(
    denial_id: int,
    command: GenerateAppealRequest = GenerateAppealRequest(),
    audit: AuditContext = Depends(),
    denial_service: DenialWorkflowService = Depends(get_denial_service),
):
    try:
        appeal = await denial_service.generate_appeal(denial_id, command.appeal_type)
    except RCMError as e:
        await audit.record("GENERATE_APPEAL", "Denial", denial_id, success=False, failure_reason=e.message)
        raise
    await audit.record("GENERATE_APPEAL", "Denial", denial_id, details={"appeal_id": appeal.id})
    return success_envelope(AppealResponse.model_validate(appeal))


@router.post("/appeals/{appeal_id}/outcome")
async def track_appeal_outcome(
    appeal_id: int,
    command: AppealOutcomeRequest,
    audit: AuditContext = Depends(),
    denial_service: DenialWorkflowService = Depends(get_denial_service),
):
    try:
        appeal = await denial_service.track_outcome(appeal_id, command.outcome, command.recovered_amount, command.notes)
    except RCMError as e:
        await audit.record("TRACK_APPEAL_OUTCOME", "Appeal", appeal_id, success=False, failure_reason=e.message)
        raise
    await audit.record("TRACK_APPEAL_OUTCOME", "Appeal", appeal_id, details={"outcome": command.outcome})
    return success_envelope(AppealResponse.model_validate(appeal))
