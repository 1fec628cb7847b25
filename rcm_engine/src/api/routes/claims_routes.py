from typing import Optional

from fastapi import APIRouter, Depends
import structlog

from ..dependencies import AuditContext, get_denial_service, get_lifecycle_service
from ..error_handlers import success_envelope
from ..models.claim_models import (
    ClaimCreate,
    ClaimResponse,
    ClaimStatusHistoryResponse,
    FileAppealRequest,
    MarkDeniedRequest,
    SubmitClaimRequest,
    VoidClaimRequest,
)
from ..models.denial_models import AppealResponse, DenialResponse
from ...core.exceptions import RCMError
from ...processing.denials.denial_workflow_service import DenialWorkflowService
from ...processing.lifecycle.claim_lifecycle_service import ClaimLifecycleService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("", status_code=201)
async def create_claim(
    claim_data: ClaimCreate,
    audit: AuditContext = Depends(),
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
):
    logger.info("Received request to create claim", claim_number=claim_data.claim_number, account_id=claim_data.account_id)
    try:
        claim = await lifecycle.create_claim(claim_data)
    except RCMError as e:
        await audit.record("CREATE_CLAIM", "Claim", claim_data.claim_number, success=False, failure_reason=e.message)
        raise
    await audit.record("CREATE_CLAIM", "Claim", claim.id, details={"claim_number": claim.claim_number})
    return success_envelope(ClaimResponse.model_validate(claim))


@router.get("/{claim_id}")
async def get_claim(claim_id: int, lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service)):
    claim = await lifecycle.get_claim(claim_id)
    return success_envelope(ClaimResponse.model_validate(claim))


@router.get("/{claim_id}/history")
async def get_claim_history(claim_id: int, lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service)):
    history = await lifecycle.get_claim_history(claim_id)
    return success_envelope([ClaimStatusHistoryResponse.model_validate(entry) for entry in history])


@router.get("/{claim_id}/denials")
async def list_claim_denials(
    claim_id: int,
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
    denial_service: DenialWorkflowService = Depends(get_denial_service),
):
    await lifecycle.get_claim(claim_id)
    denials = await denial_service.list_denials_for_claim(claim_id)
    return success_envelope([DenialResponse.model_validate(denial) for denial in denials])


@router.post("/{claim_id}/submit")
async def submit_claim(
    claim_id: int,
    command: Optional[SubmitClaimRequest] = None,
    audit: AuditContext = Depends(),
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
):
    expected_version = command.expected_version if command else None
    try:
        claim = await lifecycle.submit(claim_id, expected_version=expected_version)
    except RCMError as e:
        await audit.record("SUBMIT_CLAIM", "Claim", claim_id, success=False, failure_reason=e.message)
        raise
    await audit.record("SUBMIT_CLAIM", "Claim", claim_id, details={"status": claim.status})
    return success_envelope(ClaimResponse.model_validate(claim))


@router.post("/{claim_id}/deny")
async def mark_claim_denied(
    claim_id: int,
    command: MarkDeniedRequest,
    audit: AuditContext = Depends(),
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
):
    try:
        claim, denials = await lifecycle.mark_denied(claim_id, command.denial_reasons, command.expected_version)
    except RCMError as e:
        await audit.record("DENY_CLAIM", "Claim", claim_id, success=False, failure_reason=e.message)
        raise
    await audit.record("DENY_CLAIM", "Claim", claim_id, details={"denial_ids": [d.id for d in denials]})
    return success_envelope({
        "claim": ClaimResponse.model_validate(claim),
        "denials": [DenialResponse.model_validate(d) for d in denials],
    })


@router.post("/{claim_id}/appeal")
async def file_appeal(
    claim_id: int,
    command: FileAppealRequest,
    audit: AuditContext = Depends(),
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
):
    try:
        claim, appeal = await lifecycle.file_appeal(
            claim_id, denial_id=command.denial_id, appeal_type=command.appeal_type,
            expected_version=command.expected_version,
        )
    except RCMError as e:
        await audit.record("FILE_APPEAL", "Claim", claim_id, success=False, failure_reason=e.message)
        raise
    await audit.record("FILE_APPEAL", "Claim", claim_id, details={"appeal_id": appeal.id})
    return success_envelope({
        "claim": ClaimResponse.model_validate(claim),
        "appeal": AppealResponse.model_validate(appeal),
    })


@router.post("/{claim_id}/void")
async def void_claim(
    claim_id: int,
    command: VoidClaimRequest,
    audit: AuditContext = Depends(),
    lifecycle: ClaimLifecycleService = Depends(get_lifecycle_service),
):
    try:
        claim = await lifecycle.void(claim_id, command.reason, command.expected_version)
    except RCMError as e:
        await audit.record("VOID_CLAIM", "Claim", claim_id, success=False, failure_reason=e.message)
        raise
    await audit.record("VOID_CLAIM", "Claim", claim_id, details={"reason": command.reason})
    return success_envelope(ClaimResponse.model_validate(claim))
