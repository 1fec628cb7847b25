from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError
import structlog

from ..dependencies import AuditContext, get_container
from ..error_handlers import success_envelope
from ..models.remittance_models import RawEraRequest, RemittanceAdviceCommand
from ...core.container import ServiceContainer
from ...core.exceptions import RCMError, ValidationError
from ...core.scheduler import ERA_SYNC_JOB, STATUS_SYNC_JOB, run_job
from ...processing.clearinghouse.era_parser import parse_era

logger = structlog.get_logger(__name__)
router = APIRouter()


async def _read_remittance(request: Request) -> RemittanceAdviceCommand:
    """JSON remittance, JSON-wrapped raw 835 ({"content": ...}) or a plain-text 835 body."""
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type:
        body = (await request.body()).decode("utf-8", errors="replace")
        if not body.strip():
            raise ValidationError("Empty remittance body.")
        return parse_era(body, batch_id=request.query_params.get("batch_id"))

    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationError("Remittance body is not valid JSON.") from e
    if not isinstance(payload, dict):
        raise ValidationError("Remittance body must be a JSON object.")
    try:
        if "content" in payload:
            raw = RawEraRequest.model_validate(payload)
            return parse_era(raw.content, batch_id=raw.batch_id)
        return RemittanceAdviceCommand.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Remittance failed validation.", [err["msg"] for err in e.errors()])


@router.post("", status_code=201)
async def apply_remittance(
    request: Request,
    audit: AuditContext = Depends(),
    container: ServiceContainer = Depends(get_container),
):
    try:
        command = await _read_remittance(request)
        result = await container.lifecycle_service.apply_remittance(command)
    except RCMError as e:
        await audit.record("APPLY_REMITTANCE", "Remittance", None, success=False, failure_reason=e.message)
        raise
    await audit.record("APPLY_REMITTANCE", "Remittance", result.batch_id, details=result.model_dump())
    return success_envelope(result)


@router.post("/sync-statuses")
async def sync_claim_statuses(container: ServiceContainer = Depends(get_container)):
    result = await run_job(container, STATUS_SYNC_JOB, container.sync_service.sync_claim_statuses)
    return success_envelope(result)


@router.post("/sync")
async def sync_remittances(container: ServiceContainer = Depends(get_container)):
    result = await run_job(container, ERA_SYNC_JOB, container.sync_service.sync_remittances)
    return success_envelope(result)
