from typing import Optional

from fastapi import APIRouter, Depends
import structlog

from ..dependencies import AuditContext, get_aging_service, get_container
from ..error_handlers import success_envelope
from ..models.ar_models import ArAccountFilters, AutomatedActionThresholds, RiskScoreBatchRequest
from ...core.container import ServiceContainer
from ...core.scheduler import AGING_BATCH_JOB, run_job
from ...processing.aging.ar_aging_service import ARAgingService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/accounts")
async def analyze_ar_accounts(
    filters: ArAccountFilters = Depends(),
    aging_service: ARAgingService = Depends(get_aging_service),
):
    return success_envelope(await aging_service.analyze_ar_accounts(filters))


@router.get("/accounts/{account_id}/prediction")
async def predict_collection_probability(account_id: int, aging_service: ARAgingService = Depends(get_aging_service)):
    return success_envelope(await aging_service.predict_collection_probability(account_id))


@router.post("/risk-scores")
async def generate_risk_scores(
    command: Optional[RiskScoreBatchRequest] = None,
    audit: AuditContext = Depends(),
    container: ServiceContainer = Depends(get_container),
):
    account_ids = command.account_ids if command else None
    result = await run_job(
        container, AGING_BATCH_JOB, lambda: container.aging_service.generate_risk_scores(account_ids)
    )
    await audit.record("GENERATE_RISK_SCORES", "RiskScore", None, details=result)
    return success_envelope(result)


@router.post("/automated-actions")
async def trigger_automated_actions(
    thresholds: Optional[AutomatedActionThresholds] = None,
    audit: AuditContext = Depends(),
    container: ServiceContainer = Depends(get_container),
):
    thresholds = thresholds or AutomatedActionThresholds()
    result = await run_job(
        container, AGING_BATCH_JOB, lambda: container.aging_service.trigger_automated_actions(thresholds)
    )
    await audit.record("TRIGGER_AUTOMATED_ACTIONS", "CollectionTask", None,
                       details={k: v for k, v in result.items() if k != "task_ids"})
    return success_envelope(result)
