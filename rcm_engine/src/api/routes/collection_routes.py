from fastapi import APIRouter, Depends
import structlog

from ..dependencies import AuditContext, get_collection_service, get_container
from ..error_handlers import success_envelope
from ..models.collection_models import (
    CollectionTaskResponse,
    CollectionWorkflowResponse,
    FollowUpRequest,
    InitiateWorkflowRequest,
    PaymentPlanRequest,
    PaymentPlanResponse,
    PlanPaymentRequest,
)
from ...core.container import ServiceContainer
from ...core.exceptions import RCMError
from ...core.scheduler import COLLECTION_DRIVER_JOB, run_job
from ...processing.collections.collection_workflow_service import CollectionWorkflowService

logger = structlog.get_logger(__name__)
router = APIRouter()


def _workflow_response(workflow, tasks) -> CollectionWorkflowResponse:
    return CollectionWorkflowResponse(
        id=workflow.id,
        account_id=workflow.account_id,
        workflow_type=workflow.workflow_type,
        status=workflow.status,
        started_at=workflow.started_at,
        completed_at=workflow.completed_at,
        tasks=[CollectionTaskResponse.model_validate(task) for task in tasks],
    )


@router.post("/workflows", status_code=201)
async def initiate_workflow(
    command: InitiateWorkflowRequest,
    audit: AuditContext = Depends(),
    collection_service: CollectionWorkflowService = Depends(get_collection_service),
):
    try:
        workflow, tasks = await collection_service.initiate_workflow(command.account_id, command.workflow_type)
    except RCMError as e:
        await audit.record("INITIATE_WORKFLOW", "Account", command.account_id, success=False, failure_reason=e.message)
        raise
    await audit.record("INITIATE_WORKFLOW", "Account", command.account_id,
                       details={"workflow_id": workflow.id, "workflow_type": workflow.workflow_type})
    return success_envelope(_workflow_response(workflow, tasks))


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: int, collection_service: CollectionWorkflowService = Depends(get_collection_service)):
    workflow, tasks = await collection_service.get_workflow(workflow_id)
    return success_envelope(_workflow_response(workflow, tasks))


@router.get("/accounts/{account_id}/tasks")
async def list_account_tasks(account_id: int, collection_service: CollectionWorkflowService = Depends(get_collection_service)):
    tasks = await collection_service.list_tasks(account_id)
    return success_envelope([CollectionTaskResponse.model_validate(task) for task in tasks])


@router.post("/accounts/{account_id}/statement")
async def generate_statement(
    account_id: int,
    audit: AuditContext = Depends(),
    collection_service: CollectionWorkflowService = Depends(get_collection_service),
):
    statement = await collection_service.generate_statement(account_id)
    await audit.record("GENERATE_STATEMENT", "Account", account_id, details={"statement_id": statement["statement_id"]})
    return success_envelope(statement)


@router.post("/follow-ups", status_code=201)
async def schedule_follow_up(
    command: FollowUpRequest,
    audit: AuditContext = Depends(),
    collection_service: CollectionWorkflowService = Depends(get_collection_service),
):
    task = await collection_service.schedule_follow_up(
        command.account_id, command.action_type, command.scheduled_for, command.description
    )
    await audit.record("SCHEDULE_FOLLOW_UP", "Account", command.account_id,
                       details={"task_id": task.id, "action_type": task.action_type})
    return success_envelope(CollectionTaskResponse.model_validate(task))


@router.post("/payment-plans", status_code=201)
async def setup_payment_plan(
    command: PaymentPlanRequest,
    audit: AuditContext = Depends(),
    collection_service: CollectionWorkflowService = Depends(get_collection_service),
):
    try:
        plan = await collection_service.setup_payment_plan(command)
    except RCMError as e:
        await audit.record("SETUP_PAYMENT_PLAN", "Account", command.account_id, success=False, failure_reason=e.message)
        raise
    await audit.record("SETUP_PAYMENT_PLAN", "Account", command.account_id, details={"plan_id": plan.id})
    return success_envelope(PaymentPlanResponse.model_validate(plan))


@router.get("/payment-plans/{plan_id}")
async def get_payment_plan(plan_id: int, collection_service: CollectionWorkflowService = Depends(get_collection_service)):
    return success_envelope(PaymentPlanResponse.model_validate(await collection_service.get_payment_plan(plan_id)))


@router.post("/payment-plans/{plan_id}/payments")
async def record_plan_payment(
    plan_id: int,
    payment: PlanPaymentRequest,
    audit: AuditContext = Depends(),
    collection_service: CollectionWorkflowService = Depends(get_collection_service),
):
    plan = await collection_service.record_plan_payment(plan_id, payment.amount)
    await audit.record("PLAN_PAYMENT", "PaymentPlan", plan_id, details={"amount": str(payment.amount)})
    return success_envelope(PaymentPlanResponse.model_validate(plan))


@router.post("/process")
async def process_workflow_actions(container: ServiceContainer = Depends(get_container)):
    result = await run_job(container, COLLECTION_DRIVER_JOB, container.collection_service.process_workflow_actions)
    return success_envelope(result)
