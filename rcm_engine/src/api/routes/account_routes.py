from fastapi import APIRouter, Depends
import structlog

from ..dependencies import AuditContext, get_account_service
from ..error_handlers import success_envelope
from ..models.account_models import AccountCreate, AccountResponse, PatientPaymentRequest
from ...processing.accounts.account_service import AccountService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("", status_code=201)
async def create_account(
    account_data: AccountCreate,
    audit: AuditContext = Depends(),
    account_service: AccountService = Depends(get_account_service),
):
    account = await account_service.create_account(account_data)
    await audit.record("CREATE_ACCOUNT", "Account", account.id)
    return success_envelope(AccountResponse.model_validate(account))


@router.get("/{account_id}")
async def get_account(account_id: int, account_service: AccountService = Depends(get_account_service)):
    return success_envelope(AccountResponse.model_validate(await account_service.get_account(account_id)))


@router.post("/{account_id}/payments")
async def record_patient_payment(
    account_id: int,
    payment: PatientPaymentRequest,
    audit: AuditContext = Depends(),
    account_service: AccountService = Depends(get_account_service),
):
    account = await account_service.record_patient_payment(account_id, payment.amount)
    await audit.record("PATIENT_PAYMENT", "Account", account_id, details={"amount": str(payment.amount)})
    return success_envelope(AccountResponse.model_validate(account))
