# Importing every model here registers all tables on Base.metadata
# before create_all or Alembic autogenerate inspects it.

from .account_db import AccountModel
from .claims_db import ClaimModel, ClaimLineItemModel, ClaimStatusHistoryModel
from .remittance_db import RemittanceAdviceModel, RemittanceClaimRecordModel
from .denial_db import DenialModel, AppealModel
from .risk_score_db import RiskScoreModel
from .collection_db import (
    CollectionWorkflowModel,
    CollectionTaskModel,
    PaymentPlanModel,
    PaymentPlanInstallmentModel,
)
from .audit_log_db import AuditLogModel
