from typing import Any, Dict, Optional

from fastapi import Depends, Request
import structlog

from ..core.container import ServiceContainer
from ..core.monitoring.audit_logger import AuditLogger
from ..core.monitoring.app_metrics import MetricsCollector
from ..processing.accounts.account_service import AccountService
from ..processing.aging.ar_aging_service import ARAgingService
from ..processing.clearinghouse.status_sync_service import StatusSyncService
from ..processing.collections.collection_workflow_service import CollectionWorkflowService
from ..processing.denials.denial_workflow_service import DenialWorkflowService
from ..processing.lifecycle.claim_lifecycle_service import ClaimLifecycleService

logger = structlog.get_logger(__name__)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_audit_logger(container: ServiceContainer = Depends(get_container)) -> AuditLogger:
    return container.audit_logger


def get_metrics_collector(container: ServiceContainer = Depends(get_container)) -> MetricsCollector:
    return container.metrics_collector


def get_lifecycle_service(container: ServiceContainer = Depends(get_container)) -> ClaimLifecycleService:
    return container.lifecycle_service


def get_sync_service(container: ServiceContainer = Depends(get_container)) -> StatusSyncService:
    return container.sync_service


def get_denial_service(container: ServiceContainer = Depends(get_container)) -> DenialWorkflowService:
    return container.denial_service


def get_account_service(container: ServiceContainer = Depends(get_container)) -> AccountService:
    return container.account_service


def get_aging_service(container: ServiceContainer = Depends(get_container)) -> ARAgingService:
    return container.aging_service


def get_collection_service(container: ServiceContainer = Depends(get_container)) -> CollectionWorkflowService:
    return container.collection_service


class AuditContext:
    """Request facts every audit entry carries; routes only add action and outcome."""

    def __init__(self, request: Request, audit_logger: AuditLogger = Depends(get_audit_logger)):
        self.audit_logger = audit_logger
        self.ip_address = request.client.host if request.client else None
        self.user_agent = request.headers.get("user-agent")
        self.user_id = request.headers.get("x-user-id")

    async def record(
        self,
        action: str,
        resource: str,
        resource_id: Optional[Any] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit_logger.log_access(
            user_id=self.user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            success=success,
            failure_reason=failure_reason,
            details=details,
        )
