import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select

from ..clock import Clock, utcnow
from ..database.db_session import SessionFactory
from ..database.models.audit_log_db import AuditLogModel

logger = structlog.get_logger(__name__)


def _json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # Decimal amounts and datetimes end up as strings in the JSON column
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class AuditLogger:
    """
    Trail of revenue-cycle commands (claim submissions, appeals, payments, plan
    changes). Writing an entry never fails the command being audited.
    """

    def __init__(self, db_session_factory: SessionFactory, clock: Clock = utcnow):
        self.db_session_factory = db_session_factory
        self.clock = clock

    async def log_access(
        self,
        user_id: Optional[str],
        action: str,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditLogModel(
            timestamp=self.clock(),
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
            failure_reason=failure_reason,
            details=_json_safe(details),
        )
        try:
            async with self.db_session_factory() as session:
                session.add(entry)
                await session.commit()
        except Exception as e:
            logger.error("Audit entry could not be stored", action=action, resource=resource,
                         resource_id=resource_id, error=str(e), exc_info=True)
            return
        logger.debug("Audit entry stored", action=action, resource=resource, resource_id=resource_id, success=success)

    async def entries_for(self, resource: str, resource_id: Any) -> List[AuditLogModel]:
        """Audit trail of one resource, oldest first."""
        async with self.db_session_factory() as session:
            result = await session.execute(
                select(AuditLogModel)
                .where(AuditLogModel.resource == resource)
                .where(AuditLogModel.resource_id == str(resource_id))
                .order_by(AuditLogModel.id)
            )
            return list(result.scalars().all())
