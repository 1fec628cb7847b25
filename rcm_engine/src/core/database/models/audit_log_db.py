from sqlalchemy import Column, Integer, String, Boolean, Text, JSON

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class AuditLogModel(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    timestamp = Column(UTCDateTime(), default=utcnow, nullable=False, index=True)

    user_id = Column(String(100), nullable=True, index=True)  # Nullable for system events
    action = Column(String(255), nullable=False, index=True)  # e.g., SUBMIT_CLAIM, FILE_APPEAL
    resource = Column(String(255), nullable=True, index=True)  # e.g., Claim, Appeal, Account
    resource_id = Column(String(255), nullable=True, index=True)

    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)

    success = Column(Boolean, nullable=False)
    failure_reason = Column(Text, nullable=True)

    details = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<AuditLogModel(id={self.id}, action='{self.action}', user='{self.user_id}', resource='{self.resource}/{self.resource_id}', success={self.success})>"
