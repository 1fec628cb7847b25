from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, JSON

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class RiskScoreModel(Base):
    """Latest collection-probability snapshot per account. Replaced by each scoring run."""

    __tablename__ = "risk_scores"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, unique=True, index=True)
    collection_probability = Column(Numeric(6, 4), nullable=False)
    aging_bucket = Column(String(10), nullable=False, index=True)
    days_outstanding = Column(Integer, nullable=False)
    outstanding_balance = Column(Numeric(12, 2), nullable=False)
    risk_factors = Column(JSON, nullable=False, default=list)
    model_name = Column(String(30), nullable=False)
    computed_at = Column(UTCDateTime(), default=utcnow, nullable=False)
