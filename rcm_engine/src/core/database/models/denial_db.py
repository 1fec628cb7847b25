from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class DenialModel(Base):
    __tablename__ = "denials"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    line_item_id = Column(Integer, ForeignKey("claim_line_items.id"), nullable=True)

    group_code = Column(String(5), nullable=True)
    reason_code = Column(String(20), nullable=False, index=True)
    reason_text = Column(Text, nullable=True)
    denied_amount = Column(Numeric(12, 2), nullable=False, default=0)

    category = Column(String(40), nullable=True, index=True)
    priority = Column(String(10), nullable=True)
    status = Column(String(20), nullable=False, default="new", index=True)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False, index=True)
    analyzed_at = Column(UTCDateTime(), nullable=True)
    resolved_at = Column(UTCDateTime(), nullable=True)

    appeals = relationship("AppealModel", back_populates="denial", lazy="selectin", order_by="AppealModel.id")


class AppealModel(Base):
    __tablename__ = "appeals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    denial_id = Column(Integer, ForeignKey("denials.id"), nullable=False, index=True)
    appeal_type = Column(String(30), nullable=False, default="standard")

    letter_content = Column(JSON, nullable=False)
    supporting_documents = Column(JSON, nullable=False, default=list)

    generated_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    resubmission_deadline = Column(UTCDateTime(), nullable=False)
    submitted_at = Column(UTCDateTime(), nullable=True)

    outcome = Column(String(20), nullable=False, default="pending", index=True)
    recovered_amount = Column(Numeric(12, 2), nullable=True)
    outcome_recorded_at = Column(UTCDateTime(), nullable=True)
    notes = Column(Text, nullable=True)

    denial = relationship("DenialModel", back_populates="appeals")
