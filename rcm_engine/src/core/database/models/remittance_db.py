from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class RemittanceAdviceModel(Base):
    """Stored ERA (835) header. Written once per external batch id."""

    __tablename__ = "remittance_advices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    batch_id = Column(String(100), unique=True, index=True, nullable=False)
    payer_name = Column(String(200), nullable=True)
    payer_id = Column(String(50), nullable=True)
    payment_amount = Column(Numeric(12, 2), nullable=False, default=0)
    payment_date = Column(UTCDateTime(), nullable=True)
    received_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    status = Column(String(20), nullable=False, default="processing")  # processing | completed
    completed_at = Column(UTCDateTime(), nullable=True)

    records = relationship(
        "RemittanceClaimRecordModel", back_populates="remittance", cascade="all, delete-orphan",
        lazy="selectin", order_by="RemittanceClaimRecordModel.sequence"
    )


class RemittanceClaimRecordModel(Base):
    __tablename__ = "remittance_claim_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    remittance_id = Column(Integer, ForeignKey("remittance_advices.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    claim_reference = Column(String(100), nullable=False, index=True)
    status_code = Column(String(10), nullable=True)
    billed_amount = Column(Numeric(12, 2), nullable=False)
    allowed_amount = Column(Numeric(12, 2), nullable=False)
    paid_amount = Column(Numeric(12, 2), nullable=False)
    patient_responsibility = Column(Numeric(12, 2), nullable=False, default=0)
    adjustments = Column(JSON, nullable=False, default=list)
    line_adjustments = Column(JSON, nullable=False, default=list)

    # pending | applied | skipped_unknown_claim | skipped_invalid_state | rejected_invalid_amounts
    outcome = Column(String(40), nullable=False, default="pending", index=True)
    outcome_detail = Column(Text, nullable=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=True, index=True)
    applied_at = Column(UTCDateTime(), nullable=True)

    remittance = relationship("RemittanceAdviceModel", back_populates="records")
