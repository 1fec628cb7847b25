from sqlalchemy import Column, Integer, String, Date, Numeric, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class ClaimModel(Base):
    __tablename__ = "claims"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_number = Column(String(100), unique=True, index=True, nullable=False)  # Business key
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    payer_id = Column(String(50), nullable=True, index=True)
    payer_name = Column(String(200), nullable=True)
    payer_type = Column(String(20), nullable=False, default="commercial", index=True)

    service_date = Column(Date, nullable=True, index=True)
    clinical_summary = Column(Text, nullable=True)

    status = Column(String(30), nullable=False, default="draft", index=True)

    billed_amount = Column(Numeric(12, 2), nullable=False)
    allowed_amount = Column(Numeric(12, 2), nullable=True)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    patient_responsibility = Column(Numeric(12, 2), nullable=False, default=0)

    clearinghouse_id = Column(String(100), nullable=True, index=True)
    submitted_at = Column(UTCDateTime(), nullable=True, index=True)
    last_synced_at = Column(UTCDateTime(), nullable=True)
    adjudicated_at = Column(UTCDateTime(), nullable=True)
    void_reason = Column(Text, nullable=True)
    rejection_reasons = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    account = relationship("AccountModel", back_populates="claims", lazy="raise")
    line_items = relationship(
        "ClaimLineItemModel", back_populates="claim", cascade="all, delete-orphan",
        lazy="selectin", order_by="ClaimLineItemModel.line_number"
    )
    history = relationship(
        "ClaimStatusHistoryModel", back_populates="claim", cascade="all, delete-orphan",
        lazy="raise", order_by="ClaimStatusHistoryModel.id"
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    def __repr__(self):
        return f"<ClaimModel(id={self.id}, claim_number='{self.claim_number}', status='{self.status}', version={self.version})>"


class ClaimLineItemModel(Base):
    __tablename__ = "claim_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)

    line_number = Column(Integer, nullable=False)
    service_date = Column(Date, nullable=True)
    procedure_code = Column(String(20), nullable=True, index=True)
    diagnosis_codes = Column(JSON, nullable=False, default=list)
    modifiers = Column(JSON, nullable=False, default=list)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)

    line_outcome = Column(String(20), nullable=False, default="pending")
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)

    claim = relationship("ClaimModel", back_populates="line_items")

    __table_args__ = (
        UniqueConstraint('claim_id', 'line_number', name='uq_claim_line_items_claim_line'),
    )

    @property
    def charge_amount(self):
        return self.unit_price * self.quantity


class ClaimStatusHistoryModel(Base):
    __tablename__ = "claim_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    claim_id = Column(Integer, ForeignKey("claims.id"), nullable=False, index=True)
    from_status = Column(String(30), nullable=False)
    to_status = Column(String(30), nullable=False)
    reason = Column(Text, nullable=True)
    source = Column(String(50), nullable=False, default="system")
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    claim = relationship("ClaimModel", back_populates="history")
