from sqlalchemy import Column, Integer, String, Numeric
from sqlalchemy.orm import relationship

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class AccountModel(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_number = Column(String(100), unique=True, index=True, nullable=False)
    guarantor_name = Column(String(200), nullable=True)

    outstanding_balance = Column(Numeric(12, 2), nullable=False, default=0)
    # Start of the current aging period; cleared when the balance returns to zero
    balance_since = Column(UTCDateTime(), nullable=True, index=True)
    last_statement_date = Column(UTCDateTime(), nullable=True)
    last_payment_at = Column(UTCDateTime(), nullable=True)
    payment_count = Column(Integer, nullable=False, default=0)
    total_payments = Column(Numeric(12, 2), nullable=False, default=0)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    claims = relationship("ClaimModel", back_populates="account", lazy="raise")

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    def __repr__(self):
        return f"<AccountModel(id={self.id}, account_number='{self.account_number}', balance={self.outstanding_balance})>"
