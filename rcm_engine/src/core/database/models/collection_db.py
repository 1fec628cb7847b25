from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Text, JSON, Boolean, Date
from sqlalchemy.orm import relationship

from ..db_session import Base
from ..types import UTCDateTime
from ...clock import utcnow


class CollectionWorkflowModel(Base):
    __tablename__ = "collection_workflows"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    workflow_type = Column(String(20), nullable=False)  # standard | aggressive | gentle
    status = Column(String(20), nullable=False, default="active", index=True)  # active | paused | completed | cancelled
    started_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    completed_at = Column(UTCDateTime(), nullable=True)

    tasks = relationship("CollectionTaskModel", back_populates="workflow", lazy="raise")


class CollectionTaskModel(Base):
    __tablename__ = "collection_tasks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    workflow_id = Column(Integer, ForeignKey("collection_workflows.id"), nullable=True, index=True)
    sequence = Column(Integer, nullable=False, default=0)

    action_type = Column(String(30), nullable=False)  # statement | reminder_call | payment_plan_offer | escalation
    description = Column(Text, nullable=True)
    priority = Column(String(10), nullable=False, default="medium")
    scheduled_for = Column(UTCDateTime(), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="scheduled", index=True)  # scheduled | executed | skipped | failed
    source = Column(String(20), nullable=False, default="workflow")  # workflow | aging_trigger | manual | plan_default
    on_hold = Column(Boolean, nullable=False, default=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    executed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    workflow = relationship("CollectionWorkflowModel", back_populates="tasks")


class PaymentPlanModel(Base):
    __tablename__ = "payment_plans"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    total_amount = Column(Numeric(12, 2), nullable=False)
    monthly_payment = Column(Numeric(12, 2), nullable=False)
    number_of_payments = Column(Integer, nullable=False)
    remaining_balance = Column(Numeric(12, 2), nullable=False)
    start_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True)  # active | completed | defaulted
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    installments = relationship(
        "PaymentPlanInstallmentModel", back_populates="plan", cascade="all, delete-orphan",
        lazy="selectin", order_by="PaymentPlanInstallmentModel.installment_number"
    )


class PaymentPlanInstallmentModel(Base):
    __tablename__ = "payment_plan_installments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(Integer, ForeignKey("payment_plans.id"), nullable=False, index=True)
    installment_number = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | paid | missed
    paid_at = Column(UTCDateTime(), nullable=True)

    plan = relationship("PaymentPlanModel", back_populates="installments")
