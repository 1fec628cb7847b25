from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ...api.models.account_models import AccountCreate
from ...core.clock import Clock, utcnow
from ...core.database.db_session import SessionFactory
from ...core.database.models.account_db import AccountModel
from ...core.exceptions import ConcurrentModificationError, EntityNotFoundError, ValidationError

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def apply_patient_payment(account: AccountModel, amount: Decimal, now: datetime) -> None:
    """Reduces the balance; a balance back at zero ends the aging period."""
    balance = Decimal(account.outstanding_balance or 0)
    if amount <= ZERO:
        raise ValidationError("Payment amount must be positive.")
    if amount > balance:
        raise ValidationError(
            f"Payment of {amount} exceeds the outstanding balance of {balance}.",
            ["credit balances are not supported"],
        )
    account.outstanding_balance = balance - amount
    if account.outstanding_balance == ZERO:
        account.balance_since = None
    account.total_payments = Decimal(account.total_payments or 0) + amount
    account.payment_count = (account.payment_count or 0) + 1
    account.last_payment_at = now
    account.version = account.version + 1


class AccountService:
    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def create_account(self, account_in: AccountCreate) -> AccountModel:
        now = self.clock()
        account = AccountModel(
            account_number=account_in.account_number,
            guarantor_name=account_in.guarantor_name,
            outstanding_balance=account_in.opening_balance,
            balance_since=now if account_in.opening_balance > ZERO else None,
            payment_count=0,
            total_payments=ZERO,
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(account)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"Account number '{account_in.account_number}' already exists.") from e

        logger.info("Account created", account_id=account.id, account_number=account.account_number)
        return account

    async def get_account(self, account_id: int) -> AccountModel:
        async with self.session_factory() as session:
            account = await session.get(AccountModel, account_id)
            if account is None:
                raise EntityNotFoundError("Account", account_id)
            return account

    async def record_patient_payment(
        self, account_id: int, amount: Decimal, expected_version: Optional[int] = None
    ) -> AccountModel:
        async with self.session_factory() as session:
            account = await session.get(AccountModel, account_id)
            if account is None:
                raise EntityNotFoundError("Account", account_id)
            if expected_version is not None and account.version != expected_version:
                raise ConcurrentModificationError(
                    f"Account {account_id} is at version {account.version}, expected {expected_version}."
                )
            apply_patient_payment(account, amount, self.clock())
            try:
                await session.commit()
            except StaleDataError as e:
                await session.rollback()
                raise ConcurrentModificationError("Account was modified concurrently; re-read and retry.") from e

        logger.info("Patient payment recorded", account_id=account_id, amount=str(amount),
                    remaining_balance=str(account.outstanding_balance))
        return account
