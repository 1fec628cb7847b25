from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ...api.models.claim_models import ClaimCreate, ClaimStatusUpdate, DenialReason
from ...api.models.remittance_models import RemittanceAdviceCommand, RemittanceApplyResult
from ...core.clock import Clock, utcnow
from ...core.config.settings import Settings
from ...core.database.db_session import SessionFactory
from ...core.database.models.account_db import AccountModel
from ...core.database.models.claims_db import ClaimModel, ClaimLineItemModel, ClaimStatusHistoryModel
from ...core.database.models.denial_db import AppealModel, DenialModel
from ...core.database.models.remittance_db import RemittanceAdviceModel, RemittanceClaimRecordModel
from ...core.events import CLAIM_DENIED, CLAIM_STATUS_CHANGED, EventPublisher
from ...core.exceptions import (
    ClearinghouseRequestError,
    ClearinghouseUnavailableError,
    ConcurrentModificationError,
    EntityNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from ...core.monitoring.app_metrics import MetricsCollector
from ..clearinghouse.clearinghouse_client import ClearinghouseClient, to_status_update
from ..denials.denial_records import build_appeal, open_denial_for_claim, pending_appeal, record_denials
from ..denials.denial_rules import is_contractual_adjustment
from ..validation.claim_validator import ClaimValidator
from .claim_state_machine import ClaimStatus, TERMINAL_STATUSES, can_transition, path_to

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")

# Claim states an ERA may still adjudicate
REMITTABLE_STATUSES = frozenset({
    ClaimStatus.SUBMITTED.value, ClaimStatus.ACCEPTED.value,
    ClaimStatus.ADJUDICATED.value, ClaimStatus.APPEALED.value,
})


class _UnitOfWork:
    """Transitions and events collected during one transaction, emitted after commit."""

    def __init__(self):
        self.transitions: List[Tuple[int, str, str]] = []
        self.events: List[Tuple[str, Dict[str, Any]]] = []


class ClaimLifecycleService:
    """
    Owns Claim.status. Every change goes through the state machine in
    claim_state_machine; each edge bumps Claim.version, and the ORM version check
    turns a lost race into ConcurrentModificationError.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings,
        metrics_collector: MetricsCollector,
        event_publisher: EventPublisher,
        clearinghouse_client: Optional[ClearinghouseClient] = None,
        validator: Optional[ClaimValidator] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.event_publisher = event_publisher
        self.clearinghouse_client = clearinghouse_client
        self.validator = validator or ClaimValidator()
        self.clock = clock

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _load_claim(self, session: AsyncSession, claim_id: int, expected_version: Optional[int] = None) -> ClaimModel:
        claim = await session.get(ClaimModel, claim_id)
        if claim is None:
            raise EntityNotFoundError("Claim", claim_id)
        if expected_version is not None and claim.version != expected_version:
            self.metrics_collector.record_transition_rejected("concurrent_modification")
            raise ConcurrentModificationError(
                f"Claim {claim_id} is at version {claim.version}, expected {expected_version}.",
                {"claim_id": claim_id, "current_version": claim.version, "expected_version": expected_version},
            )
        return claim

    def _transition(
        self,
        session: AsyncSession,
        uow: _UnitOfWork,
        claim: ClaimModel,
        to_status: ClaimStatus,
        reason: Optional[str] = None,
        source: str = "system",
    ) -> None:
        from_status = claim.status
        if not can_transition(from_status, to_status.value):
            self.metrics_collector.record_transition_rejected("invalid_transition")
            raise InvalidTransitionError(claim.id, from_status, to_status.value)
        claim.status = to_status.value
        claim.version = claim.version + 1
        session.add(ClaimStatusHistoryModel(
            claim_id=claim.id,
            from_status=from_status,
            to_status=to_status.value,
            reason=reason,
            source=source,
            created_at=self.clock(),
        ))
        uow.transitions.append((claim.id, from_status, to_status.value))

    def _walk_to(
        self,
        session: AsyncSession,
        uow: _UnitOfWork,
        claim: ClaimModel,
        target: ClaimStatus,
        reason: Optional[str] = None,
        source: str = "system",
    ) -> None:
        """Moves the claim to target through every intermediate legal edge."""
        if claim.status == target.value:
            return
        steps = path_to(claim.status, target.value)
        if not steps:
            self.metrics_collector.record_transition_rejected("invalid_transition")
            raise InvalidTransitionError(claim.id, claim.status, target.value)
        for step in steps:
            self._transition(session, uow, claim, step, reason=reason, source=source)

    async def _commit(self, session: AsyncSession, uow: _UnitOfWork, entity: str = "Claim") -> None:
        try:
            await session.commit()
        except StaleDataError as e:
            await session.rollback()
            self.metrics_collector.record_transition_rejected("concurrent_modification")
            logger.warning("Concurrent modification detected", entity=entity, error=str(e))
            raise ConcurrentModificationError(f"{entity} was modified concurrently; re-read and retry.") from e

        for claim_id, from_status, to_status in uow.transitions:
            self.metrics_collector.record_claim_transition(from_status, to_status)
            logger.info("Claim transitioned", claim_id=claim_id, from_status=from_status, to_status=to_status)
            await self.event_publisher.publish(
                CLAIM_STATUS_CHANGED, {"claim_id": claim_id, "from_status": from_status, "to_status": to_status}
            )
        for event_type, payload in uow.events:
            await self.event_publisher.publish(event_type, payload)

    @staticmethod
    def _check_amounts(billed: Decimal, allowed: Decimal, paid: Decimal) -> Optional[str]:
        if paid < ZERO or allowed < ZERO:
            return "amounts cannot be negative"
        if allowed > billed:
            return f"allowed {allowed} exceeds billed {billed}"
        if paid > allowed:
            return f"paid {paid} exceeds allowed {allowed}"
        return None

    @staticmethod
    def _payment_outcome(allowed: Decimal, paid: Decimal, responsibility: Optional[Decimal]) -> ClaimStatus:
        """
        Denied only when nothing of the claim is payable by the payer or the
        patient. A deductible that absorbs the whole allowed amount is a paid
        claim with a patient balance, not a denial.
        """
        responsibility = max(Decimal(responsibility or 0), ZERO)
        if allowed <= ZERO or (paid <= ZERO and responsibility <= ZERO):
            return ClaimStatus.DENIED
        if paid + responsibility >= allowed:
            return ClaimStatus.PAID
        return ClaimStatus.PARTIALLY_PAID

    @staticmethod
    def _patient_share(outcome: ClaimStatus, allowed: Decimal, paid: Decimal, reported: Optional[Decimal]) -> Decimal:
        """
        Amount moved onto the patient account: the payer-reported patient
        responsibility, or the unpaid allowed residual of a partial payment when
        the payer reported none.
        """
        responsibility = Decimal(reported or 0)
        if responsibility <= ZERO and outcome == ClaimStatus.PARTIALLY_PAID:
            responsibility = allowed - paid
        return max(responsibility, ZERO)

    async def _add_to_account_balance(self, session: AsyncSession, account_id: int, amount: Decimal) -> None:
        if amount <= ZERO:
            return
        account = await session.get(AccountModel, account_id)
        if account is None:
            raise EntityNotFoundError("Account", account_id)
        previous = Decimal(account.outstanding_balance or 0)
        account.outstanding_balance = previous + amount
        if previous <= ZERO:
            account.balance_since = self.clock()
        account.version = account.version + 1

    def _adjudicate(
        self,
        session: AsyncSession,
        uow: _UnitOfWork,
        claim: ClaimModel,
        allowed: Decimal,
        paid: Decimal,
        responsibility: Decimal,
        denial_reasons: List[DenialReason],
        source: str,
    ) -> ClaimStatus:
        """Walks the claim to adjudicated and on to its payment outcome. Amounts must already be validated."""
        self._walk_to(session, uow, claim, ClaimStatus.ADJUDICATED, source=source)
        claim.allowed_amount = allowed
        claim.paid_amount = paid
        claim.adjudicated_at = self.clock()

        outcome = self._payment_outcome(allowed, paid, responsibility)
        self._transition(session, uow, claim, outcome, source=source)

        if outcome == ClaimStatus.DENIED:
            reasons = denial_reasons or [DenialReason(reason_code="UNSPECIFIED", amount=claim.billed_amount)]
            denials = record_denials(session, claim, reasons, self.clock())
            uow.events.append((CLAIM_DENIED, {"claim_id": claim.id, "denials": denials}))
        return outcome

    def _finalize_denied_events(self, uow: _UnitOfWork) -> None:
        # Denial ids exist only after flush; swap the ORM objects for their ids
        finalized = []
        for event_type, payload in uow.events:
            if event_type == CLAIM_DENIED and "denials" in payload:
                payload = {"claim_id": payload["claim_id"], "denial_ids": [d.id for d in payload["denials"]]}
            finalized.append((event_type, payload))
        uow.events = finalized

    async def _commit_with_denials(self, session: AsyncSession, uow: _UnitOfWork) -> None:
        try:
            await session.flush()
        except StaleDataError as e:
            await session.rollback()
            self.metrics_collector.record_transition_rejected("concurrent_modification")
            raise ConcurrentModificationError("Claim was modified concurrently; re-read and retry.") from e
        self._finalize_denied_events(uow)
        await self._commit(session, uow)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_claim(self, command: ClaimCreate) -> ClaimModel:
        async with self.session_factory() as session:
            account = await session.get(AccountModel, command.account_id)
            if account is None:
                raise EntityNotFoundError("Account", command.account_id)

            existing = await session.execute(select(ClaimModel.id).where(ClaimModel.claim_number == command.claim_number))
            if existing.scalar_one_or_none() is not None:
                raise ValidationError(f"Claim number {command.claim_number} already exists.")

            line_items = [
                ClaimLineItemModel(
                    line_number=item.line_number or index,
                    service_date=item.service_date,
                    procedure_code=item.procedure_code.upper() if item.procedure_code else None,
                    diagnosis_codes=[code.upper() for code in item.diagnosis_codes],
                    modifiers=list(item.modifiers),
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for index, item in enumerate(command.line_items, start=1)
            ]
            billed = command.billed_amount
            if billed is None:
                billed = sum((li.unit_price * li.quantity for li in line_items), ZERO)

            now = self.clock()
            claim = ClaimModel(
                claim_number=command.claim_number,
                account_id=command.account_id,
                payer_id=command.payer_id,
                payer_name=command.payer_name,
                payer_type=command.payer_type,
                service_date=command.service_date,
                clinical_summary=command.clinical_summary,
                status=ClaimStatus.DRAFT.value,
                billed_amount=billed,
                paid_amount=ZERO,
                patient_responsibility=ZERO,
                version=1,
                created_at=now,
                updated_at=now,
                line_items=line_items,
            )
            session.add(claim)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ValidationError(f"Claim could not be created: {e.orig}") from e

        logger.info("Claim created", claim_id=claim.id, claim_number=claim.claim_number, billed=str(billed))
        return claim

    async def get_claim(self, claim_id: int) -> ClaimModel:
        async with self.session_factory() as session:
            return await self._load_claim(session, claim_id)

    async def get_claim_history(self, claim_id: int) -> List[ClaimStatusHistoryModel]:
        async with self.session_factory() as session:
            await self._load_claim(session, claim_id)
            result = await session.execute(
                select(ClaimStatusHistoryModel)
                .where(ClaimStatusHistoryModel.claim_id == claim_id)
                .order_by(ClaimStatusHistoryModel.id)
            )
            return list(result.scalars().all())

    async def submit(self, claim_id: int, expected_version: Optional[int] = None) -> ClaimModel:
        """
        draft -> submitted, then transmits to the clearinghouse outside the transaction.
        If the clearinghouse is unavailable the claim stays submitted without a
        clearinghouse id (the status sweep re-transmits it) and the error propagates.
        """
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            claim = await self._load_claim(session, claim_id, expected_version)
            if not can_transition(claim.status, ClaimStatus.SUBMITTED.value):
                self.metrics_collector.record_transition_rejected("invalid_transition")
                raise InvalidTransitionError(claim.id, claim.status, ClaimStatus.SUBMITTED.value)

            errors = self.validator.validate_claim(claim)
            if errors:
                logger.info("Claim failed pre-submission validation", claim_id=claim_id, errors=errors)
                raise ValidationError(f"Claim {claim_id} failed validation.", errors)

            claim.submitted_at = self.clock()
            self._transition(session, uow, claim, ClaimStatus.SUBMITTED, source="submission")
            await self._commit(session, uow)

        if self.clearinghouse_client is None:
            logger.warning("No clearinghouse client configured; claim left for the sync sweep", claim_id=claim_id)
            return claim
        return await self.transmit(claim_id)

    def _build_submission_payload(self, claim: ClaimModel) -> Dict[str, Any]:
        return {
            "claim_number": claim.claim_number,
            "payer_id": claim.payer_id,
            "payer_name": claim.payer_name,
            "service_date": claim.service_date.isoformat() if claim.service_date else None,
            "billed_amount": str(claim.billed_amount),
            "line_items": [
                {
                    "line_number": li.line_number,
                    "procedure_code": li.procedure_code,
                    "diagnosis_codes": list(li.diagnosis_codes or []),
                    "modifiers": list(li.modifiers or []),
                    "quantity": li.quantity,
                    "unit_price": str(li.unit_price),
                    "service_date": (li.service_date or claim.service_date).isoformat()
                    if (li.service_date or claim.service_date) else None,
                }
                for li in claim.line_items
            ],
        }

    async def transmit(self, claim_id: int) -> ClaimModel:
        """Sends a submitted claim to the clearinghouse. Safe to repeat: the claim number is the idempotency key."""
        if self.clearinghouse_client is None:
            raise ClearinghouseUnavailableError("No clearinghouse client configured.")

        async with self.session_factory() as session:
            claim = await self._load_claim(session, claim_id)
            if claim.status != ClaimStatus.SUBMITTED.value:
                raise InvalidTransitionError(claim.id, claim.status, ClaimStatus.SUBMITTED.value)
            payload = self._build_submission_payload(claim)
            claim_number = claim.claim_number

        try:
            response = await self.clearinghouse_client.submit_claim(payload, idempotency_key=claim_number)
        except ClearinghouseUnavailableError:
            logger.warning("Clearinghouse unavailable; claim stays submitted for re-transmission", claim_id=claim_id)
            raise
        except ClearinghouseRequestError as e:
            if e.http_status not in (400, 422):
                raise
            logger.info("Clearinghouse refused claim", claim_id=claim_id, error=e.message)
            update = ClaimStatusUpdate(status="rejected", rejection_reasons=[e.message])
            return await self.apply_status_update(claim_id, update, source="clearinghouse")

        update = to_status_update(response)
        return await self.apply_status_update(claim_id, update, source="clearinghouse")

    async def apply_status_update(self, claim_id: int, update: ClaimStatusUpdate, source: str = "clearinghouse") -> ClaimModel:
        """
        Feeds a clearinghouse status into the state machine. Re-applying the status
        the claim already has only refreshes last_synced_at.
        """
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            claim = await self._load_claim(session, claim_id)
            if update.clearinghouse_id and not claim.clearinghouse_id:
                claim.clearinghouse_id = update.clearinghouse_id
            claim.last_synced_at = self.clock()

            target = update.status
            current = claim.status
            if target == "pending" or target == current:
                await self._commit(session, uow)
                return claim

            if ClaimStatus(current) in TERMINAL_STATUSES:
                logger.info("Ignoring status update for terminal claim", claim_id=claim_id, status=current, reported=target)
                await self._commit(session, uow)
                return claim

            if target == ClaimStatus.REJECTED.value:
                claim.rejection_reasons = list(update.rejection_reasons)
                self._transition(session, uow, claim, ClaimStatus.REJECTED, reason="; ".join(update.rejection_reasons) or None, source=source)
            elif target in (ClaimStatus.ACCEPTED.value, ClaimStatus.ADJUDICATED.value):
                if not path_to(current, target):
                    logger.info("Status update already superseded", claim_id=claim_id, status=current, reported=target)
                    await self._commit(session, uow)
                    return claim
                self._walk_to(session, uow, claim, ClaimStatus(target), source=source)
            else:
                allowed = update.allowed_amount if update.allowed_amount is not None else (
                    claim.billed_amount if target == ClaimStatus.PAID.value else ZERO
                )
                paid = update.paid_amount if update.paid_amount is not None else (
                    allowed if target == ClaimStatus.PAID.value else ZERO
                )
                problem = self._check_amounts(Decimal(claim.billed_amount), Decimal(allowed), Decimal(paid))
                if problem:
                    raise ValidationError(f"Status update for claim {claim_id} has invalid amounts: {problem}")
                if current not in REMITTABLE_STATUSES:
                    raise InvalidTransitionError(claim.id, current, target)
                outcome = self._adjudicate(
                    session, uow, claim, Decimal(allowed), Decimal(paid), Decimal(update.patient_responsibility or 0),
                    list(update.denial_reasons), source,
                )
                responsibility = self._patient_share(outcome, Decimal(allowed), Decimal(paid), update.patient_responsibility)
                claim.patient_responsibility = Decimal(claim.patient_responsibility or 0) + responsibility
                await self._add_to_account_balance(session, claim.account_id, responsibility)

            await self._commit_with_denials(session, uow)
            return claim

    async def apply_remittance(self, era: RemittanceAdviceCommand) -> RemittanceApplyResult:
        """
        Idempotent by batch id. The header and records are stored once; each record
        is then applied in its own transaction, so a crash or conflict leaves the
        remaining records pending and re-ingesting the batch resumes them.
        """
        remittance_id, completed = await self._store_remittance(era)
        result = RemittanceApplyResult(remittance_id=remittance_id, batch_id=era.batch_id, status="processing")
        if completed:
            logger.info("ERA batch already processed", batch_id=era.batch_id)
            result.status = "completed"
            result.already_processed = True
            return result

        async with self.session_factory() as session:
            pending = await session.execute(
                select(RemittanceClaimRecordModel.id)
                .where(RemittanceClaimRecordModel.remittance_id == remittance_id)
                .where(RemittanceClaimRecordModel.outcome == "pending")
                .order_by(RemittanceClaimRecordModel.sequence)
            )
            record_ids = list(pending.scalars().all())

        for record_id in record_ids:
            try:
                outcome = await self._apply_remittance_record(record_id)
            except Exception as e:
                result.failed += 1
                self.metrics_collector.record_remittance_record("failed")
                logger.error("Failed to apply ERA record", batch_id=era.batch_id, record_id=record_id, error=str(e),
                             exc_info=not isinstance(e, ConcurrentModificationError))
                continue
            self.metrics_collector.record_remittance_record(outcome)
            if outcome == "applied":
                result.applied += 1
            elif outcome == "skipped_unknown_claim":
                result.skipped_unknown_claim += 1
            elif outcome == "skipped_invalid_state":
                result.skipped_invalid_state += 1
            elif outcome == "rejected_invalid_amounts":
                result.rejected_invalid_amounts += 1

        if result.failed == 0:
            async with self.session_factory() as session:
                remittance = await session.get(RemittanceAdviceModel, remittance_id)
                remittance.status = "completed"
                remittance.completed_at = self.clock()
                await session.commit()
            result.status = "completed"

        logger.info("ERA batch applied", **result.model_dump())
        return result

    async def _store_remittance(self, era: RemittanceAdviceCommand) -> Tuple[int, bool]:
        async with self.session_factory() as session:
            existing = await session.execute(
                select(RemittanceAdviceModel.id, RemittanceAdviceModel.status)
                .where(RemittanceAdviceModel.batch_id == era.batch_id)
            )
            row = existing.first()
            if row is not None:
                return row.id, row.status == "completed"

            remittance = RemittanceAdviceModel(
                batch_id=era.batch_id,
                payer_name=era.payer_name,
                payer_id=era.payer_id,
                payment_amount=era.payment_amount,
                payment_date=era.payment_date,
                received_at=self.clock(),
                status="processing",
                records=[
                    RemittanceClaimRecordModel(
                        sequence=index,
                        claim_reference=record.claim_reference,
                        status_code=record.status_code,
                        billed_amount=record.billed_amount,
                        allowed_amount=record.allowed_amount,
                        paid_amount=record.paid_amount,
                        patient_responsibility=record.patient_responsibility,
                        adjustments=[adj.model_dump(mode="json") for adj in record.adjustments],
                        line_adjustments=[line.model_dump(mode="json") for line in record.line_adjustments],
                        outcome="pending",
                    )
                    for index, record in enumerate(era.records)
                ],
            )
            session.add(remittance)
            try:
                await session.commit()
            except IntegrityError:
                # Another worker stored the same batch first
                await session.rollback()
                existing = await session.execute(
                    select(RemittanceAdviceModel.id, RemittanceAdviceModel.status)
                    .where(RemittanceAdviceModel.batch_id == era.batch_id)
                )
                row = existing.one()
                return row.id, row.status == "completed"
            logger.info("ERA batch stored", batch_id=era.batch_id, records=len(era.records))
            return remittance.id, False

    @staticmethod
    def _denial_reasons_from_record(record: RemittanceClaimRecordModel) -> List[DenialReason]:
        reasons: List[DenialReason] = []
        for adj in record.adjustments or []:
            if adj["group_code"] == "PR" or is_contractual_adjustment(adj["reason_code"]):
                continue
            reasons.append(DenialReason(group_code=adj["group_code"], reason_code=adj["reason_code"],
                                        amount=abs(Decimal(str(adj["amount"])))))
        for line in record.line_adjustments or []:
            if Decimal(str(line.get("paid_amount") or 0)) > ZERO:
                continue
            for adj in line.get("adjustments", []):
                if adj["group_code"] == "PR" or is_contractual_adjustment(adj["reason_code"]):
                    continue
                reasons.append(DenialReason(group_code=adj["group_code"], reason_code=adj["reason_code"],
                                            amount=abs(Decimal(str(adj["amount"]))), line_number=line.get("line_number")))
        return reasons

    @staticmethod
    def _apply_line_outcomes(claim: ClaimModel, record: RemittanceClaimRecordModel) -> None:
        by_number = {li.line_number: li for li in claim.line_items}
        by_code = {li.procedure_code: li for li in claim.line_items if li.procedure_code}
        for line in record.line_adjustments or []:
            item = by_number.get(line.get("line_number")) if line.get("line_number") is not None else None
            if item is None or (line.get("procedure_code") and item.procedure_code != line.get("procedure_code")):
                item = by_code.get(line.get("procedure_code")) or item
            if item is None:
                continue
            paid = Decimal(str(line.get("paid_amount") or 0))
            item.paid_amount = paid
            if paid <= ZERO:
                item.line_outcome = "denied"
            elif line.get("adjustments"):
                item.line_outcome = "adjusted"
            else:
                item.line_outcome = "paid"

    async def _apply_remittance_record(self, record_id: int) -> str:
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            record = await session.get(RemittanceClaimRecordModel, record_id)
            if record.outcome != "pending":
                return record.outcome
            now = self.clock()

            result = await session.execute(
                select(ClaimModel).where(or_(
                    ClaimModel.claim_number == record.claim_reference,
                    ClaimModel.clearinghouse_id == record.claim_reference,
                )).limit(1)
            )
            claim = result.scalars().first()

            billed = Decimal(record.billed_amount)
            allowed = Decimal(record.allowed_amount)
            paid = Decimal(record.paid_amount)

            if claim is None:
                record.outcome = "skipped_unknown_claim"
                record.outcome_detail = f"No claim matches reference {record.claim_reference}."
                logger.warning("ERA record references unknown claim", claim_reference=record.claim_reference)
            else:
                record.claim_id = claim.id
                problem = self._check_amounts(billed, allowed, paid) or self._check_amounts(Decimal(claim.billed_amount), allowed, paid)
                if problem:
                    record.outcome = "rejected_invalid_amounts"
                    record.outcome_detail = problem
                    logger.warning("ERA record rejected: amount invariant violated", claim_id=claim.id, detail=problem)
                elif claim.status not in REMITTABLE_STATUSES:
                    record.outcome = "skipped_invalid_state"
                    record.outcome_detail = f"Claim is {claim.status}."
                    logger.warning("ERA record skipped: claim not awaiting adjudication", claim_id=claim.id, status=claim.status)
                else:
                    outcome = self._adjudicate(
                        session, uow, claim, allowed, paid, Decimal(record.patient_responsibility or 0),
                        self._denial_reasons_from_record(record), source="era",
                    )
                    self._apply_line_outcomes(claim, record)
                    responsibility = self._patient_share(outcome, allowed, paid, record.patient_responsibility)
                    claim.patient_responsibility = Decimal(claim.patient_responsibility or 0) + responsibility
                    await self._add_to_account_balance(session, claim.account_id, responsibility)
                    record.outcome = "applied"
                    record.outcome_detail = outcome.value

            record.applied_at = now
            await self._commit_with_denials(session, uow)
            return record.outcome

    async def mark_denied(self, claim_id: int, denial_reasons: List[DenialReason], expected_version: Optional[int] = None) -> Tuple[ClaimModel, List[DenialModel]]:
        if not denial_reasons:
            raise ValidationError("At least one denial reason is required.")
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            claim = await self._load_claim(session, claim_id, expected_version)
            if claim.status in (ClaimStatus.SUBMITTED.value, ClaimStatus.ACCEPTED.value):
                self._walk_to(session, uow, claim, ClaimStatus.ADJUDICATED, source="denial")
            self._transition(session, uow, claim, ClaimStatus.DENIED, source="denial")
            claim.adjudicated_at = claim.adjudicated_at or self.clock()
            if claim.allowed_amount is None:
                claim.allowed_amount = ZERO
            denials = record_denials(session, claim, denial_reasons, self.clock())
            uow.events.append((CLAIM_DENIED, {"claim_id": claim.id, "denials": denials}))
            await self._commit_with_denials(session, uow)

        logger.info("Claim denied", claim_id=claim_id, denial_ids=[d.id for d in denials])
        return claim, denials

    async def file_appeal(
        self,
        claim_id: int,
        denial_id: Optional[int] = None,
        appeal_type: str = "standard",
        expected_version: Optional[int] = None,
    ) -> Tuple[ClaimModel, AppealModel]:
        """denied -> appealed; the appeal is generated if needed and submitted in the same transaction."""
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            claim = await self._load_claim(session, claim_id, expected_version)
            if not can_transition(claim.status, ClaimStatus.APPEALED.value):
                self.metrics_collector.record_transition_rejected("invalid_transition")
                raise InvalidTransitionError(claim.id, claim.status, ClaimStatus.APPEALED.value)

            denial = await open_denial_for_claim(session, claim_id, denial_id)
            if denial is None:
                if denial_id is not None:
                    raise EntityNotFoundError("Denial", denial_id)
                raise ValidationError(f"Claim {claim_id} has no open denial to appeal.")
            if denial.status not in ("new", "analyzed"):
                raise ValidationError(f"Denial {denial.id} is {denial.status} and cannot be appealed.")

            now = self.clock()
            appeal = pending_appeal(denial) or build_appeal(
                session, claim, denial, appeal_type, now, self.settings.APPEAL_DEADLINE_DAYS
            )
            appeal.submitted_at = now
            denial.status = "appealed"
            self._transition(session, uow, claim, ClaimStatus.APPEALED, reason=f"denial {denial.id}", source="appeal")
            await self._commit(session, uow)

        logger.info("Appeal filed", claim_id=claim_id, denial_id=denial.id, appeal_id=appeal.id)
        return claim, appeal

    async def readjudicate_in_session(
        self,
        session: AsyncSession,
        claim_id: int,
        recovered_amount: Optional[Decimal] = None,
        partial: bool = False,
    ) -> Tuple[ClaimModel, _UnitOfWork]:
        """
        Appeal callback: appealed -> adjudicated, and on to paid/partially_paid when
        money was recovered. The caller commits through commit_unit_of_work.
        """
        uow = _UnitOfWork()
        claim = await self._load_claim(session, claim_id)
        self._transition(session, uow, claim, ClaimStatus.ADJUDICATED, reason="appeal overturned", source="appeal")
        claim.adjudicated_at = self.clock()

        if recovered_amount is not None and recovered_amount > ZERO:
            paid_total = Decimal(claim.paid_amount or 0) + Decimal(recovered_amount)
            billed = Decimal(claim.billed_amount)
            if paid_total > billed:
                raise ValidationError(f"Recovered amount brings paid to {paid_total}, above billed {billed}.")
            allowed = Decimal(claim.allowed_amount or 0)
            if partial:
                allowed = max(allowed, billed)
            allowed = max(allowed, paid_total)
            claim.allowed_amount = allowed
            claim.paid_amount = paid_total
            outcome = ClaimStatus.PAID if paid_total >= allowed else ClaimStatus.PARTIALLY_PAID
            self._transition(session, uow, claim, outcome, reason="appeal recovery", source="appeal")
        return claim, uow

    async def uphold_denial_in_session(self, session: AsyncSession, claim_id: int) -> Tuple[ClaimModel, _UnitOfWork]:
        """Appeal callback: appealed -> denied."""
        uow = _UnitOfWork()
        claim = await self._load_claim(session, claim_id)
        self._transition(session, uow, claim, ClaimStatus.DENIED, reason="appeal upheld", source="appeal")
        return claim, uow

    async def commit_unit_of_work(self, session: AsyncSession, uow: _UnitOfWork) -> None:
        await self._commit(session, uow)

    async def readjudicate(self, claim_id: int, recovered_amount: Optional[Decimal] = None, partial: bool = False) -> ClaimModel:
        async with self.session_factory() as session:
            claim, uow = await self.readjudicate_in_session(session, claim_id, recovered_amount, partial)
            await self._commit(session, uow)
            return claim

    async def uphold_denial(self, claim_id: int) -> ClaimModel:
        async with self.session_factory() as session:
            claim, uow = await self.uphold_denial_in_session(session, claim_id)
            await self._commit(session, uow)
            return claim

    async def void(self, claim_id: int, reason: str, expected_version: Optional[int] = None) -> ClaimModel:
        if not reason or not reason.strip():
            raise ValidationError("A void reason is required.")
        async with self.session_factory() as session:
            uow = _UnitOfWork()
            claim = await self._load_claim(session, claim_id, expected_version)
            self._transition(session, uow, claim, ClaimStatus.VOID, reason=reason, source="void")
            claim.void_reason = reason
            await self._commit(session, uow)
            return claim

    async def claims_due_for_sync(self, older_than: datetime, limit: int) -> List[Tuple[int, Optional[str]]]:
        """(claim id, clearinghouse id) for in-flight claims untouched since older_than."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ClaimModel.id, ClaimModel.clearinghouse_id)
                .where(ClaimModel.status.in_((ClaimStatus.SUBMITTED.value, ClaimStatus.ACCEPTED.value)))
                .where(ClaimModel.submitted_at <= older_than)
                .where(or_(ClaimModel.last_synced_at.is_(None), ClaimModel.last_synced_at <= older_than))
                .order_by(ClaimModel.submitted_at)
                .limit(limit)
            )
            return [(row.id, row.clearinghouse_id) for row in result.all()]
