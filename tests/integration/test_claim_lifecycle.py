import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.orm.exc import StaleDataError

from rcm_engine.src.api.models.claim_models import ClaimLineItemCreate, ClaimStatusUpdate, DenialReason
from rcm_engine.src.core.database.models.claims_db import ClaimModel
from rcm_engine.src.core.events import CLAIM_STATUS_CHANGED
from rcm_engine.src.core.exceptions import (
    ClearinghouseUnavailableError,
    ConcurrentModificationError,
    EntityNotFoundError,
    InvalidTransitionError,
    ValidationError,
)


def transitions(history):
    return [(h.from_status, h.to_status) for h in history]


async def test_submit_transmits_and_records_acceptance(container, accepted_claim, clearinghouse):
    assert accepted_claim.status == "accepted"
    assert accepted_claim.clearinghouse_id == "CH-CLM-1001"
    assert accepted_claim.version == 3

    history = await container.lifecycle_service.get_claim_history(accepted_claim.id)
    assert transitions(history) == [("draft", "submitted"), ("submitted", "accepted")]

    submissions = clearinghouse.requests_to("/claims")
    assert len(submissions) == 1
    assert submissions[0].headers["Idempotency-Key"] == "CLM-1001"

    published = [e for e in container.event_publisher.published if e["type"] == CLAIM_STATUS_CHANGED]
    assert [(e["from_status"], e["to_status"]) for e in published] == [("draft", "submitted"), ("submitted", "accepted")]


async def test_billed_amount_defaults_to_line_charges(container, account, claim_command):
    command = claim_command(account.id, line_items=[
        ClaimLineItemCreate(procedure_code="99213", diagnosis_codes=["E11.9"], unit_price=Decimal("120.00")),
        ClaimLineItemCreate(procedure_code="85025", diagnosis_codes=["E11.9"], quantity=2, unit_price=Decimal("15.50")),
    ])
    claim = await container.lifecycle_service.create_claim(command)
    assert claim.billed_amount == Decimal("151.00")
    assert [li.line_number for li in claim.line_items] == [1, 2]


async def test_duplicate_claim_number_is_rejected(container, account, claim_command):
    await container.lifecycle_service.create_claim(claim_command(account.id))
    with pytest.raises(ValidationError, match="already exists"):
        await container.lifecycle_service.create_claim(claim_command(account.id))


async def test_claim_for_unknown_account(container, claim_command):
    with pytest.raises(EntityNotFoundError):
        await container.lifecycle_service.create_claim(claim_command(999))


async def test_invalid_claim_stays_draft(container, account, claim_command, clearinghouse):
    command = claim_command(account.id, line_items=[ClaimLineItemCreate(diagnosis_codes=["E11.9"], unit_price=Decimal("80.00"))])
    claim = await container.lifecycle_service.create_claim(command)

    with pytest.raises(ValidationError) as exc_info:
        await container.lifecycle_service.submit(claim.id)

    assert "Line 1: Missing procedure_code." in exc_info.value.errors
    assert (await container.lifecycle_service.get_claim(claim.id)).status == "draft"
    assert clearinghouse.requests == []


async def test_clearinghouse_refusal_rejects_claim(container, account, claim_command, clearinghouse):
    clearinghouse.fail_with = [422]
    claim = await container.lifecycle_service.create_claim(claim_command(account.id))

    claim = await container.lifecycle_service.submit(claim.id)

    assert claim.status == "rejected"
    assert "HTTP 422" in claim.rejection_reasons[0]
    with pytest.raises(InvalidTransitionError):
        await container.lifecycle_service.submit(claim.id)


async def test_unavailable_clearinghouse_leaves_claim_submitted(container, account, claim_command, clearinghouse):
    clearinghouse.fail_with = [503] * container.settings.CLEARINGHOUSE_MAX_ATTEMPTS
    claim = await container.lifecycle_service.create_claim(claim_command(account.id))

    with pytest.raises(ClearinghouseUnavailableError):
        await container.lifecycle_service.submit(claim.id)

    claim = await container.lifecycle_service.get_claim(claim.id)
    assert claim.status == "submitted"
    assert claim.clearinghouse_id is None

    # The next sweep re-transmits under the same idempotency key
    result = await container.sync_service.sync_claim_statuses()
    assert result.resubmitted == 1
    claim = await container.lifecycle_service.get_claim(claim.id)
    assert claim.status == "accepted"
    assert {r.headers["Idempotency-Key"] for r in clearinghouse.requests_to("/claims")} == {"CLM-1001"}


async def test_remittance_pays_claim(container, accepted_claim, era_command):
    era = era_command("CLM-1001", "500.00", "400.00", "400.00",
                      adjustments=[{"group_code": "CO", "reason_code": "45", "amount": "100.00"}])

    result = await container.lifecycle_service.apply_remittance(era)

    assert result.applied == 1
    assert result.status == "completed"
    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert claim.status == "paid"
    assert claim.allowed_amount == Decimal("400.00")
    assert claim.paid_amount == Decimal("400.00")
    history = await container.lifecycle_service.get_claim_history(claim.id)
    assert transitions(history)[-2:] == [("accepted", "adjudicated"), ("adjudicated", "paid")]
    assert (await container.account_service.get_account(claim.account_id)).outstanding_balance == Decimal("0")


async def test_remittance_skips_intermediate_states(container, account, claim_command, era_command, clearinghouse):
    clearinghouse.submit_status = "received"
    claim = await container.lifecycle_service.create_claim(claim_command(account.id))
    claim = await container.lifecycle_service.submit(claim.id)
    assert claim.status == "submitted"

    await container.lifecycle_service.apply_remittance(era_command("CH-CLM-1001", "500.00", "500.00", "500.00"))

    history = await container.lifecycle_service.get_claim_history(claim.id)
    assert transitions(history) == [
        ("draft", "submitted"), ("submitted", "accepted"), ("accepted", "adjudicated"), ("adjudicated", "paid"),
    ]


async def test_remittance_reingest_is_idempotent(container, accepted_claim, era_command):
    era = era_command("CLM-1001", "500.00", "400.00", "400.00")
    await container.lifecycle_service.apply_remittance(era)
    version = (await container.lifecycle_service.get_claim(accepted_claim.id)).version

    again = await container.lifecycle_service.apply_remittance(era)

    assert again.already_processed is True
    assert again.applied == 0
    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert claim.version == version
    assert claim.paid_amount == Decimal("400.00")


async def test_remittance_amount_invariant(container, accepted_claim, era_command):
    result = await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "400.00", "450.00"))

    assert result.rejected_invalid_amounts == 1
    assert result.applied == 0
    assert (await container.lifecycle_service.get_claim(accepted_claim.id)).status == "accepted"


async def test_remittance_for_unknown_or_finished_claims(container, accepted_claim, era_command):
    unknown = await container.lifecycle_service.apply_remittance(era_command("CLM-404", "10.00", "10.00", "10.00", batch_id="B-1"))
    assert unknown.skipped_unknown_claim == 1

    await container.lifecycle_service.void(accepted_claim.id, "Duplicate of CLM-0999")
    voided = await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "500.00", "500.00", batch_id="B-2"))
    assert voided.skipped_invalid_state == 1


async def test_partial_payment_moves_residual_to_patient(container, accepted_claim, era_command, clock):
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "400.00", "250.00"))

    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert claim.status == "partially_paid"
    assert claim.patient_responsibility == Decimal("150.00")
    account = await container.account_service.get_account(claim.account_id)
    assert account.outstanding_balance == Decimal("150.00")
    assert account.balance_since == clock()


async def test_deductible_absorbing_allowed_amount_is_not_a_denial(container, accepted_claim, era_command, clock):
    era = era_command("CLM-1001", "500.00", "400.00", "0.00", patient_responsibility="400.00", adjustments=[
        {"group_code": "PR", "reason_code": "1", "amount": "400.00"},
        {"group_code": "CO", "reason_code": "45", "amount": "100.00"},
    ])

    result = await container.lifecycle_service.apply_remittance(era)

    assert result.applied == 1
    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert claim.status == "paid"
    assert claim.paid_amount == Decimal("0.00")
    assert claim.patient_responsibility == Decimal("400.00")
    assert await container.denial_service.list_denials_for_claim(claim.id) == []
    account = await container.account_service.get_account(claim.account_id)
    assert account.outstanding_balance == Decimal("400.00")


async def test_contractual_write_down_is_not_a_denial_reason(container, accepted_claim, era_command):
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "0.00", "0.00", adjustments=[
        {"group_code": "CO", "reason_code": "45", "amount": "100.00"},
        {"group_code": "CO", "reason_code": "27", "amount": "400.00"},
    ]))

    denials = await container.denial_service.list_denials_for_claim(accepted_claim.id)
    assert [(d.reason_code, d.denied_amount) for d in denials] == [("27", Decimal("400.00"))]


async def test_status_update_with_invalid_amounts(container, accepted_claim):
    update = ClaimStatusUpdate(status="paid", allowed_amount=Decimal("600.00"), paid_amount=Decimal("600.00"))
    with pytest.raises(ValidationError, match="allowed 600.00 exceeds billed 500.00"):
        await container.lifecycle_service.apply_status_update(accepted_claim.id, update)


async def test_repeated_status_update_is_a_no_op(container, accepted_claim):
    claim = await container.lifecycle_service.apply_status_update(accepted_claim.id, ClaimStatusUpdate(status="accepted"))
    assert claim.status == "accepted"
    assert claim.version == accepted_claim.version


async def test_mark_denied_walks_through_adjudication(container, accepted_claim):
    claim, denials = await container.lifecycle_service.mark_denied(
        accepted_claim.id, [DenialReason(reason_code="CO-197", amount=Decimal("500.00"))]
    )
    assert claim.status == "denied"
    assert [(d.group_code, d.reason_code) for d in denials] == [("CO", "197")]
    history = await container.lifecycle_service.get_claim_history(claim.id)
    assert transitions(history)[-2:] == [("accepted", "adjudicated"), ("adjudicated", "denied")]


async def test_stale_expected_version_is_rejected(container, accepted_claim):
    with pytest.raises(ConcurrentModificationError) as exc_info:
        await container.lifecycle_service.void(accepted_claim.id, "entered in error", expected_version=accepted_claim.version - 1)
    assert exc_info.value.retryable is True

    claim = await container.lifecycle_service.void(accepted_claim.id, "entered in error", expected_version=accepted_claim.version)
    assert claim.status == "void"
    assert claim.void_reason == "entered in error"


async def test_version_column_detects_lost_update(container, accepted_claim):
    async with container.session_factory() as session:
        stale = await session.get(ClaimModel, accepted_claim.id)
        await container.lifecycle_service.void(accepted_claim.id, "entered in error")

        stale.status = "adjudicated"
        stale.version = stale.version + 1
        with pytest.raises(StaleDataError):
            await session.commit()

    assert (await container.lifecycle_service.get_claim(accepted_claim.id)).status == "void"


async def test_concurrent_transitions_admit_exactly_one(container, accepted_claim):
    results = await asyncio.gather(
        container.lifecycle_service.void(accepted_claim.id, "duplicate", expected_version=accepted_claim.version),
        container.lifecycle_service.void(accepted_claim.id, "entered in error", expected_version=accepted_claim.version),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], ConcurrentModificationError)
    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert claim.status == "void"
    assert claim.version == accepted_claim.version + 1
    history = await container.lifecycle_service.get_claim_history(claim.id)
    assert [h.to_status for h in history].count("void") == 1


async def test_invalid_edge_leaves_claim_untouched(container, accepted_claim):
    with pytest.raises(InvalidTransitionError):
        await container.lifecycle_service.file_appeal(accepted_claim.id)

    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert (claim.status, claim.version) == ("accepted", accepted_claim.version)


async def test_terminal_claims_refuse_transitions(container, accepted_claim, era_command):
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "500.00", "500.00"))
    paid = await container.lifecycle_service.get_claim(accepted_claim.id)
    with pytest.raises(InvalidTransitionError):
        await container.lifecycle_service.void(accepted_claim.id, "too late")
    with pytest.raises(ValidationError):
        await container.lifecycle_service.void(accepted_claim.id, "   ")

    claim = await container.lifecycle_service.get_claim(accepted_claim.id)
    assert (claim.status, claim.version) == ("paid", paid.version)


async def test_uphold_callback_returns_claim_to_denied(container, accepted_claim):
    await container.lifecycle_service.mark_denied(accepted_claim.id, [DenialReason(reason_code="CO-27", amount=Decimal("500.00"))])
    await container.lifecycle_service.file_appeal(accepted_claim.id)

    claim = await container.lifecycle_service.uphold_denial(accepted_claim.id)

    assert claim.status == "denied"
    with pytest.raises(InvalidTransitionError):
        await container.lifecycle_service.readjudicate(accepted_claim.id, Decimal("100.00"))


async def test_readjudicate_callback_pays_recovered_amount(container, accepted_claim):
    await container.lifecycle_service.mark_denied(accepted_claim.id, [DenialReason(reason_code="CO-27", amount=Decimal("500.00"))])
    await container.lifecycle_service.file_appeal(accepted_claim.id)

    with pytest.raises(ValidationError, match="above billed"):
        await container.lifecycle_service.readjudicate(accepted_claim.id, Decimal("600.00"))
    claim = await container.lifecycle_service.readjudicate(accepted_claim.id, Decimal("500.00"))

    assert claim.status == "paid"
    assert claim.paid_amount == Decimal("500.00")


async def test_unloaded_relationships_refuse_implicit_io(container, accepted_claim):
    async with container.session_factory() as session:
        claim = await session.get(ClaimModel, accepted_claim.id)
        assert [li.procedure_code for li in claim.line_items] == ["99213"]
        with pytest.raises(InvalidRequestError, match="lazy='raise'"):
            claim.history
        with pytest.raises(InvalidRequestError, match="lazy='raise'"):
            claim.account
