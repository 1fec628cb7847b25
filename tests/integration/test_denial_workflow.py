from decimal import Decimal

import pytest

from rcm_engine.src.core.exceptions import EntityNotFoundError, InsufficientDataError, InvalidTransitionError, ValidationError

ELIGIBILITY_DENIAL = [{"group_code": "CO", "reason_code": "27", "amount": "500.00"}]


@pytest.fixture
async def denied_claim(container, accepted_claim, era_command):
    """Claim denied by an ERA for expired coverage (CARC 27)."""
    await container.lifecycle_service.apply_remittance(
        era_command("CLM-1001", "500.00", "0.00", "0.00", adjustments=ELIGIBILITY_DENIAL)
    )
    return await container.lifecycle_service.get_claim(accepted_claim.id)


async def test_denied_remittance_records_and_categorizes_denial(container, denied_claim):
    assert denied_claim.status == "denied"

    denials = await container.denial_service.list_denials_for_claim(denied_claim.id)
    assert len(denials) == 1
    denial = denials[0]
    assert (denial.group_code, denial.reason_code) == ("CO", "27")
    assert denial.denied_amount == Decimal("500.00")
    # Categorized by the claim.denied subscriber
    assert denial.category == "eligibility"
    assert denial.priority == "medium"
    assert denial.status == "analyzed"


async def test_denied_remittance_without_codes_uses_placeholder(container, accepted_claim, era_command):
    await container.lifecycle_service.apply_remittance(era_command("CLM-1001", "500.00", "0.00", "0.00"))

    denials = await container.denial_service.list_denials_for_claim(accepted_claim.id)
    assert [d.reason_code for d in denials] == ["UNSPECIFIED"]
    assert denials[0].category == "other"


async def test_categorize_unknown_denial(container):
    with pytest.raises(EntityNotFoundError):
        await container.denial_service.categorize_denial(12345)


async def test_suggest_resolution(container):
    actions = container.denial_service.suggest_resolution("authorization")
    assert actions[0].action == "check_authorization"
    with pytest.raises(ValidationError):
        container.denial_service.suggest_resolution("astrology")


async def test_generate_appeal_builds_letter(container, denied_claim, clock):
    denial = (await container.denial_service.list_denials_for_claim(denied_claim.id))[0]

    appeal = await container.denial_service.generate_appeal(denial.id)

    assert appeal.outcome == "pending"
    assert appeal.submitted_at is None
    assert appeal.generated_at == clock()
    assert (appeal.resubmission_deadline - appeal.generated_at).days == container.settings.APPEAL_DEADLINE_DAYS
    letter = appeal.letter_content
    assert letter["claim_number"] == "CLM-1001"
    assert letter["denial"]["reason_code"] == "CO-27"
    assert letter["line_items"][0]["procedure_code"] == "99213"
    assert "Insurance card" in appeal.supporting_documents

    # Generating again returns the pending draft instead of a second appeal
    again = await container.denial_service.generate_appeal(denial.id)
    assert again.id == appeal.id


async def test_generate_appeal_requires_clinical_summary_for_documentation_denials(
    container, account, claim_command, era_command
):
    claim = await container.lifecycle_service.create_claim(claim_command(account.id, clinical_summary=None))
    await container.lifecycle_service.submit(claim.id)
    await container.lifecycle_service.apply_remittance(era_command(
        "CLM-1001", "500.00", "0.00", "0.00",
        adjustments=[{"group_code": "CO", "reason_code": "50", "amount": "500.00"}],
    ))
    denial = (await container.denial_service.list_denials_for_claim(claim.id))[0]
    assert denial.category == "coding_documentation"

    with pytest.raises(InsufficientDataError) as exc_info:
        await container.denial_service.generate_appeal(denial.id)
    assert exc_info.value.missing_fields == ["clinical_summary"]


async def test_overturned_appeal_pays_claim(container, denied_claim):
    claim, appeal = await container.lifecycle_service.file_appeal(denied_claim.id)
    assert claim.status == "appealed"
    assert appeal.submitted_at is not None

    appeal = await container.denial_service.track_outcome(appeal.id, "overturned", Decimal("500.00"))

    assert appeal.outcome == "overturned"
    claim = await container.lifecycle_service.get_claim(denied_claim.id)
    assert claim.status == "paid"
    assert claim.paid_amount == Decimal("500.00")
    history = [(h.from_status, h.to_status) for h in await container.lifecycle_service.get_claim_history(claim.id)]
    assert history[-3:] == [("denied", "appealed"), ("appealed", "adjudicated"), ("adjudicated", "paid")]
    denial = (await container.denial_service.list_denials_for_claim(claim.id))[0]
    assert denial.status == "resolved"
    resolved = [e for e in container.event_publisher.published if e["type"] == "appeal.resolved"]
    assert resolved == [{
        "type": "appeal.resolved", "appeal_id": appeal.id, "denial_id": denial.id,
        "claim_id": claim.id, "outcome": "overturned", "recovered_amount": Decimal("500.00"),
    }]


async def test_partial_appeal_leaves_claim_partially_paid(container, denied_claim):
    _, appeal = await container.lifecycle_service.file_appeal(denied_claim.id)

    await container.denial_service.track_outcome(appeal.id, "partial", Decimal("300.00"))

    claim = await container.lifecycle_service.get_claim(denied_claim.id)
    assert claim.status == "partially_paid"
    assert claim.paid_amount == Decimal("300.00")


async def test_upheld_appeal_returns_claim_to_denied(container, denied_claim):
    _, appeal = await container.lifecycle_service.file_appeal(denied_claim.id)

    await container.denial_service.track_outcome(appeal.id, "upheld", notes="Coverage terminated 2026-01-31")

    claim = await container.lifecycle_service.get_claim(denied_claim.id)
    assert claim.status == "denied"
    denial = (await container.denial_service.list_denials_for_claim(claim.id))[0]
    assert denial.status == "written_off"

    # A written-off denial cannot be appealed again
    with pytest.raises(ValidationError):
        await container.lifecycle_service.file_appeal(claim.id)
    with pytest.raises(ValidationError, match="already has outcome"):
        await container.denial_service.track_outcome(appeal.id, "overturned")


async def test_outcome_requires_filed_appeal(container, denied_claim):
    denial = (await container.denial_service.list_denials_for_claim(denied_claim.id))[0]
    appeal = await container.denial_service.generate_appeal(denial.id)

    with pytest.raises(ValidationError, match="has not been filed"):
        await container.denial_service.track_outcome(appeal.id, "overturned")


async def test_appeal_only_from_denied(container, accepted_claim):
    with pytest.raises(InvalidTransitionError):
        await container.lifecycle_service.file_appeal(accepted_claim.id)


async def test_analyze_denial_patterns(container, denied_claim):
    _, appeal = await container.lifecycle_service.file_appeal(denied_claim.id)
    await container.denial_service.track_outcome(appeal.id, "overturned", Decimal("500.00"))

    patterns = await container.denial_service.analyze_denial_patterns(timeframe_days=30)

    assert patterns["total_denials"] == 1
    assert patterns["by_category"]["eligibility"]["count"] == 1
    assert patterns["by_payer"]["Acme Health"]["denied_amount"] == Decimal("500.00")
    assert patterns["by_category_and_payer"] == {"eligibility": {"Acme Health": 1}}
    assert patterns["appeal_outcomes"] == {"overturned": 1}
    assert patterns["appeal_success_rate"] == 1.0
    assert patterns["recovered_amount"] == Decimal("500.00")
    assert patterns["top_category"] == "eligibility"


async def test_denial_patterns_respect_timeframe(container, denied_claim, clock):
    clock.advance(days=31)
    patterns = await container.denial_service.analyze_denial_patterns(timeframe_days=30)
    assert patterns["total_denials"] == 0
    assert patterns["top_category"] is None
