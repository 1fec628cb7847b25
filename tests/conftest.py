import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

import rcm_engine.src.core.database.models  # noqa: F401  (registers every table on Base.metadata)
from rcm_engine.src.api.models.account_models import AccountCreate
from rcm_engine.src.api.models.claim_models import ClaimCreate, ClaimLineItemCreate
from rcm_engine.src.api.models.remittance_models import Adjustment, RemittanceAdviceCommand, RemittanceClaimRecord
from rcm_engine.src.core.config.settings import Settings
from rcm_engine.src.core.container import ServiceContainer
from rcm_engine.src.core.database.db_session import Base
from rcm_engine.src.main import create_app

START_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock injected into every service."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeClearinghouse:
    """
    In-memory clearinghouse behind httpx.MockTransport. Status codes queued in
    fail_with are answered first, one per request.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_with: List[int] = []
        self.submit_status = "accepted"
        self.statuses: Dict[str, dict] = {}
        self.eras: Dict[str, str] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with.pop(0), text="clearinghouse error")

        path = request.url.path
        if request.method == "POST" and path.endswith("/claims"):
            body = json.loads(request.content)
            return httpx.Response(200, json={"claim_id": f"CH-{body['claim_number']}", "status": self.submit_status})
        if path.endswith("/status"):
            clearinghouse_id = path.split("/")[-2]
            return httpx.Response(200, json=self.statuses.get(clearinghouse_id, {"claim_id": clearinghouse_id, "status": "pending"}))
        if path.endswith("/eras"):
            return httpx.Response(200, json={"eras": [{"era_id": era_id} for era_id in self.eras]})
        if "/eras/" in path:
            era_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, text=self.eras[era_id], headers={"content-type": "text/plain"})
        return httpx.Response(404, text="not found")

    def requests_to(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


async def _create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _build_container(settings, clock, clearinghouse, dispatcher=None) -> ServiceContainer:
    # NullPool: every session opens its own connection, so the engine is safe to use from any event loop
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    return ServiceContainer(
        settings,
        engine=engine,
        clock=clock,
        clearinghouse_transport=httpx.MockTransport(clearinghouse.handler),
        clearinghouse_sleep=AsyncMock(),
        dispatcher=dispatcher,
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'rcm_test.db'}",
        SCHEDULER_ENABLED=False,
        SYNC_MIN_DWELL_MINUTES=0,
        SYNC_CONCURRENCY=1,
        CLEARINGHOUSE_BASE_URL="https://clearinghouse.test/v1",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START_TIME)


@pytest.fixture
def clearinghouse() -> FakeClearinghouse:
    return FakeClearinghouse()


@pytest.fixture
async def container(settings, clock, clearinghouse):
    c = _build_container(settings, clock, clearinghouse)
    await _create_schema(c.engine)
    yield c
    await c.close()


@pytest.fixture
def api_client(settings, clock, clearinghouse):
    c = _build_container(settings, clock, clearinghouse)
    asyncio.run(_create_schema(c.engine))
    app = create_app(c, start_scheduler=False)
    with TestClient(app) as client:
        client.container = c
        yield client
    asyncio.run(c.close())


@pytest.fixture
def claim_command():
    """Builds a valid single-line ClaimCreate for an account."""

    def _build(account_id: int, claim_number: str = "CLM-1001", unit_price: Decimal = Decimal("500.00"), **overrides) -> ClaimCreate:
        data = dict(
            claim_number=claim_number,
            account_id=account_id,
            payer_id="PAYER01",
            payer_name="Acme Health",
            payer_type="commercial",
            service_date=date(2026, 2, 20),
            clinical_summary="Follow-up visit for type 2 diabetes; A1c reviewed, medication adjusted.",
            line_items=[ClaimLineItemCreate(procedure_code="99213", diagnosis_codes=["E11.9"], unit_price=unit_price)],
        )
        data.update(overrides)
        return ClaimCreate(**data)

    return _build


@pytest.fixture
def era_command():
    """Builds a one-record RemittanceAdviceCommand."""

    def _build(claim_reference: str, billed: str, allowed: str, paid: str, batch_id: str = "TRN-0001",
               adjustments=None, patient_responsibility: str = "0") -> RemittanceAdviceCommand:
        return RemittanceAdviceCommand(
            batch_id=batch_id,
            payer_name="Acme Health",
            payment_amount=Decimal(paid),
            records=[RemittanceClaimRecord(
                claim_reference=claim_reference,
                billed_amount=Decimal(billed),
                allowed_amount=Decimal(allowed),
                paid_amount=Decimal(paid),
                patient_responsibility=Decimal(patient_responsibility),
                adjustments=[Adjustment(**adj) for adj in (adjustments or [])],
            )],
        )

    return _build


@pytest.fixture
async def account(container):
    return await container.account_service.create_account(AccountCreate(account_number="ACC-1001", guarantor_name="Jordan Avery"))


@pytest.fixture
async def accepted_claim(container, account, claim_command):
    """A claim submitted and acknowledged by the clearinghouse."""
    claim = await container.lifecycle_service.create_claim(claim_command(account.id))
    return await container.lifecycle_service.submit(claim.id)
