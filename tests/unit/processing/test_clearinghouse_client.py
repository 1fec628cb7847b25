from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from rcm_engine.src.core.config.settings import Settings
from rcm_engine.src.core.exceptions import ClearinghouseRequestError, ClearinghouseUnavailableError
from rcm_engine.src.core.monitoring.app_metrics import MetricsCollector
from rcm_engine.src.processing.clearinghouse.clearinghouse_client import ClearinghouseClient, to_status_update


class ScriptedTransport:
    """Answers requests from a list of responses (or exceptions), in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, CLEARINGHOUSE_BASE_URL="https://clearinghouse.test/v1", CLEARINGHOUSE_API_KEY="secret")


@pytest.fixture
def mock_metrics() -> MagicMock:
    return MagicMock(spec=MetricsCollector)


@pytest.fixture
def make_client(settings, mock_metrics):
    def _make(script: ScriptedTransport):
        sleep = AsyncMock()
        client = ClearinghouseClient(settings, mock_metrics, transport=httpx.MockTransport(script), sleep=sleep)
        return client, sleep

    return _make


def test_backoff_delays_double_and_cap(settings, mock_metrics):
    client = ClearinghouseClient(settings, mock_metrics)
    assert [client.backoff_delay(attempt) for attempt in range(7)] == [2, 4, 8, 16, 32, 60, 60]


async def test_transient_error_is_retried(make_client, mock_metrics):
    script = ScriptedTransport(
        httpx.Response(503),
        httpx.Response(200, json={"claim_id": "CH-1", "status": "accepted"}),
    )
    client, sleep = make_client(script)

    body = await client.submit_claim({"claim_number": "CLM-1"}, idempotency_key="CLM-1")

    assert body == {"claim_id": "CH-1", "status": "accepted"}
    sleep.assert_awaited_once_with(2.0)
    assert len(script.requests) == 2
    assert all(r.headers["Idempotency-Key"] == "CLM-1" for r in script.requests)
    assert script.requests[0].headers["Authorization"] == "Bearer secret"
    mock_metrics.record_clearinghouse_request.assert_any_call("submit_claim", "retry")
    await client.close()


async def test_transport_error_and_throttling_are_retried(make_client):
    request = httpx.Request("GET", "https://clearinghouse.test/v1/claims/CH-1/status")
    script = ScriptedTransport(
        httpx.ConnectError("connection refused", request=request),
        httpx.Response(429),
        httpx.Response(200, json={"claim_id": "CH-1", "status": "paid"}),
    )
    client, sleep = make_client(script)

    body = await client.poll_status("CH-1")

    assert body["status"] == "paid"
    assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]
    await client.close()


async def test_client_error_is_not_retried(make_client, mock_metrics):
    script = ScriptedTransport(httpx.Response(422, text="missing subscriber id"))
    client, sleep = make_client(script)

    with pytest.raises(ClearinghouseRequestError) as exc_info:
        await client.submit_claim({"claim_number": "CLM-1"}, idempotency_key="CLM-1")

    assert exc_info.value.http_status == 422
    assert "missing subscriber id" in exc_info.value.message
    sleep.assert_not_awaited()
    assert len(script.requests) == 1
    await client.close()


async def test_exhausted_retries_raise_unavailable(make_client, mock_metrics):
    script = ScriptedTransport(*[httpx.Response(502) for _ in range(5)])
    client, sleep = make_client(script)

    with pytest.raises(ClearinghouseUnavailableError) as exc_info:
        await client.poll_status("CH-9")

    assert exc_info.value.retryable is True
    assert len(script.requests) == 5
    assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0, 8.0, 16.0]
    mock_metrics.record_clearinghouse_request.assert_called_with("poll_status", "unavailable")
    await client.close()


async def test_list_and_download_eras(make_client):
    script = ScriptedTransport(
        httpx.Response(200, json={"eras": [{"era_id": 11}, {"era_id": "12"}]}),
        httpx.Response(200, text="ISA*00~", headers={"content-type": "text/plain"}),
        httpx.Response(200, json={"batch_id": "B-1", "records": []}),
    )
    client, _ = make_client(script)

    assert await client.list_available_eras() == ["11", "12"]
    assert script.requests[0].url.params["status"] == "available"
    assert await client.download_era("11") == "ISA*00~"
    assert await client.download_era("12") == {"batch_id": "B-1", "records": []}
    await client.close()


@pytest.mark.parametrize("raw,status", [
    ("received", "pending"),
    ("Acknowledged", "accepted"),
    ("processed", "adjudicated"),
    ("partial", "partially_paid"),
    ("something-new", "pending"),
])
def test_to_status_update_maps_vendor_statuses(raw, status):
    assert to_status_update({"status": raw}).status == status


def test_to_status_update_carries_adjudication_and_rejections():
    update = to_status_update({
        "claim_id": 123,
        "status": "paid",
        "adjudication": {"allowed_amount": "400.00", "paid_amount": "400.00", "patient_responsibility": "20.00"},
    })
    assert update.clearinghouse_id == "123"
    assert update.allowed_amount == Decimal("400.00")
    assert update.patient_responsibility == Decimal("20.00")

    rejected = to_status_update({"status": "rejected", "errors": [{"message": "Invalid NPI"}, "Bad DOB"]})
    assert rejected.rejection_reasons == ["Invalid NPI", "Bad DOB"]
