import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import structlog

from ...api.models.claim_models import ClaimStatusUpdate
from ...core.config.settings import Settings
from ...core.exceptions import ClearinghouseRequestError, ClearinghouseUnavailableError
from ...core.monitoring.app_metrics import MetricsCollector

logger = structlog.get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class ClearinghouseClient:
    """
    Async client for the clearinghouse REST API.

    Every call runs through one retry policy: transport errors, 5xx and throttling
    responses are retried with exponential backoff (delay = base * 2**attempt,
    capped); other 4xx responses raise ClearinghouseRequestError at once. When the
    attempt budget is spent ClearinghouseUnavailableError is raised.
    """

    def __init__(
        self,
        settings: Settings,
        metrics_collector: MetricsCollector,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.base_delay = settings.CLEARINGHOUSE_RETRY_BASE_SECONDS
        self.max_delay = settings.CLEARINGHOUSE_RETRY_MAX_DELAY_SECONDS
        self.max_attempts = settings.CLEARINGHOUSE_MAX_ATTEMPTS
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=settings.CLEARINGHOUSE_BASE_URL,
            timeout=httpx.Timeout(settings.CLEARINGHOUSE_TIMEOUT_SECONDS),
            headers={
                "Authorization": f"Bearer {settings.CLEARINGHOUSE_API_KEY}",
                "X-Client-ID": settings.CLEARINGHOUSE_CLIENT_ID,
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        last_error: Optional[str] = None

        for attempt in range(self.max_attempts):
            start_time = time.perf_counter()
            try:
                response = await self._client.request(method, url, json=json, params=params, headers=headers)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("Clearinghouse transport error", operation=operation, attempt=attempt + 1,
                               max_attempts=self.max_attempts, error=last_error)
            else:
                duration = time.perf_counter() - start_time
                if response.status_code < 400:
                    self.metrics_collector.record_clearinghouse_request(operation, "success", duration)
                    return response

                if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning("Clearinghouse transient response", operation=operation, attempt=attempt + 1,
                                   max_attempts=self.max_attempts, status_code=response.status_code)
                else:
                    self.metrics_collector.record_clearinghouse_request(operation, "client_error", duration)
                    logger.error("Clearinghouse rejected request", operation=operation,
                                 status_code=response.status_code, body=response.text[:500])
                    raise ClearinghouseRequestError(
                        f"Clearinghouse rejected {operation}: HTTP {response.status_code} {response.text[:200]}",
                        http_status=response.status_code,
                    )

            if attempt < self.max_attempts - 1:
                self.metrics_collector.record_clearinghouse_request(operation, "retry")
                delay = self.backoff_delay(attempt)
                logger.info("Retrying clearinghouse call", operation=operation, delay_seconds=delay)
                await self._sleep(delay)

        self.metrics_collector.record_clearinghouse_request(operation, "unavailable")
        logger.error("Clearinghouse unavailable after retries", operation=operation,
                     attempts=self.max_attempts, last_error=last_error)
        raise ClearinghouseUnavailableError(
            f"Clearinghouse unavailable for {operation} after {self.max_attempts} attempts: {last_error}",
            {"operation": operation, "attempts": self.max_attempts},
        )

    async def submit_claim(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        """Returns {"claim_id", "status", "errors"} as sent by the clearinghouse."""
        response = await self._request(
            "submit_claim", "POST", "/claims", json=payload,
            headers={"Idempotency-Key": idempotency_key},
        )
        return response.json()

    async def poll_status(self, clearinghouse_id: str) -> Dict[str, Any]:
        response = await self._request("poll_status", "GET", f"/claims/{clearinghouse_id}/status")
        return response.json()

    async def list_available_eras(self) -> List[str]:
        response = await self._request("list_eras", "GET", "/eras", params={"status": "available"})
        body = response.json()
        return [str(item["era_id"]) for item in body.get("eras", [])]

    async def download_era(self, era_id: str) -> Union[str, Dict[str, Any]]:
        """Raw 835 text, or the decoded body when the clearinghouse answers with JSON."""
        response = await self._request("download_era", "GET", f"/eras/{era_id}")
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            return response.json()
        return response.text


STATUS_ALIASES: Dict[str, str] = {
    "received": "pending",
    "submitted": "pending",
    "pending": "pending",
    "in_process": "pending",
    "acknowledged": "accepted",
    "accepted": "accepted",
    "rejected": "rejected",
    "processed": "adjudicated",
    "adjudicated": "adjudicated",
    "paid": "paid",
    "partial": "partially_paid",
    "partially_paid": "partially_paid",
    "denied": "denied",
}


def to_status_update(body: Dict[str, Any]) -> ClaimStatusUpdate:
    """Translates a clearinghouse submission or status response into a ClaimStatusUpdate."""
    raw_status = str(body.get("status") or "pending").strip().lower()
    status = STATUS_ALIASES.get(raw_status)
    if status is None:
        logger.warning("Unknown clearinghouse status treated as pending", status=raw_status)
        status = "pending"

    adjudication = body.get("adjudication") or {}
    rejection_reasons = body.get("rejection_reasons") or body.get("errors") or []
    return ClaimStatusUpdate(
        status=status,
        clearinghouse_id=str(body["claim_id"]) if body.get("claim_id") else None,
        allowed_amount=adjudication.get("allowed_amount"),
        paid_amount=adjudication.get("paid_amount"),
        patient_responsibility=adjudication.get("patient_responsibility"),
        rejection_reasons=[str(reason) if not isinstance(reason, dict) else reason.get("message", str(reason))
                           for reason in rejection_reasons],
        denial_reasons=adjudication.get("denial_reasons") or [],
    )
