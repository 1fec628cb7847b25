import asyncio
import time
from datetime import timedelta
from typing import Optional, Tuple

import structlog

from ...api.models.remittance_models import RemittanceSyncResult, SyncSweepResult
from ...core.clock import Clock, utcnow
from ...core.config.settings import Settings
from ...core.exceptions import ClearinghouseUnavailableError
from ...core.monitoring.app_metrics import MetricsCollector
from ..lifecycle.claim_lifecycle_service import ClaimLifecycleService
from .clearinghouse_client import ClearinghouseClient, to_status_update
from .era_parser import parse_era

logger = structlog.get_logger(__name__)


class StatusSyncService:
    """
    Periodic reconciliation with the clearinghouse: status polling for in-flight
    claims and download of available remittance files. Each claim is its own unit
    of work; a failing item is logged and counted, never aborting the sweep.
    """

    def __init__(
        self,
        lifecycle_service: ClaimLifecycleService,
        clearinghouse_client: ClearinghouseClient,
        settings: Settings,
        metrics_collector: MetricsCollector,
        clock: Clock = utcnow,
    ):
        self.lifecycle_service = lifecycle_service
        self.clearinghouse_client = clearinghouse_client
        self.settings = settings
        self.metrics_collector = metrics_collector
        self.clock = clock

    async def _sync_one(self, claim_id: int, clearinghouse_id: Optional[str]) -> str:
        if not clearinghouse_id:
            # Submitted while the clearinghouse was down: transmit again under the same idempotency key
            claim = await self.lifecycle_service.transmit(claim_id)
            logger.info("Re-transmitted claim", claim_id=claim_id, status=claim.status)
            return "resubmitted"

        body = await self.clearinghouse_client.poll_status(clearinghouse_id)
        update = to_status_update(body)
        claim = await self.lifecycle_service.get_claim(claim_id)
        before = claim.status
        claim = await self.lifecycle_service.apply_status_update(claim_id, update)
        return "updated" if claim.status != before else "unchanged"

    async def sync_claim_statuses(self, stop_event: Optional[asyncio.Event] = None) -> SyncSweepResult:
        start_time = time.perf_counter()
        result = SyncSweepResult()
        older_than = self.clock() - timedelta(minutes=self.settings.SYNC_MIN_DWELL_MINUTES)
        due = await self.lifecycle_service.claims_due_for_sync(older_than, self.settings.SYNC_BATCH_SIZE)
        result.examined = len(due)
        logger.info("Status sync sweep started", due=len(due), dwell_minutes=self.settings.SYNC_MIN_DWELL_MINUTES)

        semaphore = asyncio.Semaphore(self.settings.SYNC_CONCURRENCY)

        async def run_item(item: Tuple[int, Optional[str]]) -> str:
            claim_id, clearinghouse_id = item
            async with semaphore:
                if stop_event is not None and stop_event.is_set():
                    return "stopped"
                try:
                    return await self._sync_one(claim_id, clearinghouse_id)
                except ClearinghouseUnavailableError as e:
                    logger.warning("Clearinghouse unavailable for claim; will retry next sweep", claim_id=claim_id, error=e.message)
                    return "failed"
                except Exception as e:
                    logger.error("Status sync failed for claim", claim_id=claim_id, error=str(e), exc_info=True)
                    return "failed"

        outcomes = await asyncio.gather(*(run_item(item) for item in due), return_exceptions=True)

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error("Unexpected error in status sync task", error=str(outcome))
                result.failed += 1
            elif outcome == "stopped":
                result.stopped_early = True
            else:
                setattr(result, outcome, getattr(result, outcome) + 1)

        self.metrics_collector.record_sync_results({
            "updated": result.updated, "unchanged": result.unchanged,
            "resubmitted": result.resubmitted, "failed": result.failed,
        })
        self.metrics_collector.record_job_duration("status_sync", time.perf_counter() - start_time)
        logger.info("Status sync sweep finished", **result.model_dump())
        return result

    async def sync_remittances(self, stop_event: Optional[asyncio.Event] = None) -> RemittanceSyncResult:
        """Downloads every available ERA and applies it. Re-downloading a processed batch is a no-op."""
        result = RemittanceSyncResult()
        era_ids = await self.clearinghouse_client.list_available_eras()
        result.available = len(era_ids)

        for era_id in era_ids:
            if stop_event is not None and stop_event.is_set():
                logger.info("Remittance sync stopped early", remaining=result.available - result.applied_batches - result.already_processed - result.failed)
                break
            try:
                content = await self.clearinghouse_client.download_era(era_id)
                command = parse_era(content)
                applied = await self.lifecycle_service.apply_remittance(command)
            except Exception as e:
                result.failed += 1
                logger.error("Failed to process ERA", era_id=era_id, error=str(e), exc_info=True)
                continue
            if applied.already_processed:
                result.already_processed += 1
            else:
                result.applied_batches += 1

        logger.info("Remittance sync finished", **result.model_dump())
        return result
