from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from .clock import Clock, utcnow
from .concurrency_limiter import JobLocks
from .config.settings import Settings
from .database.db_session import SessionFactory, create_engine_from_settings, create_session_factory
from .events import CLAIM_DENIED, EventPublisher
from .monitoring.app_metrics import MetricsCollector
from .monitoring.audit_logger import AuditLogger
from ..processing.accounts.account_service import AccountService
from ..processing.aging.ar_aging_service import ARAgingService
from ..processing.clearinghouse.clearinghouse_client import ClearinghouseClient
from ..processing.clearinghouse.status_sync_service import StatusSyncService
from ..processing.collections.action_dispatcher import CollectionActionDispatcher
from ..processing.collections.collection_workflow_service import CollectionWorkflowService
from ..processing.denials.denial_workflow_service import DenialWorkflowService
from ..processing.lifecycle.claim_lifecycle_service import ClaimLifecycleService

logger = structlog.get_logger(__name__)


class ServiceContainer:
    """
    Builds and wires every service once per process. The API reads it from
    app.state; tests construct it against their own engine, clock and transport.
    """

    def __init__(
        self,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        clock: Clock = utcnow,
        clearinghouse_transport: Optional[httpx.AsyncBaseTransport] = None,
        clearinghouse_sleep=None,
        dispatcher: Optional[CollectionActionDispatcher] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.engine = engine or create_engine_from_settings(settings)
        self.session_factory: SessionFactory = create_session_factory(self.engine)

        self.metrics_collector = MetricsCollector()
        self.event_publisher = EventPublisher()
        self.audit_logger = AuditLogger(self.session_factory, clock=clock)
        self.job_locks = JobLocks()

        client_kwargs = {"transport": clearinghouse_transport}
        if clearinghouse_sleep is not None:
            client_kwargs["sleep"] = clearinghouse_sleep
        self.clearinghouse_client = ClearinghouseClient(settings, self.metrics_collector, **client_kwargs)

        self.lifecycle_service = ClaimLifecycleService(
            self.session_factory, settings, self.metrics_collector, self.event_publisher,
            clearinghouse_client=self.clearinghouse_client, clock=clock,
        )
        self.denial_service = DenialWorkflowService(self.session_factory, settings, self.metrics_collector, clock=clock)
        self.denial_service.attach_lifecycle(self.lifecycle_service)
        self.event_publisher.subscribe(CLAIM_DENIED, self.denial_service.on_claim_denied)

        self.sync_service = StatusSyncService(
            self.lifecycle_service, self.clearinghouse_client, settings, self.metrics_collector, clock=clock
        )
        self.account_service = AccountService(self.session_factory, clock=clock)
        self.aging_service = ARAgingService(self.session_factory, settings, self.metrics_collector, clock=clock)
        self.collection_service = CollectionWorkflowService(
            self.session_factory, settings, self.metrics_collector, dispatcher=dispatcher, clock=clock
        )
        logger.info("Service container initialized", risk_model=self.aging_service.risk_model.name)

    async def close(self) -> None:
        await self.clearinghouse_client.close()
        await self.engine.dispose()
        logger.info("Service container closed")
