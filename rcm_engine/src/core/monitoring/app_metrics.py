from prometheus_client import Counter, Histogram, Gauge
import time
import structlog
from typing import Dict, Optional

logger = structlog.get_logger(__name__)

# --- Prometheus Metric Definitions ---
# Defined globally so they are registered with the default REGISTRY

# 1. Claim lifecycle
CLAIM_TRANSITIONS_TOTAL = Counter(
    'claim_transitions_total',
    'Claim state-machine transitions, labeled by source and target status.',
    ['from_status', 'to_status']
)

CLAIM_TRANSITION_REJECTIONS_TOTAL = Counter(
    'claim_transition_rejections_total',
    'Attempted transitions refused by the state machine or by a version conflict.',
    ['reason']  # invalid_transition | concurrent_modification
)

# 2. Clearinghouse
CLEARINGHOUSE_REQUESTS_TOTAL = Counter(
    'clearinghouse_requests_total',
    'Clearinghouse API calls, labeled by operation and outcome.',
    ['operation', 'outcome']  # outcome: success | retry | client_error | unavailable
)

CLEARINGHOUSE_REQUEST_DURATION_SECONDS = Histogram(
    'clearinghouse_request_duration_seconds',
    'Latency of a single clearinghouse HTTP attempt.',
    ['operation'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float('inf'))
)

SYNC_SWEEP_ITEMS_TOTAL = Counter(
    'sync_sweep_items_total',
    'Claims handled by the status synchronization sweep, labeled by result.',
    ['result']  # updated | unchanged | resubmitted | failed
)

REMITTANCE_RECORDS_TOTAL = Counter(
    'remittance_records_total',
    'ERA claim records processed, labeled by outcome.',
    ['outcome']
)

# 3. Denials
DENIALS_CATEGORIZED_TOTAL = Counter(
    'denials_categorized_total',
    'Denials categorized, labeled by category.',
    ['category']
)

APPEAL_OUTCOMES_TOTAL = Counter(
    'appeal_outcomes_total',
    'Recorded appeal outcomes.',
    ['outcome']
)

# 4. AR aging
RISK_SCORES_GENERATED_TOTAL = Counter(
    'risk_scores_generated_total',
    'Risk scores written by the scoring batch, labeled by result.',
    ['result']  # scored | failed
)

COLLECTION_PROBABILITY_HISTOGRAM = Histogram(
    'collection_probability_histogram',
    'Distribution of predicted collection probabilities.',
    buckets=tuple(x / 10.0 for x in range(11))
)

# 5. Collections
COLLECTION_TASKS_TOTAL = Counter(
    'collection_tasks_total',
    'Collection tasks processed, labeled by action type and outcome.',
    ['action_type', 'outcome']  # outcome: created | executed | skipped | retry | failed
)

# 6. Jobs and database
JOB_DURATION_SECONDS = Histogram(
    'job_duration_seconds',
    'Duration of background jobs, in seconds.',
    ['job_name'],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, float('inf'))
)

JOBS_RUNNING_GAUGE = Gauge(
    'jobs_running_gauge',
    'Background jobs currently running.',
    ['job_name']
)

DATABASE_QUERY_DURATION_SECONDS = Histogram(
    'database_query_duration_seconds',
    'Duration of key database queries, in seconds.',
    ['query_name']
)


class MetricsCollector:
    """
    Thin facade over the module-level Prometheus metrics so services can have
    it injected (and replaced by a MagicMock in tests).
    """

    def __init__(self):
        logger.debug("MetricsCollector initialized (stateless, uses global metrics).")

    def record_claim_transition(self, from_status: str, to_status: str):
        CLAIM_TRANSITIONS_TOTAL.labels(from_status=from_status, to_status=to_status).inc()

    def record_transition_rejected(self, reason: str):
        CLAIM_TRANSITION_REJECTIONS_TOTAL.labels(reason=reason).inc()

    def record_clearinghouse_request(self, operation: str, outcome: str, duration_seconds: Optional[float] = None):
        CLEARINGHOUSE_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()
        if duration_seconds is not None:
            CLEARINGHOUSE_REQUEST_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)

    def record_sync_results(self, results_by_type: Dict[str, int]):
        for result, count in results_by_type.items():
            if count > 0:
                SYNC_SWEEP_ITEMS_TOTAL.labels(result=result).inc(count)

    def record_remittance_record(self, outcome: str):
        REMITTANCE_RECORDS_TOTAL.labels(outcome=outcome).inc()

    def record_denial_categorized(self, category: str):
        DENIALS_CATEGORIZED_TOTAL.labels(category=category).inc()

    def record_appeal_outcome(self, outcome: str):
        APPEAL_OUTCOMES_TOTAL.labels(outcome=outcome).inc()

    def record_risk_score(self, result: str, probability: Optional[float] = None):
        RISK_SCORES_GENERATED_TOTAL.labels(result=result).inc()
        if probability is not None:
            COLLECTION_PROBABILITY_HISTOGRAM.observe(probability)

    def record_collection_task(self, action_type: str, outcome: str):
        COLLECTION_TASKS_TOTAL.labels(action_type=action_type, outcome=outcome).inc()

    def record_job_duration(self, job_name: str, duration_seconds: float):
        JOB_DURATION_SECONDS.labels(job_name=job_name).observe(duration_seconds)

    def set_job_running(self, job_name: str, running: bool):
        JOBS_RUNNING_GAUGE.labels(job_name=job_name).set(1 if running else 0)

    def record_database_query_duration(self, query_name: str, duration_seconds: float):
        DATABASE_QUERY_DURATION_SECONDS.labels(query_name=query_name).observe(duration_seconds)

    class _DatabaseTimer:
        def __init__(self, collector_instance: 'MetricsCollector', query_name: str):
            self.collector = collector_instance
            self.query_name = query_name
            self.start_time: Optional[float] = None

        def __enter__(self):
            self.start_time = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            if self.start_time is not None:
                duration_seconds = time.perf_counter() - self.start_time
                self.collector.record_database_query_duration(self.query_name, duration_seconds)

    def time_db_query(self, query_name: str) -> _DatabaseTimer:
        """Returns a Timer context manager for a database query."""
        return self._DatabaseTimer(self, query_name)
