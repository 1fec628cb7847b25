import pytest
from unittest.mock import MagicMock

from rcm_engine.src.core.monitoring.app_metrics import (
    MetricsCollector,
    CLAIM_TRANSITIONS_TOTAL,
    CLAIM_TRANSITION_REJECTIONS_TOTAL,
    CLEARINGHOUSE_REQUESTS_TOTAL,
    CLEARINGHOUSE_REQUEST_DURATION_SECONDS,
    SYNC_SWEEP_ITEMS_TOTAL,
    RISK_SCORES_GENERATED_TOTAL,
    COLLECTION_PROBABILITY_HISTOGRAM,
    COLLECTION_TASKS_TOTAL,
    JOBS_RUNNING_GAUGE,
    DATABASE_QUERY_DURATION_SECONDS,
)

# Imported as a module so assertions see the monkeypatched globals
import rcm_engine.src.core.monitoring.app_metrics as metrics_module

MODULE = "rcm_engine.src.core.monitoring.app_metrics"


@pytest.fixture
def metrics_collector() -> MetricsCollector:
    return MetricsCollector()


# Patch the global metric objects for isolation in tests
@pytest.fixture(autouse=True)
def mock_global_metrics(monkeypatch):
    for name, metric in [
        ("CLAIM_TRANSITIONS_TOTAL", CLAIM_TRANSITIONS_TOTAL),
        ("CLAIM_TRANSITION_REJECTIONS_TOTAL", CLAIM_TRANSITION_REJECTIONS_TOTAL),
        ("CLEARINGHOUSE_REQUESTS_TOTAL", CLEARINGHOUSE_REQUESTS_TOTAL),
        ("CLEARINGHOUSE_REQUEST_DURATION_SECONDS", CLEARINGHOUSE_REQUEST_DURATION_SECONDS),
        ("SYNC_SWEEP_ITEMS_TOTAL", SYNC_SWEEP_ITEMS_TOTAL),
        ("RISK_SCORES_GENERATED_TOTAL", RISK_SCORES_GENERATED_TOTAL),
        ("COLLECTION_PROBABILITY_HISTOGRAM", COLLECTION_PROBABILITY_HISTOGRAM),
        ("COLLECTION_TASKS_TOTAL", COLLECTION_TASKS_TOTAL),
        ("JOBS_RUNNING_GAUGE", JOBS_RUNNING_GAUGE),
        ("DATABASE_QUERY_DURATION_SECONDS", DATABASE_QUERY_DURATION_SECONDS),
    ]:
        monkeypatch.setattr(f"{MODULE}.{name}", MagicMock(spec=metric))


def test_record_claim_transition(metrics_collector: MetricsCollector):
    metrics_collector.record_claim_transition("submitted", "accepted")
    metrics_module.CLAIM_TRANSITIONS_TOTAL.labels.assert_called_once_with(from_status="submitted", to_status="accepted")
    metrics_module.CLAIM_TRANSITIONS_TOTAL.labels.return_value.inc.assert_called_once()


def test_record_transition_rejected(metrics_collector: MetricsCollector):
    metrics_collector.record_transition_rejected("concurrent_modification")
    metrics_module.CLAIM_TRANSITION_REJECTIONS_TOTAL.labels.assert_called_once_with(reason="concurrent_modification")


def test_record_clearinghouse_request_with_and_without_duration(metrics_collector: MetricsCollector):
    metrics_collector.record_clearinghouse_request("poll_status", "success", 0.25)
    metrics_module.CLEARINGHOUSE_REQUEST_DURATION_SECONDS.labels(operation="poll_status").observe.assert_called_once_with(0.25)

    metrics_module.CLEARINGHOUSE_REQUEST_DURATION_SECONDS.reset_mock()
    metrics_collector.record_clearinghouse_request("poll_status", "retry")
    metrics_module.CLEARINGHOUSE_REQUESTS_TOTAL.labels.assert_called_with(operation="poll_status", outcome="retry")
    metrics_module.CLEARINGHOUSE_REQUEST_DURATION_SECONDS.labels.assert_not_called()


def test_record_sync_results_skips_zero_counts(metrics_collector: MetricsCollector):
    metrics_collector.record_sync_results({"updated": 3, "unchanged": 0, "failed": 1})
    calls = [call.kwargs for call in metrics_module.SYNC_SWEEP_ITEMS_TOTAL.labels.call_args_list]
    assert calls == [{"result": "updated"}, {"result": "failed"}]


def test_record_risk_score_observes_probability(metrics_collector: MetricsCollector):
    metrics_collector.record_risk_score("scored", 0.42)
    metrics_module.RISK_SCORES_GENERATED_TOTAL.labels.assert_called_once_with(result="scored")
    metrics_module.COLLECTION_PROBABILITY_HISTOGRAM.observe.assert_called_once_with(0.42)

    metrics_collector.record_risk_score("failed")
    metrics_module.COLLECTION_PROBABILITY_HISTOGRAM.observe.assert_called_once()


def test_set_job_running(metrics_collector: MetricsCollector):
    metrics_collector.set_job_running("status_sync", True)
    metrics_module.JOBS_RUNNING_GAUGE.labels(job_name="status_sync").set.assert_called_with(1)
    metrics_collector.set_job_running("status_sync", False)
    metrics_module.JOBS_RUNNING_GAUGE.labels(job_name="status_sync").set.assert_called_with(0)


def test_time_db_query(metrics_collector: MetricsCollector):
    with metrics_collector.time_db_query("due_tasks"):
        pass
    metrics_module.DATABASE_QUERY_DURATION_SECONDS.labels.assert_called_once_with(query_name="due_tasks")
    metrics_module.DATABASE_QUERY_DURATION_SECONDS.labels.return_value.observe.assert_called_once()
