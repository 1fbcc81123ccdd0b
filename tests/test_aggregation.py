"""Tests for the dashboard aggregation engine with a mocked Azure DevOps API."""

import gc
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pipeline_dashboard.ado_client import AdoClient
from pipeline_dashboard.aggregation import AggregationEngine
from pipeline_dashboard.cache import CacheStore
from pipeline_dashboard.config import Config
from pipeline_dashboard.credentials import MemoryCredentialStore, set_pat_token
from pipeline_dashboard.filters import DashboardFilters

NOW = datetime(2026, 1, 31, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _run(run_id: int, result, days_ago: float, minutes: float = 10.0, finished: bool = True) -> dict:
    finished_at = NOW - timedelta(days=days_ago)
    item = {
        "id": run_id,
        "createdDate": _iso(finished_at - timedelta(minutes=minutes)),
    }
    if result is not None:
        item["result"] = result
    if finished:
        item["finishedDate"] = _iso(finished_at)
    return item


def _pipelines(*items: dict) -> dict:
    return {"value": list(items)}


def _two_pipeline_routes() -> dict:
    return {
        "pipelines": _pipelines({"id": 1, "name": "A"}, {"id": 2, "name": "B"}),
        "git/repositories": {"value": []},
        "pipelines/1/runs": {"value": [_run(101, "succeeded", days_ago=5, minutes=10)]},
        "pipelines/2/runs": {"value": [_run(201, "failed", days_ago=5, minutes=20)]},
        "pipelines/2/runs/201": {
            "stages": [
                {"name": "build-stage", "result": "failed", "errorMessage": "compile error"},
                {"name": "deploy", "result": "skipped"},
            ]
        },
    }


def _engine(routes: dict, **config_overrides):
    config = Config(organization="org", project="proj", **config_overrides)
    store = MemoryCredentialStore()
    set_pat_token(store, "pat")
    client = AdoClient(config=config, credential_store=store)

    def _fetch(endpoint, project=None):
        return routes.get(endpoint.split("?")[0])

    client.fetch_one = Mock(side_effect=_fetch)
    clock = FakeClock()
    cache = CacheStore(ttl_minutes=config.cache_duration_minutes, clock=clock)
    return AggregationEngine(client=client, cache=cache), client, clock


def _requested(client) -> list:
    return [call.args[0].split("?")[0] for call in client.fetch_one.call_args_list]


def test_aggregate_end_to_end_two_pipelines():
    """Verify totals, stage breakdown and failed pipelines for one success and one failure."""
    engine, _, _ = _engine(_two_pipeline_routes())

    result = engine.aggregate(DashboardFilters())

    assert result.success
    assert result.from_cache is False
    data = result.to_dict()["data"]
    assert data["totals"] == {"pipelines": 2, "runs": 2, "success": 1, "failed": 1, "other": 0}
    assert data["stageFailures"] == {"build-stage": {"count": 1, "percentage": 100}}
    assert [failed["name"] for failed in data["failedPipelines"]] == ["B"]
    failed = data["failedPipelines"][0]
    assert failed["runId"] == 201
    assert failed["url"] == "https://dev.azure.com/org/proj/_build/results?buildId=201"
    assert failed["failedStages"][0]["type"] == "build"
    assert failed["errors"] == ["compile error"]
    assert data["pipelineStats"]["A"]["successRate"] == "100.00"
    assert data["pipelineStats"]["A"]["avgDuration"] == "10.00"
    assert data["pipelineStats"]["B"]["failureRate"] == "100.00"
    assert data["executionStats"]["min"] == "10.00"
    assert data["executionStats"]["max"] == "20.00"
    assert data["progress"] == {"totalPipelines": 2, "processed": 2}
    assert isinstance(result.processing_time, float)


def test_aggregate_second_call_is_served_from_cache_with_identical_content():
    """Verify identical filters within the TTL return the cached report without API calls."""
    engine, client, clock = _engine(_two_pipeline_routes())
    first = engine.aggregate(DashboardFilters())
    calls_after_first = client.fetch_one.call_count

    clock.now = NOW + timedelta(minutes=5)
    second = engine.aggregate(DashboardFilters())

    assert second.from_cache is True
    assert second.to_dict()["data"] == first.to_dict()["data"]
    assert second.last_updated == first.last_updated
    assert client.fetch_one.call_count == calls_after_first


def test_aggregate_after_ttl_recomputes():
    """Verify an expired report is rebuilt."""
    engine, _, clock = _engine(_two_pipeline_routes())
    engine.aggregate(DashboardFilters())

    clock.now = NOW + timedelta(minutes=16)
    result = engine.aggregate(DashboardFilters())

    assert result.from_cache is False


def test_different_pipeline_filter_misses_report_cache_but_reuses_runs():
    """Verify name-filter changes rebuild the report from cached run lists."""
    engine, client, _ = _engine(_two_pipeline_routes())
    engine.aggregate(DashboardFilters())
    client.fetch_one.reset_mock()

    result = engine.aggregate(DashboardFilters(pipeline_filter="^a$"))

    assert result.from_cache is False
    assert result.data.totals.pipelines == 1
    requested = _requested(client)
    assert "pipelines" not in requested
    assert not any(path.startswith("pipelines/1/runs") for path in requested)


def test_different_days_refetches_run_lists():
    """Verify a different lookback window does not reuse run lists."""
    engine, client, _ = _engine(_two_pipeline_routes())
    engine.aggregate(DashboardFilters())
    client.fetch_one.reset_mock()

    engine.aggregate(DashboardFilters(days=7))

    requested = _requested(client)
    assert "pipelines/1/runs" in requested
    assert "pipelines/2/runs" in requested


def test_run_lists_are_fetched_in_one_batch():
    """Verify all missing run lists go out in a single batch request."""
    engine, client, _ = _engine(_two_pipeline_routes())
    client.fetch_batch = Mock(wraps=client.fetch_batch)

    engine.aggregate(DashboardFilters())

    run_batch = client.fetch_batch.call_args_list[0]
    assert [endpoint.split("?")[0] for endpoint in run_batch.args[0]] == [
        "pipelines/1/runs",
        "pipelines/2/runs",
    ]
    detail_batch = client.fetch_batch.call_args_list[1]
    assert detail_batch.args[0] == ["pipelines/2/runs/201"]
    assert client.fetch_batch.call_count == 2


def test_runs_without_finished_date_or_outside_window_are_excluded():
    """Verify unfinished and out-of-window runs are not counted."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {
            "value": [
                _run(1, "failed", days_ago=1, finished=False),
                _run(2, "succeeded", days_ago=2),
                _run(3, "failed", days_ago=45),
            ]
        },
    }
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert report.totals.runs == 1
    assert report.totals.success == 1
    assert report.totals.failed == 0
    assert report.stage_failures == {}


def test_no_failures_leaves_stage_breakdown_empty():
    """Verify stage percentages are skipped entirely when nothing failed."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {"value": [_run(1, "succeeded", days_ago=1)]},
    }
    engine, client, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert report.stage_failures == {}
    assert report.failed_pipelines == []
    assert not any("/runs/" in path for path in _requested(client))


def test_pipeline_rates_sum_to_one_hundred():
    """Verify success, failure and other rates cover every in-window run."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {
            "value": [
                _run(1, "succeeded", days_ago=1),
                _run(2, "failed", days_ago=2),
                _run(3, "canceled", days_ago=3),
            ]
        },
    }
    engine, _, _ = _engine(routes)

    stats = engine.aggregate(DashboardFilters()).data.pipeline_stats["A"]

    total = float(stats.success_rate) + float(stats.failure_rate) + float(stats.other_rate)
    assert abs(total - 100.0) < 0.05
    assert stats.other == 1


def test_pipeline_without_in_window_runs_has_no_stats_and_no_last_run():
    """Verify a pipeline with only old runs contributes nothing but stays listed."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {"value": [_run(1, "succeeded", days_ago=90)]},
    }
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert report.pipeline_stats == {}
    assert report.all_pipelines[0].last_run is None
    assert report.execution_stats is None


def test_failed_run_without_stage_data_counts_as_failed_without_stages():
    """Verify a failed run whose detail lacks stages is still a failed occurrence."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {"value": [_run(5, "failed", days_ago=1)]},
        "pipelines/1/runs/5": {"id": 5, "result": "failed"},
    }
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert report.totals.failed == 1
    assert report.failed_pipelines[0].failed_stages == []
    assert report.stage_failures == {}


def test_stage_filters_exclude_stages_but_keep_failed_run_counted():
    """Verify stage filters only affect the failure breakdown."""
    routes = _two_pipeline_routes()
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters(stage_type_filter="tests")).data

    assert report.totals.failed == 1
    assert report.stage_failures == {}
    assert report.failed_pipelines[0].failed_stages == []


def test_stage_percentages_are_relative_to_failed_runs():
    """Verify each stage's share is computed over failed runs, not failed stages."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {
            "value": [
                _run(1, "failed", days_ago=1),
                _run(2, "failed", days_ago=2),
            ]
        },
        "pipelines/1/runs/1": {"stages": [{"name": "Unit Tests", "result": "failed"}]},
        "pipelines/1/runs/2": {"stages": [{"name": "Deploy", "result": "succeeded"}]},
    }
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert report.stage_failures["Unit Tests"].count == 1
    assert report.stage_failures["Unit Tests"].percentage == 50.0
    assert sum(failure.percentage for failure in report.stage_failures.values()) <= 100


def test_disabled_pipelines_and_inactive_repositories_are_excluded():
    """Verify eligibility filtering by queue status and repository state."""
    routes = {
        "pipelines": _pipelines(
            {"id": 1, "name": "A", "repository": {"id": "r-active"}},
            {"id": 2, "name": "B", "queueStatus": "disabled"},
            {"id": 3, "name": "C", "repository": {"id": "r-disabled"}},
        ),
        "git/repositories": {
            "value": [
                {"id": "r-active", "name": "active"},
                {"id": "r-disabled", "name": "gone", "isDisabled": True},
            ]
        },
        "pipelines/1/runs": {"value": [_run(1, "succeeded", days_ago=1)]},
    }
    engine, _, _ = _engine(routes)

    report = engine.aggregate(DashboardFilters()).data

    assert [summary.name for summary in report.all_pipelines] == ["A"]
    assert report.totals.pipelines == 1
    assert report.progress.total_pipelines == 3
    assert report.progress.processed == 3


def test_missing_repository_list_does_not_exclude_pipelines():
    """Verify the repository filter is skipped when repositories cannot be listed."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A", "repository": {"id": "r1"}}),
        "pipelines/1/runs": {"value": []},
    }
    engine, _, _ = _engine(routes)

    assert engine.aggregate(DashboardFilters()).data.totals.pipelines == 1


def test_invalid_pipeline_filter_matches_nothing_without_failing():
    """Verify an invalid regular expression fails closed."""
    engine, _, _ = _engine(_two_pipeline_routes())

    result = engine.aggregate(DashboardFilters(pipeline_filter="(["))

    assert result.success
    assert result.data.totals.pipelines == 0


def test_last_run_summary_uses_latest_finished_run():
    """Verify the last-run summary does not depend on the API ordering."""
    routes = {
        "pipelines": _pipelines({"id": 1, "name": "A"}),
        "pipelines/1/runs": {
            "value": [
                _run(1, "failed", days_ago=3, minutes=5),
                _run(2, "succeeded", days_ago=1, minutes=12.5),
            ]
        },
    }
    engine, _, _ = _engine(routes)

    summary = engine.aggregate(DashboardFilters()).data.all_pipelines[0]

    assert summary.last_status == "succeeded"
    assert summary.last_duration == "12.50"
    assert summary.last_run == "2026-01-30T12:00:00Z"


def test_failed_run_list_fetch_is_isolated():
    """Verify a pipeline whose runs cannot be fetched is skipped, not fatal."""
    routes = _two_pipeline_routes()
    del routes["pipelines/1/runs"]
    engine, _, _ = _engine(routes)

    result = engine.aggregate(DashboardFilters())

    assert result.success
    assert result.data.totals.runs == 1
    assert result.data.progress.processed == 2


def test_unavailable_pipeline_list_returns_structured_failure():
    """Verify a missing pipeline list becomes success=False instead of raising."""
    engine, _, _ = _engine({})

    result = engine.aggregate(DashboardFilters())

    assert result.success is False
    assert "proj" in result.error
    assert result.to_dict()["error"] == result.error


def test_unexpected_exception_is_converted_to_failure_result():
    """Verify the engine never raises past its boundary."""
    engine, client, _ = _engine(_two_pipeline_routes())
    client.fetch_one.side_effect = RuntimeError("boom")

    result = engine.aggregate(DashboardFilters())

    assert result.success is False
    assert result.error == "boom"


def test_project_override_targets_other_project():
    """Verify the project override is used for every request and URL."""
    engine, client, _ = _engine(_two_pipeline_routes())

    report = engine.aggregate(DashboardFilters(project_name="other")).data

    assert {call.args[1] for call in client.fetch_one.call_args_list} == {"other"}
    assert report.all_pipelines[0].url == "https://dev.azure.com/org/other/_build?definitionId=1"


def test_concurrent_identical_requests_compute_once():
    """Verify concurrent identical requests share one computation and one set of API calls."""
    baseline, baseline_client, _ = _engine(_two_pipeline_routes())
    baseline.aggregate(DashboardFilters())
    calls_per_pass = baseline_client.fetch_one.call_count

    routes = _two_pipeline_routes()
    engine, client, _ = _engine(routes)

    def _slow_fetch(endpoint, project=None):
        time.sleep(0.05)
        return routes.get(endpoint.split("?")[0])

    client.fetch_one.side_effect = _slow_fetch

    workers = 5
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def _aggregate():
        barrier.wait()
        result = engine.aggregate(DashboardFilters())
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=_aggregate) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == workers
    assert all(result.success for result in results)
    assert sum(1 for result in results if not result.from_cache) == 1
    assert client.fetch_one.call_count == calls_per_pass


def test_inflight_locks_are_released_after_requests():
    """Verify per-request locks do not accumulate across distinct filters."""
    engine, _, _ = _engine(_two_pipeline_routes())

    for index in range(20):
        assert engine.aggregate(DashboardFilters(pipeline_filter=f"^A{index}?")).success
    engine._cache.reset()
    gc.collect()

    assert len(engine._inflight_locks) == 0
