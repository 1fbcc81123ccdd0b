"""Pipeline execution aggregation for the dashboard.

One aggregation pass:

1. Serve the cached report when the full filter fingerprint matches and is fresh.
2. Resolve the pipeline list and drop disabled pipelines, pipelines of disabled
   repositories and pipelines whose name does not match ``pipelineFilter``.
3. Resolve run lists, reusing cached lists stored under the same base
   fingerprint and fetching all the others in one batch.
4. Fold in-window runs into global and per-pipeline counters.
5. Resolve stage details of failed runs in one batch and collect the failed
   stages that pass the stage filters.
6. Derive percentages and duration statistics, then cache the report.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Set, Tuple

from .ado_client import AdoClient, parse_runs, parse_stages
from .cache import CacheStore
from .errors import ApiError
from .filters import DashboardFilters, StagePredicates, compile_pattern, describe
from .models import (
    RESULT_FAILED,
    AggregationResult,
    ExecutionTime,
    FailedPipelineRun,
    FailedStage,
    Pipeline,
    PipelineStats,
    PipelineSummary,
    Progress,
    Report,
    Run,
    Stage,
    StageFailure,
    format_ado_datetime,
    format_minutes,
)
from .stats import compute_stats

logger = logging.getLogger(__name__)


class AggregationEngine:
    """Builds dashboard reports from Azure DevOps pipeline data."""

    def __init__(self, client: AdoClient, cache: CacheStore) -> None:
        self._client = client
        self._cache = cache
        self._inflight_locks_mu = threading.Lock()
        # Entries vanish once no request holds or waits on the lock.
        self._inflight_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()

    def _inflight_lock(self, key: str) -> threading.Lock:
        """Return a per-fingerprint lock so identical concurrent requests compute once."""
        with self._inflight_locks_mu:
            lock = self._inflight_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._inflight_locks[key] = lock
            return lock

    def aggregate(self, filters: DashboardFilters) -> AggregationResult:
        """Return the dashboard report for ``filters``.

        Never raises: any failure is returned as ``success=False`` with the
        error message.
        """
        started = time.monotonic()
        try:
            default_project = self._client.config.project
            base_fingerprint = filters.base_fingerprint(default_project)
            full_fingerprint = filters.full_fingerprint(default_project)

            cached = self._cache.lookup(base_fingerprint, full_fingerprint)
            if cached is None:
                with self._inflight_lock(full_fingerprint):
                    cached = self._cache.lookup(base_fingerprint, full_fingerprint)
                    if cached is None:
                        return self._compute(filters, base_fingerprint, full_fingerprint, started)

            logger.info(
                "Returning dashboard data from cache",
                extra={"last_updated": cached.last_updated.isoformat()},
            )
            return AggregationResult(
                success=True,
                data=cached.report,
                last_updated=cached.last_updated,
                from_cache=True,
            )
        except Exception as exc:
            logger.exception("Dashboard aggregation failed", extra=describe(filters))
            return AggregationResult(success=False, error=str(exc), last_updated=self._cache.now())

    def _compute(
        self,
        filters: DashboardFilters,
        base_fingerprint: str,
        full_fingerprint: str,
        started: float,
    ) -> AggregationResult:
        logger.info("Building dashboard data", extra=describe(filters))
        report = self.build_report(filters, base_fingerprint)
        last_updated = self._cache.put(base_fingerprint, full_fingerprint, report)
        processing_time = round(time.monotonic() - started, 3)

        logger.info(
            "Dashboard data built",
            extra={
                "pipelines": report.totals.pipelines,
                "runs": report.totals.runs,
                "failed": report.totals.failed,
                "processing_time": processing_time,
            },
        )
        return AggregationResult(
            success=True,
            data=report,
            last_updated=last_updated,
            processing_time=processing_time,
            from_cache=False,
        )

    def build_report(self, filters: DashboardFilters, base_fingerprint: str) -> Report:
        """Aggregate pipelines and runs into a fresh ``Report`` (no report cache)."""
        project = filters.resolve_project(self._client.config.project)
        pipelines = self.get_pipelines(project)

        report = Report(progress=Progress(total_pipelines=len(pipelines)))
        eligible = self.select_pipelines(pipelines, project, filters, report.progress)
        report.totals.pipelines = len(eligible)
        report.all_pipelines = [
            PipelineSummary(id=pipeline.id, name=pipeline.name, url=self._client.pipeline_url(project, pipeline.id))
            for pipeline in eligible
        ]

        run_lists = self.resolve_runs(eligible, project, base_fingerprint)
        cutoff = self._cache.now() - timedelta(days=filters.days)
        for pipeline, summary, runs in zip(eligible, report.all_pipelines, run_lists):
            if runs is not None:
                self._fold_runs(report, pipeline, summary, runs, cutoff, project)
            report.progress.processed += 1

        self._collect_failed_stages(report, project, StagePredicates.from_filters(filters))
        self._finalize(report)
        return report

    def get_pipelines(self, project: str) -> List[Pipeline]:
        """Return the pipeline list of ``project``, reusing any cached copy.

        Raises:
            ApiError: If the list is not cached and cannot be fetched.
        """
        pipelines = self._cache.get_pipeline_list(project)
        if pipelines is not None:
            return pipelines

        pipelines = self._client.list_pipelines(project)
        if pipelines is None:
            raise ApiError(f"Could not list pipelines for project '{project}'.")
        self._cache.put_pipeline_list(project, pipelines)
        return pipelines

    def _active_repository_ids(self, project: str) -> Optional[Set[str]]:
        repositories = self._client.list_repositories(project)
        if repositories is None:
            logger.warning(
                "Repository list unavailable; skipping repository status filter",
                extra={"project": project},
            )
            return None
        return {repository.id for repository in repositories if not repository.is_disabled}

    def select_pipelines(
        self,
        pipelines: Sequence[Pipeline],
        project: str,
        filters: DashboardFilters,
        progress: Progress,
    ) -> List[Pipeline]:
        """Return pipelines eligible for aggregation; skipped ones count as processed."""
        active_repo_ids = self._active_repository_ids(project)
        name_matches = compile_pattern(filters.pipeline_filter)

        eligible: List[Pipeline] = []
        for pipeline in pipelines:
            if not pipeline.is_enabled:
                progress.processed += 1
                continue
            if (
                active_repo_ids is not None
                and pipeline.repository_id
                and pipeline.repository_id not in active_repo_ids
            ):
                progress.processed += 1
                continue
            if name_matches is not None and not name_matches(pipeline.name):
                progress.processed += 1
                continue
            eligible.append(pipeline)
        return eligible

    def resolve_runs(
        self,
        pipelines: Sequence[Pipeline],
        project: str,
        base_fingerprint: str,
    ) -> List[Optional[List[Run]]]:
        """Return run lists aligned with ``pipelines``; ``None`` where the fetch failed.

        Cached lists stored under ``base_fingerprint`` are reused, all other
        pipelines are fetched in a single batch.
        """
        run_lists: List[Optional[List[Run]]] = [None] * len(pipelines)
        missing: List[int] = []
        for index, pipeline in enumerate(pipelines):
            cached = self._cache.get_runs_for(pipeline.id, base_fingerprint)
            if cached is None:
                missing.append(index)
            else:
                run_lists[index] = cached

        endpoints = [self._client.runs_endpoint(pipelines[index].id) for index in missing]
        payloads = self._client.fetch_batch(endpoints, project)
        for index, payload in zip(missing, payloads):
            pipeline = pipelines[index]
            runs = parse_runs(payload, pipeline.id)
            if runs is not None:
                self._cache.put_runs_for(pipeline.id, base_fingerprint, runs)
            run_lists[index] = runs

        logger.debug(
            "Resolved run lists",
            extra={"pipelines": len(pipelines), "cached": len(pipelines) - len(missing), "fetched": len(missing)},
        )
        return run_lists

    def resolve_failure_details(
        self,
        keys: Sequence[Tuple[int, int]],
        project: str,
    ) -> List[Optional[List[Stage]]]:
        """Return stage lists aligned with ``(pipeline_id, run_id)`` keys.

        Uses the same cache-then-batch strategy as :meth:`resolve_runs`.
        """
        details: List[Optional[List[Stage]]] = [None] * len(keys)
        missing: List[int] = []
        for index, (pipeline_id, run_id) in enumerate(keys):
            cached = self._cache.get_failure_detail(pipeline_id, run_id)
            if cached is None:
                missing.append(index)
            else:
                details[index] = cached

        endpoints = [self._client.run_detail_endpoint(*keys[index]) for index in missing]
        payloads = self._client.fetch_batch(endpoints, project)
        for index, payload in zip(missing, payloads):
            stages = parse_stages(payload)
            if stages is not None:
                pipeline_id, run_id = keys[index]
                self._cache.put_failure_detail(pipeline_id, run_id, stages)
            details[index] = stages
        return details

    def _fold_runs(
        self,
        report: Report,
        pipeline: Pipeline,
        summary: PipelineSummary,
        runs: Sequence[Run],
        cutoff: datetime,
        project: str,
    ) -> None:
        in_window = [
            run
            for run in runs[: self._client.config.max_runs]
            if run.finished_date is not None and run.finished_date >= cutoff
        ]

        for run in in_window:
            result = run.normalized_result
            duration = run.duration_minutes

            report.totals.record(result)
            stats = report.pipeline_stats.setdefault(pipeline.name, PipelineStats())
            stats.record(result, duration)

            if duration is not None:
                report.execution_times.append(
                    ExecutionTime(pipeline=pipeline.name, run_id=run.id, duration=duration)
                )

            if result == RESULT_FAILED:
                report.failed_pipelines.append(
                    FailedPipelineRun(
                        id=pipeline.id,
                        name=pipeline.name,
                        run_id=run.id,
                        date=format_ado_datetime(run.finished_date),
                        url=self._client.run_results_url(project, run.id),
                    )
                )

        if in_window:
            latest = max(in_window, key=lambda run: run.finished_date)
            summary.last_run = format_ado_datetime(latest.finished_date)
            summary.last_status = latest.result or "unknown"
            summary.last_duration = format_minutes(latest.duration_minutes)

    def _collect_failed_stages(self, report: Report, project: str, predicates: StagePredicates) -> None:
        keys = [(failed.id, failed.run_id) for failed in report.failed_pipelines]
        details = self.resolve_failure_details(keys, project)

        for failed, stages in zip(report.failed_pipelines, details):
            for stage in stages or []:
                if not stage.is_failed:
                    continue
                stage_type = stage.stage_type
                if not predicates.accepts(stage.name, stage_type):
                    continue
                failed.failed_stages.append(
                    FailedStage(
                        name=stage.name,
                        stage_type=stage_type,
                        errors=stage.errors,
                        log_url=stage.log_url,
                    )
                )
                report.stage_failures.setdefault(stage.name, StageFailure()).count += 1

    def _finalize(self, report: Report) -> None:
        total_failed = report.totals.failed
        if total_failed:
            for failure in report.stage_failures.values():
                failure.percentage = round(failure.count / total_failed * 100, 2)

        for stats in report.pipeline_stats.values():
            stats.finalize()

        report.execution_stats = compute_stats(item.duration for item in report.execution_times)
