"""CSV export of pipeline runs.

The exporter takes the eligible pipeline set from an aggregation pass, then
fetches run lists and failed-run stage details again and flattens them into
one row per run.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from .aggregation import AggregationEngine
from .ado_client import AdoClient, parse_runs, parse_stages
from .errors import ExportError
from .filters import DashboardFilters, StagePredicates
from .models import RESULT_FAILED, PipelineSummary, Run, Stage, format_ado_datetime, format_minutes

logger = logging.getLogger(__name__)

CSV_HEADER = "Pipeline,Run ID,Status,Date,Duration (min),Failed Stages,Errors,URL"


def quote(value: str) -> str:
    """Quote a CSV field, doubling embedded quotes."""
    return '"' + value.replace('"', '""') + '"'


def format_row(pipeline_name: str, run: Run, failed_stages: Sequence[Stage]) -> List[str]:
    """Flatten one run into CSV fields."""
    duration = format_minutes(run.duration_minutes)
    errors = [error for stage in failed_stages for error in stage.errors]
    log_url = next((stage.log_url for stage in failed_stages if stage.log_url), None)

    return [
        quote(pipeline_name),
        str(run.id),
        run.result or "unknown",
        format_ado_datetime(run.finished_date) if run.finished_date else "",
        duration or "",
        quote(";".join(stage.name for stage in failed_stages)),
        quote("|".join(errors)),
        log_url or run.url or "",
    ]


class ReportExporter:
    """Flattens pipeline runs into CSV rows."""

    def __init__(self, engine: AggregationEngine, client: AdoClient) -> None:
        self._engine = engine
        self._client = client

    def export_rows(self, filters: DashboardFilters) -> List[List[str]]:
        """Return one row of CSV fields per run of every eligible pipeline.

        Raises:
            ExportError: If the aggregation that supplies the pipeline set failed.
        """
        result = self._engine.aggregate(filters)
        if not result.success or result.data is None:
            raise ExportError(result.error or "Dashboard aggregation failed.")

        project = filters.resolve_project(self._client.config.project)
        pipelines = result.data.all_pipelines
        payloads = self._client.fetch_batch(
            [self._client.runs_endpoint(pipeline.id) for pipeline in pipelines],
            project,
        )

        pipeline_runs: List[Tuple[PipelineSummary, Run]] = []
        for pipeline, payload in zip(pipelines, payloads):
            for run in parse_runs(payload, pipeline.id) or []:
                pipeline_runs.append((pipeline, run))

        failed = [(pipeline, run) for pipeline, run in pipeline_runs if run.normalized_result == RESULT_FAILED]
        detail_payloads = self._client.fetch_batch(
            [self._client.run_detail_endpoint(pipeline.id, run.id) for pipeline, run in failed],
            project,
        )
        predicates = StagePredicates.from_filters(filters)
        failed_stages = {
            (pipeline.id, run.id): self._failed_stages(parse_stages(payload), predicates)
            for (pipeline, run), payload in zip(failed, detail_payloads)
        }

        rows = [
            format_row(pipeline.name, run, failed_stages.get((pipeline.id, run.id), []))
            for pipeline, run in pipeline_runs
        ]
        logger.info(
            "Exported pipeline runs",
            extra={"pipelines": len(pipelines), "rows": len(rows), "failed_runs": len(failed)},
        )
        return rows

    def export_csv(self, filters: DashboardFilters) -> str:
        """Return the CSV document (header plus one line per run)."""
        lines = [CSV_HEADER]
        lines.extend(",".join(row) for row in self.export_rows(filters))
        return "\n".join(lines)

    @staticmethod
    def _failed_stages(stages: Optional[List[Stage]], predicates: StagePredicates) -> List[Stage]:
        return [
            stage
            for stage in stages or []
            if stage.is_failed and predicates.accepts(stage.name, stage.stage_type)
        ]
