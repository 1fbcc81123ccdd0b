"""Domain models for Azure DevOps pipeline dashboard processing.

These dataclasses intentionally model only the subset of API payload fields that
are required for the dashboard statistics. Report types render to the
camelCase dictionaries the dashboard front end consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

RESULT_SUCCEEDED = "succeeded"
RESULT_FAILED = "failed"
RESULT_OTHER = "other"

STAGE_TYPE_TESTS = "tests"
STAGE_TYPE_BUILD = "build"
STAGE_TYPE_DEPLOY = "deploy"
STAGE_TYPE_SECURITY = "security"
STAGE_TYPE_OTHER = "other"

STAGE_TYPES = (
    STAGE_TYPE_TESTS,
    STAGE_TYPE_BUILD,
    STAGE_TYPE_DEPLOY,
    STAGE_TYPE_SECURITY,
    STAGE_TYPE_OTHER,
)

# Checked in order, first match wins.
_STAGE_TYPE_MARKERS = (
    ("test", STAGE_TYPE_TESTS),
    ("build", STAGE_TYPE_BUILD),
    ("deploy", STAGE_TYPE_DEPLOY),
    ("secure", STAGE_TYPE_SECURITY),
)


def classify_stage_type(stage_name: str) -> str:
    """Map a stage name to its stage type by case-insensitive substring match."""
    lowered = (stage_name or "").lower()
    for marker, stage_type in _STAGE_TYPE_MARKERS:
        if marker in lowered:
            return stage_type
    return STAGE_TYPE_OTHER


def format_minutes(value: Optional[float]) -> Optional[str]:
    """Format a minute value with two decimals, keeping ``None`` as ``None``."""
    if value is None:
        return None
    return f"{value:.2f}"


def format_ado_datetime(value: datetime) -> str:
    """Format a datetime as UTC ISO8601 with the 'Z' suffix Azure DevOps uses."""
    utc_value = value.astimezone(timezone.utc)
    return utc_value.isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class Repository:
    """Represents a source repository returned by Azure DevOps APIs."""

    id: str
    name: str
    is_disabled: bool = False


@dataclass(slots=True)
class Pipeline:
    """Represents a pipeline definition."""

    id: int
    name: str
    queue_status: Optional[str] = None
    repository_id: Optional[str] = None

    @property
    def is_enabled(self) -> bool:
        return self.queue_status is None or self.queue_status.lower() == "enabled"


@dataclass(slots=True)
class Run:
    """Represents the minimal pipeline run data required for the statistics."""

    id: int
    pipeline_id: int
    result: Optional[str]
    created_date: Optional[datetime]
    finished_date: Optional[datetime]
    url: Optional[str] = None

    @property
    def normalized_result(self) -> str:
        """``succeeded``, ``failed`` or ``other``."""
        result = (self.result or "").lower()
        if result in (RESULT_SUCCEEDED, RESULT_FAILED):
            return result
        return RESULT_OTHER

    @property
    def duration_minutes(self) -> Optional[float]:
        if self.created_date is None or self.finished_date is None:
            return None
        return (self.finished_date - self.created_date).total_seconds() / 60.0


@dataclass(slots=True)
class Stage:
    """One stage of a run detail payload."""

    name: str
    result: Optional[str]
    error_message: Optional[str] = None
    issues: List[str] = field(default_factory=list)
    log_url: Optional[str] = None

    @property
    def stage_type(self) -> str:
        return classify_stage_type(self.name)

    @property
    def is_failed(self) -> bool:
        return (self.result or "").lower() == RESULT_FAILED

    @property
    def errors(self) -> List[str]:
        """Error message followed by issue messages, blanks removed."""
        messages = [self.error_message] if self.error_message else []
        messages.extend(issue for issue in self.issues if issue)
        return messages


@dataclass(slots=True)
class Stats:
    """Duration statistics, each value already formatted with two decimals."""

    average: str
    median: str
    min: str
    max: str
    percentile95: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "average": self.average,
            "median": self.median,
            "min": self.min,
            "max": self.max,
            "percentile95": self.percentile95,
        }


@dataclass(slots=True)
class Totals:
    pipelines: int = 0
    runs: int = 0
    success: int = 0
    failed: int = 0
    other: int = 0

    def record(self, result: str) -> None:
        self.runs += 1
        if result == RESULT_SUCCEEDED:
            self.success += 1
        elif result == RESULT_FAILED:
            self.failed += 1
        else:
            self.other += 1


@dataclass(slots=True)
class StageFailure:
    """Failure count of one stage name and its share of all failed runs."""

    count: int = 0
    percentage: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "percentage": self.percentage}


@dataclass(slots=True)
class PipelineStats:
    """Per-pipeline counters and rates over in-window runs."""

    success: int = 0
    failed: int = 0
    other: int = 0
    durations: List[float] = field(default_factory=list)
    success_rate: str = "0.00"
    failure_rate: str = "0.00"
    other_rate: str = "0.00"
    avg_duration: Optional[str] = None

    @property
    def total(self) -> int:
        return self.success + self.failed + self.other

    def record(self, result: str, duration: Optional[float]) -> None:
        if result == RESULT_SUCCEEDED:
            self.success += 1
        elif result == RESULT_FAILED:
            self.failed += 1
        else:
            self.other += 1
        if duration is not None:
            self.durations.append(duration)

    def finalize(self) -> None:
        """Compute rates as percentages of in-window runs and the average duration."""
        total = self.total
        if total:
            self.success_rate = f"{self.success / total * 100:.2f}"
            self.failure_rate = f"{self.failed / total * 100:.2f}"
            self.other_rate = f"{self.other / total * 100:.2f}"
        if self.durations:
            self.avg_duration = format_minutes(sum(self.durations) / len(self.durations))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "other": self.other,
            "durations": list(self.durations),
            "successRate": self.success_rate,
            "failureRate": self.failure_rate,
            "otherRate": self.other_rate,
            "avgDuration": self.avg_duration,
        }


@dataclass(slots=True)
class FailedStage:
    name: str
    stage_type: str
    errors: List[str] = field(default_factory=list)
    log_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.stage_type,
            "errors": list(self.errors),
            "logUrl": self.log_url,
        }


@dataclass(slots=True)
class FailedPipelineRun:
    """One failed run occurrence, with the stages that failed in it."""

    id: int
    name: str
    run_id: int
    date: Optional[str]
    url: str
    failed_stages: List[FailedStage] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [error for stage in self.failed_stages for error in stage.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "runId": self.run_id,
            "date": self.date,
            "url": self.url,
            "failedStages": [stage.to_dict() for stage in self.failed_stages],
            "errors": self.errors,
        }


@dataclass(slots=True)
class PipelineSummary:
    """Pipeline listing entry with its most recent in-window run."""

    id: int
    name: str
    url: str
    last_run: Optional[str] = None
    last_status: Optional[str] = None
    last_duration: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "lastRun": self.last_run,
            "lastStatus": self.last_status,
            "lastDuration": self.last_duration,
        }


@dataclass(slots=True)
class ExecutionTime:
    pipeline: str
    run_id: int
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {"pipeline": self.pipeline, "runId": self.run_id, "duration": self.duration}


@dataclass(slots=True)
class Progress:
    total_pipelines: int = 0
    processed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"totalPipelines": self.total_pipelines, "processed": self.processed}


@dataclass(slots=True)
class Report:
    """Aggregated dashboard view derived from pipelines, runs and failed stages."""

    totals: Totals = field(default_factory=Totals)
    stage_failures: Dict[str, StageFailure] = field(default_factory=dict)
    pipeline_stats: Dict[str, PipelineStats] = field(default_factory=dict)
    failed_pipelines: List[FailedPipelineRun] = field(default_factory=list)
    all_pipelines: List[PipelineSummary] = field(default_factory=list)
    execution_times: List[ExecutionTime] = field(default_factory=list)
    execution_stats: Optional[Stats] = None
    progress: Progress = field(default_factory=Progress)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totals": {
                "pipelines": self.totals.pipelines,
                "runs": self.totals.runs,
                "success": self.totals.success,
                "failed": self.totals.failed,
                "other": self.totals.other,
            },
            "stageFailures": {
                name: failure.to_dict() for name, failure in self.stage_failures.items()
            },
            "pipelineStats": {
                name: stats.to_dict() for name, stats in self.pipeline_stats.items()
            },
            "failedPipelines": [run.to_dict() for run in self.failed_pipelines],
            "allPipelines": [summary.to_dict() for summary in self.all_pipelines],
            "executionTimes": [item.to_dict() for item in self.execution_times],
            "executionStats": self.execution_stats.to_dict() if self.execution_stats else None,
            "progress": self.progress.to_dict(),
        }


@dataclass(slots=True)
class AggregationResult:
    """Outcome of one aggregation request; ``data`` is set only on success."""

    success: bool
    last_updated: datetime
    data: Optional[Report] = None
    error: Optional[str] = None
    processing_time: Optional[float] = None
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "lastUpdated": format_ado_datetime(self.last_updated),
        }
        if self.success:
            payload["data"] = self.data.to_dict() if self.data else None
            payload["fromCache"] = self.from_cache
            if self.processing_time is not None:
                payload["processingTime"] = self.processing_time
        else:
            payload["error"] = self.error
        return payload
