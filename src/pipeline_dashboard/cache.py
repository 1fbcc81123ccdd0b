"""Process-wide, in-memory cache for dashboard data.

Entry classes and their reuse rules:

- pipeline lists, per project: reused whenever present.
- run lists, per pipeline: reused while fresh and stored under the same base
  fingerprint (project + lookback days) as the current request.
- failure details, per pipeline and run: reused while fresh.
- the last aggregate report: reused while fresh and stored under the same full
  fingerprint (every filter field) as the current request.
- the organization project listing: reused until ``reset``.

Freshness is one global TTL shared by every entry class. ``reset`` is the only
invalidation primitive.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from .models import Pipeline, Report, Run, Stage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: datetime
    fingerprint: Optional[str] = None


@dataclass(frozen=True)
class CachedReport:
    report: Report
    last_updated: datetime


class CacheStore:
    """Thread-safe holder of every cached dashboard artifact."""

    def __init__(self, ttl_minutes: float, clock: Optional[Clock] = None) -> None:
        self._ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._pipelines: Dict[str, List[Pipeline]] = {}
        self._runs: Dict[int, CacheEntry[List[Run]]] = {}
        self._failure_details: Dict[Tuple[int, int], CacheEntry[List[Stage]]] = {}
        self._report: Optional[CacheEntry[Report]] = None
        self._base_fingerprint: Optional[str] = None
        self._projects: Optional[Any] = None

    def now(self) -> datetime:
        return self._clock()

    def _is_fresh(self, stored_at: datetime) -> bool:
        return self._clock() - stored_at < self._ttl

    def lookup(self, base_fingerprint: str, full_fingerprint: str) -> Optional[CachedReport]:
        """Return the cached report when it is fresh and both fingerprints match."""
        with self._lock:
            entry = self._report
            if entry is None:
                return None
            if entry.fingerprint != full_fingerprint or self._base_fingerprint != base_fingerprint:
                return None
            if not self._is_fresh(entry.stored_at):
                return None
            return CachedReport(report=entry.value, last_updated=entry.stored_at)

    def put(self, base_fingerprint: str, full_fingerprint: str, report: Report) -> datetime:
        """Store ``report`` as the current aggregate and return its timestamp."""
        with self._lock:
            stored_at = self._clock()
            self._report = CacheEntry(value=report, stored_at=stored_at, fingerprint=full_fingerprint)
            self._base_fingerprint = base_fingerprint
            return stored_at

    def get_pipeline_list(self, project: str) -> Optional[List[Pipeline]]:
        with self._lock:
            return self._pipelines.get(project)

    def put_pipeline_list(self, project: str, pipelines: List[Pipeline]) -> None:
        with self._lock:
            self._pipelines[project] = list(pipelines)

    def get_runs_for(self, pipeline_id: int, base_fingerprint: str) -> Optional[List[Run]]:
        """Return cached runs of a pipeline stored under ``base_fingerprint``, if fresh."""
        with self._lock:
            entry = self._runs.get(pipeline_id)
            if entry is None or entry.fingerprint != base_fingerprint:
                return None
            if not self._is_fresh(entry.stored_at):
                return None
            return entry.value

    def put_runs_for(self, pipeline_id: int, base_fingerprint: str, runs: List[Run]) -> None:
        with self._lock:
            self._runs[pipeline_id] = CacheEntry(
                value=list(runs),
                stored_at=self._clock(),
                fingerprint=base_fingerprint,
            )

    def get_failure_detail(self, pipeline_id: int, run_id: int) -> Optional[List[Stage]]:
        with self._lock:
            entry = self._failure_details.get((pipeline_id, run_id))
            if entry is None or not self._is_fresh(entry.stored_at):
                return None
            return entry.value

    def put_failure_detail(self, pipeline_id: int, run_id: int, stages: List[Stage]) -> None:
        with self._lock:
            self._failure_details[(pipeline_id, run_id)] = CacheEntry(
                value=list(stages),
                stored_at=self._clock(),
            )

    def get_projects(self) -> Optional[Any]:
        with self._lock:
            return self._projects

    def put_projects(self, projects: Any) -> None:
        with self._lock:
            self._projects = projects

    def reset(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            self._pipelines.clear()
            self._runs.clear()
            self._failure_details.clear()
            self._report = None
            self._base_fingerprint = None
            self._projects = None
        logger.info("Cache cleared")
