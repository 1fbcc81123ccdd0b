"""Request filter parameters, pattern predicates and cache fingerprints."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ConfigurationError
from .models import STAGE_TYPES

logger = logging.getLogger(__name__)

DEFAULT_DAYS = 30

Predicate = Callable[[str], bool]


@dataclass(frozen=True)
class DashboardFilters:
    """Filter parameters accepted by the aggregation and export entry points."""

    project_name: Optional[str] = None
    days: int = DEFAULT_DAYS
    pipeline_filter: Optional[str] = None
    stage_filter: Optional[str] = None
    stage_type_filter: Optional[str] = None

    @classmethod
    def from_params(cls, params: Optional[Mapping[str, Any]]) -> "DashboardFilters":
        """Build filters from the camelCase invocation parameters.

        Raises:
            ConfigurationError: If ``days`` is not a positive integer.
        """
        params = params or {}
        raw_days = params.get("days") or DEFAULT_DAYS
        try:
            days = int(raw_days)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for 'days': {raw_days!r} is not an integer.") from exc
        if days <= 0:
            raise ConfigurationError("Invalid value for 'days': expected an integer greater than 0.")

        return cls(
            project_name=_clean(params.get("projectName")),
            days=days,
            pipeline_filter=_clean(params.get("pipelineFilter")),
            stage_filter=_clean(params.get("stageFilter")),
            stage_type_filter=_clean(params.get("stageTypeFilter")),
        )

    def resolve_project(self, default_project: str) -> str:
        return self.project_name or default_project

    def base_fingerprint(self, default_project: str) -> str:
        """Fingerprint of the fields that govern pipeline and run list reuse."""
        return fingerprint({"projectName": self.resolve_project(default_project), "days": self.days})

    def full_fingerprint(self, default_project: str) -> str:
        """Fingerprint of every filter field; governs reuse of a finished report."""
        return fingerprint(
            {
                "projectName": self.resolve_project(default_project),
                "days": self.days,
                "pipelineFilter": self.pipeline_filter,
                "stageFilter": self.stage_filter,
                "stageTypeFilter": self.stage_type_filter,
            }
        )


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def fingerprint(values: Mapping[str, Any]) -> str:
    """Return a stable SHA-256 hex digest of ``values``."""
    canonical = json.dumps(dict(values), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _match_nothing(_: str) -> bool:
    return False


def compile_pattern(pattern: Optional[str]) -> Optional[Predicate]:
    """Compile a free-text pattern into a case-insensitive search predicate.

    Returns ``None`` when no pattern was given. An invalid regular expression
    yields a predicate that matches nothing.
    """
    if not pattern:
        return None
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.warning(
            "Ignoring invalid filter pattern; nothing will match",
            extra={"pattern": pattern, "reason": str(exc)},
        )
        return _match_nothing
    return lambda value: compiled.search(value or "") is not None


def compile_stage_type(stage_type: Optional[str]) -> Optional[Predicate]:
    """Build a predicate over stage types; unknown types match nothing."""
    if not stage_type:
        return None
    wanted = stage_type.strip().lower()
    if wanted not in STAGE_TYPES:
        logger.warning("Unknown stage type filter; nothing will match", extra={"stage_type": stage_type})
        return _match_nothing
    return lambda value: value == wanted


@dataclass(frozen=True)
class StagePredicates:
    """Compiled per-request stage filters."""

    name: Optional[Predicate] = None
    stage_type: Optional[Predicate] = None

    @classmethod
    def from_filters(cls, filters: DashboardFilters) -> "StagePredicates":
        return cls(
            name=compile_pattern(filters.stage_filter),
            stage_type=compile_stage_type(filters.stage_type_filter),
        )

    def accepts(self, stage_name: str, stage_type: str) -> bool:
        if self.name is not None and not self.name(stage_name):
            return False
        if self.stage_type is not None and not self.stage_type(stage_type):
            return False
        return True


def describe(filters: DashboardFilters) -> Dict[str, Any]:
    """Log-friendly view of the filters."""
    return {
        "project": filters.project_name,
        "days": filters.days,
        "pipeline_filter": filters.pipeline_filter,
        "stage_filter": filters.stage_filter,
        "stage_type_filter": filters.stage_type_filter,
    }
