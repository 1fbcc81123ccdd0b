"""Invocation surface of the dashboard: data, CSV export, cache reset and projects."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .ado_client import AdoClient
from .aggregation import AggregationEngine
from .cache import CacheStore, Clock
from .config import Config
from .credentials import CredentialStore
from .errors import ConfigurationError
from .export import ReportExporter
from .filters import DashboardFilters
from .models import AggregationResult, format_ado_datetime

logger = logging.getLogger(__name__)


class DashboardService:
    """Wires the client, cache, aggregation engine and exporter for one process."""

    def __init__(
        self,
        config: Config,
        credential_store: CredentialStore,
        client: Optional[AdoClient] = None,
        cache: Optional[CacheStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._client = client or AdoClient(config=config, credential_store=credential_store)
        self._cache = cache or CacheStore(ttl_minutes=config.cache_duration_minutes, clock=clock)
        self._engine = AggregationEngine(client=self._client, cache=self._cache)
        self._exporter = ReportExporter(engine=self._engine, client=self._client)

    @property
    def cache(self) -> CacheStore:
        return self._cache

    def get_dashboard_data(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{success, data|error, lastUpdated, processingTime, fromCache}``."""
        try:
            filters = DashboardFilters.from_params(params)
        except ConfigurationError as exc:
            return AggregationResult(success=False, error=str(exc), last_updated=self._cache.now()).to_dict()
        return self._engine.aggregate(filters).to_dict()

    def export_to_csv(self, params: Optional[Mapping[str, Any]] = None) -> str:
        """Return the CSV export for ``params``.

        Raises:
            ConfigurationError: If the filter parameters are invalid.
            ExportError: If the underlying aggregation failed.
        """
        return self._exporter.export_csv(DashboardFilters.from_params(params))

    def clear_cache(self) -> Dict[str, Any]:
        self._cache.reset()
        return {
            "success": True,
            "message": "Cache cleared successfully",
            "timestamp": format_ado_datetime(self._cache.now()),
        }

    def list_projects(self) -> Optional[Dict[str, Any]]:
        """Return the organization project listing, cached until the next reset."""
        projects = self._cache.get_projects()
        if projects is not None:
            return projects

        projects = self._client.list_projects()
        if projects is not None:
            self._cache.put_projects(projects)
        return projects
