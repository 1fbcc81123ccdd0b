"""Azure DevOps REST API client for pipeline dashboard data retrieval."""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.auth import HTTPBasicAuth

from .config import Config
from .credentials import CredentialStore, get_pat_token
from .models import Pipeline, Repository, Run, Stage

logger = logging.getLogger(__name__)

JsonPayload = Dict[str, Any]

_FRACTION_RE = re.compile(r"\.(\d+)")


def _pad_fraction(match: "re.Match[str]") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_ado_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse Azure DevOps ISO8601 timestamps into timezone-aware UTC datetimes.

    Azure DevOps emits between one and seven fractional digits; the fraction
    is padded or cut to exactly six so every supported interpreter parses it.
    """
    if not value or not isinstance(value, str):
        return None

    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    normalized = _FRACTION_RE.sub(_pad_fraction, normalized)
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _values(payload: Optional[JsonPayload]) -> List[Dict[str, Any]]:
    """Return the ``value`` list of a collection payload, or ``[]``."""
    if not isinstance(payload, dict):
        return []
    items = payload.get("value")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def _run_url(item: Dict[str, Any]) -> Optional[str]:
    links = item.get("_links") or {}
    web = links.get("web") if isinstance(links, dict) else None
    if isinstance(web, dict) and web.get("href"):
        return str(web["href"])
    url = item.get("url")
    return str(url) if url else None


def parse_pipelines(payload: Optional[JsonPayload]) -> List[Pipeline]:
    """Parse a pipelines collection payload, skipping entries without id or name."""
    pipelines: List[Pipeline] = []
    for item in _values(payload):
        pipeline_id = item.get("id")
        name = item.get("name")
        if pipeline_id is None or not name:
            continue
        repository = item.get("repository") or {}
        repository_id = repository.get("id") if isinstance(repository, dict) else None
        queue_status = item.get("queueStatus")
        pipelines.append(
            Pipeline(
                id=int(pipeline_id),
                name=str(name),
                queue_status=str(queue_status) if queue_status else None,
                repository_id=str(repository_id) if repository_id else None,
            )
        )
    return pipelines


def parse_runs(payload: Optional[JsonPayload], pipeline_id: int) -> Optional[List[Run]]:
    """Parse a runs collection payload.

    Returns ``None`` when the payload is missing or has no ``value`` list, so
    callers can tell a failed fetch apart from a pipeline that has no runs.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
        return None

    runs: List[Run] = []
    for item in _values(payload):
        run_id = item.get("id")
        if run_id is None:
            continue
        result = item.get("result")
        runs.append(
            Run(
                id=int(run_id),
                pipeline_id=pipeline_id,
                result=str(result) if result else None,
                created_date=parse_ado_datetime(item.get("createdDate")),
                finished_date=parse_ado_datetime(item.get("finishedDate")),
                url=_run_url(item),
            )
        )
    return runs


def _stage_from_item(item: Dict[str, Any]) -> Optional[Stage]:
    name = item.get("name") or item.get("displayName")
    if not name:
        return None

    issues: List[str] = []
    for issue in item.get("issues") or []:
        if isinstance(issue, dict) and issue.get("message"):
            issues.append(str(issue["message"]))
        elif isinstance(issue, str) and issue:
            issues.append(issue)

    log = item.get("log")
    log_url = log.get("url") if isinstance(log, dict) else None
    error_message = item.get("errorMessage")
    result = item.get("result")

    return Stage(
        name=str(name),
        result=str(result) if result else None,
        error_message=str(error_message) if error_message else None,
        issues=issues,
        log_url=str(log_url) if log_url else None,
    )


def parse_stages(payload: Optional[JsonPayload]) -> Optional[List[Stage]]:
    """Extract stage results from a run detail or build timeline payload.

    Run detail payloads carry a ``stages`` list; timeline payloads carry
    ``records`` of which only ``Stage`` records are kept. Returns ``None`` when
    the payload has neither.
    """
    if not isinstance(payload, dict):
        return None

    if isinstance(payload.get("stages"), list):
        items = [item for item in payload["stages"] if isinstance(item, dict)]
    elif isinstance(payload.get("records"), list):
        items = [
            item
            for item in payload["records"]
            if isinstance(item, dict) and str(item.get("type", "")).lower() == "stage"
        ]
    else:
        return None

    stages: List[Stage] = []
    for item in items:
        stage = _stage_from_item(item)
        if stage is not None:
            stages.append(stage)
    return stages


class AdoClient:
    """Small client for Azure DevOps pipeline APIs.

    Every failure of an individual request (transport error, HTTP error after
    retries, body that is not JSON) is logged and surfaces as ``None``; nothing
    raises past ``fetch_one`` or ``fetch_batch``.
    """

    _MAX_BACKOFF_SECONDS = 30

    def __init__(self, config: Config, credential_store: CredentialStore) -> None:
        """Initialize an Azure DevOps API client.

        Args:
            config: Validated runtime configuration.
            credential_store: Source of the personal access token, read on
                every request.
        """
        self._config = config
        self._credential_store = credential_store
        self._session = requests.Session()
        self._session.headers.update({"Accept": "application/json"})

    @property
    def config(self) -> Config:
        return self._config

    def _build_url(self, endpoint: str, project: Optional[str] = None) -> str:
        """Resolve ``endpoint`` against ``{root}/{project}/_apis`` and pin the API version."""
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            url = endpoint
        else:
            url = f"{self._config.api_base(project or self._config.project)}/{endpoint.lstrip('/')}"

        if "api-version=" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}api-version={self._config.api_version}"
        return url

    def _auth(self) -> HTTPBasicAuth:
        return HTTPBasicAuth("", get_pat_token(self._credential_store))

    def _extract_backoff_seconds(self, response: requests.Response, attempt: int) -> int:
        """Compute exponential backoff seconds, honoring Retry-After when available."""
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header:
            try:
                retry_after_seconds = int(retry_after_header)
                return min(self._MAX_BACKOFF_SECONDS, max(1, retry_after_seconds))
            except ValueError:
                pass

        return min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1))

    def fetch_one(self, endpoint: str, project: Optional[str] = None) -> Optional[JsonPayload]:
        """GET one endpoint with bounded retries on 429/5xx and transport errors.

        Returns:
            The decoded JSON object, or ``None`` when the request ultimately
            failed or the body was not a JSON object.
        """
        url = self._build_url(endpoint, project)
        max_retries = max(1, self._config.max_retries)

        for attempt in range(1, max_retries + 1):
            try:
                response = self._session.get(url, auth=self._auth(), timeout=self._config.timeout_seconds)
            except requests.RequestException as exc:
                if attempt == max_retries:
                    logger.warning(
                        "Azure DevOps request failed after retries",
                        extra={"url": url, "attempts": attempt, "reason": str(exc)},
                    )
                    return None
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            status_code = response.status_code
            is_retryable = status_code == 429 or 500 <= status_code <= 599

            if is_retryable and attempt < max_retries:
                time.sleep(self._extract_backoff_seconds(response, attempt))
                continue

            if status_code >= 400:
                logger.warning(
                    "Azure DevOps API request failed",
                    extra={"url": url, "status_code": status_code},
                )
                return None

            try:
                payload = response.json()
            except ValueError:
                logger.warning("Azure DevOps API returned invalid JSON", extra={"url": url})
                return None

            if not isinstance(payload, dict):
                logger.warning("Azure DevOps API returned unexpected payload shape", extra={"url": url})
                return None

            return payload

        return None

    def fetch_batch(
        self,
        endpoints: Sequence[str],
        project: Optional[str] = None,
    ) -> List[Optional[JsonPayload]]:
        """GET several endpoints concurrently.

        The result has the same length and order as ``endpoints``; a failed
        request leaves ``None`` at its position without affecting the others.
        """
        if not endpoints:
            return []

        workers = max(1, min(self._config.max_workers, len(endpoints)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.fetch_one, endpoint, project) for endpoint in endpoints]
            results = [future.result() for future in futures]

        failures = sum(1 for result in results if result is None)
        logger.debug(
            "Completed batch fetch",
            extra={"requests": len(endpoints), "failures": failures},
        )
        return results

    def pipelines_endpoint(self) -> str:
        return f"pipelines?$top={self._config.max_pipelines}"

    def runs_endpoint(self, pipeline_id: int) -> str:
        return f"pipelines/{pipeline_id}/runs?$top={self._config.max_runs}"

    def run_detail_endpoint(self, pipeline_id: int, run_id: int) -> str:
        return f"pipelines/{pipeline_id}/runs/{run_id}"

    def repositories_endpoint(self) -> str:
        return "git/repositories"

    def projects_endpoint(self) -> str:
        return f"{self._config.service_root}/_apis/projects"

    def pipeline_url(self, project: str, pipeline_id: int) -> str:
        """Web URL of a pipeline definition."""
        return f"{self._config.service_root}/{project}/_build?definitionId={pipeline_id}"

    def run_results_url(self, project: str, run_id: int) -> str:
        """Web URL of a run's results page."""
        return f"{self._config.service_root}/{project}/_build/results?buildId={run_id}"

    def list_pipelines(self, project: Optional[str] = None) -> Optional[List[Pipeline]]:
        """List pipelines of ``project``; ``None`` when the listing could not be fetched."""
        payload = self.fetch_one(self.pipelines_endpoint(), project)
        if payload is None:
            return None
        return parse_pipelines(payload)

    def list_repositories(self, project: Optional[str] = None) -> Optional[List[Repository]]:
        """List repositories of ``project``; ``None`` when the listing could not be fetched."""
        payload = self.fetch_one(self.repositories_endpoint(), project)
        if payload is None:
            return None

        repositories: List[Repository] = []
        for item in _values(payload):
            repo_id = item.get("id")
            repo_name = item.get("name")
            if repo_id and repo_name:
                repositories.append(
                    Repository(
                        id=str(repo_id),
                        name=str(repo_name),
                        is_disabled=bool(item.get("isDisabled", False)),
                    )
                )
        return repositories

    def list_projects(self) -> Optional[JsonPayload]:
        """Return the raw organization project listing."""
        return self.fetch_one(self.projects_endpoint())
