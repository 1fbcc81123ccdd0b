"""Entry point for the ADO pipeline dashboard CLI."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional, Sequence

from .cli import parse_args
from .config import load_config
from .credentials import EnvironmentCredentialStore
from .errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    DashboardError,
)
from .service import DashboardService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIGURATION = 2
EXIT_AUTHENTICATION = 3
EXIT_API = 4
EXIT_AGGREGATION = 5


def _filter_params(args: Any) -> Dict[str, Any]:
    return {
        "projectName": args.project,
        "days": args.days,
        "pipelineFilter": args.pipeline_filter,
        "stageFilter": args.stage_filter,
        "stageTypeFilter": args.stage_type,
    }


def _write_export(path: str, content: str) -> None:
    if path == "-":
        print(content)
        return
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(content)
        handle.write("\n")
    print(f"CSV export written to {path}")


def orchestrate_dashboard(argv: Optional[Sequence[str]] = None) -> int:
    """Run one dashboard command and return the process exit code."""
    try:
        args = parse_args(argv)
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        credential_store = EnvironmentCredentialStore()
        config = load_config(
            organization=args.org,
            project=args.project,
            credential_store=credential_store,
            cache_duration_minutes=args.cache_minutes,
        )
        service = DashboardService(config=config, credential_store=credential_store)

        if args.list_projects:
            projects = service.list_projects()
            if projects is None:
                raise ApiError(f"Could not list projects for organization '{config.organization}'.")
            print(json.dumps(projects, indent=2))
            return EXIT_OK

        params = _filter_params(args)
        if args.export:
            _write_export(args.export, service.export_to_csv(params))
            return EXIT_OK

        result = service.get_dashboard_data(params)
        print(json.dumps(result, indent=2))
        return EXIT_OK if result["success"] else EXIT_AGGREGATION
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except AuthenticationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_AUTHENTICATION
    except ApiError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_API
    except DashboardError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_AGGREGATION
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED


def main(argv: Optional[Sequence[str]] = None) -> int:
    return orchestrate_dashboard(argv)


if __name__ == "__main__":
    raise SystemExit(main())
