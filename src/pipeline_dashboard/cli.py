"""Command-line argument parsing for the ADO pipeline dashboard."""

from __future__ import annotations

import argparse
from typing import Optional, Sequence

from .models import STAGE_TYPES


def _positive_int(value: str) -> int:
    """Parse and validate a positive integer CLI value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be an integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("must be a number") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")

    return parsed


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments for the dashboard.

    Returns:
        Parsed CLI arguments containing organization, project, filters and the
        selected output mode.
    """
    parser = argparse.ArgumentParser(
        prog="ado-pipeline-dashboard",
        description=(
            "Aggregate Azure DevOps pipeline runs into dashboard statistics "
            "(success rates, durations and failing stages)."
        ),
    )

    parser.add_argument(
        "--org",
        required=True,
        help="Azure DevOps organization name.",
    )
    parser.add_argument(
        "--project",
        required=True,
        help="Azure DevOps project name.",
    )
    parser.add_argument(
        "--days",
        type=_positive_int,
        default=30,
        help="Number of days of run history to analyze (default: 30).",
    )
    parser.add_argument(
        "--pipeline-filter",
        default=None,
        help="Case-insensitive regular expression matched against pipeline names.",
    )
    parser.add_argument(
        "--stage-filter",
        default=None,
        help="Case-insensitive regular expression matched against failed stage names.",
    )
    parser.add_argument(
        "--stage-type",
        choices=STAGE_TYPES,
        default=None,
        help="Only report failed stages of this type.",
    )
    parser.add_argument(
        "--cache-minutes",
        type=_positive_float,
        default=15,
        help="Cache freshness window in minutes (default: 15).",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--export",
        metavar="PATH",
        default=None,
        help="Write the run-level CSV export to PATH ('-' for stdout).",
    )
    mode.add_argument(
        "--list-projects",
        action="store_true",
        help="List the projects available in the organization.",
    )

    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    return parser.parse_args(argv)
