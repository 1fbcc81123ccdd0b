"""Duration statistics for the pipeline dashboard.

The dashboard reports average, median, min, max and 95th percentile over
run durations in minutes. Rank-based picks are used instead of interpolation:

- median is the element at index ``n // 2`` of the sorted sample, so even-sized
  samples report the upper of the two middle values.
- p95 is the element at index ``floor(n * 0.95)``.

Every value is returned as a string with two decimals, which is what the
dashboard displays.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Optional

from .models import Stats


def _format(value: float) -> str:
    return f"{value:.2f}"


def compute_stats(values: Iterable[Optional[float]]) -> Optional[Stats]:
    """Compute summary statistics for a numeric sample.

    ``None`` and NaN samples are ignored.

    Args:
        values: Numeric samples, in any order.

    Returns:
        A ``Stats`` instance, or ``None`` when no valid samples exist.
    """
    samples: List[float] = sorted(
        float(value) for value in values if value is not None and not math.isnan(value)
    )
    if not samples:
        return None

    count = len(samples)
    p95_index = math.floor(count * 0.95)

    return Stats(
        average=_format(sum(samples) / count),
        median=_format(samples[count // 2]),
        min=_format(samples[0]),
        max=_format(samples[-1]),
        percentile95=_format(samples[p95_index]),
    )
