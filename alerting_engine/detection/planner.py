"""
Time window planning for rule runs.

A rule searches its declared look-back window on every run. When a run
starts later than scheduled, the time since the previous run exceeds the
interval by a "gap" and the planner adds older catch-up windows so events
in the gap are still searched. Catch-up is bounded to MAX_CATCHUP_RATIO
intervals and only computed when the "from" expression ends in s, m or h;
other units fall back to the single declared window.

Example:
    >>> plan = plan_time_windows(
    ...     from_expr="now-6m",
    ...     to_expr="now",
    ...     interval="5m",
    ...     max_matches=100,
    ...     previous_started_at=now - timedelta(minutes=25),
    ...     now=now,
    ... )
    >>> len(plan.tuples)
    5
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from alerting_engine.dates import (
    describe_duration,
    get_unit_suffix,
    parse_date_math,
    parse_interval,
)
from alerting_engine.errors import ConfigurationError
from alerting_engine.models.matches import TimeTuple

logger = structlog.get_logger(__name__)


MAX_CATCHUP_RATIO = 4

CATCHUP_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


class CatchupRatio(BaseModel):
    """How many intervals a gap spans, capped at MAX_CATCHUP_RATIO."""

    model_config = {"frozen": True, "extra": "forbid"}

    max_catchup: float
    ratio: float
    gap_diff_in_units: int


class TimeWindowPlan(BaseModel):
    """
    Planned windows for one run.

    Attributes:
        tuples: Windows to search, oldest first, declared window last.
        gap: Time missed since the previous run, if positive.
        gap_covered: False when catch-up could not cover the whole gap.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    tuples: List[TimeTuple] = Field(..., min_length=1)
    gap: Optional[timedelta] = None
    gap_covered: bool = True

    def gap_warning(self) -> Optional[str]:
        """Warning for a gap that catch-up left partially unsearched."""
        if self.gap is None or self.gap_covered:
            return None
        return (
            f"{describe_duration(self.gap)} ({int(self.gap.total_seconds() * 1000)}ms) "
            "has passed since last rule execution, and alerts may have been missed"
        )


def get_drift_tolerance(
    from_expr: str,
    to_expr: str,
    interval: timedelta,
    now: datetime,
) -> timedelta:
    """
    Part of the look-back window that overlaps the previous run.

    A rule searching now-6m..now every 5m tolerates 1m of drift.
    """
    window = parse_date_math(to_expr, now) - parse_date_math(from_expr, now)
    return window - interval


def get_gap_between_runs(
    previous_started_at: Optional[datetime],
    interval: str,
    from_expr: str,
    to_expr: str,
    now: datetime,
) -> Optional[timedelta]:
    """
    Compute the gap since the previous run.

    gap = (now - previous_started_at) - interval - drift_tolerance

    Returns:
        Optional[timedelta]: The gap (may be negative), or None on first run.

    Raises:
        ConfigurationError: If the interval or date math cannot be parsed.
    """
    if previous_started_at is None:
        return None
    interval_duration = parse_interval(interval)
    drift_tolerance = get_drift_tolerance(from_expr, to_expr, interval_duration, now)
    return (now - previous_started_at) - interval_duration - drift_tolerance


def get_catchup_ratio(
    previous_started_at: datetime,
    unit: str,
    from_expr: str,
    interval: str,
    now: datetime,
) -> Optional[CatchupRatio]:
    """
    Measure the gap in whole units of the "from" expression.

    The elapsed time since the previous run is truncated to whole units,
    the distance from that point to the declared "from" is divided by the
    interval and capped at MAX_CATCHUP_RATIO.

    Returns:
        Optional[CatchupRatio]: None for unsupported units or early runs.
    """
    unit_size = CATCHUP_UNITS.get(unit)
    if unit_size is None:
        logger.warning("catchup_unit_unsupported", unit=unit)
        return None

    elapsed = now - previous_started_at
    if elapsed < timedelta(0):
        return None

    calculated_from = now - unit_size * int(elapsed / unit_size)
    declared_from = parse_date_math(from_expr, now)
    gap_diff_in_units = int((declared_from - calculated_from) / unit_size)
    interval_in_units = parse_interval(interval) / unit_size
    ratio = gap_diff_in_units / interval_in_units
    return CatchupRatio(
        max_catchup=min(ratio, MAX_CATCHUP_RATIO),
        ratio=ratio,
        gap_diff_in_units=gap_diff_in_units,
    )


def _build_catchup_tuples(
    declared_from: datetime,
    interval: timedelta,
    unit_size: timedelta,
    max_matches: int,
    catchup: CatchupRatio,
) -> List[TimeTuple]:
    """Walk back from the declared "from", newest catch-up window first."""
    tuples: List[TimeTuple] = []
    window_to = declared_from
    while len(tuples) < catchup.max_catchup:
        if 0 < catchup.max_catchup < 1:
            tuples.append(
                TimeTuple(
                    from_=window_to - unit_size * catchup.gap_diff_in_units,
                    to=window_to,
                    max_matches=math.ceil(max_matches * catchup.max_catchup),
                )
            )
            break
        window_from = window_to - interval
        tuples.append(TimeTuple(from_=window_from, to=window_to, max_matches=max_matches))
        window_to = window_from
    return tuples


def plan_time_windows(
    from_expr: str,
    to_expr: str,
    interval: str,
    max_matches: int,
    previous_started_at: Optional[datetime],
    now: datetime,
) -> TimeWindowPlan:
    """
    Plan the windows a run searches.

    Args:
        from_expr: Declared look-back start (date math).
        to_expr: Declared look-back end (date math).
        interval: Schedule interval.
        max_matches: Alert budget per full interval.
        previous_started_at: Start of the previous run, None on first run.
        now: Start of this run.

    Returns:
        TimeWindowPlan: Catch-up windows oldest first, declared window last.

    Raises:
        ConfigurationError: If date math or the interval cannot be parsed.
    """
    declared_from = parse_date_math(from_expr, now)
    declared_to = parse_date_math(to_expr, now)
    if declared_from >= declared_to:
        raise ConfigurationError(
            f"Rule window is empty: from '{from_expr}' is not before to '{to_expr}'"
        )
    interval_duration = parse_interval(interval)
    declared = TimeTuple(from_=declared_from, to=declared_to, max_matches=max_matches)

    gap = get_gap_between_runs(previous_started_at, interval, from_expr, to_expr, now)
    if gap is None or gap <= timedelta(0) or previous_started_at is None:
        return TimeWindowPlan(tuples=[declared])

    unit = get_unit_suffix(from_expr)
    catchup = get_catchup_ratio(previous_started_at, unit, from_expr, interval, now)
    if catchup is None:
        logger.info(
            "catchup_skipped",
            from_expr=from_expr,
            unit=unit,
            gap_seconds=gap.total_seconds(),
        )
        return TimeWindowPlan(tuples=[declared], gap=gap, gap_covered=False)

    catchup_tuples = _build_catchup_tuples(
        declared_from=declared_from,
        interval=interval_duration,
        unit_size=CATCHUP_UNITS[unit],
        max_matches=max_matches,
        catchup=catchup,
    )
    catchup_tuples.reverse()

    logger.debug(
        "time_windows_planned",
        gap_seconds=gap.total_seconds(),
        ratio=catchup.ratio,
        max_catchup=catchup.max_catchup,
        catchup_tuples=len(catchup_tuples),
    )

    return TimeWindowPlan(
        tuples=catchup_tuples + [declared],
        gap=gap,
        gap_covered=catchup.ratio <= MAX_CATCHUP_RATIO,
    )


def get_time_tuples(
    from_expr: str,
    to_expr: str,
    interval: str,
    max_matches: int,
    previous_started_at: Optional[datetime],
    now: datetime,
) -> List[TimeTuple]:
    """
    Return only the planned windows.

    See plan_time_windows for arguments.
    """
    return plan_time_windows(
        from_expr, to_expr, interval, max_matches, previous_started_at, now
    ).tuples
