"""Tests for time window planning and gap catch-up."""

from datetime import timedelta

import pytest

from alerting_engine.dates import parse_date_math
from alerting_engine.detection.planner import (
    MAX_CATCHUP_RATIO,
    get_gap_between_runs,
    get_time_tuples,
    plan_time_windows,
)
from alerting_engine.errors import ConfigurationError

from tests.conftest import NOW


class TestPlanTimeWindows:
    def test_first_run_searches_declared_window(self):
        tuples = get_time_tuples("now-6m", "now", "5m", 100, None, NOW)

        assert len(tuples) == 1
        assert tuples[0].from_ == NOW - timedelta(minutes=6)
        assert tuples[0].to == NOW
        assert tuples[0].max_matches == 100

    def test_on_schedule_run_has_single_tuple(self):
        plan = plan_time_windows("now-6m", "now", "5m", 100, NOW - timedelta(minutes=5), NOW)

        assert len(plan.tuples) == 1
        assert plan.tuples[0].from_ == parse_date_math("now-6m", NOW)
        assert plan.tuples[0].to == parse_date_math("now", NOW)
        assert plan.gap_warning() is None

    def test_gap_of_twenty_minutes_adds_four_catchup_tuples(self):
        plan = plan_time_windows("now-6m", "now", "5m", 100, NOW - timedelta(minutes=25), NOW)

        assert len(plan.tuples) == 5
        starts = [t.from_ for t in plan.tuples]
        assert starts == sorted(starts)
        assert all(t.max_matches == 100 for t in plan.tuples)
        assert plan.tuples[-1].from_ == NOW - timedelta(minutes=6)
        # Catch-up windows are contiguous interval-sized windows ending at the declared start
        for older, newer in zip(plan.tuples[:-2], plan.tuples[1:-1]):
            assert older.to == newer.from_
            assert newer.to - newer.from_ == timedelta(minutes=5)
        assert plan.tuples[-2].to == plan.tuples[-1].from_
        assert plan.gap_covered
        assert plan.gap_warning() is None

    def test_catchup_is_bounded(self):
        plan = plan_time_windows("now-6m", "now", "5m", 100, NOW - timedelta(hours=2), NOW)

        assert len(plan.tuples) == MAX_CATCHUP_RATIO + 1
        assert not plan.gap_covered
        warning = plan.gap_warning()
        assert warning is not None
        assert "has passed since last rule execution" in warning

    def test_fractional_catchup_scales_budget(self):
        plan = plan_time_windows("now-6m", "now", "5m", 100, NOW - timedelta(minutes=8), NOW)

        assert len(plan.tuples) == 2
        catchup = plan.tuples[0]
        assert catchup.to == NOW - timedelta(minutes=6)
        assert catchup.from_ == NOW - timedelta(minutes=8)
        assert catchup.max_matches == 40

    def test_day_based_window_degrades_to_single_tuple_with_warning(self):
        plan = plan_time_windows("now-2d", "now", "1d", 100, NOW - timedelta(days=3), NOW)

        assert len(plan.tuples) == 1
        assert plan.tuples[0].from_ == NOW - timedelta(days=2)
        assert not plan.gap_covered
        assert plan.gap_warning() is not None

    def test_empty_window_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            plan_time_windows("now", "now-5m", "5m", 100, None, NOW)

    def test_invalid_interval_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            plan_time_windows("now-6m", "now", "5 minutes", 100, None, NOW)


class TestGapBetweenRuns:
    def test_no_previous_run_has_no_gap(self):
        assert get_gap_between_runs(None, "5m", "now-6m", "now", NOW) is None

    def test_drift_tolerance_is_subtracted(self):
        gap = get_gap_between_runs(NOW - timedelta(minutes=7), "5m", "now-6m", "now", NOW)

        assert gap == timedelta(minutes=1)

    def test_early_run_has_negative_gap(self):
        gap = get_gap_between_runs(NOW - timedelta(minutes=3), "5m", "now-6m", "now", NOW)

        assert gap < timedelta(0)
