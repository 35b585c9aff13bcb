"""Unit tests for timezone-aware cron evaluation."""

import zoneinfo
from datetime import datetime, timezone

import pytest

from file_retrieval.scheduling.cron import (
    NORMALIZED_CACHE_SIZE,
    CronValidationError,
    ScheduleEvaluator,
    get_next_run_time,
    normalized_cache_info,
    validate_cron_expression,
)


class TestScheduleEvaluatorValidation:
    """Test expression and timezone validation."""

    def setup_method(self):
        """Set up test fixture."""
        self.evaluator = ScheduleEvaluator()

    def test_validate_basic_cron_expressions(self):
        """Test validation of basic cron expressions."""
        valid_expressions = [
            "0 9 * * *",      # Daily at 9 AM
            "0 */2 * * *",    # Every 2 hours
            "15 14 1 * *",    # 2:15 PM on 1st of every month
            "0 22 * * 1-5",   # 10 PM on weekdays
            "*/15 * * * *",   # Every 15 minutes
            "30 0 9 * * *",   # 6-field with leading seconds
        ]

        for expr in valid_expressions:
            self.evaluator.validate_expression(expr)
            assert self.evaluator.is_valid_expression(expr)

    def test_validate_named_expressions(self):
        for expr in ["@yearly", "@annually", "@monthly", "@weekly", "@daily", "@hourly"]:
            self.evaluator.validate_expression(expr)

    def test_invalid_cron_expressions(self):
        """Test that invalid cron expressions are rejected."""
        invalid_expressions = [
            "invalid",
            "60 * * * *",     # Invalid minute
            "* 25 * * *",     # Invalid hour
            "* * 32 * *",     # Invalid day
            "* * * 13 *",     # Invalid month
            "* * * *",        # Too few fields
            "* * * * * * *",  # Too many fields
            "",
        ]

        for expr in invalid_expressions:
            with pytest.raises(CronValidationError):
                self.evaluator.validate_expression(expr)
            assert not self.evaluator.is_valid_expression(expr)

    def test_validate_timezone(self):
        assert self.evaluator.validate_timezone("Europe/Berlin") == zoneinfo.ZoneInfo("Europe/Berlin")

        for tz in ["Mars/Olympus_Mons", "", "Not A Zone"]:
            with pytest.raises(CronValidationError):
                self.evaluator.validate_timezone(tz)

    def test_module_level_validation(self):
        validate_cron_expression("0 9 * * *")
        with pytest.raises(CronValidationError):
            validate_cron_expression("0 9 * *")

    def test_expression_cache_is_bounded(self):
        self.evaluator.clear_cache()

        for minute in range(60):
            for hour in range(24):
                self.evaluator.validate_expression(f"{minute} {hour} * * *")

        info = normalized_cache_info()
        assert info.maxsize == NORMALIZED_CACHE_SIZE
        assert info.currsize == NORMALIZED_CACHE_SIZE

        self.evaluator.clear_cache()
        assert normalized_cache_info().currsize == 0

    def test_rejected_expressions_are_not_cached(self):
        self.evaluator.clear_cache()

        assert not self.evaluator.is_valid_expression("* * * *")
        assert normalized_cache_info().currsize == 0


class TestNextRun:
    """Test next-run calculation."""

    def setup_method(self):
        self.evaluator = ScheduleEvaluator()

    def test_daily_schedule_from_last_run(self):
        last_run = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("0 9 * * *", "UTC", last_run_utc=last_run)

        assert next_run == datetime(2026, 2, 23, 9, 0, 0, tzinfo=timezone.utc)

    def test_result_is_strictly_after_reference(self):
        last_run = datetime(2026, 2, 23, 9, 0, 0, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("0 9 * * *", "UTC", last_run_utc=last_run)

        assert next_run == datetime(2026, 2, 24, 9, 0, 0, tzinfo=timezone.utc)

    def test_uses_now_when_never_run(self):
        now = datetime(2024, 1, 15, 8, 0, 0, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("0 9 * * *", "UTC", now=now)

        assert next_run == datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)

    def test_uses_clock_when_nothing_given(self):
        evaluator = ScheduleEvaluator(clock=lambda: datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc))

        assert evaluator.next_run("0 * * * *") == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

    def test_deterministic_for_same_inputs(self):
        last_run = datetime(2024, 5, 1, 12, 34, 56, tzinfo=timezone.utc)

        first = self.evaluator.next_run("*/7 * * * *", "Asia/Kolkata", last_run_utc=last_run)
        second = self.evaluator.next_run("*/7 * * * *", "Asia/Kolkata", last_run_utc=last_run)

        assert first == second
        assert first > last_run

    def test_schedule_evaluated_in_local_time(self):
        # 09:00 in Tokyo (UTC+9) is 00:00 UTC
        last_run = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("0 9 * * *", "Asia/Tokyo", last_run_utc=last_run)

        assert next_run == datetime(2024, 6, 2, 0, 0, tzinfo=timezone.utc)

    def test_six_field_expression_with_seconds(self):
        last_run = datetime(2026, 2, 23, 8, 0, 0, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("30 0 9 * * *", "UTC", last_run_utc=last_run)

        assert next_run == datetime(2026, 2, 23, 9, 0, 30, tzinfo=timezone.utc)

    def test_naive_reference_is_treated_as_utc(self):
        next_run = self.evaluator.next_run("0 9 * * *", "UTC", last_run_utc=datetime(2026, 2, 23, 8, 0))

        assert next_run == datetime(2026, 2, 23, 9, 0, tzinfo=timezone.utc)

    def test_invalid_inputs_return_none(self):
        last_run = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert self.evaluator.next_run("not a cron", "UTC", last_run_utc=last_run) is None
        assert self.evaluator.next_run("0 9 * * *", "Invalid/Zone", last_run_utc=last_run) is None
        assert self.evaluator.next_run("", "UTC", last_run_utc=last_run) is None

    def test_upcoming_runs(self):
        after = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

        runs = self.evaluator.upcoming_runs("0 9 * * *", "UTC", after=after, count=3)

        assert runs == [
            datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 17, 9, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 18, 9, 0, tzinfo=timezone.utc),
        ]

    def test_module_level_next_run(self):
        last_run = datetime(2026, 2, 23, 8, 0, tzinfo=timezone.utc)
        assert get_next_run_time("0 9 * * *", "UTC", last_run) == datetime(2026, 2, 23, 9, 0, tzinfo=timezone.utc)


class TestDaylightSavingPolicy:
    """Test behavior across DST transitions."""

    def setup_method(self):
        self.evaluator = ScheduleEvaluator()

    @pytest.mark.parametrize("tz_name,start", [
        ("Europe/London", datetime(2024, 3, 28, 9, 0, tzinfo=timezone.utc)),
        ("America/New_York", datetime(2024, 3, 8, 14, 0, tzinfo=timezone.utc)),
        ("America/New_York", datetime(2024, 11, 1, 13, 0, tzinfo=timezone.utc)),
        ("Australia/Sydney", datetime(2024, 4, 4, 0, 0, tzinfo=timezone.utc)),
    ])
    def test_daily_run_stays_at_local_nine(self, tz_name, start):
        tz = zoneinfo.ZoneInfo(tz_name)
        runs = self.evaluator.upcoming_runs("0 9 * * *", tz_name, after=start, count=6)

        assert len(runs) == 6
        for run in runs:
            local = run.astimezone(tz)
            assert (local.hour, local.minute) == (9, 0)

    def test_spring_forward_gap_moves_to_first_valid_instant(self):
        # 02:30 does not exist in New York on 2024-03-10; clocks jump to 03:00 EDT
        last_run = datetime(2024, 3, 9, 7, 30, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("30 2 * * *", "America/New_York", last_run_utc=last_run)

        assert next_run == datetime(2024, 3, 10, 7, 0, tzinfo=timezone.utc)

    def test_fall_back_overlap_uses_first_occurrence(self):
        # 01:30 occurs twice in New York on 2024-11-03; the EDT instance is 05:30Z
        last_run = datetime(2024, 11, 2, 5, 30, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("30 1 * * *", "America/New_York", last_run_utc=last_run)

        assert next_run == datetime(2024, 11, 3, 5, 30, tzinfo=timezone.utc)

    def test_fall_back_overlap_does_not_run_twice(self):
        first = datetime(2024, 11, 3, 5, 30, tzinfo=timezone.utc)

        next_run = self.evaluator.next_run("30 1 * * *", "America/New_York", last_run_utc=first)

        assert next_run == datetime(2024, 11, 4, 6, 30, tzinfo=timezone.utc)

    def test_classify_local_time(self):
        assert self.evaluator.classify_local_time(datetime(2024, 3, 10, 2, 30), "America/New_York") == 'nonexistent'
        assert self.evaluator.classify_local_time(datetime(2024, 11, 3, 1, 30), "America/New_York") == 'ambiguous'
        assert self.evaluator.classify_local_time(datetime(2024, 6, 1, 12, 0), "America/New_York") == 'normal'

    def test_hourly_schedule_through_spring_forward(self):
        start = datetime(2024, 3, 10, 5, 30, tzinfo=timezone.utc)  # 00:30 EST

        runs = self.evaluator.upcoming_runs("0 * * * *", "America/New_York", after=start, count=3)

        # 01:00 EST, then 03:00 EDT (02:00 does not exist), then 04:00 EDT
        assert runs == [
            datetime(2024, 3, 10, 6, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 10, 7, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc),
        ]
