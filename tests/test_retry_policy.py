"""Tests for the retry schedules used by the connector."""

import random

import pytest

from servolink.interfaces.ble import BackoffSchedule, BLEConfig, RetryPolicy


class TestBackoffSchedule:
    """Unit tests for BackoffSchedule."""

    def test_defaults(self):
        schedule = BackoffSchedule()

        assert schedule.delay == 1.0
        assert schedule.max_delay == 30.0
        assert schedule.multiplier == 2.0
        assert schedule.jitter == 0.1
        assert schedule.max_retries is None
        assert schedule.failures == 0
        assert schedule.attempt == 1

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"delay": 0},
            {"delay": 5.0, "max_delay": 1.0},
            {"multiplier": 0.5},
            {"jitter": 1.5},
            {"max_retries": -1},
        ],
    )
    def test_rejects_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            BackoffSchedule(**kwargs)

    def test_growing_delay_is_capped(self):
        schedule = BackoffSchedule(delay=1.0, max_delay=5.0, multiplier=3.0, jitter=0.0)

        assert [schedule.delay_for(n) for n in range(4)] == [1.0, 3.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        schedule = BackoffSchedule(
            delay=10.0, max_delay=20.0, jitter=0.5, random_source=random.Random(0)
        )

        for retry in range(5):
            assert 5.0 <= schedule.delay_for(0) <= 15.0
            assert schedule.delay_for(retry) <= 30.0

    @pytest.mark.parametrize("max_retries", [0, 1, 3])
    def test_record_failure_allows_exactly_max_retries(self, max_retries):
        schedule = BackoffSchedule(jitter=0.0, multiplier=1.0, max_retries=max_retries)

        delays = []
        while True:
            delay = schedule.record_failure()
            if delay is None:
                break
            delays.append(delay)

        assert delays == [1.0] * max_retries
        assert schedule.failures == max_retries + 1
        assert schedule.exhausted

    def test_unbounded_schedule_never_exhausts(self):
        schedule = BackoffSchedule(jitter=0.0)
        for _ in range(50):
            assert schedule.record_failure() is not None
        assert not schedule.exhausted

    def test_restart(self):
        schedule = BackoffSchedule(max_retries=1)
        schedule.record_failure()
        schedule.record_failure()
        assert schedule.exhausted

        schedule.restart()

        assert schedule.attempt == 1
        assert not schedule.exhausted


class TestRetryPolicy:
    """Preset wiring."""

    def test_connect_defaults(self):
        schedule = RetryPolicy.connect()
        assert schedule.delay == BLEConfig.CONNECT_RETRY_DELAY
        assert schedule.multiplier == 1.0
        assert schedule.jitter == 0.0
        assert schedule.max_retries == BLEConfig.CONNECT_MAX_RETRIES

    def test_connect_delay_is_fixed_one_second(self):
        schedule = RetryPolicy.connect(max_retries=3)
        assert [schedule.record_failure() for _ in range(4)] == [1.0, 1.0, 1.0, None]

    def test_connect_override(self):
        assert RetryPolicy.connect(max_retries=5).max_retries == 5
        assert RetryPolicy.connect(max_retries=0).record_failure() is None

    def test_backoff_variant_grows(self):
        schedule = RetryPolicy.connect_with_backoff(max_retries=4)
        schedule.jitter = 0.0
        assert schedule.delay_for(0) < schedule.delay_for(1) < schedule.delay_for(2)

    def test_instances_are_independent(self):
        first = RetryPolicy.connect()
        second = RetryPolicy.connect()
        first.record_failure()
        assert first.attempt == 2
        assert second.attempt == 1
