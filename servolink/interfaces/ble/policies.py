"""Retry schedules for BLE connection attempts."""

import random
from typing import Optional

from servolink.interfaces.ble.constants import BLEConfig


class BackoffSchedule:
    """
    Bounded retry schedule: how many failed attempts may be retried, and how long to wait.

    `multiplier` of 1.0 keeps the delay fixed; larger values grow it per retry up to
    `max_delay`. `jitter` spreads each delay by up to that fraction either way.
    """

    def __init__(
        self,
        *,
        delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        max_retries: Optional[int] = None,
        random_source=None,
    ):
        if delay <= 0:
            raise ValueError(f"delay must be > 0, got {delay}")
        if max_delay < delay:
            raise ValueError(f"max_delay ({max_delay}) must be >= delay ({delay})")
        if multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {multiplier}")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {jitter}")
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 or None, got {max_retries}")
        self.delay = delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.max_retries = max_retries
        self._random = random_source or random
        self._failures = 0

    @property
    def failures(self) -> int:
        """Failed attempts recorded so far."""
        return self._failures

    @property
    def attempt(self) -> int:
        """1-based number of the attempt about to run."""
        return self._failures + 1

    @property
    def exhausted(self) -> bool:
        return self.max_retries is not None and self._failures > self.max_retries

    def delay_for(self, retry: int) -> float:
        """Wait before the `retry`-th retry (0-based)."""
        base = min(self.delay * (self.multiplier**retry), self.max_delay)
        if not self.jitter:
            return base
        spread = base * self.jitter * (self._random.random() * 2.0 - 1.0)
        return max(0.001, base + spread)

    def record_failure(self) -> Optional[float]:
        """
        Count a failed attempt.

        Returns:
            The delay before the next attempt, or None when no retries remain.
        """
        retry = self._failures
        self._failures += 1
        if self.max_retries is not None and retry >= self.max_retries:
            return None
        return self.delay_for(retry)

    def restart(self) -> None:
        self._failures = 0


class RetryPolicy:
    """
    Schedule presets for BLE operations.
    """

    @staticmethod
    def connect(max_retries: Optional[int] = None) -> BackoffSchedule:
        """Fixed delay between failed connection attempts."""
        return BackoffSchedule(
            delay=BLEConfig.CONNECT_RETRY_DELAY,
            max_delay=BLEConfig.CONNECT_RETRY_MAX_DELAY,
            multiplier=BLEConfig.CONNECT_RETRY_BACKOFF,
            jitter=0.0,
            max_retries=(
                BLEConfig.CONNECT_MAX_RETRIES if max_retries is None else max_retries
            ),
        )

    @staticmethod
    def connect_with_backoff(max_retries: Optional[int] = None) -> BackoffSchedule:
        """Growing, jittered delay for stacks that need longer to settle after a failure."""
        return BackoffSchedule(
            delay=BLEConfig.CONNECT_RETRY_DELAY,
            max_delay=BLEConfig.CONNECT_RETRY_MAX_DELAY,
            multiplier=2.0,
            jitter=0.1,
            max_retries=(
                BLEConfig.CONNECT_MAX_RETRIES if max_retries is None else max_retries
            ),
        )


__all__ = ["BackoffSchedule", "RetryPolicy"]
