"""
Adaptive throttling for a rate-limited HTTP backend.

Public Esplora servers answer bursts with HTTP 429 and cut replies when
consecutive calls are spaced less than ~200ms apart. The controller keeps a
shared throttled/normal mode for every request issued by one explorer:

- Any soft error (429/5xx) or transport failure switches to throttled mode,
  resets the run of successful responses and (re)arms an inactivity timer.
- While throttled, every completed call re-arms that timer.
- A run of `unthrottle_after_ok_count` successes switches back to normal.
- The inactivity timer firing (no calls for `unthrottle_after_time`) also
  switches back to normal.

It also caps the number of requests in flight. Waiting tasks poll every
`throttle_interval`; there is no FIFO ordering among them.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from btcexplorer.constants import (
    DEFAULT_MAX_CONCURRENT_TASKS,
    DEFAULT_THROTTLE_INTERVAL,
    DEFAULT_UNTHROTTLE_AFTER_OK_COUNT,
    DEFAULT_UNTHROTTLE_AFTER_TIME,
)

# Jitter applied around the throttle interval (+/- 20%)
JITTER_RATIO = 0.2


class ThrottleMode(str, Enum):
    NORMAL = "normal"
    THROTTLED = "throttled"


@dataclass
class ThrottleState:
    mode: ThrottleMode = ThrottleMode.NORMAL
    consecutive_ok: int = 0
    inflight: int = 0
    unthrottle_timer: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class Permit:
    """Admission slot handed out by ThrottleController.admit()."""

    released: bool = False


class ThrottleController:
    def __init__(
        self,
        max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS,
        throttle_interval: float = DEFAULT_THROTTLE_INTERVAL,
        unthrottle_after_ok_count: int = DEFAULT_UNTHROTTLE_AFTER_OK_COUNT,
        unthrottle_after_time: float = DEFAULT_UNTHROTTLE_AFTER_TIME,
    ):
        """
        Args:
            max_concurrent_tasks: Admission ceiling (requests in flight)
            throttle_interval: Seconds between polls for a free slot, and the
                base pacing delay while throttled
            unthrottle_after_ok_count: Consecutive successes that end throttling
            unthrottle_after_time: Seconds without any call that end throttling
        """
        self.max_concurrent_tasks = max_concurrent_tasks
        self.throttle_interval = throttle_interval
        self.unthrottle_after_ok_count = unthrottle_after_ok_count
        self.unthrottle_after_time = unthrottle_after_time
        self.state = ThrottleState()

    @property
    def throttled(self) -> bool:
        return self.state.mode is ThrottleMode.THROTTLED

    @property
    def inflight(self) -> int:
        return self.state.inflight

    def jitter_delay(self) -> float:
        """Randomized pacing delay so concurrent retries do not line up."""
        return self.throttle_interval * random.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)

    async def admit(self) -> Permit:
        """Wait for a free slot below the admission ceiling and take it."""
        while self.state.inflight >= self.max_concurrent_tasks:
            logger.debug(
                f"Admission ceiling reached ({self.state.inflight}/"
                f"{self.max_concurrent_tasks}), waiting {self.throttle_interval}s"
            )
            await asyncio.sleep(self.throttle_interval)
        self.state.inflight += 1
        return Permit()

    def release(self, permit: Permit) -> None:
        if permit.released:
            return
        permit.released = True
        self.state.inflight -= 1

    def record_success(self) -> None:
        self.state.consecutive_ok += 1
        if self.throttled and self.state.consecutive_ok >= self.unthrottle_after_ok_count:
            logger.debug(f"Unthrottling after {self.state.consecutive_ok} consecutive ok responses")
            self._unthrottle()
            return
        self.record_completion()

    def record_completion(self) -> None:
        """Push back the inactivity deadline while throttled."""
        if self.throttled:
            self._arm_timer()

    def record_soft_error(self) -> None:
        self._throttle()

    def record_hard_error(self) -> None:
        self._throttle()

    def _throttle(self) -> None:
        if not self.throttled:
            logger.debug("Throttling requests")
        self.state.mode = ThrottleMode.THROTTLED
        self.state.consecutive_ok = 0
        self._arm_timer()

    def _arm_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self.state.unthrottle_timer = loop.call_later(
            self.unthrottle_after_time, self._on_inactivity_timeout
        )

    def _cancel_timer(self) -> None:
        if self.state.unthrottle_timer is not None:
            self.state.unthrottle_timer.cancel()
            self.state.unthrottle_timer = None

    def _on_inactivity_timeout(self) -> None:
        self.state.unthrottle_timer = None
        if self.throttled:
            logger.debug(f"Unthrottling after {self.unthrottle_after_time}s without calls")
        self.state.mode = ThrottleMode.NORMAL

    def _unthrottle(self) -> None:
        self._cancel_timer()
        self.state.mode = ThrottleMode.NORMAL

    def reset(self) -> None:
        """Drop throttling and the pending timer (in-flight count is kept)."""
        self._unthrottle()
        self.state.consecutive_ok = 0

    def get_stats(self) -> dict:
        return {
            "mode": self.state.mode.value,
            "consecutive_ok": self.state.consecutive_ok,
            "inflight": self.state.inflight,
            "max_concurrent_tasks": self.max_concurrent_tasks,
        }
