from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from reclaimer.core.enums import RetryState
from reclaimer.core.errors import LedgerError
from reclaimer.core.models import TransactionConfig


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        raise NotImplementedError

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base: float = 0.5
    cap: float = 8.0

    @classmethod
    def from_config(cls, config: TransactionConfig) -> "RetryPolicy":
        return cls(config.max_retries, config.backoff_base, config.backoff_cap)

    def delay(self, attempt: int) -> float:
        # attempt 0 is the first retry
        return min(self.cap, self.base * (2 ** attempt))


class CancelToken:
    """
    Cooperative cancellation: explicit `cancel()` or an optional deadline on `clock`.
    """

    def __init__(self, clock: Optional[Clock] = None, deadline: Optional[float] = None) -> None:
        if deadline is not None and clock is None:
            raise ValueError("a deadline needs a clock")
        self._clock = clock
        self._deadline = deadline
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._deadline is not None and self._clock is not None:
            return self._clock.now() >= self._deadline
        return False


class RetryTracker:
    """
    Per-transaction retry state.

        Pending --failure--> Waiting(deadline) --wait--> Retrying --failure--> Waiting ...
        any --finish / exhausted / cancelled--> Terminal
    """

    def __init__(self, policy: RetryPolicy, clock: Clock) -> None:
        self.policy = policy
        self.clock = clock
        self.state = RetryState.PENDING
        self.retries = 0
        self.deadline: Optional[float] = None
        self.last_error: Optional[LedgerError] = None
        self.history: List[RetryState] = [RetryState.PENDING]

    def _move(self, state: RetryState) -> None:
        self.state = state
        self.history.append(state)

    def record_failure(self, error: LedgerError) -> bool:
        """
        Returns True when another attempt is allowed; the tracker is then Waiting.
        """
        if self.state == RetryState.TERMINAL:
            raise RuntimeError("retry tracker already terminal")
        self.last_error = error
        if not error.retryable or self.retries >= self.policy.max_retries:
            self._move(RetryState.TERMINAL)
            return False
        self.deadline = self.clock.now() + self.policy.delay(self.retries)
        self._move(RetryState.WAITING)
        return True

    async def wait(self, cancel: Optional[CancelToken] = None) -> bool:
        """
        Sleep out the backoff. False (and Terminal) when cancelled before or after the wait.
        """
        if self.state != RetryState.WAITING or self.deadline is None:
            raise RuntimeError(f"cannot wait from state {self.state.value}")
        if cancel is not None and cancel.cancelled:
            self._move(RetryState.TERMINAL)
            return False

        remaining = self.deadline - self.clock.now()
        if remaining > 0:
            await self.clock.sleep(remaining)

        if cancel is not None and cancel.cancelled:
            self._move(RetryState.TERMINAL)
            return False

        self.retries += 1
        self.deadline = None
        self._move(RetryState.RETRYING)
        return True

    def finish(self) -> None:
        if self.state != RetryState.TERMINAL:
            self._move(RetryState.TERMINAL)
