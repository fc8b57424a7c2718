"""Function retryer used to wrap provider requests.

Built on ``tenacity`` with a configurable back-off algorithm and support for
cancellation through a ``threading.Event``.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

import tenacity

from objstore.errors import RetriesAbortedError, RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SQRT5 = math.sqrt(5)
_PHI = (1 + _SQRT5) / 2


class Algorithm(str, enum.Enum):
    """Algorithm used to calculate the delay between attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIBONACCI = "fibonacci"


@dataclass
class RetryContext:
    """State passed to the retried function and to the option hooks."""

    attempt: int = 0
    cancel: threading.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


ShouldRetry = Callable[[RetryContext, Any, "BaseException | None"], bool]
LogHook = Callable[[RetryContext, Any, "BaseException | None"], None]
CleanupHook = Callable[[Any], None]


@dataclass(frozen=True)
class RetryerOptions:
    max_retries: int = 3
    algorithm: Algorithm = Algorithm.FIBONACCI
    # Delays are in seconds
    min_delay: float = 0.05
    max_delay: float = 2.5
    should_retry: ShouldRetry | None = None
    log: LogHook | None = None
    cleanup: CleanupHook | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise ValueError("delays must satisfy 0 <= min_delay <= max_delay")


@dataclass(frozen=True)
class Retryer:
    """Executes a function until it succeeds, retries are exhausted or it's cancelled."""

    options: RetryerOptions = field(default_factory=RetryerOptions)

    def do(self, fn: Callable[[RetryContext], T], cancel: threading.Event | None = None) -> T:
        """Run ``fn`` until successful.

        Raises:
            RetriesExhaustedError: Every attempt failed (or was rejected by ``should_retry``).
            RetriesAbortedError: ``cancel`` was set before an attempt or while sleeping.
            Exception: Any error ``should_retry`` declines to retry, unchanged.
        """
        ctx = RetryContext(cancel=cancel)

        def attempt() -> T:
            ctx.attempt += 1
            if ctx.cancelled:
                raise RetriesAbortedError(ctx.attempt - 1)
            return fn(ctx)

        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.options.max_retries),
            wait=self._wait,
            retry=lambda state: self._retry(ctx, state),
            before_sleep=lambda state: self._before_sleep(ctx, state),
            sleep=lambda seconds: self._sleep(ctx, seconds),
            reraise=False,
        )

        try:
            return retrying(attempt)
        except tenacity.RetryError as exc:
            outcome = exc.last_attempt
            if outcome.failed:
                raise RetriesExhaustedError(
                    self.options.max_retries, outcome.exception()
                ) from outcome.exception()
            raise RetriesExhaustedError(
                self.options.max_retries, payload=outcome.result()
            ) from None

    def duration(self, attempt: int) -> float:
        """Return the number of seconds to sleep after the given attempt."""
        if self.options.algorithm is Algorithm.LINEAR:
            n = float(attempt)
        elif self.options.algorithm is Algorithm.EXPONENTIAL:
            n = float(2**attempt)
        else:
            n = float(round(_PHI**attempt / _SQRT5))

        return min(self.options.max_delay, max(self.options.min_delay, n * self.options.min_delay))

    def _wait(self, state: tenacity.RetryCallState) -> float:
        return self.duration(state.attempt_number)

    def _retry(self, ctx: RetryContext, state: tenacity.RetryCallState) -> bool:
        outcome = state.outcome
        exc = outcome.exception() if outcome.failed else None
        if isinstance(exc, RetriesAbortedError):
            return False

        payload = None if outcome.failed else outcome.result()
        if self.options.should_retry is not None:
            return self.options.should_retry(ctx, payload, exc)

        return exc is not None

    def _before_sleep(self, ctx: RetryContext, state: tenacity.RetryCallState) -> None:
        outcome = state.outcome
        exc = outcome.exception() if outcome.failed else None
        payload = None if outcome.failed else outcome.result()

        if self.options.log is not None:
            self.options.log(ctx, payload, exc)

        # The payload from the final attempt is returned to the caller, so it's never cleaned up
        if self.options.cleanup is not None:
            self.options.cleanup(payload)

    def _sleep(self, ctx: RetryContext, seconds: float) -> None:
        if ctx.cancel is None:
            time.sleep(seconds)
            return
        if ctx.cancel.wait(seconds):
            raise RetriesAbortedError(ctx.attempt)


def log_retry(ctx: RetryContext, payload: Any, exc: BaseException | None) -> None:
    """Default log hook, records that a retry is about to happen."""
    logger.warning(
        "retrying request attempt=%s error=%s",
        ctx.attempt,
        exc,
        extra={"extra": {"attempt": ctx.attempt, "error": str(exc)}},
    )
