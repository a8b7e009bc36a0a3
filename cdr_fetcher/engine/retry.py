"""Bounded exponential-backoff retry policy."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from threading import Event
from typing import Callable, Optional, TypeVar

import structlog

from .errors import FetchCancelledError, RetryExhaustedError, TransientHttpError, is_retryable

T = TypeVar("T")

RetryCallback = Callable[[int, float, BaseException], None]


@dataclass
class RetryState:
    """Progress of one ``execute`` call; never shared between operations."""

    attempt: int = 0
    last_error: BaseException | None = None


class RetryExecutor:
    """Run a zero-argument operation, retrying transient failures with backoff.

    ``max_attempts`` is the total number of attempts, so ``max_attempts=1``
    disables retrying. The delay before the retry that follows attempt ``n``
    (counted from 0) is ``backoff_base * 2**n`` capped at ``max_delay``, plus
    up to ``jitter`` of that value chosen at random. A ``Retry-After`` hint on a
    transient HTTP error raises the delay but never lowers it.

    A ``cancel`` event passed to ``execute`` stops further attempts once set.
    Without an injected ``sleep`` the backoff waits on that event, so setting
    it also cuts the current delay short.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        *,
        jitter: float = 0.0,
        max_delay: float = 60.0,
        sleep: Optional[Callable[[float], None]] = None,
        on_retry: Optional[RetryCallback] = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_base < 0 or jitter < 0 or max_delay < 0:
            raise ValueError("backoff_base, jitter and max_delay must be non-negative")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.jitter = jitter
        self.max_delay = max_delay
        self._sleep = sleep
        self._on_retry = on_retry
        self.logger = logger or structlog.get_logger("cdr_fetcher.retry")

    def execute(
        self,
        operation: Callable[[], T],
        *,
        label: str | None = None,
        cancel: Event | None = None,
    ) -> T:
        state = RetryState()
        while True:
            _check_cancel(cancel, label, state.last_error)
            try:
                return operation()
            except Exception as exc:  # noqa: BLE001 - classified below
                if not is_retryable(exc):
                    raise
                state.last_error = exc
                attempts_made = state.attempt + 1
                if attempts_made >= self.max_attempts:
                    self.logger.warning(
                        "retry_exhausted",
                        operation=label,
                        attempts=attempts_made,
                        error=str(exc),
                    )
                    raise RetryExhaustedError(attempts_made, exc) from exc
                _check_cancel(cancel, label, exc)
                delay = self.compute_delay(state.attempt, exc)
                self.logger.info(
                    "retry_scheduled",
                    operation=label,
                    attempt=attempts_made,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                if self._on_retry is not None:
                    self._on_retry(attempts_made, delay, exc)
                self._pause(delay, cancel)
                state.attempt += 1

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        delay = min(self.max_delay, self.backoff_base * (2**attempt))
        if self.jitter:
            delay += random.uniform(0.0, self.jitter * delay)
        if isinstance(error, TransientHttpError) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self.max_delay))
        return delay

    def _pause(self, delay: float, cancel: Event | None) -> None:
        if self._sleep is not None:
            self._sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)


def _check_cancel(cancel: Event | None, label: str | None, last_error: BaseException | None) -> None:
    if cancel is None or not cancel.is_set():
        return
    error = FetchCancelledError(f"Cancelled {label or 'operation'} after a sibling fetch failed")
    if last_error is not None:
        raise error from last_error
    raise error


__all__ = ["RetryCallback", "RetryExecutor", "RetryState"]
