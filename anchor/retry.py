"""Timeout, bounded retry with exponential backoff, and cancellation."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import AnchorError, QueryCancelled, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures every backend treats as retryable, on top of its own library errors.
BASE_TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientServiceError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget passed down to every externally billed call."""

    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 10.0
    timeout: float = 30.0

    def retrying(self, transient: Tuple[Type[BaseException], ...]) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_initial,
                min=self.backoff_initial,
                max=self.backoff_max,
            ),
            retry=retry_if_exception_type(transient),
            before_sleep=_log_retry,
            reraise=True,
        )


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Transient failure in %s (attempt %d): %s",
        getattr(state.fn, "__qualname__", "call"),
        state.attempt_number,
        exc,
    )


class CancellationToken:
    """Thread-safe flag checked before each externally billed call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self._event.is_set():
            raise QueryCancelled("Query was cancelled", stage=stage)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    transient: Tuple[Type[BaseException], ...],
    error_cls: Type[AnchorError],
    stage: str,
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """
    Run ``fn`` under ``policy``, retrying only ``transient`` failures.

    Args:
        fn: Zero-argument callable performing the external call
        policy: Retry budget and backoff settings
        transient: Exception types that may be retried
        error_cls: Error raised once the budget is exhausted
        stage: Pipeline stage name used in error context
        cancel_token: Checked before every attempt

    Returns:
        Whatever ``fn`` returns

    Raises:
        error_cls: After ``policy.max_attempts`` transient failures, or on
            the first non-transient backend failure
        QueryCancelled: If the token is cancelled before an attempt
    """
    attempts = 0
    try:
        for attempt in policy.retrying(transient):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled(stage)
                return fn()
    except AnchorError as exc:
        if isinstance(exc, TransientServiceError):
            raise error_cls(
                f"{stage} failed after {attempts} attempt(s): {exc}",
                stage=stage,
                attempts=attempts,
            ) from exc
        raise
    except transient as exc:
        raise error_cls(
            f"{stage} failed after {attempts} attempt(s): {exc}",
            stage=stage,
            attempts=attempts,
        ) from exc
    except Exception as exc:
        raise error_cls(
            f"{stage} failed: {exc}",
            stage=stage,
            attempts=attempts,
        ) from exc
    raise error_cls(f"{stage} made no attempt", stage=stage, attempts=attempts)
