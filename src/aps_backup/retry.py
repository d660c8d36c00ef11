"""Retry policy and timeout guard used at every network boundary."""

import logging
import time
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, Callable, TypeVar

import requests

from .errors import OperationTimeout
from .rate_limiter import AdaptiveRateLimiter
from .utils import exponential_backoff_with_jitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def response_status(exc: BaseException) -> int | None:
    """HTTP status attached to a requests exception, if any."""
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def retry_after_seconds(exc: BaseException) -> float | None:
    """Parse a numeric Retry-After header from a failed response."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def is_retryable(exc: BaseException) -> bool:
    """Transient transport failures and throttling/server errors are retried."""
    if isinstance(
        exc,
        (
            requests.ConnectionError,
            requests.Timeout,
            requests.exceptions.ChunkedEncodingError,
        ),
    ):
        return True
    if isinstance(exc, requests.HTTPError):
        return response_status(exc) in RETRYABLE_STATUS
    return False


@dataclass
class RetryPolicy:
    """Attempt count and exponential backoff shared by all API calls."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0

    def call(
        self,
        fn: Callable[[], T],
        description: str,
        limiter: AdaptiveRateLimiter | None = None,
        stop_event: Event | None = None,
    ) -> T:
        """
        Run ``fn`` until it succeeds, fails permanently, or attempts run out.

        The last exception is re-raised unchanged so callers can map it to
        their own error type.
        """
        attempts = max(1, self.max_attempts)
        attempt = 0
        while True:
            if limiter is not None:
                limiter.wait(stop_event)
            try:
                result = fn()
            except Exception as e:
                if not is_retryable(e) or attempt == attempts - 1:
                    raise

                retry_after = retry_after_seconds(e)
                if response_status(e) == 429 and limiter is not None:
                    limiter.record_rate_limit(retry_after)

                wait_time = retry_after if retry_after is not None else exponential_backoff_with_jitter(
                    attempt, self.backoff_base, self.backoff_factor, self.backoff_max
                )
                logger.warning(
                    "%s failed (%s), retrying in %.1fs [%d/%d]",
                    description,
                    e,
                    wait_time,
                    attempt + 1,
                    attempts,
                )
                if stop_event is not None:
                    if stop_event.wait(wait_time):
                        raise
                else:
                    time.sleep(wait_time)
                attempt += 1
            else:
                if limiter is not None:
                    limiter.record_success()
                return result


def _release(value: Any) -> None:
    """Close a result nobody is waiting for any more."""
    close = getattr(value, "close", None)
    if callable(close):
        try:
            close()
        except Exception as e:
            logger.debug("Closing abandoned result failed: %s", e)


def call_with_timeout(
    fn: Callable[..., T],
    timeout: float | None,
    description: str,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Race ``fn`` against a timer.

    The call runs on a daemon thread; if it has not finished after
    ``timeout`` seconds an OperationTimeout is raised in the caller and the
    worker is abandoned. Only the operation fails, never the process. A
    result that arrives after the caller gave up is closed if it can be.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)

    outcome: dict[str, Any] = {}
    lock = Lock()
    done = Event()

    def runner() -> None:
        try:
            value = fn(*args, **kwargs)
        except BaseException as e:  # re-raised in the calling thread
            with lock:
                outcome["error"] = e
        else:
            with lock:
                abandoned = outcome.get("abandoned", False)
                if not abandoned:
                    outcome["value"] = value
            if abandoned:
                _release(value)
        finally:
            done.set()

    Thread(target=runner, name=f"guard:{description}"[:60], daemon=True).start()

    done.wait(timeout)
    with lock:
        if "value" not in outcome and "error" not in outcome:
            outcome["abandoned"] = True
            raise OperationTimeout(description, timeout)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
