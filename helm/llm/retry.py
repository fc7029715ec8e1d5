import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from helm.config import RetryPolicy
from helm.core.cancel import Cancelled
from helm.logging import get_logger

_logger = get_logger(__name__)

RETRYABLE_STATUS = frozenset({408, 409, 429})


class ModelError(Exception):
    """Failure reported by the model stream itself rather than raised by the transport."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.retryable = retryable


def status_code_of(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, Cancelled):
        return False
    if isinstance(exc, ModelError) and exc.retryable is not None:
        return exc.retryable

    code = status_code_of(exc)
    if code is not None:
        return code in RETRYABLE_STATUS or code >= 500

    return isinstance(exc, TimeoutError | ConnectionError)


def _parse_retry_after(value: str) -> float | None:
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def retry_after_of(exc: BaseException | None) -> float | None:
    """Server-provided delay in seconds, if the failure carries one."""
    if exc is None:
        return None
    hint = getattr(exc, "retry_after", None)
    if isinstance(hint, int | float):
        return max(0.0, float(hint))

    headers = getattr(getattr(exc, "response", None), "headers", None) or getattr(exc, "headers", None)
    if not headers:
        return None
    if (ms := headers.get("retry-after-ms")) is not None:
        try:
            return max(0.0, float(ms) / 1000)
        except ValueError:
            pass
    if (value := headers.get("retry-after")) is not None:
        return _parse_retry_after(str(value))
    return None


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    if retry_after is not None:
        return retry_after
    delay = policy.base_delay * 2 ** (attempt - 1)
    delay *= 1 + policy.jitter * (2 * rng() - 1)
    return min(delay, policy.max_delay)


class wait_backoff(wait_base):
    def __init__(self, policy: RetryPolicy, rng: Callable[[], float] = random.random):
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return backoff_delay(retry_state.attempt_number, self.policy, retry_after_of(exc), self.rng)


def retrying(
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]],
    before_sleep: Callable[[RetryCallState], None] | None = None,
) -> AsyncRetrying:
    return AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_backoff(policy),
        sleep=sleep,
        before_sleep=before_sleep,
        reraise=True,
    )
