"""
Retry helpers for Kubernetes API calls.

Only the operator's own API-server traffic is retried in place. Calls to
the OCI Database service or a CDB gateway are never retried here: their
retries are requeues decided by the reconciler.
"""
import asyncio
from typing import Callable, Optional, Tuple, Type

import aiohttp
from kubernetes_asyncio.client import ApiException
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from oradb_operator.config.logging import get_logger

logger = get_logger(__name__)

# Request timeout, throttling and server-side failures
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_k8s_error(exception: BaseException) -> bool:
    """True for API-server failures worth repeating the same request for."""
    if isinstance(exception, ApiException):
        return exception.status in RETRYABLE_STATUS_CODES
    return isinstance(exception, (aiohttp.ClientConnectionError, asyncio.TimeoutError))


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning(
        "k8s_api_call_failed_retrying",
        function=getattr(state.fn, "__name__", None),
        attempt=state.attempt_number,
        delay_seconds=round(state.next_action.sleep, 2) if state.next_action else None,
        error_type=type(error).__name__,
        status_code=getattr(error, "status", None),
        error=str(error),
    )


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
) -> Callable:
    """
    Decorate a coroutine so retryable API-server failures are repeated.

    The delay before retry ``n`` is ``initial_delay * exponential_base ** (n - 1)``,
    capped at ``max_delay``. After ``max_retries`` retries the last error
    is re-raised unchanged.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between delays
        retry_on: Extra exception types treated as retryable

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=2.0)
        async def replace_status(self, resource):
            ...
    """
    def should_retry(error: BaseException) -> bool:
        return is_retryable_k8s_error(error) or bool(retry_on and isinstance(error, retry_on))

    return retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, exp_base=exponential_base, max=max_delay),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
