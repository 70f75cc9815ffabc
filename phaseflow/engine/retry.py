"""
Retry and timeout handling for node attempts.
"""

from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

from phaseflow.engine.errors import ExecutorError, NodeTimeout, WorkflowError
from phaseflow.engine.models import RetryPolicy


logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, float, WorkflowError], None]


def compute_backoff(policy: RetryPolicy, attempt: int) -> float:
    """Seconds to wait after the given 0-based attempt failed."""
    return policy.delay_for(attempt)


async def run_with_retry(
    attempt_fn: Callable[[int], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    timeout_ms: Optional[int] = None,
    node_id: Optional[str] = None,
    on_retry: Optional[RetryCallback] = None,
) -> T:
    """
    Run an attempt function with bounded retries and a per-attempt deadline.

    A timed out attempt counts as a failed attempt and is reported as
    ``NodeTimeout``; any other non-engine exception is wrapped in
    ``ExecutorError``. Errors marked non-retryable (cancellation,
    rejection, recursion limit) are raised immediately. When retries are
    exhausted the last error is raised unchanged.

    Args:
        attempt_fn: Called with the 0-based attempt number
        policy: Retry policy (None = a single attempt)
        timeout_ms: Deadline for each attempt
        node_id: Attached to errors that lack one
        on_retry: Called with (attempt, delay_seconds, error) before each wait
    """
    max_retries = policy.max_retries if policy else 0
    last_error: Optional[WorkflowError] = None

    for attempt in range(max_retries + 1):
        try:
            if timeout_ms:
                return await asyncio.wait_for(attempt_fn(attempt), timeout=timeout_ms / 1000.0)
            return await attempt_fn(attempt)
        except asyncio.TimeoutError:
            last_error = NodeTimeout(timeout_ms or 0, node_id)
        except WorkflowError as e:
            if e.node_id is None:
                e.node_id = node_id
            if not e.retryable:
                raise
            last_error = e
        except Exception as e:
            error = ExecutorError(str(e) or type(e).__name__, node_id)
            error.__cause__ = e
            last_error = error

        if attempt < max_retries:
            delay = compute_backoff(policy, attempt)
            logger.warning(
                f"Node '{node_id}' attempt {attempt + 1} failed ({last_error.kind}: "
                f"{last_error.message}); retrying in {delay * 1000:.0f}ms"
            )
            if on_retry:
                on_retry(attempt, delay, last_error)
            await asyncio.sleep(delay)

    raise last_error
