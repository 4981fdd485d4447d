"""
Step Resilience
===============

Timeout and retry wrappers for asynchronous triage steps.

A timed-out step is abandoned, not cancelled: the underlying call keeps
running in the background and whatever it eventually returns is ignored.
"""

import asyncio
from typing import Awaitable, Callable, Set, TypeVar

from helpdesk.core import StepTimeoutException
from helpdesk.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Strong references to abandoned step tasks until they finish
_abandoned: Set[asyncio.Future] = set()


def _discard_abandoned(task: asyncio.Future) -> None:
    _abandoned.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.debug(
            "Abandoned step finished with error",
            extra={"error": str(task.exception())}
        )


async def with_timeout(
    step_fn: Callable[[], Awaitable[T]],
    timeout_ms: int,
    step: str
) -> T:
    """
    Run ``step_fn`` with a time budget.

    Raises:
        StepTimeoutException: If the step has not completed within ``timeout_ms``
    """
    task = asyncio.ensure_future(step_fn())
    done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)

    if task in done:
        return task.result()

    _abandoned.add(task)
    task.add_done_callback(_discard_abandoned)
    logger.error(
        "Agent step timed out",
        extra={"step": step, "timeout_ms": timeout_ms}
    )
    raise StepTimeoutException(step, timeout_ms)


async def with_retry(
    step_fn: Callable[[], Awaitable[T]],
    retries: int,
    step: str,
    backoff_ms: int = 100,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run ``step_fn`` up to ``retries + 1`` times.

    Waits ``backoff_ms * attempt_number`` between attempts. When every
    attempt fails, the last error propagates.
    """
    last_error: Exception | None = None

    for attempt in range(1, retries + 2):
        try:
            return await step_fn()
        except Exception as e:
            last_error = e
            if attempt > retries:
                break
            delay_ms = backoff_ms * attempt
            logger.warning(
                "Retrying agent step",
                extra={
                    "step": step,
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                    "error": str(e)
                }
            )
            await sleep(delay_ms / 1000)

    raise last_error
