"""
Bounded, cancellable polling for asynchronous upstream jobs.

Any tier adapter that submits a job and waits for it to finish uses
poll_until instead of a hand-written sleep loop. The helper stops after a
fixed number of attempts, so the worst-case wait is max_attempts * interval.
Cancelling the awaiting task cancels the pending sleep immediately.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from ..errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    max_attempts: int,
    interval: float,
    description: str = "job",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Call fetch until is_done(result) is true or the attempt ceiling is hit.

    Args:
        fetch: Coroutine function returning the latest job state
        is_done: Predicate deciding whether polling can stop
        max_attempts: Maximum number of fetch calls
        interval: Seconds to wait between calls
        description: Label used in log and error messages
        sleep: Optional sleep override (tests pass a no-op)

    Returns:
        The first result for which is_done returned True

    Raises:
        PollTimeoutError: If the job never finished
        Exception: Anything raised by fetch is propagated unchanged
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda result: not is_done(result)),
        sleep=sleep or asyncio.sleep,
        before_sleep=lambda state: logger.debug(
            f"Polling {description}: attempt {state.attempt_number}/{max_attempts} not done"
        ),
    )

    async def _call() -> T:
        return await fetch()

    try:
        return await retrying(_call)
    except RetryError as e:
        logger.warning(f"Polling {description} gave up after {max_attempts} attempts")
        raise PollTimeoutError(
            f"{description} did not finish after {max_attempts} polls",
            attempts=max_attempts,
        ) from e
