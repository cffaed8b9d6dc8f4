"""
Run-level deadline enforcement.

Cancels every in-flight request and pending retry wait when a run exceeds its
configured maximum duration.
"""

import asyncio
from typing import Awaitable, TypeVar

import structlog

from costpulse.core.exceptions import RunTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")



async def with_deadline(awaitable: Awaitable[T], timeout_seconds: float, job: str) -> T:
    """
    Await with a hard deadline.

    Raises:
        RunTimeoutError: when the deadline expires; the awaitable is cancelled.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.warning("run_timeout", job=job, timeout_seconds=timeout_seconds)
        raise RunTimeoutError(
            f"{job} exceeded its deadline of {timeout_seconds} seconds",
            code="run_timeout",
            details={"timeout_seconds": timeout_seconds},
        ) from e
