"""
Retrying API Client

Wraps calls to the billing/advisor/budget source with bounded exponential
backoff. Retry control is an explicit state machine (RetryState) and sleeping
goes through an injected coroutine, so the whole policy is testable without real
delays. Backoff waits are the only suspension points besides the request itself;
cancelling the calling task (run deadline) cancels any pending wait.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar

import structlog
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)

from costpulse.core.exceptions import (
    CredentialError,
    SourceError,
    SourceRejectionError,
    SourceRequestError,
    TransientSourceError,
)
from costpulse.services.scheduler.metrics import SOURCE_REQUEST_ATTEMPTS

logger = structlog.get_logger()

T = TypeVar("T")

# Fragments Azure uses when a dataset is unavailable for a subscription/offer type.
REJECTION_MARKERS = (
    "not supported",
    "notsupported",
    "unsupported",
    "offer type",
    "subscriptionnotregistered",
    "missingsubscriptionregistration",
    "is not registered",
    "billingaccountnotfound",
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: initial_delay, doubling per attempt, each wait capped at
    max_delay. Jitter adds up to jitter_ratio of the un-jittered delay, which keeps
    consecutive waits increasing as long as jitter_ratio < multiplier - 1.
    """
    max_attempts: int = 5
    initial_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter_ratio: float = 0.25

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        )

    def delay_for(self, failed_attempt: int, rand: float = 0.0) -> float:
        """Wait before the attempt following `failed_attempt` (1-based)."""
        base = self.initial_delay * (self.multiplier ** (failed_attempt - 1))
        return min(base + base * self.jitter_ratio * rand, self.max_delay)


class RetryPhase(str, Enum):
    READY = "ready"          # next attempt may start
    IN_FLIGHT = "in_flight"
    WAITING = "waiting"      # backing off before next attempt
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryState:
    """State machine for one logical request."""
    policy: RetryPolicy
    phase: RetryPhase = RetryPhase.READY
    attempt: int = 0
    next_delay: Optional[float] = None
    last_error: Optional[SourceError] = None
    waits: List[float] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (RetryPhase.SUCCEEDED, RetryPhase.FAILED)

    @property
    def total_wait(self) -> float:
        return sum(self.waits)

    def start_attempt(self) -> int:
        if self.phase not in (RetryPhase.READY, RetryPhase.WAITING):
            raise RuntimeError(f"cannot start an attempt from phase {self.phase.value}")
        self.attempt += 1
        self.next_delay = None
        self.phase = RetryPhase.IN_FLIGHT
        return self.attempt

    def succeed(self) -> None:
        self.phase = RetryPhase.SUCCEEDED

    def fail(self, error: SourceError, rand: float = 0.0) -> Optional[float]:
        """
        Record a failed attempt. Returns the wait before the next attempt, or None
        when the state became terminal (non-transient error or attempts exhausted).
        """
        self.last_error = error
        if not isinstance(error, TransientSourceError) or self.attempt >= self.policy.max_attempts:
            self.phase = RetryPhase.FAILED
            return None
        self.next_delay = self.policy.delay_for(self.attempt, rand)
        self.waits.append(self.next_delay)
        self.phase = RetryPhase.WAITING
        return self.next_delay


def classify_error(exc: BaseException) -> SourceError:
    """Map SDK/transport exceptions onto the source error taxonomy."""
    if isinstance(exc, SourceError):
        return exc

    if isinstance(exc, ClientAuthenticationError):
        return CredentialError(f"Authentication failed: {exc}", code="auth_failed", status_code=401)

    if isinstance(exc, HttpResponseError):
        status = exc.status_code
        if status == 429 or (status is not None and status >= 500):
            return TransientSourceError(f"Source returned {status}", code="throttled_or_server_error",
                                        status_code=status)
        error_code = getattr(getattr(exc, "error", None), "code", "") or ""
        text = f"{error_code} {exc.message or ''}".lower()
        if any(marker in text for marker in REJECTION_MARKERS):
            return SourceRejectionError(f"Dataset unsupported: {exc.message}", code="source_rejection",
                                        status_code=status)
        if status == 401:
            return CredentialError(f"Authentication refused: {exc.message}", code="auth_failed",
                                   status_code=status)
        return SourceRequestError(f"Source rejected request ({status}): {exc.message}", code="request_failed",
                                  status_code=status)

    if isinstance(exc, (ServiceRequestError, ServiceResponseError, ConnectionError, asyncio.TimeoutError,
                        TimeoutError)):
        return TransientSourceError(f"Transport failure: {type(exc).__name__}: {exc}", code="transport_error")

    return SourceRequestError(f"Unexpected source failure: {type(exc).__name__}: {exc}", code="unexpected")


class RetryingClient:
    """
    Executes source requests under a per-attempt timeout with bounded retry.

    Args:
        policy: backoff policy.
        sleep: coroutine used for backoff waits (asyncio.sleep in production).
        rand: jitter source returning a float in [0, 1).
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rand = rand

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float,
        description: str = "source_request",
        **log_context,
    ) -> T:
        """
        Run `operation` until it succeeds, fails non-transiently, or attempts run out.

        Raises:
            SourceError: the last classified error once the state is terminal.
        """
        state = RetryState(self.policy)
        while True:
            attempt = state.start_attempt()
            logger.debug("source_request_attempt", request=description, attempt=attempt, **log_context)
            try:
                result = await asyncio.wait_for(operation(), timeout=timeout)
            except Exception as exc:
                error = classify_error(exc)
                delay = state.fail(error, self._rand())
                SOURCE_REQUEST_ATTEMPTS.labels(request=description, outcome=type(error).__name__).inc()
                if delay is None:
                    logger.warning(
                        "source_request_failed",
                        request=description,
                        attempt=attempt,
                        error_type=type(error).__name__,
                        error=error.message,
                        retryable=isinstance(error, TransientSourceError),
                        **log_context,
                    )
                    if error is exc:
                        raise
                    raise error from exc
                logger.warning(
                    "source_request_retry",
                    request=description,
                    attempt=attempt,
                    wait_seconds=round(delay, 3),
                    error=error.message,
                    **log_context,
                )
                await self._sleep(delay)
                continue

            state.succeed()
            SOURCE_REQUEST_ATTEMPTS.labels(request=description, outcome="success").inc()
            if attempt > 1:
                logger.info("source_request_recovered", request=description, attempt=attempt,
                            total_wait_seconds=round(state.total_wait, 3), **log_context)
            return result
