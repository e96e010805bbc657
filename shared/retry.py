"""
Retry mechanism for resilient upstream calls.

Retries are driven by the status an operation reports rather than by exception
type alone: an attempt is retried when it returns (or raises with) a 429 or 5xx
status and attempts remain. Everything else is returned or raised immediately.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from shared.errors import GatewayError
from shared.logging import get_logger


logger = get_logger("gateway.retry")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 5,
                 base_delay: float = 0.25,
                 max_delay: Optional[float] = None,
                 exponential_base: float = 2.0,
                 jitter: float = 0.125):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        # Upper bound (seconds, exclusive) of the random offset added to each delay
        self.jitter = jitter

    @classmethod
    def from_milliseconds(cls, max_attempts: int, base_ms: int, jitter_ms: int) -> "RetryConfig":
        return cls(
            max_attempts=max_attempts,
            base_delay=base_ms / 1000.0,
            jitter=jitter_ms / 1000.0,
        )


@dataclass
class RetryOutcome:
    """Final response of a retried call and how many retries it took."""

    response: Any
    retry_attempts: int


def is_retryable_status(status: Optional[int]) -> bool:
    """429 and the 5xx class are treated as transient."""
    if status is None:
        return False
    return status == 429 or 500 <= status <= 599


def status_from_response(response: Any) -> Optional[int]:
    """Read an integer status from a response-like object."""
    for attr in ("status_code", "status"):
        value = getattr(response, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def status_from_exception(exc: BaseException) -> Optional[int]:
    """Read a status carried by an exception, directly or via its response.

    Gateway errors carry the status the gateway answers with, not one reported
    by the remote side, so they never count as transient.
    """
    if isinstance(exc, GatewayError):
        return None
    status = status_from_response(exc)
    if status is not None:
        return status
    response = getattr(exc, "response", None)
    if response is not None:
        return status_from_response(response)
    return None


def _calculate_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Calculate delay before the retry that follows ``attempt``."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))

    if config.max_delay is not None:
        delay = min(delay, config.max_delay)

    if config.jitter > 0:
        delay += (rng or random).uniform(0, config.jitter)

    return max(0.0, delay)


async def call_with_status_retry(
    operation: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    *,
    route: str = "unknown",
    identity_key: str = "unknown",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> RetryOutcome:
    """Invoke ``operation`` until it yields a non-retryable outcome or attempts run out.

    Exhausting every attempt on a retryable status returns the last response;
    when the final attempt raised, the exception propagates.
    """
    if config is None:
        config = RetryConfig()

    retry_attempts = 0

    for attempt in range(1, config.max_attempts + 1):
        has_next = attempt < config.max_attempts
        try:
            response = await operation()
        except Exception as e:
            status = status_from_exception(e)
            if not (has_next and is_retryable_status(status)):
                if retry_attempts:
                    logger.error(
                        "Upstream call failed after retries",
                        route=route,
                        identity_key=identity_key,
                        attempt=attempt,
                        status=status,
                        error=str(e),
                    )
                raise
        else:
            status = status_from_response(response)
            if not (has_next and is_retryable_status(status)):
                if retry_attempts and is_retryable_status(status):
                    logger.error(
                        "All retry attempts exhausted",
                        route=route,
                        identity_key=identity_key,
                        attempt=attempt,
                        status=status,
                    )
                return RetryOutcome(response=response, retry_attempts=retry_attempts)

        retry_attempts += 1
        delay = _calculate_delay(attempt, config, rng)

        logger.warning(
            "Retrying upstream call",
            route=route,
            identity_key=identity_key,
            attempt=attempt,
            status=status,
            delay_ms=int(delay * 1000),
        )

        await sleep(delay)

    # The final attempt always returns or raises above.
    raise RuntimeError("retry loop exhausted without an outcome")
