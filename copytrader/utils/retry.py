import asyncio
from typing import Any, Awaitable, Callable, Optional

from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def backoff_delay_seconds(attempt: int, base_delay_ms: int) -> float:
    """Delay before attempt `attempt + 1`: base * 2^(attempt-1)."""
    return base_delay_ms * (2 ** (attempt - 1)) / 1000.0


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int,
    base_delay_ms: int,
    classify: Callable[[BaseException], Any],
    before_attempt: Optional[Callable[[], Awaitable[Any]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    op_name: str = "venue_call",
    **log_context,
) -> Any:
    """
    Run `func` with exponential backoff on retryable failures.

    Attempts are strictly sequential. `max_attempts` counts calls, not
    re-tries. Non-retryable errors and the error of the final attempt are
    re-raised unchanged, so the caller keeps the last underlying message.

    Args:
        func: Zero-arg coroutine factory, called once per attempt
        max_attempts: Total calls allowed
        base_delay_ms: Backoff base; no jitter
        classify: Maps an exception to an object with .retryable and .message
        before_attempt: Awaited before every attempt (rate gate)
        sleep: Injected for tests
    """
    attempt = 0
    while True:
        attempt += 1
        if before_attempt is not None:
            await before_attempt()
        try:
            return await func()
        except Exception as e:
            verdict = classify(e)
            if not verdict.retryable:
                logger.warning(
                    f"{op_name} failed with non-retryable error",
                    attempt=attempt,
                    error=verdict.message,
                    **log_context,
                )
                raise
            if attempt >= max_attempts:
                logger.warning(
                    f"Max attempts ({max_attempts}) exhausted for {op_name}",
                    error=verdict.message,
                    **log_context,
                )
                raise
            delay = backoff_delay_seconds(attempt, base_delay_ms)
            logger.warning(
                f"Transient error in {op_name}, retrying ({attempt}/{max_attempts})",
                error=verdict.message,
                wait=f"{delay:.2f}s",
                **log_context,
            )
            await sleep(delay)
