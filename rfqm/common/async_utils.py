from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")

RetryErrorHandler = Callable[[Exception, int, int], None]


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    delay_seconds: float,
    factor: float,
    max_attempts: int,
    on_error: RetryErrorHandler | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is exhausted.

    The wait before attempt ``n + 1`` is ``delay_seconds * factor ** (n - 1)``.
    ``on_error`` receives the error, the attempt number and the attempts remaining.
    The last error is re-raised once no attempts remain.
    """
    attempts = max(1, int(max_attempts))
    wait_seconds = max(0.0, float(delay_seconds))

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            remaining = attempts - attempt
            if on_error is not None:
                on_error(error, attempt, remaining)
            if remaining <= 0:
                raise
            if wait_seconds > 0:
                await asyncio.sleep(wait_seconds)
            wait_seconds *= max(1.0, float(factor))

    raise RuntimeError("retry_with_backoff exhausted without a result")
