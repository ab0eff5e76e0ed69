"""
Call-site timing and logging wrapper.

Applied explicitly where a service call is made, e.g.
``await instrumented(service.create)(user_id, payload)``, so the
cross-cutting behaviour stays visible at the call site.
"""
from __future__ import annotations

import functools
import inspect
import logging
import time
from typing import Any, Callable

logger = logging.getLogger("notifycore.calls")


def instrumented(
    func: Callable[..., Any],
    *,
    name: str | None = None,
    log: logging.Logger | None = None,
) -> Callable[..., Any]:
    """
    Return a wrapper around ``func`` that logs its duration at DEBUG and
    logs failures before re-raising them. Works for sync and async callables.
    """
    operation = name or getattr(func, "__qualname__", repr(func))
    target = log or logger

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                target.warning(
                    "%s failed after %.2fms: %s: %s",
                    operation,
                    (time.perf_counter() - started) * 1000,
                    type(exc).__name__,
                    exc,
                )
                raise
            target.debug("%s completed in %.2fms", operation, (time.perf_counter() - started) * 1000)
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            target.warning(
                "%s failed after %.2fms: %s: %s",
                operation,
                (time.perf_counter() - started) * 1000,
                type(exc).__name__,
                exc,
            )
            raise
        target.debug("%s completed in %.2fms", operation, (time.perf_counter() - started) * 1000)
        return result

    return wrapper
