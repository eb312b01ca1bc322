"""
Fail-open helpers for the request path.

Visitor experience beats enforcement strictness: a datastore error or timeout
while deciding access turns into "allow", never into an error page.
"""

import asyncio
from typing import Awaitable, TypeVar

from storeguard.config import get_settings

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float | None = None) -> T:
    """Await a datastore call with the configured timeout."""
    if timeout is None:
        timeout = get_settings().datastore_timeout
    return await asyncio.wait_for(awaitable, timeout=timeout)


async def fail_open(awaitable: Awaitable[T], default: T, event: str, **context) -> T:
    """Await `awaitable`; on any exception log `event` and return `default`."""
    try:
        return await awaitable
    except Exception as e:
        logger.warning(
            event,
            error=str(e) or type(e).__name__,
            error_type=type(e).__name__,
            **context,
        )
        return default
