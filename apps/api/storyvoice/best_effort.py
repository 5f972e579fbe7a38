from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def attempt_best_effort(
    label: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> Optional[T]:
    """Run a side-channel coroutine; log and discard any failure, returning None."""
    try:
        return await func(*args, **kwargs)
    except Exception as exc:
        logger.warning("best-effort %s failed", label, exc_info=exc)
        return None
