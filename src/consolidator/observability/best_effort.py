"""
Fire-and-forget execution for observability side effects.

Audit trails and similar side channels must never fail the operation that
produced them. ``fire_and_forget`` awaits the side effect, logs any failure
and reports whether it went through.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable

logger = logging.getLogger(__name__)


async def fire_and_forget(
    operation: Awaitable[object],
    description: str,
    *,
    log: logging.Logger | None = None,
) -> bool:
    """
    Await a best-effort side effect, logging instead of raising on failure.

    Args:
        operation: Awaitable performing the side effect.
        description: Human-readable label used in the warning log line.
        log: Logger to report failures on (defaults to this module's logger).

    Returns:
        True if the side effect completed, False if it raised.
    """
    try:
        await operation
    except Exception as e:
        (log or logger).warning("Failed to %s: %s", description, e)
        return False
    return True


__all__ = ["fire_and_forget"]
