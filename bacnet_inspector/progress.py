"""
Progress reporting and cooperative cancellation helpers.
"""

import logging
from typing import Any, Callable, Optional

from .errors import OperationCancelled

logger = logging.getLogger(__name__)

# (phase label, operation text, percent 0-100)
ProgressCallback = Callable[[str, str, int], None]


def emit_progress(
    callback: Optional[ProgressCallback], phase: str, text: str, percent: int
) -> None:
    """Invoke a progress callback if one is set.

    The percent is clamped to 0-100. Callbacks may be invoked from a
    worker thread.
    """
    if callback is None:
        return
    callback(phase, text, max(0, min(100, int(percent))))


def percent_of(done: int, total: int) -> int:
    """Integer percentage of ``done`` over ``total``; 0 when the total is unknown."""
    if total <= 0:
        return 0
    return min(100, done * 100 // total)


def is_cancelled(token: Any) -> bool:
    return token is not None and bool(token.is_set())


def check_cancelled(token: Any, where: str = "") -> None:
    """Raise OperationCancelled if the cancellation token is set.

    Args:
        token: Any object with an ``is_set()`` method, typically a threading.Event
        where: Short label of the loop being interrupted, used for logging
    """
    if is_cancelled(token):
        logger.info("Cancellation observed%s", f" in {where}" if where else "")
        raise OperationCancelled()
