"""
Speculative transitions.

Apply a change first, then confirm it against the authoritative state; if the
confirmation fails, undo the change with a compensating action. The enquiry
flow records its lead this way before the intent's completing swap.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

A = TypeVar("A")
C = TypeVar("C")


async def speculate(
    apply: Callable[[], Awaitable[A]],
    confirm: Callable[[A], Awaitable[Optional[C]]],
    compensate: Callable[[A], Awaitable[object]],
) -> Optional[C]:
    """
    Run ``apply``, then ``confirm`` with its result.

    If ``confirm`` returns a falsy value, ``compensate`` runs and that value
    is returned. If ``confirm`` raises, ``compensate`` runs and the exception
    propagates. ``apply`` failing means nothing was changed, so nothing is
    compensated.
    """
    applied = await apply()
    try:
        confirmed = await confirm(applied)
    except BaseException:
        await _compensate(compensate, applied)
        raise

    if not confirmed:
        await _compensate(compensate, applied)
    return confirmed


async def _compensate(compensate: Callable[[A], Awaitable[object]], applied: A):
    try:
        await compensate(applied)
    except Exception:
        logger.exception("Compensating action failed")
