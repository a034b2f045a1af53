# optimistic.py

"""
Optimistic update helper shared by match actions and notification mutations.

The local change is applied first so the UI reflects it immediately, then the
remote call runs:

- success: the server's answer is applied (replace-on-confirm)
- domain conflict / not found: the caller's reconcile hook fetches the
  authoritative record and replaces local state with it (replace-on-conflict)
- anything else: the local change is rolled back and the error propagates

Mutations are never retried here; a retried confirm could double-apply.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from errors import DomainConflictError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimisticOutcome:
    confirmed: bool
    value: Any = None
    error: Optional[Exception] = None


async def apply_optimistically(
    label: str,
    apply_local: Callable[[], None],
    remote: Callable[[], Awaitable[Any]],
    rollback: Callable[[], None],
    on_confirm: Optional[Callable[[Any], None]] = None,
    on_conflict: Optional[Callable[[Exception], Awaitable[Any]]] = None,
) -> OptimisticOutcome:
    apply_local()
    try:
        result = await remote()
    except (DomainConflictError, NotFoundError) as e:
        if on_conflict is None:
            rollback()
            raise
        logger.warning(f"{label}: server refused ({e.tag}), reconciling with server state")
        try:
            reconciled = await on_conflict(e)
        except (Exception, asyncio.CancelledError):
            rollback()
            raise
        return OptimisticOutcome(confirmed=False, value=reconciled, error=e)
    except (Exception, asyncio.CancelledError) as e:
        logger.error(f"{label}: remote call failed, rolling back local change: {e!r}")
        rollback()
        raise

    if on_confirm is not None:
        on_confirm(result)
    logger.debug(f"{label}: confirmed by server")
    return OptimisticOutcome(confirmed=True, value=result)
