"""
Cancellation Token
==================
Teardown guard for in-flight async results.

Persistence calls and order fetches are never cancelled on the wire.
When their owner (cart, sync loop, session) is torn down, the eventual
result is simply discarded instead of being applied to dead state.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Optional, Tuple

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Teardown flag owned by one component.

    Owners route every await whose result writes back into their state
    through ``guard``. Once cancelled a token stays cancelled.
    """

    def __init__(self, owner: str):
        self.owner = owner
        self.discarded_count = 0

        self._torn_down = asyncio.Event()
        self._reason: Optional[str] = None
        self._cancelled_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self._torn_down.is_set()

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "teardown"):
        """Mark the owner torn down. Later calls keep the first reason."""
        if self.is_cancelled:
            return

        self._reason = reason
        self._cancelled_at = datetime.utcnow()
        self._torn_down.set()

        logger.info(
            "Owner torn down, late results will be discarded",
            extra={"owner": self.owner, "reason": reason}
        )

    async def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """
        Sleep until cancelled or ``timeout`` seconds pass.

        Returns:
            True if the token was cancelled
        """
        if timeout is None:
            await self._torn_down.wait()
            return True

        try:
            await asyncio.wait_for(self._torn_down.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def guard(self, awaitable: Awaitable[Any]) -> Tuple[bool, Any]:
        """
        Await ``awaitable`` and report whether its result may be applied.

        Errors raised after cancellation are discarded along with the
        result; errors raised while still live propagate.

        Returns:
            (True, result) if still live, (False, None) if cancelled
            while in flight
        """
        try:
            result = await awaitable
        except Exception as e:
            if not self.is_cancelled:
                raise
            self._discard(e)
            return False, None

        if self.is_cancelled:
            self._discard()
            return False, None

        return True, result

    def _discard(self, error: Optional[Exception] = None):
        self.discarded_count += 1
        logger.debug(
            "Discarding late %s for %s", "error" if error else "result", self.owner,
            extra={"reason": self._reason, "error": str(error) if error else None}
        )

    def get_status(self) -> dict:
        return {
            "owner": self.owner,
            "is_cancelled": self.is_cancelled,
            "cancel_reason": self._reason,
            "cancelled_at": self._cancelled_at.isoformat() if self._cancelled_at else None,
            "discarded_count": self.discarded_count,
        }
