from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def always(exc: BaseException) -> bool:
    return True


def is_lock_error(exc: BaseException) -> bool:
    # sqlite reports both "database is locked" and "database table is locked".
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with a fixed (or custom) backoff.

    One policy object is shared by the store, the schema manager and the
    metadata synchronizer so retry timing is configured in a single place.
    """

    max_attempts: int = 3
    delay_sec: float = 1.0
    backoff: Optional[Callable[[int], float]] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_sec < 0:
            raise ValueError(f"delay_sec must be >= 0, got {self.delay_sec}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.backoff is not None:
            return max(0.0, float(self.backoff(attempt)))
        return self.delay_sec

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_if: Callable[[BaseException], bool] = always,
        label: str = "operation",
    ) -> T:
        """
        Await ``operation()`` until it succeeds or the attempt ceiling is hit.

        Exceptions rejected by ``retry_if`` propagate immediately. After the
        last attempt the final exception propagates unchanged.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not retry_if(exc) or attempt >= self.max_attempts:
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt,
                    self.max_attempts,
                    wait,
                    exc,
                )
                await asyncio.sleep(wait)

