"""
Reliability utilities.

Retries a unit of work that lost a serialization or deadlock race in the
store. The wrapped callable must run its own transaction, so that a failed
attempt has already been rolled back when it is retried.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import DBAPIError, OperationalError

from dispatch_backend.app.core.config import settings

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    return None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError):
        return _sqlstate(exc) in RETRYABLE_SQLSTATES
    return False


class TransactionRetry:
    """
    Exponential-backoff retry for transient store conflicts.

    Up to ``max_retries`` further attempts are made after the first failure;
    the delay doubles from ``base_delay`` seconds. Non-retryable errors
    (domain errors included) propagate immediately.
    """
    def __init__(self, max_retries: int = 3, base_delay: float = 0.05):
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except DBAPIError as e:
                if not is_retryable(e) or attempt >= self.max_retries:
                    raise
                delay = self.base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Transient transaction failure, retrying",
                    extra={
                        "attempt": attempt,
                        "max_retries": self.max_retries,
                        "delay_seconds": delay,
                        "operation": getattr(func, "__qualname__", repr(func)),
                        "sqlstate": _sqlstate(e),
                    }
                )
                await asyncio.sleep(delay)


# Global instance used by the API layer
transaction_retry = TransactionRetry(
    max_retries=settings.transaction_max_retries,
    base_delay=settings.transaction_retry_base_delay,
)
