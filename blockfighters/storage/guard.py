"""
Operation guard — bounds how long a caller waits on a storage round trip.

A call that does not return within the bound raises OperationTimeout.
The underlying operation may still complete later; callers must treat
the outcome as unknown and re-check state before resubmitting.
"""

import concurrent.futures
from typing import Any, Callable, Optional, TypeVar

from blockfighters.errors import OperationTimeout
from blockfighters.observability.logging import get_logger

log = get_logger("operation_guard")

T = TypeVar("T")


class OperationGuard:
    """Runs operations on a worker pool and waits at most timeout_seconds."""

    def __init__(self, timeout_seconds: float = 8.0, max_workers: int = 16):
        self.timeout_seconds = timeout_seconds
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="bf-storage",
        )

    def call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        """Run fn(*args, **kwargs); raise OperationTimeout if it takes too long."""
        bound = self.timeout_seconds if timeout is None else timeout
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=bound)
        except concurrent.futures.TimeoutError:
            log.warning("operation_timeout", operation=operation, timeout_seconds=bound)
            raise OperationTimeout(
                f"{operation} did not complete within {bound}s",
                {"operation": operation, "timeout_seconds": bound},
            )

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
