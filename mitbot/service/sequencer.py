from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional, Set, TypeVar

from mitbot.logging import get_logger
from mitbot.service.errors import RequestCancelledError, RequestTimeoutError

T = TypeVar("T")

logger = get_logger(__name__)


class RequestSequencer:
    """Runs at most one request per user; a newer request cancels the older one.

    A global semaphore caps how many requests run at once across all users,
    and an optional timeout bounds each request.
    """

    def __init__(
        self, max_concurrent: int = 30, *, timeout_seconds: Optional[float] = None
    ) -> None:
        self.max_concurrent = max(1, max_concurrent)
        self.timeout_seconds = timeout_seconds
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._active: Dict[str, asyncio.Task] = {}
        self._superseded: Set[asyncio.Task] = set()

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    @property
    def active_keys(self) -> list[str]:
        return [key for key, task in self._active.items() if not task.done()]

    async def run(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` for ``key``, superseding any request still running for it.

        Raises RequestCancelledError when a newer request for the same key
        arrives first, and RequestTimeoutError when the deadline passes.
        """
        previous = self._active.get(key)
        if previous is not None and not previous.done():
            self._superseded.add(previous)
            previous.cancel()
            logger.info("request_superseded", key=key)

        task = asyncio.ensure_future(self._guarded(func))
        self._active[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._superseded:
                raise RequestCancelledError(detail={"key": key}) from None
            raise
        finally:
            self._superseded.discard(task)
            if self._active.get(key) is task:
                del self._active[key]

    async def _guarded(self, func: Callable[[], Awaitable[T]]) -> T:
        async with self._get_semaphore():
            if self.timeout_seconds is None:
                return await func()
            try:
                return await asyncio.wait_for(func(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                logger.warning("request_timed_out", timeout_seconds=self.timeout_seconds)
                raise RequestTimeoutError(
                    detail={"timeout_seconds": self.timeout_seconds}
                ) from exc
