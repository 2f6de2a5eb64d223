"""Per-key single-writer queue for log entry upserts.

At most one write per key is in flight. A value submitted while a write is
running replaces any value still waiting, so the last value submitted locally
is also the last value written remotely.
"""

import asyncio
import datetime as dt
import logging
import uuid
from typing import Awaitable, Callable, Dict, Iterator, Optional, Tuple

from .errors import WriteError

logger = logging.getLogger(__name__)

WriteKey = Tuple[uuid.UUID, dt.date]
WriteFn = Callable[[WriteKey, int], Awaitable[object]]
FailureFn = Callable[[WriteKey, WriteError], Awaitable[None]]


class KeyedWriteQueue:
    def __init__(self, write: WriteFn, on_failure: Optional[FailureFn] = None):
        self._write = write
        self._on_failure = on_failure
        self._waiting: Dict[WriteKey, int] = {}
        self._latest: Dict[WriteKey, int] = {}
        self._workers: Dict[WriteKey, asyncio.Task] = {}

    def submit(self, key: WriteKey, value: int) -> None:
        """Queue ``value`` for ``key``. Must be called from the event loop."""
        self._waiting[key] = value
        self._latest[key] = value
        if key not in self._workers:
            loop = asyncio.get_running_loop()
            self._workers[key] = loop.create_task(self._drain(key))

    def pending(self, key: WriteKey) -> Optional[int]:
        """Last submitted value for ``key`` that is not yet confirmed."""
        return self._latest.get(key)

    def pending_items(self) -> Iterator[Tuple[WriteKey, int]]:
        return iter(list(self._latest.items()))

    @property
    def in_flight(self) -> int:
        return len(self._workers)

    async def _drain(self, key: WriteKey) -> None:
        try:
            while key in self._waiting:
                failure: Optional[WriteError] = None
                while key in self._waiting:
                    value = self._waiting.pop(key)
                    try:
                        await self._write(key, value)
                        failure = None
                    except WriteError as exc:
                        logger.error("Error updating log entry %s on %s: %s", key[0], key[1], exc)
                        failure = exc
                    except Exception as exc:
                        logger.exception("Unexpected error updating log entry %s on %s", key[0], key[1])
                        failure = WriteError(str(exc))
                # a newer successful write supersedes an older failure
                if failure is not None:
                    self._latest.pop(key, None)
                    if self._on_failure is not None:
                        # still registered as the worker, so flush() waits for this too;
                        # values submitted meanwhile are written on the next pass
                        await self._on_failure(key, failure)
        finally:
            self._workers.pop(key, None)
            self._latest.pop(key, None)

    async def flush(self) -> None:
        """Wait until every queued write, and its failure handling, has finished."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def aclose(self) -> None:
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._waiting.clear()
        self._latest.clear()
