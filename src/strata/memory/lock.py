"""Advisory lock files with stale-lock reclaim.

A lock is a file created with O_EXCL. Its existence means some writer holds
the memory root; if it is older than ``stale_after`` seconds the holder is
presumed dead and the file is reclaimed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager, contextmanager, suppress
from pathlib import Path
from typing import AsyncIterator, Iterator

from strata.errors import LockedError
from strata.memory.util import iso_timestamp

logger = logging.getLogger(__name__)

MEMORY_LOCK_RETRIES = 5
NOW_LOCK_RETRIES = 3
RETRY_DELAY = 0.2
STALE_AFTER = 60.0


class MemoryLock:
    """Exclusive lock on one lock file."""

    def __init__(
        self,
        path: Path,
        retries: int = MEMORY_LOCK_RETRIES,
        retry_delay: float = RETRY_DELAY,
        stale_after: float = STALE_AFTER,
        holder: str = "strata",
    ) -> None:
        self.path = Path(path)
        self.retries = retries
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self.holder = holder

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        token = {"pid": os.getpid(), "holder": self.holder, "timestamp": iso_timestamp()}
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(token, f)
        return True

    def _reclaim_if_stale(self) -> bool:
        """Delete the lock file if it is older than ``stale_after``."""
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            # Released between our create attempt and the stat.
            return True
        if age <= self.stale_after:
            return False
        logger.info("Reclaiming stale lock %s (age %.0fs)", self.path.name, age)
        self.path.unlink(missing_ok=True)
        return True

    def _attempts(self) -> Iterator[bool]:
        """Yield after each failed attempt; True means sleep before retrying."""
        attempt = 0
        while attempt < self.retries:
            if self._try_create():
                return
            if self._reclaim_if_stale():
                yield False
                continue
            attempt += 1
            logger.debug("Lock %s busy (attempt %d/%d)", self.path.name, attempt, self.retries)
            if attempt < self.retries:
                yield True
        raise LockedError(self.path)

    def acquire(self) -> None:
        for should_sleep in self._attempts():
            if should_sleep:
                time.sleep(self.retry_delay)

    async def acquire_async(self) -> None:
        for should_sleep in self._attempts():
            if should_sleep:
                await asyncio.sleep(self.retry_delay)

    def release(self) -> None:
        self.path.unlink(missing_ok=True)

    @contextmanager
    def hold(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    async def _heartbeat(self) -> None:
        """Keep the lock fresh while a long await (an LLM call) runs under it."""
        while True:
            await asyncio.sleep(self.stale_after / 3)
            try:
                os.utime(self.path)
            except FileNotFoundError:
                return

    @asynccontextmanager
    async def hold_async(self) -> AsyncIterator[None]:
        await self.acquire_async()
        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            yield
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            self.release()
