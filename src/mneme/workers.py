"""Background extraction: fire-and-forget remember() with bounded concurrency and a timeout."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from mneme.exceptions import MnemeError
from mneme.graph.extractor import Extractor
from mneme.types import ProcessResult

logger = logging.getLogger(__name__)

IndexHook = Callable[[str, str], Awaitable[None]]


@dataclass
class WorkerStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class BackgroundExtractor:
    """Runs ``Extractor.process_and_store`` off the caller's path.

    Extraction runs on a worker thread so the event loop stays free, and the
    timeout bounds the wait for it. Failures and timeouts are logged and
    counted, never raised to the submitter. Cancelling a task (or calling
    :meth:`close`) propagates. ``on_stored`` is awaited with
    ``(user_id, memory_id)`` for every memory a finished batch stored.
    """

    def __init__(
        self,
        extractor: Extractor,
        max_workers: int = 4,
        timeout: float = 30.0,
        on_stored: IndexHook | None = None,
    ) -> None:
        self.extractor = extractor
        self.timeout = timeout
        self.on_stored = on_stored
        self.stats = WorkerStats()
        self._semaphore = asyncio.Semaphore(max(1, max_workers))
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, user_id: str, text: str, conversation_id: str = "") -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(user_id, text, conversation_id))
        self.stats.submitted += 1
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, user_id: str, text: str, conversation_id: str) -> ProcessResult | None:
        async with self._semaphore:
            try:
                result = await asyncio.wait_for(
                    self._process(user_id, text, conversation_id), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                self.stats.timed_out += 1
                logger.warning("background extraction for %s timed out after %.1fs", user_id, self.timeout)
                return None
            except (MnemeError, ValueError) as exc:
                self.stats.failed += 1
                logger.warning("background extraction for %s failed: %s", user_id, exc)
                return None
            if self.on_stored is not None:
                for memory_id in result.memory_ids:
                    await self.on_stored(user_id, memory_id)
        self.stats.completed += 1
        return result

    async def _process(self, user_id: str, text: str, conversation_id: str) -> ProcessResult:
        return await asyncio.to_thread(
            self.extractor.process_and_store, user_id, text, conversation_id=conversation_id
        )

    async def drain(self) -> None:
        """Wait for every pending task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
