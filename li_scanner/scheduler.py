"""Worker pool that paces, retries and cancels registry lookups."""

import asyncio
import contextlib
import logging
from typing import Iterable

from .aggregator import ResultAggregator
from .lookup import Resolver
from .models import (
    PermanentLookupError,
    PersistenceError,
    ScanResult,
    TransientLookupError,
)

logger = logging.getLogger(__name__)


class Scheduler:
    """Drive candidates through a resolver with a fixed number of workers.

    Each worker waits ``delay`` seconds after every lookup before taking the
    next candidate, so the sustained rate stays near ``workers / delay``
    lookups per second whatever the lookup latency.
    """

    def __init__(
        self,
        resolver: Resolver,
        aggregator: ResultAggregator,
        tld: str = "li",
        workers: int = 50,
        delay: float = 1.0,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
        grace_period: float = 10.0,
    ) -> None:
        self.resolver = resolver
        self.aggregator = aggregator
        self.tld = tld
        self.workers = workers
        self.delay = delay
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.grace_period = grace_period

        self.abandoned = 0
        self._stop = asyncio.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Stop handing out candidates; in-flight lookups may finish."""
        if not self._stop.is_set():
            logger.info("Stop requested, letting in-flight lookups finish")
            self._stop.set()

    async def resolve(self, label: str) -> ScanResult:
        """Look up ``label``, retrying transient failures.

        Lookup failures never propagate: after the last attempt, or on a
        permanent failure, the candidate is returned as an error result.
        """
        reason = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                lookup = await self.resolver.resolve(label)
            except PermanentLookupError as e:
                logger.warning(f"{label}.{self.tld}: {e}")
                return ScanResult.error(label, self.tld, str(e))
            except (TransientLookupError, asyncio.TimeoutError, OSError) as e:
                reason = str(e) or type(e).__name__
                logger.warning(
                    f"{label}.{self.tld}: attempt {attempt}/{self.max_attempts} failed: {reason}"
                )
            except Exception as e:
                logger.exception(f"Unexpected lookup failure for {label}.{self.tld}")
                return ScanResult.error(label, self.tld, f"{type(e).__name__}: {e}")
            else:
                return ScanResult.from_lookup(label, self.tld, lookup)

            if attempt < self.max_attempts and self.retry_backoff > 0:
                await asyncio.sleep(self.retry_backoff * 2 ** (attempt - 1))

        return ScanResult.error(
            label, self.tld, f"{reason} (gave up after {self.max_attempts} attempts)"
        )

    async def _produce(self, labels: Iterable[str], queue: asyncio.Queue) -> None:
        for label in labels:
            await queue.put(label)
        for _ in range(self.workers):
            await queue.put(None)

    async def _pace(self) -> None:
        if self.delay > 0:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), self.delay)

    async def _worker(self, queue: asyncio.Queue) -> None:
        while not self._stop.is_set():
            label = await queue.get()
            if label is None or self._stop.is_set():
                return
            result = await self.resolve(label)
            await self.aggregator.submit(result)
            await self._pace()

    async def _release_workers(self, producer: asyncio.Task, queue: asyncio.Queue) -> None:
        producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)
        while not queue.empty():
            queue.get_nowait()
        for _ in range(self.workers):
            queue.put_nowait(None)

    async def run(self, labels: Iterable[str]) -> bool:
        """Process ``labels`` until exhausted or stopped.

        Returns:
            True if every candidate was processed, False if stopped early.

        Raises:
            PersistenceError: if the aggregator could not write a result.
        """
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=self.workers * 2)
        producer = asyncio.create_task(self._produce(labels, queue))
        workers = [asyncio.create_task(self._worker(queue)) for _ in range(self.workers)]
        stop_wait = asyncio.create_task(self._stop.wait())
        try:
            pending = set(workers)
            watched = {producer, stop_wait}
            while pending and not self._stop.is_set():
                done, _ = await asyncio.wait(
                    pending | watched, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done - {stop_wait}:
                    task.result()
                    pending.discard(task)
                    watched.discard(task)

            if pending:
                await self._release_workers(producer, queue)
                done, pending = await asyncio.wait(pending, timeout=self.grace_period)
                for task in done:
                    task.result()
                if pending:
                    self.abandoned = len(pending)
                    logger.warning(
                        f"Abandoning {self.abandoned} lookups still running after "
                        f"{self.grace_period}s; they will be retried on resume"
                    )
        except PersistenceError:
            self._stop.set()
            raise
        finally:
            producer.cancel()
            stop_wait.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(producer, stop_wait, *workers, return_exceptions=True)
        return not self._stop.is_set()
