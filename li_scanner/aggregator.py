"""Single-writer collection of scan results.

Workers hand every finished lookup to :meth:`ResultAggregator.submit`. One
writer task owns the :class:`ScanState` counters and both output files, so
concurrent submissions are serialized without sharing mutable state.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import aiofiles
from tqdm import tqdm

from .models import PersistenceError, ScanResult, Status, result_to_dict

logger = logging.getLogger(__name__)


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "?"
    return str(timedelta(seconds=int(seconds)))


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time copy of the scan counters."""

    total: int
    skipped: int
    processed: int
    available: int
    taken: int
    errors: int
    elapsed: float
    prior_available: int = 0
    prior_taken: int = 0
    prior_errors: int = 0

    @property
    def pending(self) -> int:
        return max(self.total - self.skipped, 0)

    @property
    def remaining(self) -> int:
        return max(self.pending - self.processed, 0)

    @property
    def total_available(self) -> int:
        return self.prior_available + self.available

    @property
    def total_taken(self) -> int:
        return self.prior_taken + self.taken

    @property
    def total_errors(self) -> int:
        return self.prior_errors + self.errors

    @property
    def rate(self) -> float:
        return self.processed / self.elapsed if self.elapsed > 0 else 0.0

    @property
    def eta(self) -> float | None:
        if not self.rate:
            return None
        return self.remaining / self.rate

    def __str__(self) -> str:
        return (
            f"{self.processed}/{self.pending} scanned ({self.skipped} skipped), "
            f"{self.available} available, {self.taken} taken, {self.errors} errors, "
            f"elapsed {format_duration(self.elapsed)}, eta {format_duration(self.eta)}; "
            f"overall {self.total_available} available, {self.total_taken} taken, "
            f"{self.total_errors} errors"
        )


@dataclass
class ScanState:
    """Counters for one run plus those carried over from earlier runs.

    Mutated only by the aggregator's writer.
    """

    total: int = 0
    skipped: int = 0
    processed: int = 0
    available: int = 0
    taken: int = 0
    errors: int = 0
    prior_available: int = 0
    prior_taken: int = 0
    prior_errors: int = 0
    started: float = field(default_factory=time.monotonic)
    seen: set[str] = field(default_factory=set)

    def record(self, result: ScanResult) -> None:
        self.seen.add(result.label)
        self.processed += 1
        if result.status is Status.AVAILABLE:
            self.available += 1
        elif result.status is Status.TAKEN:
            self.taken += 1
        elif result.status is Status.ERROR:
            self.errors += 1

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self.total,
            skipped=self.skipped,
            processed=self.processed,
            available=self.available,
            taken=self.taken,
            errors=self.errors,
            elapsed=time.monotonic() - self.started,
            prior_available=self.prior_available,
            prior_taken=self.prior_taken,
            prior_errors=self.prior_errors,
        )


def _settle(done: asyncio.Future, result=None, exc: BaseException | None = None) -> None:
    if done.done():
        return
    if exc is not None:
        done.set_exception(exc)
    else:
        done.set_result(result)


class ResultAggregator:
    """Persist results as they arrive and keep the running counters."""

    def __init__(
        self,
        state: ScanState,
        results_file: Path,
        available_file: Path,
        fsync: bool = True,
        report_interval: float = 30.0,
        progress: bool = True,
    ) -> None:
        self.state = state
        self.results_file = Path(results_file)
        self.available_file = Path(available_file)
        self.fsync = fsync
        self.report_interval = report_interval
        self.progress = progress

        self._queue: asyncio.Queue | None = None
        self._writer_task: asyncio.Task | None = None
        self._results = None
        self._available = None
        self._bar: tqdm | None = None
        self._failure: PersistenceError | None = None
        self._last_report = 0.0

    async def __aenter__(self) -> "ResultAggregator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Open the output files for appending and start the writer task."""
        if self._writer_task is not None:
            return
        try:
            self._results = await aiofiles.open(self.results_file, "a", encoding="utf-8")
            self._available = await aiofiles.open(self.available_file, "a", encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"cannot open result files: {e}") from e
        self._bar = tqdm(
            total=self.state.total,
            initial=self.state.skipped,
            desc="scan",
            unit="dom",
            disable=not self.progress,
        )
        self._last_report = time.monotonic()
        self._queue = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._writer())

    async def submit(self, result: ScanResult) -> bool:
        """Queue ``result`` and wait until it is on disk.

        Returns:
            False if the candidate was already recorded in this run.

        Raises:
            PersistenceError: if writing this or an earlier result failed.
        """
        if self._failure is not None:
            raise self._failure
        if self._queue is None:
            raise RuntimeError("aggregator is not running")
        done = asyncio.get_running_loop().create_future()
        await self._queue.put((result, done))
        return await done

    async def _writer(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                self._queue.task_done()
                break
            result, done = item
            if self._failure is not None:
                _settle(done, exc=self._failure)
            else:
                try:
                    _settle(done, await self._write(result))
                except (OSError, TypeError, ValueError) as e:
                    self._failure = PersistenceError(f"cannot write results: {e}")
                    logger.error(f"Stopping after write failure: {e}")
                    _settle(done, exc=self._failure)
            self._queue.task_done()

    async def _sync(self, f) -> None:
        await f.flush()
        if self.fsync:
            await asyncio.to_thread(os.fsync, f.fileno())

    async def _write(self, result: ScanResult) -> bool:
        if result.label in self.state.seen:
            logger.warning(f"Ignoring duplicate result for {result.domain}")
            return False

        # The result record is the commit point; the available list is
        # rebuilt from it on resume.
        await self._results.write(json.dumps(result_to_dict(result)) + "\n")
        await self._sync(self._results)
        if result.status is Status.AVAILABLE:
            await self._available.write(result.domain + "\n")
            await self._sync(self._available)
            logger.info(f"Available: {result.domain}")
        elif result.status is Status.ERROR:
            logger.debug(f"Error for {result.domain}: {result.reason}")

        self.state.record(result)
        self._report()
        return True

    def _report(self) -> None:
        if self._bar is not None:
            self._bar.update(1)
            self._bar.set_postfix(
                available=self.state.available,
                taken=self.state.taken,
                errors=self.state.errors,
                refresh=False,
            )
        now = time.monotonic()
        if now - self._last_report >= self.report_interval:
            self._last_report = now
            logger.info(f"Progress: {self.state.snapshot()}")

    async def stop(self) -> None:
        """Drain pending results, close the files and log a summary."""
        if self._writer_task is not None:
            assert self._queue is not None
            await self._queue.put(None)
            await self._writer_task
            self._writer_task = None
            self._queue = None
        for f in (self._results, self._available):
            if f is not None:
                try:
                    await f.close()
                except OSError as e:
                    logger.error(f"Failed to close result file: {e}")
        self._results = None
        self._available = None
        if self._bar is not None:
            self._bar.close()
            self._bar = None
        logger.info(f"Summary: {self.state.snapshot()}")
