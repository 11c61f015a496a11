"""Resume support: which candidates a previous run already resolved."""

import asyncio
import json
import logging
import os
import shutil
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os

from .models import (
    PersistenceError,
    ResumeParseError,
    ScanResult,
    Status,
    result_from_dict,
    result_to_dict,
)

logger = logging.getLogger(__name__)

COMPACT_BATCH = 10000


@dataclass(frozen=True)
class LoadSummary:
    """Counters of the records kept from earlier runs."""

    resolved: int = 0
    available: int = 0
    taken: int = 0
    errors: int = 0


def parse_line(line: str) -> ScanResult:
    """Decode one JSONL line into a ``ScanResult``.

    Raises:
        ResumeParseError: if the line is not a complete, valid record.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ResumeParseError(f"malformed JSON: {e}") from e
    return result_from_dict(data)


class ProgressStore:
    """Read the structured result file of earlier runs.

    Every candidate found there is skipped, whatever its status, unless
    ``retry_errors`` is set, in which case ``error`` records are dropped and
    those candidates are scanned again. Parsing stops at the first bad line;
    the valid prefix is kept and the file is rewritten so later appends start
    on a clean line.
    """

    def __init__(
        self,
        results_file: Path,
        available_file: Path,
        retry_errors: bool = False,
    ) -> None:
        self.results_file = Path(results_file)
        self.available_file = Path(available_file)
        self.retry_errors = retry_errors

        self.resolved: set[str] = set()
        self.counts: Counter[Status] = Counter()
        self.needs_compaction = False
        self.corrupt = False
        self.found = False
        self._available_domains: list[str] = []

    async def _read_records(self) -> AsyncIterator[ScanResult]:
        async with aiofiles.open(
            self.results_file, "r", encoding="utf-8", errors="replace"
        ) as f:
            lineno = 0
            async for line in f:
                lineno += 1
                if not line.endswith("\n"):
                    self.needs_compaction = True
                if not line.strip():
                    self.needs_compaction = True
                    continue
                try:
                    record = parse_line(line)
                except ResumeParseError as e:
                    logger.warning(
                        f"Ignoring {self.results_file} from line {lineno} on: {e}"
                    )
                    self.corrupt = True
                    self.needs_compaction = True
                    return
                yield record

    async def _kept_records(self) -> AsyncIterator[ScanResult]:
        seen: set[str] = set()
        async for record in self._read_records():
            if record.label in seen:
                self.needs_compaction = True
                continue
            if self.retry_errors and record.status is Status.ERROR:
                self.needs_compaction = True
                continue
            seen.add(record.label)
            yield record

    @property
    def load_summary(self) -> LoadSummary:
        return LoadSummary(
            resolved=len(self.resolved),
            available=self.counts[Status.AVAILABLE],
            taken=self.counts[Status.TAKEN],
            errors=self.counts[Status.ERROR],
        )

    async def load(self, repair: bool = True) -> set[str]:
        """Return the labels resolved by earlier runs.

        With ``repair=False`` the files are only read; call :meth:`repair`
        once the scan is really going to start.
        """
        self.resolved = set()
        self.counts = Counter()
        self.needs_compaction = False
        self.corrupt = False
        self.found = False
        self._available_domains = []
        try:
            async for record in self._kept_records():
                self.resolved.add(record.label)
                self.counts[record.status] += 1
                if record.status is Status.AVAILABLE:
                    self._available_domains.append(record.domain)
        except FileNotFoundError:
            logger.info("No previous results found, starting from scratch")
            return self.resolved
        except OSError as e:
            raise PersistenceError(f"cannot read {self.results_file}: {e}") from e

        self.found = True
        summary = self.load_summary
        logger.info(
            f"Resuming: {summary.resolved} candidates already resolved "
            f"({summary.available} available, "
            f"{summary.taken} taken, {summary.errors} errors)"
        )
        if repair:
            await self.repair()
        return self.resolved

    async def repair(self) -> None:
        """Compact the result file if needed and rebuild the available list."""
        if not self.found:
            return
        try:
            if self.needs_compaction:
                await self._compact()
                self.needs_compaction = False
            await self.rebuild_available(self._available_domains)
        except OSError as e:
            raise PersistenceError(f"cannot rewrite previous results: {e}") from e

    async def _compact(self) -> None:
        if self.corrupt:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            backup = self.results_file.with_name(
                f"{self.results_file.stem}.corrupted.{stamp}{self.results_file.suffix}"
            )
            await asyncio.to_thread(shutil.copy2, self.results_file, backup)
            logger.warning(f"Backed up damaged result file to {backup}")

        tmp = self.results_file.with_name(self.results_file.name + ".tmp")
        kept = 0
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            batch: list[str] = []
            async for record in self._kept_records():
                batch.append(json.dumps(result_to_dict(record)) + "\n")
                kept += 1
                if len(batch) >= COMPACT_BATCH:
                    await f.writelines(batch)
                    batch = []
            await f.writelines(batch)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp, self.results_file)
        logger.info(f"Rewrote {self.results_file} with {kept} records")

    async def rebuild_available(self, domains: list[str]) -> None:
        """Rewrite the available-domains list from the kept records."""
        tmp = self.available_file.with_name(self.available_file.name + ".tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.writelines([d + "\n" for d in domains])
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp, self.available_file)
