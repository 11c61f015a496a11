#!/usr/bin/env python3
"""Scan short ``.li`` labels for availability with resumable progress."""

import logging
from dataclasses import dataclass
from pathlib import Path

import aiohttp

from .aggregator import ProgressSnapshot, ResultAggregator, ScanState
from .generator import (
    ScanMode,
    count_candidates,
    count_repeat_patterns,
    is_valid_label,
    iter_candidates,
    iter_labels,
    iter_repeat_patterns,
)
from .lookup import (
    BlockingResolver,
    DnsClient,
    DomainCheckClient,
    RdapClient,
    Resolver,
    make_resolver,
    parse_reply,
)
from .models import (
    ConfigurationError,
    LookupResult,
    PermanentLookupError,
    PersistenceError,
    ResumeParseError,
    ScanError,
    ScanResult,
    Status,
    TransientLookupError,
    result_from_dict,
    result_to_dict,
)
from .progress import LoadSummary, ProgressStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

RESULTS_NAME = "scan_results.jsonl"
AVAILABLE_NAME = "available_domains.txt"
LOG_NAME = "scan.log"
BACKENDS = ("whois", "rdap", "dns")


@dataclass
class Config:
    """Configuration options for the domain scanner."""

    workers: int = 50
    delay: float = 1.0
    output_dir: Path = Path("li_domain_results")
    full_scan: bool = False
    letters_only: bool = False
    hyphens: bool = True
    skip_confirmation: bool = False
    tld: str = "li"
    backend: str = "whois"
    whois_host: str = "whois.nic.ch"
    whois_port: int = 4343
    rdap_url: str = "https://rdap.nic.ch"
    lookup_timeout: float = 10.0
    max_attempts: int = 3
    retry_backoff: float = 0.5
    grace_period: float = 10.0
    retry_errors: bool = False
    report_interval: float = 30.0
    fsync: bool = True
    progress: bool = True
    log_file: Path | None = None

    @property
    def mode(self) -> ScanMode:
        return ScanMode(
            full_scan=self.full_scan,
            letters_only=self.letters_only,
            hyphens=self.hyphens,
        )

    @property
    def results_file(self) -> Path:
        return Path(self.output_dir) / RESULTS_NAME

    @property
    def available_file(self) -> Path:
        return Path(self.output_dir) / AVAILABLE_NAME

    @property
    def log_path(self) -> Path:
        return Path(self.log_file) if self.log_file else Path(self.output_dir) / LOG_NAME

    def _check_number(self, name: str, minimum: float, integer: bool = False) -> None:
        value = getattr(self, name)
        kinds = int if integer else (int, float)
        if isinstance(value, bool) or not isinstance(value, kinds):
            kind = "an integer" if integer else "a number"
            raise ConfigurationError(f"{name} must be {kind}, got {value!r}")
        if value < minimum:
            raise ConfigurationError(f"{name} must be at least {minimum}, got {value!r}")

    def validate(self) -> None:
        """Raise ``ConfigurationError`` for values the scan cannot run with."""
        self._check_number("workers", 1, integer=True)
        self._check_number("max_attempts", 1, integer=True)
        self._check_number("whois_port", 1, integer=True)
        for name in ("delay", "retry_backoff", "grace_period", "lookup_timeout", "report_interval"):
            self._check_number(name, 0)
        for name in ("full_scan", "letters_only", "hyphens", "skip_confirmation",
                     "retry_errors", "fsync", "progress"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigurationError(f"{name} must be true or false, got {getattr(self, name)!r}")
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}"
            )
        if not isinstance(self.tld, str) or not self.tld or not is_valid_label(self.tld):
            raise ConfigurationError(f"invalid tld {self.tld!r}")
        for name in ("whois_host", "rdap_url"):
            if not isinstance(getattr(self, name), str):
                raise ConfigurationError(f"{name} must be a string, got {getattr(self, name)!r}")


@dataclass(frozen=True)
class Estimate:
    total: int
    pending: int
    seconds: float


@dataclass(frozen=True)
class ScanSummary:
    completed: bool
    snapshot: ProgressSnapshot
    abandoned: int = 0


def estimate(config: Config, resolved: int = 0, mode: ScanMode | None = None) -> Estimate:
    """Rough duration of a run, assuming lookups are fast next to ``delay``."""
    total = count_candidates(mode or config.mode)
    pending = max(total - resolved, 0)
    return Estimate(total, pending, pending * config.delay / config.workers)


class DomainScanner:
    """Encapsulate state for one scan run."""

    def __init__(
        self,
        config: Config | None = None,
        resolver: Resolver | None = None,
        mode: ScanMode | None = None,
    ) -> None:
        if config is None:
            config = Config()
        self.config = config
        self.resolver = resolver
        self.mode = mode or config.mode
        self.store = ProgressStore(
            config.results_file, config.available_file, retry_errors=config.retry_errors
        )
        self.state: ScanState | None = None
        self.scheduler: Scheduler | None = None
        self.done: set[str] | None = None
        self.skipped = 0
        self._stop_requested = False

    def request_stop(self) -> None:
        """Ask a running scan to stop gracefully."""
        self._stop_requested = True
        if self.scheduler is not None:
            self.scheduler.request_stop()

    async def load_progress(self) -> set[str]:
        """Create the output directory and read earlier results.

        Nothing on disk is rewritten here, so a run that is declined at the
        confirmation prompt leaves the previous results untouched.
        """
        self.config.validate()
        try:
            Path(self.config.output_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"cannot create {self.config.output_dir}: {e}") from e
        self.done = await self.store.load(repair=False)
        # Earlier records may belong to other scan modes.
        self.skipped = (
            sum(1 for label in iter_candidates(self.mode) if label in self.done)
            if self.done
            else 0
        )
        return self.done

    def estimate(self) -> Estimate:
        return estimate(self.config, self.skipped, self.mode)

    async def run(self) -> ScanSummary:
        """Execute the scan and return its final counters."""
        cfg = self.config
        cfg.validate()
        if self.done is None:
            await self.load_progress()
        done = self.done
        await self.store.repair()

        mode = self.mode
        prior = self.store.load_summary
        self.state = ScanState(
            total=count_candidates(mode),
            skipped=self.skipped,
            prior_available=prior.available,
            prior_taken=prior.taken,
            prior_errors=prior.errors,
        )
        logger.info(
            f"Scanning {self.state.total} candidates under .{cfg.tld} "
            f"({self.state.skipped} already done) with {cfg.workers} workers, "
            f"delay {cfg.delay}s, backend {cfg.backend}"
        )

        aggregator = ResultAggregator(
            self.state,
            cfg.results_file,
            cfg.available_file,
            fsync=cfg.fsync,
            report_interval=cfg.report_interval,
            progress=cfg.progress,
        )
        pending = (label for label in iter_candidates(mode) if label not in done)

        async with aiohttp.ClientSession() as session:
            resolver = self.resolver or make_resolver(cfg, session)
            self.scheduler = Scheduler(
                resolver,
                aggregator,
                tld=cfg.tld,
                workers=cfg.workers,
                delay=cfg.delay,
                max_attempts=cfg.max_attempts,
                retry_backoff=cfg.retry_backoff,
                grace_period=cfg.grace_period,
            )
            if self._stop_requested:
                self.scheduler.request_stop()
            try:
                async with aggregator:
                    completed = await self.scheduler.run(pending)
            finally:
                if isinstance(resolver, BlockingResolver):
                    resolver.close()

        if completed:
            logger.info("Scan finished")
        else:
            logger.info("Scan interrupted; run again with the same options to resume")
        logger.info(f"Results saved in {cfg.output_dir}")
        return ScanSummary(completed, self.state.snapshot(), self.scheduler.abandoned)


def main() -> None:
    """Entry point invoking :mod:`li_scanner.cli`."""
    from .cli import main as cli_main

    raise SystemExit(cli_main())


__all__ = [
    "BlockingResolver",
    "Config",
    "ConfigurationError",
    "DnsClient",
    "DomainCheckClient",
    "DomainScanner",
    "Estimate",
    "LoadSummary",
    "LookupResult",
    "PermanentLookupError",
    "PersistenceError",
    "ProgressSnapshot",
    "ProgressStore",
    "RdapClient",
    "ResultAggregator",
    "ResumeParseError",
    "ScanError",
    "ScanMode",
    "ScanResult",
    "ScanState",
    "ScanSummary",
    "Scheduler",
    "Status",
    "TransientLookupError",
    "count_candidates",
    "count_repeat_patterns",
    "estimate",
    "is_valid_label",
    "iter_candidates",
    "iter_labels",
    "iter_repeat_patterns",
    "make_resolver",
    "parse_reply",
    "result_from_dict",
    "result_to_dict",
]
