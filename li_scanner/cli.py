import argparse
import asyncio
import json
import logging
import signal
import sys
import tomllib
from dataclasses import fields
from pathlib import Path

from . import BACKENDS, Config, ConfigurationError, DomainScanner, ScanError
from .aggregator import format_duration

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    defaults = Config()
    parser = argparse.ArgumentParser(
        description="Scan short .li domain names for availability",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", type=Path, help="TOML or JSON file overriding these options", default=None)
    parser.add_argument("-w", "--workers", type=int, default=defaults.workers, help="concurrent lookups")
    parser.add_argument("-d", "--delay", type=float, default=defaults.delay, help="seconds each worker waits between lookups")
    parser.add_argument("-o", "--output", dest="output_dir", type=Path, default=defaults.output_dir)
    parser.add_argument("-f", "--full-scan", action="store_true", help="scan every 4 character label")
    parser.add_argument("-l", "--letters-only", action="store_true", help="only use a-z")
    parser.add_argument("--no-hyphens", dest="hyphens", action="store_false", help="leave out labels containing '-'")
    parser.add_argument("-y", "--yes", dest="skip_confirmation", action="store_true", help="do not ask before starting")
    parser.add_argument("--tld", default=defaults.tld)
    parser.add_argument("--backend", choices=BACKENDS, default=defaults.backend)
    parser.add_argument("--whois-host", default=defaults.whois_host)
    parser.add_argument("--whois-port", type=int, default=defaults.whois_port)
    parser.add_argument("--rdap-url", default=defaults.rdap_url)
    parser.add_argument("--timeout", dest="lookup_timeout", type=float, default=defaults.lookup_timeout)
    parser.add_argument("--max-attempts", type=int, default=defaults.max_attempts)
    parser.add_argument("--retry-backoff", type=float, default=defaults.retry_backoff)
    parser.add_argument("--grace-period", type=float, default=defaults.grace_period)
    parser.add_argument("--retry-errors", action="store_true", help="rescan candidates that ended in an error last time")
    parser.add_argument("--report-interval", type=float, default=defaults.report_interval)
    parser.add_argument("--no-fsync", dest="fsync", action="store_false")
    parser.add_argument("--no-progress", dest="progress", action="store_false")
    parser.add_argument("--log-file", type=Path, default=defaults.log_file)
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)
    if args.config:
        for k, v in load_config_file(args.config).items():
            if not hasattr(args, k):
                raise ConfigurationError(f"unknown option {k!r} in {args.config}")
            setattr(args, k, v)
    return args


def load_config_file(path: Path) -> dict:
    try:
        text = path.read_text()
        if path.suffix == ".toml":
            data = tomllib.loads(text)
        else:
            data = json.loads(text)
    except (OSError, tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a table of options")
    return data


def build_config(args: argparse.Namespace) -> Config:
    values = {f.name: getattr(args, f.name) for f in fields(Config) if hasattr(args, f.name)}
    for name in ("output_dir", "log_file"):
        value = values.get(name)
        if value is None:
            continue
        if not isinstance(value, (str, Path)):
            raise ConfigurationError(f"{name} must be a path, got {value!r}")
        values[name] = Path(value)
    return Config(**values)


def confirm(cfg: Config, total: int, pending: int, seconds: float) -> bool:
    print(f"{pending} of {total} .{cfg.tld} candidates left to scan with {cfg.workers} workers")
    print(f"Estimated duration: {format_duration(seconds)}")
    try:
        answer = input("Continue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def install_signal_handlers(scanner: DomainScanner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scanner.request_stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(scanner.request_stop))


async def run_scan(scanner: DomainScanner) -> int:
    install_signal_handlers(scanner)
    summary = await scanner.run()
    print(
        f"{summary.snapshot.available} available domains this run "
        f"({summary.snapshot.total_available} overall), listed in {scanner.config.available_file}"
    )
    return EXIT_OK if summary.completed else EXIT_INTERRUPTED


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(argv)
        cfg = build_config(args)
        cfg.validate()
        Path(cfg.output_dir).mkdir(parents=True, exist_ok=True)
    except (ConfigurationError, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
        handlers=[
            logging.FileHandler(cfg.log_path),
            logging.StreamHandler(sys.stdout),
        ],
    )

    scanner = DomainScanner(cfg)
    try:
        asyncio.run(scanner.load_progress())
        if not cfg.skip_confirmation:
            est = scanner.estimate()
            if not confirm(cfg, est.total, est.pending, est.seconds):
                print("Aborted.")
                return EXIT_OK
        return asyncio.run(run_scan(scanner))
    except ScanError as e:
        logger.error(f"Scan aborted: {e}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
