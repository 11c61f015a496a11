import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio
import json
import signal
from pathlib import Path

import li_scanner as scanner
from li_scanner import cli


def fake_summary(completed):
    snap = scanner.ProgressSnapshot(
        total=1, skipped=0, processed=1, available=0, taken=1, errors=0, elapsed=1.0
    )
    return scanner.ScanSummary(completed, snap)


def test_parse_args_defaults():
    args = cli.parse_args([])
    cfg = cli.build_config(args)
    assert cfg.workers == 50
    assert cfg.delay == 1.0
    assert cfg.output_dir == Path("li_domain_results")
    assert not cfg.full_scan and not cfg.letters_only and cfg.hyphens
    assert not cfg.skip_confirmation


def test_parse_args_flags():
    args = cli.parse_args(
        ["-w", "8", "-d", "0.5", "-o", "out", "-f", "-l", "-y", "--no-hyphens", "--backend", "rdap"]
    )
    cfg = cli.build_config(args)
    assert (cfg.workers, cfg.delay, cfg.output_dir) == (8, 0.5, Path("out"))
    assert cfg.full_scan and cfg.letters_only and cfg.skip_confirmation
    assert not cfg.hyphens
    assert cfg.backend == "rdap"


def test_config_file_overrides(tmp_path):
    conf = tmp_path / "scan.toml"
    conf.write_text('workers = 3\ndelay = 2.5\noutput_dir = "elsewhere"\n')
    cfg = cli.build_config(cli.parse_args(["--config", str(conf)]))
    assert cfg.workers == 3
    assert cfg.delay == 2.5
    assert cfg.output_dir == Path("elsewhere")

    conf = tmp_path / "scan.json"
    conf.write_text(json.dumps({"letters_only": True}))
    assert cli.build_config(cli.parse_args(["--config", str(conf)])).letters_only


def test_bad_config_file_is_an_error(tmp_path, capsys):
    conf = tmp_path / "scan.toml"
    conf.write_text("workers = [")
    assert cli.main(["--config", str(conf)]) == cli.EXIT_ERROR

    conf.write_text("colour = 'red'\n")
    assert cli.main(["--config", str(conf)]) == cli.EXIT_ERROR
    assert "unknown option" in capsys.readouterr().err

    for bad, field in [
        ({"delay": "fast"}, "delay"),
        ({"max_attempts": "3"}, "max_attempts"),
        ({"grace_period": [1]}, "grace_period"),
        ({"full_scan": "yes"}, "full_scan"),
        ({"output_dir": 5}, "output_dir"),
    ]:
        conf = tmp_path / "scan.json"
        conf.write_text(json.dumps(bad))
        assert cli.main(["--config", str(conf), "-o", str(tmp_path / "o")]) == cli.EXIT_ERROR
        assert field in capsys.readouterr().err


def test_invalid_workers_exit_code(tmp_path, capsys):
    assert cli.main(["-w", "0", "-o", str(tmp_path / "o")]) == cli.EXIT_ERROR
    assert "workers" in capsys.readouterr().err


def test_cli_invocation(monkeypatch, tmp_path):
    called = False

    async def fake_run(self):
        nonlocal called
        called = True
        return fake_summary(True)

    monkeypatch.setattr(scanner.DomainScanner, "run", fake_run)
    out = tmp_path / "o"
    assert cli.main(["-y", "-o", str(out), "--no-progress"]) == cli.EXIT_OK
    assert called
    assert out.is_dir()


def test_cli_interrupted_exit_code(monkeypatch, tmp_path):
    async def fake_run(self):
        return fake_summary(False)

    monkeypatch.setattr(scanner.DomainScanner, "run", fake_run)
    assert cli.main(["-y", "-o", str(tmp_path / "o")]) == cli.EXIT_INTERRUPTED


def test_cli_fatal_error_exit_code(monkeypatch, tmp_path):
    async def fake_run(self):
        raise scanner.PersistenceError("disk full")

    monkeypatch.setattr(scanner.DomainScanner, "run", fake_run)
    assert cli.main(["-y", "-o", str(tmp_path / "o")]) == cli.EXIT_ERROR


def test_confirmation_declined(monkeypatch, tmp_path):
    async def fail_run(self):
        raise AssertionError("scan should not start")

    monkeypatch.setattr(scanner.DomainScanner, "run", fail_run)
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")
    assert cli.main(["-o", str(tmp_path / "o")]) == cli.EXIT_OK


def test_confirm_prompt(monkeypatch, capsys):
    cfg = scanner.Config()
    monkeypatch.setattr("builtins.input", lambda prompt="": "yes")
    assert cli.confirm(cfg, 100, 40, 3600)
    assert "40 of 100" in capsys.readouterr().out


def result_line(label, status):
    rec = scanner.ScanResult(label, f"{label}.li", scanner.Status(status), "2024-01-01T00:00:00+00:00")
    return json.dumps(scanner.result_to_dict(rec)) + "\n"


def test_declined_prompt_leaves_results_untouched(monkeypatch, tmp_path):
    async def fail_run(self):
        raise AssertionError("scan should not start")

    out = tmp_path / "o"
    out.mkdir()
    results = out / "scan_results.jsonl"
    original = result_line("a", "available") + result_line("b", "error") + '{"label": "c"'
    results.write_text(original)
    monkeypatch.setattr(scanner.DomainScanner, "run", fail_run)
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")

    assert cli.main(["-o", str(out), "--retry-errors", "--no-progress"]) == cli.EXIT_OK
    assert results.read_text() == original
    assert not (out / "available_domains.txt").exists()
    assert not list(out.glob("scan_results.corrupted.*"))


def test_prompt_counts_only_candidates_of_this_mode(monkeypatch, tmp_path, capsys):
    out = tmp_path / "o"
    out.mkdir()
    (out / "scan_results.jsonl").write_text(result_line("a", "taken") + result_line("abcd", "taken"))
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")

    assert cli.main(["-o", str(out), "--no-progress"]) == cli.EXIT_OK
    total = scanner.count_candidates(scanner.Config().mode)
    assert f"{total - 1} of {total}" in capsys.readouterr().out


def test_ctrl_c_at_prompt_exits_interrupted(monkeypatch, tmp_path):
    async def fail_run(self):
        raise AssertionError("scan should not start")

    def interrupt(prompt=""):
        raise KeyboardInterrupt

    monkeypatch.setattr(scanner.DomainScanner, "run", fail_run)
    monkeypatch.setattr("builtins.input", interrupt)
    assert cli.main(["-o", str(tmp_path / "o")]) == cli.EXIT_INTERRUPTED


class SignallingResolver:
    """Sends SIGINT to this process once ``signal_after`` lookups started."""

    def __init__(self, available, signal_after=None):
        self.available = available
        self.signal_after = signal_after
        self.calls = []

    async def resolve(self, label):
        self.calls.append(label)
        if len(self.calls) == self.signal_after:
            os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.005)
        found = label in self.available
        return scanner.LookupResult(found, 1 if found else 0, "")


def test_sigint_mid_scan_then_resume(monkeypatch, tmp_path):
    toy = scanner.ScanMode(alphabet="abc", max_length=3)
    total = scanner.count_candidates(toy)
    monkeypatch.setattr(scanner.Config, "mode", property(lambda self: toy))
    available = {"a", "ba", "ccc", "abc"}
    out = tmp_path / "o"
    argv = ["-y", "-o", str(out), "-w", "3", "-d", "0", "--retry-backoff", "0", "--no-fsync", "--no-progress"]

    first = SignallingResolver(available, signal_after=10)
    monkeypatch.setattr(scanner, "make_resolver", lambda cfg, session=None: first)
    assert cli.main(argv) == cli.EXIT_INTERRUPTED

    records = [json.loads(line) for line in (out / "scan_results.jsonl").read_text().splitlines()]
    recorded = {r["label"] for r in records}
    assert 0 < len(recorded) < total
    found = set((out / "available_domains.txt").read_text().splitlines())
    assert found == {f"{label}.li" for label in available & recorded}

    second = SignallingResolver(available)
    monkeypatch.setattr(scanner, "make_resolver", lambda cfg, session=None: second)
    assert cli.main(argv) == cli.EXIT_OK
    assert not set(second.calls) & recorded

    labels = [json.loads(line)["label"] for line in (out / "scan_results.jsonl").read_text().splitlines()]
    assert len(labels) == len(set(labels)) == total
    assert sorted((out / "available_domains.txt").read_text().splitlines()) == sorted(
        f"{label}.li" for label in available
    )
