"""Tests for cached `nix fmt` entrypoint discovery.

subprocess.run is stubbed so these run without nix installed.
"""

import logging
import subprocess

import pytest

import memokey.nix_fmt as nix_fmt_mod
from memokey.nix_fmt import NIX_FLAKE_FMT, find_nix_fmt, nix_fmt_command
from memokey.protocols import Params
from memokey.registry import reset_all

DRV = "/nix/store/abc-treefmt.drv"
EXE = "/nix/store/def-treefmt/bin/treefmt"


@pytest.fixture(autouse=True)
def _clean_registry(monkeypatch):
    monkeypatch.delenv("MEMOKEY_NIX_BIN", raising=False)
    monkeypatch.delenv("MEMOKEY_NIX_TIMEOUT", raising=False)
    reset_all()
    yield
    reset_all()


class FakeNix:
    """Stand-in for subprocess.run answering the three nix invocations."""

    def __init__(self, system=(0, "x86_64-linux\n", ""), eval_=(0, f"{DRV}\n{EXE}\n", ""),
                 build=(0, "", "")):
        self.responses = {"config": system, "eval": eval_, "build": build}
        self.calls = []

    def __call__(self, cmd, capture_output, text, timeout, cwd=None):
        self.calls.append({"cmd": cmd, "cwd": cwd, "timeout": timeout})
        subcommand = next(arg for arg in cmd[1:] if arg in self.responses)
        code, stdout, stderr = self.responses[subcommand]
        return subprocess.CompletedProcess(cmd, code, stdout=stdout, stderr=stderr)

    def subcommands(self):
        return [next(a for a in c["cmd"][1:] if a in self.responses) for c in self.calls]


def _install(monkeypatch, fake):
    monkeypatch.setattr(nix_fmt_mod.subprocess, "run", fake)
    return fake


def test_find_nix_fmt_success(monkeypatch):
    fake = _install(monkeypatch, FakeNix())

    assert find_nix_fmt(Params(root="/proj")) == EXE
    assert fake.subcommands() == ["config", "eval", "build"]

    eval_call = fake.calls[1]
    assert eval_call["cwd"] == "/proj"
    assert "--apply" in eval_call["cmd"]
    expr = eval_call["cmd"][eval_call["cmd"].index("--apply") + 1]
    assert 'currentSystem = "x86_64-linux";' in expr

    assert fake.calls[2]["cmd"][-1] == f"{DRV}^out"


def test_nix_fmt_command_is_cached_per_root(monkeypatch):
    fake = _install(monkeypatch, FakeNix())

    assert nix_fmt_command(Params(root="/proj")) == EXE
    assert nix_fmt_command(Params(root="/proj")) == EXE
    assert len(fake.calls) == 3

    nix_fmt_command(Params(root="/other"))
    assert len(fake.calls) == 6


def test_missing_formatter_cached_as_none(monkeypatch, caplog):
    """A flake without a formatter is only evaluated once."""
    stderr = "error: flake 'path:/proj' does not provide attribute 'packages.x86_64-linux.formatter' or 'formatter'"
    fake = _install(monkeypatch, FakeNix(eval_=(1, "", stderr)))
    caplog.set_level(logging.WARNING, logger="memokey.nix_fmt")

    assert nix_fmt_command(Params(root="/proj")) is None
    assert nix_fmt_command(Params(root="/proj")) is None
    assert fake.subcommands() == ["config", "eval"]
    assert [r.getMessage() for r in caplog.records] == ["nix_fmt.no_entrypoint"]


def test_eval_error_logged(monkeypatch, caplog):
    _install(monkeypatch, FakeNix(eval_=(1, "", "error: syntax error")))
    caplog.set_level(logging.WARNING, logger="memokey.nix_fmt")

    assert find_nix_fmt(Params(root="/proj")) is None
    record = caplog.records[-1]
    assert record.getMessage() == "nix_fmt.eval_failed"
    assert record.levelno == logging.ERROR
    assert record.stderr == "error: syntax error"


def test_current_system_failure(monkeypatch, caplog):
    fake = _install(monkeypatch, FakeNix(system=(1, "", "nix: bad config")))
    caplog.set_level(logging.WARNING, logger="memokey.nix_fmt")

    assert find_nix_fmt(Params(root="/proj")) is None
    assert fake.subcommands() == ["config"]
    assert caplog.records[-1].getMessage() == "nix_fmt.current_system_failed"


def test_no_formatter_for_system(monkeypatch, caplog):
    _install(monkeypatch, FakeNix(eval_=(0, "", "")))
    caplog.set_level(logging.WARNING, logger="memokey.nix_fmt")

    assert find_nix_fmt(Params(root="/proj")) is None
    assert caplog.records[-1].getMessage() == "nix_fmt.no_formatter_for_system"
    assert caplog.records[-1].system == "x86_64-linux"


def test_build_failure(monkeypatch):
    fake = _install(monkeypatch, FakeNix(build=(1, "", "builder failed")))
    assert find_nix_fmt(Params(root="/proj")) is None
    assert fake.subcommands() == ["config", "eval", "build"]


def test_nix_not_installed(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(nix_fmt_mod.subprocess, "run", missing)
    assert find_nix_fmt(Params(root="/proj")) is None


def test_timeout_handled(monkeypatch):
    def slow(cmd, timeout, **kwargs):
        raise subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(nix_fmt_mod.subprocess, "run", slow)
    assert find_nix_fmt(Params(root="/proj")) is None


def test_env_overrides(monkeypatch):
    fake = _install(monkeypatch, FakeNix())
    monkeypatch.setenv("MEMOKEY_NIX_BIN", "/opt/nix/bin/nix")
    monkeypatch.setenv("MEMOKEY_NIX_TIMEOUT", "7")

    find_nix_fmt(Params(root="/proj"))
    assert all(c["cmd"][0] == "/opt/nix/bin/nix" for c in fake.calls)
    assert all(c["timeout"] == 7 for c in fake.calls)


def test_invalid_timeout_falls_back(monkeypatch, caplog):
    fake = _install(monkeypatch, FakeNix())
    monkeypatch.setenv("MEMOKEY_NIX_TIMEOUT", "soon")
    caplog.set_level(logging.WARNING, logger="memokey.nix_fmt")

    find_nix_fmt(Params(root="/proj"))
    assert fake.calls[0]["timeout"] == 120
    assert "nix_fmt.invalid_timeout" in [r.getMessage() for r in caplog.records]


# --- Formatter spec ---


def test_condition_requires_flake(tmp_path):
    assert not NIX_FLAKE_FMT.condition(str(tmp_path))
    (tmp_path / "flake.nix").write_text("{ outputs = _: {}; }\n")
    assert NIX_FLAKE_FMT.condition(str(tmp_path))
    assert not NIX_FLAKE_FMT.condition(None)


def test_resolve_args():
    assert NIX_FLAKE_FMT.resolve_args("/tmp/x.nix") == ["--walk=filesystem", "/tmp/x.nix"]
    assert NIX_FLAKE_FMT.to_temp_file
    assert NIX_FLAKE_FMT.filetypes == []


def test_resolve_command(monkeypatch, tmp_path):
    _install(monkeypatch, FakeNix())
    (tmp_path / "flake.nix").write_text("{}\n")
    params = Params(root=str(tmp_path), bufname="/tmp/formatting.nix")

    assert NIX_FLAKE_FMT.resolve_command(params) == [EXE, "--walk=filesystem", "/tmp/formatting.nix"]


def test_resolve_command_without_flake(monkeypatch, tmp_path):
    fake = _install(monkeypatch, FakeNix())
    assert NIX_FLAKE_FMT.resolve_command(Params(root=str(tmp_path))) is None
    assert fake.calls == []
