"""`nix fmt` entrypoint discovery, cached per project root.

Finds the command `nix fmt` would run for a flake without invoking
`nix fmt` itself. Evaluating a flake's formatter can take long enough to
trip editor timeouts, and the answer rarely changes for a given root, so
the lookup goes through by_bufroot().

The formatter is expected to follow treefmt's formatter spec
(https://github.com/numtide/treefmt/blob/main/docs/formatter-spec.md).
"""

import logging
import os
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .cache import by_bufroot
from .protocols import Params

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 120
_MISSING_FORMATTER_RE = re.compile(r"error: flake .+ does not provide attribute .+ or 'formatter'")

# Applied to the flake's `formatter` output. Kept pure (no --impure /
# builtins.getFlake) so nix does not copy the whole worktree, gitignored
# artifacts included, into the store. The few nixpkgs lib helpers are
# inlined to avoid depending on nixpkgs.
_EVAL_FORMATTER_TEMPLATE = """
  let
    currentSystem = "@SYSTEM@";
    lib = rec {
      getOutput = output: pkg:
        if ! pkg ? outputSpecified || ! pkg.outputSpecified
        then pkg.${output} or pkg.out or pkg
        else pkg;
      getBin = getOutput "bin";
      getExe' = x: y: "${getBin x}/bin/${y}";
      getExe = x: getExe' x x.meta.mainProgram;
    };
  in
  formatterBySystem:
    if formatterBySystem ? ${currentSystem} then
      let
        formatter = formatterBySystem.${currentSystem};
        drv = formatter.drvPath;
        bin = lib.getExe formatter;
      in
        drv + "\\n" + bin + "\\n"
    else
      ""
"""


def _nix_bin() -> str:
    return os.getenv("MEMOKEY_NIX_BIN", "nix").strip() or "nix"


def _nix_timeout() -> int:
    raw = os.getenv("MEMOKEY_NIX_TIMEOUT", "")
    if not raw.strip():
        return _DEFAULT_TIMEOUT
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning(
            "nix_fmt.invalid_timeout",
            extra={"value": raw, "fallback_timeout": _DEFAULT_TIMEOUT},
        )
        return _DEFAULT_TIMEOUT
    return value


def _run_nix(args: list[str], cwd: str | None = None) -> tuple[str, str, int]:
    """Run nix and return (stdout, stderr, returncode); -1 if it could not run."""
    cmd = [_nix_bin(), *args]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=_nix_timeout(), cwd=cwd,
        )
        return result.stdout, result.stderr, result.returncode
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.warning(
            "nix_fmt.subprocess_failed",
            extra={"cmd": cmd, "cwd": cwd, "error_type": type(e).__name__, "error_message": str(e)},
        )
        return "", str(e), -1


def current_system() -> str | None:
    """Ask nix for builtins.currentSystem (e.g. "x86_64-linux")."""
    stdout, stderr, code = _run_nix(
        ["--extra-experimental-features", "nix-command", "config", "show", "system"],
    )
    if code != 0:
        logger.warning(
            "nix_fmt.current_system_failed",
            extra={"returncode": code, "stderr": stderr},
        )
        return None
    system = stdout.strip()
    return system or None


def _eval_formatter_expr(system: str) -> str:
    return _EVAL_FORMATTER_TEMPLATE.replace("@SYSTEM@", system)


def find_nix_fmt(params: Params) -> str | None:
    """Return the executable `nix fmt` would run for params.root, or None.

    Steps: discover the current system, evaluate the flake's formatter
    output for it, then build the formatter derivation so the returned
    path exists on disk.
    """
    system = current_system()
    if system is None:
        return None

    stdout, stderr, code = _run_nix(
        [
            "--extra-experimental-features", "nix-command flakes",
            "eval", ".#formatter",
            "--raw",
            "--apply", _eval_formatter_expr(system),
        ],
        cwd=params.root,
    )
    if code != 0:
        # nix has no cheap way to ask whether a flake defines `formatter`
        # (`nix flake show` evaluates every output), so read the error.
        if _MISSING_FORMATTER_RE.search(stderr):
            logger.warning("nix_fmt.no_entrypoint", extra={"root": params.root})
        else:
            logger.error(
                "nix_fmt.eval_failed",
                extra={"root": params.root, "returncode": code, "stderr": stderr},
            )
        return None

    if stdout == "":
        logger.warning(
            "nix_fmt.no_formatter_for_system",
            extra={"root": params.root, "system": system},
        )
        return None

    lines = stdout.split("\n")
    if len(lines) < 2 or not lines[0] or not lines[1]:
        logger.error(
            "nix_fmt.unexpected_eval_output",
            extra={"root": params.root, "stdout": stdout},
        )
        return None
    drv_path, fmt_path = lines[0], lines[1]

    _, stderr, code = _run_nix(
        ["--extra-experimental-features", "nix-command", "build", "--no-link", f"{drv_path}^out"],
    )
    if code != 0:
        logger.warning(
            "nix_fmt.build_failed",
            extra={"root": params.root, "drv_path": drv_path, "stderr": stderr},
        )
        return None

    return fmt_path


nix_fmt_command = by_bufroot(find_nix_fmt)


@dataclass
class FormatterSpec:
    """Description of a formatter builtin and how to invoke it."""
    name: str
    method: str
    url: str = ""
    description: str = ""
    filetypes: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    to_temp_file: bool = False
    root_marker: str | None = None
    dynamic_command: Callable[[Params], str | None] | None = None

    def condition(self, root: str | None) -> bool:
        """True if the formatter applies to the project at root."""
        if self.root_marker is None:
            return True
        if not root:
            return False
        return (Path(root) / self.root_marker).is_file()

    def resolve_args(self, filename: str) -> list[str]:
        return [arg.replace("$FILENAME", filename) for arg in self.args]

    def resolve_command(self, params: Params) -> list[str] | None:
        """Full argv for params, or None if the formatter is unavailable."""
        if not self.condition(params.root) or self.dynamic_command is None:
            return None
        command = self.dynamic_command(params)
        if not command:
            return None
        return [command, *self.resolve_args(params.bufname)]


NIX_FLAKE_FMT = FormatterSpec(
    name="nix flake fmt",
    method="formatting",
    url="https://nix.dev/manual/nix/latest/command-ref/new-cli/nix3-fmt",
    description=(
        "`nix fmt` - reformat your code in the standard style (this is a generic "
        "formatter, not to be confused with nixfmt, a formatter for .nix files)"
    ),
    # --walk is treefmt-specific; needed so explicitly passed gitignored files
    # still get formatted.
    args=["--walk=filesystem", "$FILENAME"],
    to_temp_file=True,
    root_marker="flake.nix",
    dynamic_command=nix_fmt_command,
)
