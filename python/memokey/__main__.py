"""CLI entry point: python3 -m memokey

Modes:
  --command/--project/--args  Single-shot command
  --sidecar                   Persistent stdin/stdout JSON-RPC loop; caches
                              live for the lifetime of the process
"""

import argparse
import json
import logging
import os
import sys
import traceback


def main():
    parser = argparse.ArgumentParser(description="memokey cached discovery CLI")
    parser.add_argument("--sidecar", action="store_true",
                        help="Run as persistent sidecar (stdin/stdout JSON-RPC)")
    parser.add_argument("--command", help="Command to run")
    parser.add_argument("--project", help="Project path")
    parser.add_argument("--args", default="{}", help="JSON-encoded arguments")
    args = parser.parse_args()

    _configure_logging()

    if args.sidecar:
        _run_sidecar()
    else:
        if not args.command or not args.project:
            parser.error("--command and --project are required (or use --sidecar)")
        _run_single(args)


def _configure_logging():
    level_name = os.getenv("MEMOKEY_LOG_LEVEL", "WARNING").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    # Logs go to stderr; stdout carries JSON only.
    logging.basicConfig(level=level, stream=sys.stderr)


def _run_single(args):
    """Single-shot mode."""
    try:
        extra_args = json.loads(args.args)
    except json.JSONDecodeError as e:
        _error_exit("InvalidArgs", f"Failed to parse --args JSON: {e}")

    from .analyze import dispatch
    try:
        result = dispatch(args.command, args.project, extra_args)
    except Exception as e:
        _error_exit(type(e).__name__, str(e))
    _write_line(sys.stdout, result)


def _run_sidecar():
    """Persistent sidecar: one JSON request per stdin line, one response per stdout line.

    Caches live in this process, so repeated lookups for a root are served
    without rerunning discovery until a "reset" request.
    """
    _write_line(sys.stdout, {"status": "ready"})
    for line in sys.stdin:
        line = line.strip()
        if line:
            _write_line(sys.stdout, _handle_request(line))


def _handle_request(line: str) -> dict:
    """Decode one request line and dispatch it; errors become error responses."""
    from .analyze import dispatch

    try:
        req = json.loads(line)
    except json.JSONDecodeError as e:
        return {"id": None, "error": {"type": "InvalidJSON", "message": str(e)}}

    req_id = req.get("id")
    try:
        result = dispatch(req.get("command", ""), req.get("project", ""), req.get("args", {}))
    except Exception as e:
        return {"id": req_id, "error": {"type": type(e).__name__, "message": str(e)}}
    return {"id": req_id, "result": result}


def _write_line(stream, payload: dict):
    stream.write(json.dumps(payload) + "\n")
    stream.flush()


def _error_exit(error_type: str, message: str):
    """Write structured error to stderr and exit."""
    _write_line(sys.stderr, {
        "error": error_type,
        "message": message,
        "traceback": traceback.format_exc(),
    })
    sys.exit(1)


if __name__ == "__main__":
    main()
