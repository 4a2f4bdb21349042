"""Command dispatcher for memokey.

Routes --command values to the cached discovery helpers.
Called from __main__.py.
"""

from __future__ import annotations

import os


def dispatch(command: str, project: str, args: dict) -> dict:
    """Dispatch a command to the appropriate handler.

    Args:
        command: Command name
        project: Project root path
        args: Extra arguments dict

    Returns:
        Dict result from the handler
    """
    if command == "nix_fmt":
        from .nix_fmt import nix_fmt_command
        from .protocols import Params
        root = os.path.abspath(project)
        fmt = nix_fmt_command(Params(root=root))
        return {"root": root, "command": fmt, "available": fmt is not None}

    elif command == "fingerprint":
        from .fingerprint import stamp_files
        files = [
            f if os.path.isabs(f) else os.path.join(project, f)
            for f in args.get("files", [])
        ]
        stamps = stamp_files(files)
        return {
            "files": [{"path": s.path, "mtime": s.mtime} for s in stamps],
            "fingerprint": "".join(s.render() for s in stamps),
        }

    elif command == "cache_stats":
        from .registry import DEFAULT_REGISTRY
        return {"slots": len(DEFAULT_REGISTRY), "entries": DEFAULT_REGISTRY.entry_count()}

    elif command == "reset":
        from .registry import reset_all
        reset_all()
        return {"reset": True}

    else:
        return {"error": "UnknownCommand", "message": f"Unknown command: {command}"}
