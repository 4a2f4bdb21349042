"""Call parameters and producer shapes for memokey caches.

Params mirrors what an editor integration hands a formatter/linter
generator. Only bufnr and root are used as cache keys; the remaining
fields are there for producers that need them.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class Params:
    """Per-invocation parameters passed to cached producers."""
    bufnr: int | None = None
    root: str | None = None
    bufname: str = ""
    filetype: str = ""
    method: str = ""
    content: list[str] = field(default_factory=list)


class Producer(Protocol):
    """Synchronous producer: compute a value for the given params."""

    def __call__(self, params: Params) -> Any:
        ...


class AsyncProducer(Protocol):
    """Continuation producer: call done(value) exactly once when finished."""

    def __call__(self, params: Params, done: Callable[[Any], None]) -> None:
        ...


class FileLister(Protocol):
    """List the files whose mtimes invalidate a cached value."""

    def __call__(self, params: Params) -> list[str]:
        ...
