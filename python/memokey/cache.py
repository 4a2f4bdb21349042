"""Cache factories for expensive discovery callbacks.

Each factory allocates its own registry slot when called and returns a
wrapper with the producer's calling convention:

    find_formatter = by_bufroot(discover_formatter)
    find_formatter(Params(root="/proj"))   # runs discover_formatter
    find_formatter(Params(root="/proj"))   # cached

All variants share one engine (memoize / memoize_async / memoize_awaitable)
and differ only in the function that derives the lookup key from params.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Hashable
from typing import Any

from .fingerprint import file_fingerprint
from .protocols import AsyncProducer, FileLister, Params, Producer
from .registry import DEFAULT_REGISTRY, MemoRegistry

KeyFn = Callable[[Params], Hashable]


def _bufnr_key(params: Params) -> Hashable:
    return params.bufnr


def _root_key(params: Params) -> Hashable:
    return params.root


def _mtimes_key(get_files: FileLister) -> KeyFn:
    def key_fn(params: Params) -> Hashable:
        # The lister runs on every call; the file set may depend on params.
        return file_fingerprint(get_files(params))
    return key_fn


def memoize(
    key_fn: KeyFn,
    producer: Producer,
    *,
    registry: MemoRegistry | None = None,
) -> Callable[[Params], Any]:
    """Wrap a synchronous producer so it runs once per key_fn(params)."""
    registry = registry if registry is not None else DEFAULT_REGISTRY
    slot = registry.create_slot()

    def wrapper(params: Params) -> Any:
        key = key_fn(params)
        return registry.get_or_compute(slot, key, lambda: producer(params))

    wrapper.slot = slot
    wrapper.registry = registry
    return wrapper


def memoize_async(
    key_fn: KeyFn,
    producer: AsyncProducer,
    *,
    registry: MemoRegistry | None = None,
) -> Callable[[Params, Callable[[Any], None]], None]:
    """Wrap a continuation producer; wrapper(params, on_done) reports the value."""
    registry = registry if registry is not None else DEFAULT_REGISTRY
    slot = registry.create_slot()

    def wrapper(params: Params, on_done: Callable[[Any], None]) -> None:
        key = key_fn(params)
        registry.get_or_compute_async(
            slot, key, lambda done: producer(params, done), on_done,
        )

    wrapper.slot = slot
    wrapper.registry = registry
    return wrapper


def memoize_awaitable(
    key_fn: KeyFn,
    producer: Callable[[Params], Awaitable[Any]],
    *,
    registry: MemoRegistry | None = None,
) -> Callable[[Params], Awaitable[Any]]:
    """Wrap a coroutine function; concurrent calls for one key share a run."""
    registry = registry if registry is not None else DEFAULT_REGISTRY
    slot = registry.create_slot()

    async def wrapper(params: Params) -> Any:
        key = key_fn(params)
        return await registry.get_or_compute_awaitable(slot, key, lambda: producer(params))

    wrapper.slot = slot
    wrapper.registry = registry
    return wrapper


def by_bufnr(producer: Producer, *, registry: MemoRegistry | None = None):
    """Cache producer's result per buffer number."""
    return memoize(_bufnr_key, producer, registry=registry)


def by_bufnr_async(producer: AsyncProducer, *, registry: MemoRegistry | None = None):
    return memoize_async(_bufnr_key, producer, registry=registry)


def by_bufroot(producer: Producer, *, registry: MemoRegistry | None = None):
    """Cache producer's result per project root."""
    return memoize(_root_key, producer, registry=registry)


def by_bufroot_async(producer: AsyncProducer, *, registry: MemoRegistry | None = None):
    return memoize_async(_root_key, producer, registry=registry)


def by_file_mtimes(
    get_files: FileLister,
    producer: Producer,
    *,
    registry: MemoRegistry | None = None,
):
    """Cache producer's result until any file from get_files(params) changes.

    A file that cannot be stat'd fails the call with OSError before the
    producer runs.
    """
    return memoize(_mtimes_key(get_files), producer, registry=registry)


def by_file_mtimes_async(
    get_files: FileLister,
    producer: AsyncProducer,
    *,
    registry: MemoRegistry | None = None,
):
    return memoize_async(_mtimes_key(get_files), producer, registry=registry)
