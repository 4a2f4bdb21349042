"""Keyed memoization registry.

A registry holds one slot per cache wrapper. Each slot maps a lookup key
(buffer number, project root, file fingerprint) to the value its producer
returned. A key being present means the producer already ran for it, so
falsy results (None, False, "", []) are cached like any other value.

Slots are never shared: every factory call gets a fresh id from a
monotonic counter, and ids are not reused even after reset_all().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)

SlotId = int


class _Missing:
    """Marker for a key that has never been computed."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class MemoRegistry:
    """In-process dict of slots, each a dict of key -> memoized value."""

    def __init__(self):
        self._slots: dict[SlotId, dict[Hashable, Any]] = {}
        self._next_slot: SlotId = 0
        # Continuation-style producers waiting to complete, per (slot, key).
        self._waiters: dict[tuple[SlotId, Hashable], list[Callable[[Any], None]]] = {}
        # asyncio producers in flight, per (slot, key).
        self._futures: dict[tuple[SlotId, Hashable], asyncio.Future] = {}
        self._generation = 0

    def __len__(self) -> int:
        return len(self._slots)

    def create_slot(self) -> SlotId:
        """Allocate a fresh slot id with an empty key mapping."""
        slot = self._next_slot
        self._next_slot += 1
        self._slots[slot] = {}
        return slot

    def _entries(self, slot: SlotId) -> dict[Hashable, Any]:
        # Slots dropped by reset_all() come back empty for wrappers that
        # outlive the reset.
        return self._slots.setdefault(slot, {})

    def contains(self, slot: SlotId, key: Hashable) -> bool:
        return key in self._slots.get(slot, {})

    def peek(self, slot: SlotId, key: Hashable) -> Any:
        """Return the stored value, or MISSING if the producer never ran."""
        return self._slots.get(slot, {}).get(key, MISSING)

    def slot_keys(self, slot: SlotId) -> list[Hashable]:
        return list(self._slots.get(slot, {}))

    def entry_count(self) -> int:
        return sum(len(entries) for entries in self._slots.values())

    def get_or_compute(self, slot: SlotId, key: Hashable, producer: Callable[[], Any]) -> Any:
        """Return the cached value for key, running producer() on first use.

        Exceptions from producer propagate and nothing is stored, so the
        next call with the same key retries.
        """
        entries = self._entries(slot)
        if key in entries:
            logger.debug("registry.hit", extra={"slot": slot, "key": key})
            return entries[key]

        logger.debug("registry.miss", extra={"slot": slot, "key": key})
        value = producer()
        entries[key] = value
        return value

    def get_or_compute_async(
        self,
        slot: SlotId,
        key: Hashable,
        producer: Callable[[Callable[[Any], None]], None],
        on_done: Callable[[Any], None],
    ) -> None:
        """Continuation form of get_or_compute.

        producer receives a callback and must call it once with the result.
        Requests for a key whose producer is still running are queued and
        resolved by the same result; the producer never runs twice for one
        key. If producer raises before calling back, the queued requests are
        dropped and the exception propagates.
        """
        entries = self._entries(slot)
        if key in entries:
            logger.debug("registry.hit", extra={"slot": slot, "key": key})
            on_done(entries[key])
            return

        pending_key = (slot, key)
        if pending_key in self._waiters:
            logger.debug("registry.join_in_flight", extra={"slot": slot, "key": key})
            self._waiters[pending_key].append(on_done)
            return

        waiters = [on_done]
        self._waiters[pending_key] = waiters
        generation = self._generation
        completed = False

        def continuation(value: Any) -> None:
            nonlocal completed
            if completed:
                logger.debug("registry.duplicate_callback", extra={"slot": slot, "key": key})
                return
            completed = True
            if generation == self._generation:
                self._entries(slot)[key] = value
                self._waiters.pop(pending_key, None)
            else:
                logger.debug("registry.stale_callback", extra={"slot": slot, "key": key})
            for waiter in waiters:
                waiter(value)

        logger.debug("registry.miss", extra={"slot": slot, "key": key})
        try:
            producer(continuation)
        except Exception:
            if not completed and self._waiters.get(pending_key) is waiters:
                del self._waiters[pending_key]
            raise

    async def get_or_compute_awaitable(
        self,
        slot: SlotId,
        key: Hashable,
        producer: Callable[[], Awaitable[Any]],
    ) -> Any:
        """asyncio form of get_or_compute.

        The producer runs as its own task, shared by every concurrent await
        of the same absent key, so it runs at most once. Each caller awaits
        the task through asyncio.shield: cancelling one caller leaves the
        run and the other callers alone. Failures reach every waiter and
        are not stored.
        """
        entries = self._entries(slot)
        if key in entries:
            logger.debug("registry.hit", extra={"slot": slot, "key": key})
            return entries[key]

        pending_key = (slot, key)
        task = self._futures.get(pending_key)
        if task is not None:
            logger.debug("registry.join_in_flight", extra={"slot": slot, "key": key})
            return await asyncio.shield(task)

        logger.debug("registry.miss", extra={"slot": slot, "key": key})
        task = asyncio.ensure_future(producer())
        self._futures[pending_key] = task
        generation = self._generation

        def finished(done: asyncio.Future) -> None:
            if self._futures.get(pending_key) is done:
                del self._futures[pending_key]
            if done.cancelled():
                return
            # Retrieving the exception also keeps asyncio from warning when
            # every caller was cancelled before the failure.
            if done.exception() is not None:
                return
            if generation == self._generation:
                self._entries(slot)[key] = done.result()
            else:
                logger.debug("registry.stale_result", extra={"slot": slot, "key": key})

        # Registered before any shield callback, so the value is stored
        # before awaiting callers resume.
        task.add_done_callback(finished)
        return await asyncio.shield(task)

    def reset_all(self) -> None:
        """Drop every slot, entry, and in-flight record."""
        logger.debug(
            "registry.reset",
            extra={"slots": len(self._slots), "entries": self.entry_count()},
        )
        self._slots = {}
        self._waiters = {}
        self._futures = {}
        self._generation += 1


DEFAULT_REGISTRY = MemoRegistry()


def create_slot() -> SlotId:
    return DEFAULT_REGISTRY.create_slot()


def get_or_compute(slot: SlotId, key: Hashable, producer: Callable[[], Any]) -> Any:
    return DEFAULT_REGISTRY.get_or_compute(slot, key, producer)


def get_or_compute_async(
    slot: SlotId,
    key: Hashable,
    producer: Callable[[Callable[[Any], None]], None],
    on_done: Callable[[Any], None],
) -> None:
    DEFAULT_REGISTRY.get_or_compute_async(slot, key, producer, on_done)


async def get_or_compute_awaitable(
    slot: SlotId,
    key: Hashable,
    producer: Callable[[], Awaitable[Any]],
) -> Any:
    return await DEFAULT_REGISTRY.get_or_compute_awaitable(slot, key, producer)


def reset_all() -> None:
    """Clear the process-wide registry (used between tests)."""
    DEFAULT_REGISTRY.reset_all()
