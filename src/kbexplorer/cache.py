"""Keyed query cache and membership polling.

Results are stored under the tuple of parameters they were fetched with, so
a response for one directory can never land in another directory's entry.
Invalidation is explicit: callers name the key prefix they affected and
subscribers decide whether to refetch.
"""

import asyncio
import logging
from collections.abc import Awaitable, Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from kbexplorer.errors import FetchError, KBExplorerError
from kbexplorer.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

QueryKey = tuple[Hashable, ...]
Fetcher = Callable[[], Awaitable[Any]]

# Query key namespaces
ORGANIZATION = "organization"
CONNECTIONS = "connections"
KNOWLEDGE_BASES = "knowledge_bases"
RESOURCES = "resources"
KB_RESOURCES = "kb_resources"


class CacheEvent(str, Enum):
    """What happened to a cache entry."""

    UPDATED = "updated"
    FAILED = "failed"
    INVALIDATED = "invalidated"


Listener = Callable[[QueryKey, CacheEvent], None]


@dataclass
class QueryState:
    """Cached result of one query key."""

    data: Any = None
    error: Optional[FetchError] = None
    is_fetching: bool = False
    is_stale: bool = True
    updated_at: Optional[float] = None
    stamp: Optional[int] = None  # Caller-supplied marker of when the fetch was issued
    generation: int = 0  # Generation of the fetch that produced ``data``

    @property
    def has_data(self) -> bool:
        return self.updated_at is not None


def matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


class QueryCache:
    """Independently keyed, independently invalidatable query results."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler
        self._entries: dict[QueryKey, QueryState] = {}
        self._inflight: dict[QueryKey, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._generations: dict[QueryKey, int] = {}
        self._listeners: list[Listener] = []

    def state(self, key: QueryKey) -> QueryState:
        """Current state for ``key`` (an empty state if never fetched)."""
        return self._entries.get(key) or QueryState()

    def get_data(self, key: QueryKey, default: Any = None) -> Any:
        state = self._entries.get(key)
        if state is None or not state.has_data:
            return default
        return state.data

    def set_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:
        """Write a value directly (optimistic update).

        ``updater`` receives the current data (or None) and returns the new one.
        """
        state = self._entries.setdefault(key, QueryState())
        state.data = updater(state.data if state.has_data else None)
        state.updated_at = self.scheduler.now()
        state.error = None
        self._notify(key, CacheEvent.UPDATED)
        return state.data

    async def fetch(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        stamp: Optional[int] = None,
        force: bool = False,
    ) -> Any:
        """Return fresh data for ``key``, fetching if missing or stale.

        Concurrent calls for the same key share one request.

        Raises:
            FetchError: If the fetch failed. Previously cached data is kept.
        """
        state = self._entries.get(key)
        if not force and state is not None and state.has_data and not state.is_stale:
            return state.data
        return await self._start(key, fetcher, stamp)

    def refetch(self, key: QueryKey, fetcher: Fetcher, stamp: Optional[int] = None) -> asyncio.Task:
        """Fetch in the background. Failures are recorded on the entry."""
        task = self._start(key, fetcher, stamp)
        task.add_done_callback(_consume_failure)
        return task

    def _start(self, key: QueryKey, fetcher: Fetcher, stamp: Optional[int]) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is None:
            generation = self._generations.get(key, 0) + 1
            self._generations[key] = generation
            task = asyncio.ensure_future(self._run(key, fetcher, stamp, generation))
            self._inflight[key] = task
            self._tasks.add(task)
            task.add_done_callback(lambda t, k=key: self._finished(k, t))
        return task

    def _finished(self, key: QueryKey, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _run(self, key: QueryKey, fetcher: Fetcher, stamp: Optional[int], generation: int) -> Any:
        state = self._entries.setdefault(key, QueryState())
        state.is_fetching = True
        try:
            data = await fetcher()
        except KBExplorerError as e:
            state.is_fetching = False
            error = FetchError(str(e), key=key)
            if generation >= state.generation:
                state.error = error
            logger.warning("Fetch failed for %s: %s", key, e)
            self._notify(key, CacheEvent.FAILED)
            raise error from e

        state.is_fetching = False
        if generation < state.generation:
            # A later fetch for this key already landed
            logger.debug("Dropping out-of-order result for %s", key)
            return state.data
        state.data = data
        state.error = None
        state.is_stale = False
        state.updated_at = self.scheduler.now()
        state.stamp = stamp
        state.generation = generation
        self._notify(key, CacheEvent.UPDATED)
        return data

    def invalidate(self, prefix: QueryKey) -> list[QueryKey]:
        """Mark every entry under ``prefix`` stale and notify subscribers.

        In-flight requests for those keys stop being shared, so the next
        fetch issues a new request.
        """
        keys = [key for key in self._entries if matches(key, prefix)]
        for key in keys:
            self._entries[key].is_stale = True
            self._inflight.pop(key, None)
        logger.debug("Invalidated %d entr(ies) under %s", len(keys), prefix)
        for key in keys:
            self._notify(key, CacheEvent.INVALIDATED)
        return keys

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, key: QueryKey, event: CacheEvent) -> None:
        for listener in list(self._listeners):
            listener(key, event)

    def entries(self, prefix: QueryKey = ()) -> list[tuple[QueryKey, QueryState]]:
        """Entries under ``prefix`` that hold data."""
        return [
            (key, state) for key, state in self._entries.items()
            if matches(key, prefix) and state.has_data
        ]

    @property
    def is_fetching(self) -> bool:
        return bool(self._tasks)

    async def drain(self) -> None:
        """Wait until no fetch is in flight (including ones started meanwhile)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _consume_failure(task: asyncio.Task) -> None:
    # The error is already stored on the entry and logged
    if not task.cancelled():
        task.exception()


class MembershipPoller:
    """Fixed-interval refetch of knowledge base membership.

    Runs only while ``sync`` is told there is something to confirm. Switching
    the target (the knowledge base) cancels the running timer.
    """

    def __init__(self, scheduler: Scheduler, interval: float, tick: Callable[[], None]):
        self.scheduler = scheduler
        self.interval = interval
        self.tick = tick
        self._handle: Optional[TimerHandle] = None
        self._target: Optional[Hashable] = None

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    @property
    def target(self) -> Optional[Hashable]:
        return self._target

    def sync(self, active: bool, target: Optional[Hashable]) -> None:
        """Start, keep, or stop polling for ``target``."""
        if target != self._target:
            if self.running:
                logger.debug("Polling target changed from %s to %s", self._target, target)
            self.stop()
            self._target = target
        should_run = active and target is not None
        if should_run and not self.running:
            logger.debug("Polling started for %s every %ss", target, self.interval)
            self._schedule()
        elif not should_run and self.running:
            logger.debug("Polling stopped for %s", target)
            self.stop()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self) -> None:
        self._handle = self.scheduler.call_later(self.interval, self._fire)

    def _fire(self) -> None:
        self._schedule()
        self.tick()
