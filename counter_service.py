from __future__ import annotations

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Protocol, TypeVar

from errors import CounterNotFoundError, PersistenceError
from events import COUNTER_CHANGED, COUNTER_SYNC_FAILED, EventBus
from models import Counter, CounterEntry, CounterStats, day_string

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CounterPersistence(Protocol):
    async def fetch_counters(self, user_id: str) -> list[Counter]: ...

    async def create_counter(self, counter: Counter) -> None: ...

    async def update_counter(self, counter: Counter) -> None: ...

    async def delete_counter(self, counter_id: str) -> None: ...

    async def apply_counter_delta(self, counter_id: str, delta: int, day: str) -> None: ...

    async def set_counter_absolute(
        self, counter_id: str, today_count: int, current_count: int, entry: CounterEntry
    ) -> None: ...

    async def fetch_counter_stats(self, counter_id: str, today: str) -> CounterStats: ...


@dataclass(frozen=True)
class CounterUpdate:
    """Payload published on ``counter`` whenever a cached counter changes."""

    counter: Counter
    is_syncing: bool
    deleted: bool = False


class CounterService:
    """Optimistic, debounced counter updates.

    Taps change the cached counter at once and accumulate into a pending
    delta per counter. After ``debounce_ms`` without a further tap the delta
    is written with a single ``apply_counter_delta`` call. Writes for one
    counter never overlap, failed writes are not retried, and remote
    snapshots are ignored for a counter while it is syncing.

    Mutating methods must be called from a running event loop.
    """

    def __init__(
        self,
        persistence: CounterPersistence,
        bus: EventBus | None = None,
        *,
        debounce_ms: int = 300,
        settle_ms: int = 100,
        sync_timeout: float | None = None,
        clock: Callable[[], datetime.date] = datetime.date.today,
    ) -> None:
        self.persistence = persistence
        self.bus = bus or EventBus()
        self.debounce_ms = debounce_ms
        self.settle_ms = settle_ms
        self.sync_timeout = sync_timeout
        self.clock = clock
        self.user_id: Optional[str] = None
        self.last_error: Optional[PersistenceError] = None
        self._counters: dict[str, Counter] = {}
        self._stats: dict[str, CounterStats] = {}
        self._pending: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._syncing: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def counters(self) -> list[Counter]:
        return sorted(self._counters.values(), key=lambda c: c.created_at)

    def get(self, counter_id: str) -> Counter:
        return self._lookup(counter_id).reset_for(self._today())

    def is_syncing(self, counter_id: str) -> bool:
        return counter_id in self._syncing

    def pending_delta(self, counter_id: str) -> int:
        return self._pending.get(counter_id, 0)

    async def load(self, user_id: str) -> list[Counter]:
        self.user_id = user_id
        counters = await self._call(self.persistence.fetch_counters(user_id), "fetch_counters")
        self.on_remote_snapshot(counters)
        return self.counters

    async def stats(self, counter_id: str) -> CounterStats:
        self._lookup(counter_id)
        stats = await self._call(
            self.persistence.fetch_counter_stats(counter_id, self._today()),
            "fetch_counter_stats",
        )
        self._stats[counter_id] = stats
        return stats

    def cached_stats(self, counter_id: str) -> Optional[CounterStats]:
        return self._stats.get(counter_id)

    async def create_counter(self, name: str, user_id: str | None = None) -> Counter:
        name = name.strip()
        if not name:
            raise ValueError("counter name must not be empty")
        owner = user_id or self.user_id
        if owner is None:
            raise ValueError("user_id is required")
        counter = Counter(name=name, user_id=owner, last_reset_date=self._today())
        await self._call(self.persistence.create_counter(counter), "create_counter")
        self._counters[counter.id] = counter
        self._publish(counter.id)
        return counter

    async def rename_counter(self, counter_id: str, name: str) -> Counter:
        name = name.strip()
        if not name:
            raise ValueError("counter name must not be empty")
        counter = self._lookup(counter_id)
        renamed = Counter(
            name=name,
            user_id=counter.user_id,
            id=counter.id,
            current_count=counter.current_count,
            today_count=counter.today_count,
            created_at=counter.created_at,
            last_reset_date=counter.last_reset_date,
        )
        await self._call(self.persistence.update_counter(renamed), "update_counter")
        self._counters[counter_id] = renamed
        self._publish(counter_id)
        return renamed

    async def delete_counter(self, counter_id: str) -> None:
        self._lookup(counter_id)
        self._cancel_timer(counter_id)
        self._pending.pop(counter_id, None)
        async with self._lock(counter_id):
            await self._call(self.persistence.delete_counter(counter_id), "delete_counter")
        removed = self._counters.pop(counter_id, None)
        self._stats.pop(counter_id, None)
        self._syncing.discard(counter_id)
        self._locks.pop(counter_id, None)
        # the store may already have reported the removal through a snapshot
        if removed is not None:
            self.bus.publish(COUNTER_CHANGED, CounterUpdate(removed, False, deleted=True))

    def increment(self, counter_id: str) -> Counter:
        return self._apply_delta(counter_id, 1)

    def decrement(self, counter_id: str) -> Counter:
        """Subtract one; a no-op once today's count is already zero."""
        current = self.get(counter_id)
        if current.today_count == 0:
            return current
        return self._apply_delta(counter_id, -1)

    async def set_exact_today_count(self, counter_id: str, value: int) -> Counter:
        """Overwrite today's count, superseding any pending taps."""
        if value < 0:
            raise ValueError("count must not be negative")
        self._cancel_timer(counter_id)
        unsent = self._pending.pop(counter_id, 0)
        today = self._today()
        current = self._lookup(counter_id).reset_for(today)
        diff = value - current.today_count
        if diff == 0 and unsent == 0:
            self._counters[counter_id] = current
            return current
        updated = current.with_delta(diff, today)
        self._counters[counter_id] = updated
        self._adjust_stats(counter_id, updated.today_count - current.today_count)
        self._syncing.add(counter_id)
        self._publish(counter_id)
        # taps that never reached storage are logged with this write
        entry = CounterEntry(counter_id=counter_id, count=diff + unsent, date=today)
        error = None
        async with self._lock(counter_id):
            try:
                await self._call(
                    self.persistence.set_counter_absolute(
                        counter_id, updated.today_count, updated.current_count, entry
                    ),
                    "set_counter_absolute",
                )
            except PersistenceError as exc:
                error = exc
        if error is None:
            await asyncio.sleep(self.settle_ms / 1000)
        self._settle(counter_id)
        if error is not None:
            self._fail(counter_id, error)
            raise error
        return updated

    def on_remote_snapshot(self, counters: Iterable[Counter]) -> None:
        """Accept authoritative counters, except those with a write in flight."""
        today = self._today()
        incoming = {
            c.id: c
            for c in counters
            if self.user_id is None or c.user_id == self.user_id
        }
        if self.user_id is not None:
            for counter_id in list(self._counters):
                if counter_id not in incoming and counter_id not in self._syncing:
                    removed = self._counters.pop(counter_id)
                    self.bus.publish(
                        COUNTER_CHANGED, CounterUpdate(removed, False, deleted=True)
                    )
        for counter in incoming.values():
            if counter.id in self._syncing:
                logger.debug("snapshot for syncing counter %s ignored", counter.id)
                continue
            if self._counters.get(counter.id) == counter.reset_for(today):
                continue
            self._counters[counter.id] = counter.reset_for(today)
            self._publish(counter.id)

    async def flush(self, counter_id: str | None = None) -> None:
        """Write pending deltas now instead of waiting for the debounce."""
        ids = [counter_id] if counter_id else list(set(self._pending) | set(self._timers))
        errors = []
        for cid in ids:
            self._cancel_timer(cid)
            error = await self._flush(cid)
            if error is not None:
                errors.append(error)
        if errors:
            raise errors[0]

    async def drain(self) -> None:
        """Wait until every scheduled and running flush has completed."""
        loop = asyncio.get_running_loop()
        while self._timers or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
            else:
                due = max(h.when() for h in self._timers.values())
                await asyncio.sleep(max(0.0, due - loop.time()) + 0.001)

    async def close(self) -> None:
        """Flush whatever is pending and wait for running writes."""
        for cid in list(set(self._pending) | set(self._timers)):
            self._cancel_timer(cid)
            await self._flush(cid)
        await self.drain()

    def _today(self) -> str:
        return day_string(self.clock())

    def _lookup(self, counter_id: str) -> Counter:
        try:
            return self._counters[counter_id]
        except KeyError:
            raise CounterNotFoundError(counter_id) from None

    def _lock(self, counter_id: str) -> asyncio.Lock:
        lock = self._locks.get(counter_id)
        if lock is None:
            lock = self._locks[counter_id] = asyncio.Lock()
        return lock

    def _apply_delta(self, counter_id: str, delta: int) -> Counter:
        today = self._today()
        current = self._lookup(counter_id).reset_for(today)
        updated = current.with_delta(delta, today)
        self._counters[counter_id] = updated
        self._adjust_stats(counter_id, updated.today_count - current.today_count)
        self._pending[counter_id] = self._pending.get(counter_id, 0) + delta
        self._syncing.add(counter_id)
        self._schedule(counter_id)
        self._publish(counter_id)
        return updated

    def _adjust_stats(self, counter_id: str, change: int) -> None:
        stats = self._stats.get(counter_id)
        if stats is not None and change:
            self._stats[counter_id] = stats.adjusted(change)

    def _schedule(self, counter_id: str) -> None:
        self._cancel_timer(counter_id)
        loop = asyncio.get_running_loop()
        self._timers[counter_id] = loop.call_later(
            self.debounce_ms / 1000, self._fire, counter_id
        )

    def _cancel_timer(self, counter_id: str) -> None:
        handle = self._timers.pop(counter_id, None)
        if handle is not None:
            handle.cancel()

    def _fire(self, counter_id: str) -> None:
        self._timers.pop(counter_id, None)
        task = asyncio.get_running_loop().create_task(self._flush(counter_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush(self, counter_id: str) -> Optional[PersistenceError]:
        error = None
        async with self._lock(counter_id):
            delta = self._pending.pop(counter_id, 0)
            if delta:
                logger.debug("flushing counter %s delta %+d", counter_id, delta)
                try:
                    await self._call(
                        self.persistence.apply_counter_delta(counter_id, delta, self._today()),
                        "apply_counter_delta",
                    )
                except PersistenceError as exc:
                    error = exc
        if error is None:
            await asyncio.sleep(self.settle_ms / 1000)
        self._settle(counter_id)
        if error is not None:
            self._fail(counter_id, error)
        return error

    def _settle(self, counter_id: str) -> None:
        if (
            self._pending.get(counter_id)
            or counter_id in self._timers
            or self._lock(counter_id).locked()
        ):
            return
        if counter_id in self._syncing:
            self._syncing.discard(counter_id)
            self._publish(counter_id)

    def _fail(self, counter_id: str, error: PersistenceError) -> None:
        logger.warning("counter %s sync failed: %s", counter_id, error)
        self.last_error = error
        self.bus.publish(
            COUNTER_SYNC_FAILED,
            {"counter_id": counter_id, "operation": error.operation, "error": str(error)},
        )

    async def _call(self, call: Awaitable[T], operation: str) -> T:
        try:
            if self.sync_timeout is None:
                return await call
            return await asyncio.wait_for(call, self.sync_timeout)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"{operation} failed: {exc!r}", operation=operation) from exc

    def _publish(self, counter_id: str) -> None:
        counter = self._counters.get(counter_id)
        if counter is None:
            return
        self.bus.publish(
            COUNTER_CHANGED, CounterUpdate(counter, counter_id in self._syncing)
        )
