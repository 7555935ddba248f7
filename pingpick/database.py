import asyncio
import threading
from collections.abc import AsyncIterator, Callable, MutableMapping
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")

Predicate = Callable[[V], bool]


class Watch(Generic[V]):
    """
    Live subscription to the records matching a predicate.

    Iterating yields the full matching snapshot, first immediately and then
    again after writes that touch a matching record. A slow consumer skips
    intermediate snapshots and sees only the latest.
    """

    def __init__(
        self,
        db: "InMemoryKeyValueDatabase",
        predicate: Predicate,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._db = db
        self.predicate = predicate
        self._loop = loop
        # holds at most the newest undelivered snapshot
        self._queue: asyncio.Queue[list[V]] = asyncio.Queue(maxsize=1)
        self.closed = False

    def deliver(self, snapshot: list[V]) -> None:
        # writers may run on another thread than the subscriber
        self._loop.call_soon_threadsafe(self._replace, snapshot)

    def _replace(self, snapshot: list[V]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(snapshot)

    async def next_snapshot(self) -> list[V]:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._db.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[list[V]]:
        return self

    async def __anext__(self) -> list[V]:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def __aenter__(self) -> "Watch[V]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value record store.

    Conditional writes (`create`, `update_if`) are serialized per store, so
    exactly one of several racing writers observes its precondition holding.
    A networked backend implementing the same methods may raise
    `StoreUnavailable` from any of them.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self._lock = threading.RLock()
        self._watches: list[Watch] = []

    def put(self, key: K, value: V) -> None:
        with self._lock:
            old = self._store.get(key)
            self._store[key] = value
            self._publish(old, value)

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        with self._lock:
            old = self._store.pop(key, None)
            if old is not None:
                self._publish(old, None)

    def all(self) -> list[V]:
        with self._lock:
            return list(self._store.values())

    def query(self, predicate: Predicate) -> list[V]:
        with self._lock:
            return [v for v in self._store.values() if predicate(v)]

    def __len__(self) -> int:
        return len(self._store)

    def create(self, key: K, value: V) -> bool:
        """
        Insert `value` only if `key` is absent.
        Returns True if inserted, False if the key already existed.
        """
        with self._lock:
            if key in self._store:
                return False
            self._store[key] = value
            self._publish(None, value)
            return True

    def update_if(
        self,
        key: K,
        precondition: Predicate,
        mutate: Callable[[V], V],
    ) -> V | None:
        """
        Atomically replace the value at `key` with `mutate(current)` if
        `precondition(current)` holds.
        Returns the new value, or None if the key is missing or the
        precondition failed.
        """
        with self._lock:
            current = self._store.get(key)
            if current is None or not precondition(current):
                return None
            updated = mutate(current)
            self._store[key] = updated
            self._publish(current, updated)
            return updated

    def watch(self, predicate: Predicate) -> Watch:
        """
        Subscribe to the records matching `predicate`. Must be called from
        a running event loop.
        """
        watch = Watch(self, predicate, asyncio.get_running_loop())
        with self._lock:
            self._watches.append(watch)
            watch.deliver(self.query(predicate))
        return watch

    def unsubscribe(self, watch: Watch) -> None:
        with self._lock:
            if watch in self._watches:
                self._watches.remove(watch)

    def _publish(self, old: V | None, new: V | None) -> None:
        for watch in list(self._watches):
            touched = (old is not None and watch.predicate(old)) or (
                new is not None and watch.predicate(new)
            )
            if not touched:
                continue
            try:
                watch.deliver(self.query(watch.predicate))
            except RuntimeError:
                # subscriber's event loop is gone
                self._watches.remove(watch)
