"""
Background sync against the remote list.

The worker threads only talk to the remote service; every cache write happens
on the main thread when SyncCoordinator.drain() applies a completion. A sync is
"in flight" from submission until its completion has been applied, and local
mutations for that series wait in a queue until then.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum

from list_remote import RemoteService, entry_fields
from series_cache import SeriesCache
from tracker_errors import RemoteError, StorageError
from watch_status import SeriesEntry

logger = logging.getLogger(__name__)

EntryTransform = Callable[[SeriesEntry], SeriesEntry]


class SyncKind(str, Enum):
    PUSH = "push"
    PULL = "pull"


@dataclass(frozen=True)
class SyncCompletion:
    """Posted by a worker thread when a push or pull finishes."""

    kind: SyncKind
    series_id: int
    entry: SeriesEntry | None  # pushed snapshot, or the pulled entry (None: not on the remote list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SyncResult:
    """What drain() reports back to the caller for one applied completion."""

    kind: SyncKind
    series_id: int
    ok: bool
    entry: SeriesEntry | None = None
    message: str | None = None


class SyncWorker:
    def __init__(self, remote: RemoteService, max_workers: int = 2) -> None:
        self.remote = remote
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="anitrack-sync")
        self._completions: queue.Queue[SyncCompletion] = queue.Queue()
        self._in_flight: set[int] = set()
        self._lock = threading.Lock()

    def is_busy(self, series_id: int) -> bool:
        with self._lock:
            return series_id in self._in_flight

    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _claim(self, series_id: int) -> bool:
        with self._lock:
            if series_id in self._in_flight:
                return False
            self._in_flight.add(series_id)
            return True

    def submit_push(self, entry: SeriesEntry) -> bool:
        """Queue a push. Returns False when a sync for this series is already in flight."""
        if not self._claim(entry.id):
            return False
        self._executor.submit(self._push, entry)
        return True

    def submit_pull(self, series_id: int) -> bool:
        if not self._claim(series_id):
            return False
        self._executor.submit(self._pull, series_id)
        return True

    def _push(self, entry: SeriesEntry) -> None:
        try:
            self.remote.push_entry(entry.id, entry_fields(entry))
        except RemoteError as e:
            self._completions.put(SyncCompletion(SyncKind.PUSH, entry.id, entry, str(e)))
        except Exception as e:
            logger.exception("Unexpected error pushing series %d", entry.id)
            self._completions.put(SyncCompletion(SyncKind.PUSH, entry.id, entry, f"unexpected error: {e}"))
        else:
            self._completions.put(SyncCompletion(SyncKind.PUSH, entry.id, entry))

    def _pull(self, series_id: int) -> None:
        try:
            pulled = self.remote.fetch_entry(series_id)
        except RemoteError as e:
            self._completions.put(SyncCompletion(SyncKind.PULL, series_id, None, str(e)))
        except Exception as e:
            logger.exception("Unexpected error pulling series %d", series_id)
            self._completions.put(SyncCompletion(SyncKind.PULL, series_id, None, f"unexpected error: {e}"))
        else:
            self._completions.put(SyncCompletion(SyncKind.PULL, series_id, pulled))

    def next_completion(self, timeout: float | None = 0.0) -> SyncCompletion | None:
        """
        Take the next completion, waiting up to timeout seconds (None waits forever).

        The series stops being busy once its completion has been taken.
        """
        try:
            if timeout is not None and timeout <= 0:
                completion = self._completions.get_nowait()
            else:
                completion = self._completions.get(timeout=timeout)
        except queue.Empty:
            return None

        with self._lock:
            self._in_flight.discard(completion.series_id)
        return completion

    def shutdown(self, wait: bool = True) -> None:
        """Stop the pool. Unapplied pushes leave needs_sync set, so they retry next run."""
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


class SyncCoordinator:
    """Main-loop owner of the cache/worker pair."""

    def __init__(self, cache: SeriesCache, worker: SyncWorker) -> None:
        self.cache = cache
        self.worker = worker
        self._pending: dict[int, deque[EntryTransform]] = {}

    def pending(self, series_id: int) -> int:
        return len(self._pending.get(series_id, ()))

    def mutate(self, series_id: int, fn: EntryTransform) -> SeriesEntry | None:
        """
        Apply fn to the stored entry and persist the result.

        While a sync for series_id is in flight, fn is queued instead and None
        is returned; drain() replays it after the completion is applied.
        """
        if self.worker.is_busy(series_id):
            self._pending.setdefault(series_id, deque()).append(fn)
            logger.debug("Queued mutation for series %d behind in-flight sync", series_id)
            return None

        entry = fn(self.cache.load_entry(series_id))
        self.cache.save_entry(entry)
        return entry

    def push(self, series_id: int) -> bool:
        return self.worker.submit_push(self.cache.load_entry(series_id))

    def pull(self, series_id: int) -> bool:
        self.cache.load_entry(series_id)
        return self.worker.submit_pull(series_id)

    def push_all(self) -> list[int]:
        """Submit a push for every dirty entry that isn't already syncing."""
        return [e.id for e in self.cache.entries_needing_sync() if self.worker.submit_push(e)]

    def drain(self, timeout: float | None = 0.0) -> list[SyncResult]:
        """
        Apply completions until nothing is in flight or timeout seconds pass.

        timeout=0 only applies what has already arrived; None waits for every
        outstanding sync.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        results: list[SyncResult] = []

        while self.worker.in_flight():
            if deadline is None:
                wait: float | None = None
            else:
                wait = max(deadline - time.monotonic(), 0.0)
            completion = self.worker.next_completion(wait)
            if completion is None:
                break
            results.append(self._apply(completion))

        return results

    def _apply(self, completion: SyncCompletion) -> SyncResult:
        sid = completion.series_id
        pending = self._pending.pop(sid, deque())

        try:
            current = self.cache.load_entry(sid)
        except StorageError as e:
            # Deleted while the sync was running; queued changes have nowhere to go
            logger.info("Dropping sync result for series %d: %s", sid, e)
            return SyncResult(completion.kind, sid, ok=False, message=str(e))

        if not completion.ok:
            logger.warning("%s for series %d failed: %s", completion.kind.value, sid, completion.error)
            entry = current
            if completion.kind == SyncKind.PUSH and not entry.needs_sync:
                entry = replace(entry, needs_sync=True)
        elif completion.kind == SyncKind.PUSH:
            pushed = completion.entry
            # Only a push of exactly what is stored confirms it
            if pushed is not None and replace(pushed, needs_sync=False) == replace(current, needs_sync=False):
                entry = replace(current, needs_sync=False)
            else:
                entry = current
        else:
            pulled = completion.entry
            entry = replace(pulled, needs_sync=False) if pulled else SeriesEntry(id=sid)

        for fn in pending:
            entry = fn(entry)

        self.cache.save_entry(entry)
        return SyncResult(
            completion.kind,
            sid,
            ok=completion.ok,
            entry=entry,
            message=completion.error,
        )

    def shutdown(self, wait: bool = True) -> None:
        self.worker.shutdown(wait=wait)
