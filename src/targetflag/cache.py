from __future__ import annotations
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future


logger = logging.getLogger(__name__)


class CacheEntry[T]:
    """
    A successfully fetched value. Entries are replaced, never modified.
    """

    __slots__ = ("data", "fetched_at", "stale_after")
    data: T
    # Clock reading at the time of the fetch.
    fetched_at: float
    # Age in seconds after which the entry is considered stale.
    stale_after: float

    def __init__(self, data: T, fetched_at: float, stale_after: float):
        self.data = data
        self.fetched_at = fetched_at
        self.stale_after = stale_after


class DefinitionCache[T]:
    """
    Refresh-ahead cache of a single value, typically the feature definitions.

    The value is refreshed every `refetch_interval` seconds once started, and on
    demand through refresh(). Concurrent refreshes share a single call to
    `fetch`. A failed refresh keeps the previous value, so get() keeps
    returning the last good value however old it is, logging a warning once
    per refresh cycle when it's older than `stale_warning_interval` seconds.
    The cache is thread-safe.

    `fetch` returns the new value, or None if no value could be fetched. Any
    exception it raises is logged and treated the same as None.
    """

    def __init__(
        self,
        fetch: Callable[[], T | None],
        refetch_interval: float = 60,
        stale_warning_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if refetch_interval <= 0:
            raise ValueError("refetch_interval must be greater than 0")
        self._fetch = fetch
        self._refetch_interval = refetch_interval
        self._stale_after = stale_warning_interval if stale_warning_interval is not None else refetch_interval * 5
        self._clock = clock
        self._mu = threading.Lock()
        self._entry: CacheEntry[T] | None = None
        self._inflight: Future | None = None
        self._stale_warned = False
        self._stop_wait = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def entry(self) -> CacheEntry[T] | None:
        return self._entry

    @property
    def is_stale(self) -> bool:
        entry = self._entry
        return entry is not None and self._clock() - entry.fetched_at > entry.stale_after

    def get(self) -> T | None:
        """
        Return the last successfully fetched value, or None if there never was
        one.
        """
        entry = self._entry
        if entry is None:
            return None
        age = self._clock() - entry.fetched_at
        if age > entry.stale_after:
            with self._mu:
                warn = not self._stale_warned
                self._stale_warned = True
            if warn:
                logger.warning("cached value is stale (age %.1fs, threshold %.1fs)", age, entry.stale_after)
        return entry.data

    def _update(self):
        try:
            value = self._fetch()
        except Exception:
            logger.exception("failed to update cached value")
            return
        if value is None:
            logger.warning("fetch returned no value, keeping the cached value")
            return
        entry = CacheEntry(value, self._clock(), self._stale_after)
        with self._mu:
            self._entry = entry
        logger.debug("updated cached value")

    def refresh(self) -> T | None:
        """
        Fetch a fresh value now and return the cached value afterwards. If a
        refresh is already in progress, wait for it instead of starting another.
        """
        with self._mu:
            fut = self._inflight
            owner = fut is None
            if owner:
                fut = self._inflight = Future()

        if owner:
            try:
                self._update()
            finally:
                with self._mu:
                    self._inflight = None
                    self._stale_warned = False
                fut.set_result(None)
        else:
            fut.result()

        return self.get()

    def start(self):
        """
        Start refreshing in the background every `refetch_interval` seconds.
        """
        with self._mu:
            if self._worker is not None:
                return
            stop_wait = self._stop_wait = threading.Event()

            def _worker():
                while not stop_wait.wait(self._refetch_interval):
                    self.refresh()

            self._worker = threading.Thread(target=_worker, daemon=True)
            self._worker.start()

    def stop(self):
        self._stop_wait.set()
        with self._mu:
            self._worker = None
