from __future__ import annotations
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from prometheus_client import Counter


logger = logging.getLogger(__name__)


_prom_dropped = Counter(
    "targetflag_dropped_events",
    "Buffered items dropped after exhausting their delivery retries",
)


class BufferClosedError(RuntimeError):
    pass


class Timer(Protocol):
    def cancel(self) -> None: ...


type TimerFactory = Callable[[float, Callable[[], None]], Timer]


def start_timer(seconds: float, fn: Callable[[], None]) -> Timer:
    """
    Call fn on a daemon thread after the given number of seconds.
    """
    t = threading.Timer(seconds, fn)
    t.daemon = True
    t.start()
    return t


class RetryEntry[T]:
    __slots__ = ("tries_left", "item")
    tries_left: int
    item: T

    def __init__(self, tries_left: int, item: T):
        self.tries_left = tries_left
        self.item = item


class BatchBuffer[T]:
    """
    Accumulates items and hands them to `flush_handler` in batches, either once
    `max_size` items are pending or `interval_seconds` after the first pending
    item was added, whichever comes first.

    `flush_handler` signals failure by raising or by returning False. Items of a
    failed batch are retried every `retry_interval_seconds`, all together, up
    to `max_retries` times after which they are dropped. add() never delivers
    on the calling thread. The buffer is thread-safe.
    """

    def __init__(
        self,
        flush_handler: Callable[[list[T]], Any],
        max_size: int = 100,
        interval_seconds: float = 10,
        retry_interval_seconds: float = 60,
        max_retries: int = 3,
        timer_factory: TimerFactory = start_timer,
    ):
        if not callable(flush_handler):
            raise TypeError("flush_handler must be callable")
        if not isinstance(max_size, int) or max_size <= 0:
            raise ValueError("max_size must be greater than 0")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than 0")
        if retry_interval_seconds <= 0:
            raise ValueError("retry_interval_seconds must be greater than 0")
        if not isinstance(max_retries, int) or max_retries <= 0:
            raise ValueError("max_retries must be greater than 0")

        self._flush_handler = flush_handler
        self._max_size = max_size
        self._interval = interval_seconds
        self._retry_interval = retry_interval_seconds
        self._max_retries = max_retries
        self._start_timer = timer_factory

        self._mu = threading.Lock()
        self._buffer: list[T] = []
        self._retry_buffer: list[RetryEntry[T]] = []
        self._timer: Timer | None = None
        self._retry_timer: Timer | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        with self._mu:
            return len(self._buffer)

    @property
    def retry_pending(self) -> int:
        with self._mu:
            return len(self._retry_buffer)

    def add(self, item: T):
        """
        Add an item to the buffer. Delivery, if due, happens on a timer thread.
        """
        with self._mu:
            if self._closed:
                raise BufferClosedError("buffer is closed")
            self._buffer.append(item)
            if len(self._buffer) >= self._max_size:
                batch = self._cut_batch()
                self._start_timer(0, lambda: self._deliver(batch))
            elif self._timer is None:
                self._timer = self._start_timer(self._interval, self._flush_buffer)

    def flush(self):
        """
        Deliver all pending items, including those waiting for a retry, on the
        calling thread.
        """
        self._flush_buffer()
        self._flush_retry_buffer()

    def close(self):
        """
        Flush the buffer one last time and stop all timers. Items still failing
        after the final flush are dropped.
        """
        self.flush()
        with self._mu:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            dropped = len(self._retry_buffer)
            self._retry_buffer = []
        if dropped:
            self._drop(dropped, "buffer is closed")

    def _cut_batch(self) -> list[T]:
        # Must be called with _mu held.
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch, self._buffer = self._buffer, []
        return batch

    def _send(self, items: list[T]) -> bool:
        try:
            return self._flush_handler(items) is not False
        except Exception:
            logger.exception("flush handler failed")
            return False

    def _flush_buffer(self):
        with self._mu:
            batch = self._cut_batch()
        if not batch:
            logger.debug("buffer is empty, nothing to flush")
            return
        self._deliver(batch)

    def _deliver(self, batch: list[T]):
        if self._send(batch):
            logger.info("flushed %d buffered items", len(batch))
            return
        with self._mu:
            closed = self._closed
            if not closed:
                self._retry_buffer.extend(RetryEntry(self._max_retries, item) for item in batch)
                if self._retry_timer is None:
                    self._retry_timer = self._start_timer(self._retry_interval, self._flush_retry_buffer)
        if closed:
            # A size triggered flush may still be running when the buffer closes.
            self._drop(len(batch), "buffer is closed")
            return
        logger.error("flush of %d buffered items failed, placing them into the retry buffer", len(batch))

    def _drop(self, n: int, reason: str):
        logger.error("dropping %d undelivered items, %s", n, reason)
        _prom_dropped.inc(n)

    def _flush_retry_buffer(self):
        with self._mu:
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            entries, self._retry_buffer = self._retry_buffer, []
        if not entries:
            logger.debug("retry buffer is empty, nothing to flush")
            return

        if self._send([e.item for e in entries]):
            logger.info("flushed %d previously failed items", len(entries))
            return

        remaining = []
        for e in entries:
            e.tries_left -= 1
            if e.tries_left > 0:
                remaining.append(e)
        dropped = len(entries) - len(remaining)
        if dropped:
            self._drop(dropped, f"after {self._max_retries} failed retries")

        with self._mu:
            closed = self._closed
            if not closed:
                # Batches that failed while this retry was in flight go after
                # the older entries.
                self._retry_buffer[:0] = remaining
                left = len(self._retry_buffer)
                if left and self._retry_timer is None:
                    self._retry_timer = self._start_timer(self._retry_interval, self._flush_retry_buffer)
        if closed:
            if remaining:
                self._drop(len(remaining), "buffer is closed")
        elif left:
            logger.info("%d items left in the retry buffer, will retry later", left)
