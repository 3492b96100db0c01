import unittest

from targetflag import BatchBuffer
from targetflag.buffer import BufferClosedError


class FakeTimer:
    def __init__(self, seconds, fn):
        self.seconds = seconds
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeTimers:
    """
    Timer factory that records timers instead of starting threads. Timers run
    only when fired explicitly.
    """

    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, seconds, fn):
        t = FakeTimer(seconds, fn)
        self.timers.append(t)
        return t

    def active(self, seconds=None) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired and (seconds is None or t.seconds == seconds)]

    def fire(self, seconds):
        active = self.active(seconds)
        assert active, f"no active {seconds}s timer"
        t = active[0]
        t.fired = True
        t.fn()


class RecordingHandler:
    def __init__(self, *results):
        self.batches = []
        self._results = list(results)

    def __call__(self, items):
        self.batches.append(list(items))
        r = self._results.pop(0) if self._results else None
        if isinstance(r, Exception):
            raise r
        return r


class TestBatchBuffer(unittest.TestCase):
    def test_flush_on_interval(self):
        timers = FakeTimers()
        handler = RecordingHandler()
        b = BatchBuffer(handler, max_size=3, interval_seconds=10, timer_factory=timers)
        b.add(1)
        b.add(2)
        self.assertEqual(len(timers.active(10)), 1)
        self.assertEqual(b.pending, 2)
        self.assertListEqual(handler.batches, [])

        timers.fire(10)
        self.assertListEqual(handler.batches, [[1, 2]])
        self.assertEqual(b.pending, 0)
        self.assertListEqual(timers.active(), [])

        b.add(3)
        self.assertEqual(len(timers.active(10)), 1)

    def test_flush_on_size(self):
        timers = FakeTimers()
        handler = RecordingHandler()
        b = BatchBuffer(handler, max_size=3, interval_seconds=10, timer_factory=timers)
        for i in range(3):
            b.add(i)
        # Delivery never happens on the caller's thread.
        self.assertListEqual(handler.batches, [])
        self.assertEqual(b.pending, 0)
        self.assertListEqual(timers.active(10), [])

        timers.fire(0)
        self.assertListEqual(handler.batches, [[0, 1, 2]])

    def test_each_item_in_exactly_one_batch(self):
        timers = FakeTimers()
        handler = RecordingHandler()
        b = BatchBuffer(handler, max_size=4, interval_seconds=10, timer_factory=timers)
        for i in range(10):
            b.add(i)
        while timers.active(0):
            timers.fire(0)
        timers.fire(10)
        self.assertListEqual(handler.batches, [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]])

    def test_bounded_retries(self):
        timers = FakeTimers()
        handler = RecordingHandler(False, False, False, False, False)
        b = BatchBuffer(handler, interval_seconds=10, retry_interval_seconds=60, max_retries=3, timer_factory=timers)
        b.add("a")
        b.add("b")
        with self.assertLogs("targetflag.buffer", "ERROR"):
            timers.fire(10)
        self.assertEqual(b.retry_pending, 2)

        timers.fire(60)
        timers.fire(60)
        self.assertEqual(b.retry_pending, 2)
        with self.assertLogs("targetflag.buffer", "ERROR") as cm:
            timers.fire(60)
        self.assertTrue(any("dropping 2 undelivered items, after 3 failed retries" in o for o in cm.output))

        # The first delivery plus max_retries retries.
        self.assertEqual(len(handler.batches), 4)
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

    def test_retry_success(self):
        timers = FakeTimers()
        handler = RecordingHandler(RuntimeError("unavailable"), True)
        b = BatchBuffer(handler, interval_seconds=10, retry_interval_seconds=60, timer_factory=timers)
        b.add("a")
        with self.assertLogs("targetflag.buffer", "ERROR") as cm:
            timers.fire(10)
        self.assertIn("flush handler failed", cm.output[0])
        self.assertEqual(b.retry_pending, 1)

        timers.fire(60)
        self.assertListEqual(handler.batches, [["a"], ["a"]])
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

    def test_retry_order(self):
        timers = FakeTimers()
        handler = RecordingHandler(False, False, True)
        b = BatchBuffer(handler, interval_seconds=10, retry_interval_seconds=60, timer_factory=timers)
        b.add(1)
        timers.fire(10)
        b.add(2)
        timers.fire(10)
        # Both failed batches share the one retry timer.
        self.assertEqual(len(timers.active(60)), 1)
        self.assertEqual(b.retry_pending, 2)
        timers.fire(60)
        self.assertListEqual(handler.batches, [[1], [2], [1, 2]])

    def test_flush(self):
        timers = FakeTimers()
        handler = RecordingHandler(False)
        b = BatchBuffer(handler, interval_seconds=10, timer_factory=timers)
        b.add(1)
        timers.fire(10)
        b.add(2)
        b.flush()
        self.assertListEqual(handler.batches, [[1], [2], [1]])
        self.assertEqual(b.pending, 0)
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

    def test_flush_empty(self):
        handler = RecordingHandler()
        b = BatchBuffer(handler, timer_factory=FakeTimers())
        b.flush()
        self.assertListEqual(handler.batches, [])

    def test_close(self):
        timers = FakeTimers()
        handler = RecordingHandler(False, False)
        b = BatchBuffer(handler, interval_seconds=10, timer_factory=timers)
        b.add(1)
        with self.assertLogs("targetflag.buffer", "ERROR") as cm:
            b.close()
        self.assertTrue(any("dropping 1 undelivered items, buffer is closed" in o for o in cm.output))
        self.assertListEqual(handler.batches, [[1], [1]])
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

        with self.assertRaisesRegex(BufferClosedError, "buffer is closed"):
            b.add(2)

    def test_size_flush_failing_after_close(self):
        timers = FakeTimers()
        handler = RecordingHandler(False)
        b = BatchBuffer(handler, max_size=2, interval_seconds=10, timer_factory=timers)
        b.add(1)
        b.add(2)
        b.close()
        self.assertListEqual(handler.batches, [])

        # The size triggered delivery outlives close and fails.
        with self.assertLogs("targetflag.buffer", "ERROR") as cm:
            timers.fire(0)
        self.assertTrue(any("dropping 2 undelivered items, buffer is closed" in o for o in cm.output))
        self.assertListEqual(handler.batches, [[1, 2]])
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

    def test_retry_failing_after_close(self):
        timers = FakeTimers()
        b = None

        def handler(items):
            # The buffer closes while this retry is in flight.
            b.close()
            return False

        b = BatchBuffer(lambda items: False, interval_seconds=10, retry_interval_seconds=60, timer_factory=timers)
        b.add(1)
        timers.fire(10)
        self.assertEqual(b.retry_pending, 1)
        b._flush_handler = handler
        with self.assertLogs("targetflag.buffer", "ERROR") as cm:
            timers.fire(60)
        self.assertTrue(any("dropping 1 undelivered items, buffer is closed" in o for o in cm.output))
        self.assertEqual(b.retry_pending, 0)
        self.assertListEqual(timers.active(), [])

    def test_invalid_arguments(self):
        cases = [
            dict(max_size=0),
            dict(max_size=1.5),
            dict(interval_seconds=0),
            dict(retry_interval_seconds=-1),
            dict(max_retries=0),
        ]
        for kwargs in cases:
            with self.subTest(kwargs):
                with self.assertRaises(ValueError):
                    BatchBuffer(RecordingHandler(), **kwargs)
        with self.assertRaises(TypeError):
            BatchBuffer("not callable")
