"""
Single-threaded event loop that serializes every stream session mutation.

Subprocess reader threads, prober threads, HTTP request handlers and
timers never touch supervisor state directly: they post callbacks here
and the loop thread runs them one at a time.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle returned by ``call_soon``/``call_later``; ``cancel()`` drops the callback."""

    __slots__ = ('when', 'seq', 'callback', 'args', 'cancelled')

    def __init__(self, when, seq, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def __lt__(self, other):
        return (self.when, self.seq) < (other.when, other.seq)


class EventLoop:
    def __init__(self, name="loopcaster-loop"):
        self.name = name
        self._cond = threading.Condition()
        self._ready = deque()
        self._timers = []
        self._seq = itertools.count()
        self._thread = None
        self._running = False

    def time(self):
        return time.monotonic()

    def call_soon(self, callback, *args):
        handle = TimerHandle(self.time(), next(self._seq), callback, args)
        with self._cond:
            self._ready.append(handle)
            self._cond.notify()
        return handle

    def call_later(self, delay, callback, *args):
        handle = TimerHandle(self.time() + max(0.0, delay), next(self._seq), callback, args)
        with self._cond:
            heapq.heappush(self._timers, handle)
            self._cond.notify()
        return handle

    def run_sync(self, callback, *args, timeout=10.0):
        """Run ``callback`` on the loop thread and return its result.

        Runs inline when called from the loop thread itself or when the
        loop is not running.
        """
        if not self._running or threading.current_thread() is self._thread:
            return callback(*args)

        done = threading.Event()
        outcome = {}

        def _invoke():
            try:
                outcome['value'] = callback(*args)
            except Exception as e:
                outcome['error'] = e
            finally:
                done.set()

        self.call_soon(_invoke)
        if not done.wait(timeout):
            raise TimeoutError(f"Event loop did not run {getattr(callback, '__name__', callback)} within {timeout}s")
        if 'error' in outcome:
            raise outcome['error']
        return outcome.get('value')

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Event loop {self.name} started")

    def stop(self, timeout=5.0):
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        logger.info(f"Event loop {self.name} stopped")

    def _collect_due(self):
        # Caller holds self._cond
        now = self.time()
        while self._timers and (self._timers[0].cancelled or self._timers[0].when <= now):
            handle = heapq.heappop(self._timers)
            if not handle.cancelled:
                self._ready.append(handle)

    def _next_timeout(self):
        # Caller holds self._cond
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)
        if not self._timers:
            return None
        return max(0.0, self._timers[0].when - self.time())

    def _invoke(self, handle):
        if handle.cancelled:
            return
        try:
            handle.callback(*handle.args)
        except Exception as e:
            logger.error(f"Error in event loop callback {getattr(handle.callback, '__name__', handle.callback)}: {e}",
                         exc_info=True)

    def _run(self):
        while True:
            with self._cond:
                self._collect_due()
                while self._running and not self._ready:
                    self._cond.wait(self._next_timeout())
                    self._collect_due()
                if not self._running:
                    break
                handle = self._ready.popleft()
            self._invoke(handle)
