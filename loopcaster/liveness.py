"""
Staleness detection for the running transcoder.
"""

import logging

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Periodic check of ``now - last_activity`` against a staleness threshold.

    Runs as a repeating timer on the supervisor's event loop. ``on_stale`` is
    called at most once per breach: the monitor re-arms only when a newer
    activity timestamp is reported or it is restarted.
    """

    def __init__(self, loop, interval, threshold, last_activity, on_stale):
        self._loop = loop
        self.interval = interval
        self.threshold = threshold
        self._last_activity = last_activity  # Callable returning the last activity timestamp
        self._on_stale = on_stale
        self._handle = None
        self._fired_for = None

    def start(self):
        self.stop()
        self._fired_for = None
        self._handle = self._loop.call_later(self.interval, self._tick)

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self):
        if self._handle is None:
            return
        self._handle = self._loop.call_later(self.interval, self._tick)

        last_activity = self._last_activity()
        if last_activity is None:
            return
        idle = self._loop.time() - last_activity
        if idle <= self.threshold:
            self._fired_for = None
            return
        if self._fired_for == last_activity:
            return
        self._fired_for = last_activity
        logger.warning(f"No transcoder activity for {idle:.1f}s (threshold {self.threshold}s)")
        self._on_stale("activity-timeout")
