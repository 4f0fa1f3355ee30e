"""
Shared fixtures: a manually clocked event loop, a scripted transcoder and a
scripted prober, so supervisor behaviour can be driven deterministically.
"""

import heapq
from collections import deque

import pytest

from .config import SupervisorConfig
from .eventloop import EventLoop
from .failures import TranscoderError
from .profiles import PROFILES, RotationSelector
from .supervisor import StreamSupervisor

ENDPOINTS = ['rtmp://a.example.com/live', 'rtmp://b.example.com/live', 'rtmps://c.example.com:443/live']
SOURCES = ['https://media.example.com/one.mp4', 'https://media.example.com/two.mp4']
FALLBACK = '/tmp/loopcaster-test/fallback.png'


class ManualLoop(EventLoop):
    """EventLoop whose clock only moves when the test calls ``advance``."""

    def __init__(self):
        super().__init__(name="manual-loop")
        self.now = 0.0

    def time(self):
        return self.now

    def run_sync(self, callback, *args, timeout=10.0):
        result = callback(*args)
        self.run_pending()
        return result

    def _invoke(self, handle):
        # Let assertion errors and bugs surface in the test
        if not handle.cancelled:
            handle.callback(*handle.args)

    def run_pending(self):
        while True:
            with self._cond:
                self._collect_due()
                if not self._ready:
                    return
                handle = self._ready.popleft()
            self._invoke(handle)

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            self.run_pending()
            with self._cond:
                while self._timers and self._timers[0].cancelled:
                    heapq.heappop(self._timers)
                next_when = self._timers[0].when if self._timers else None
            if next_when is None or next_when > target:
                break
            self.now = max(self.now, next_when)
        self.now = target
        self.run_pending()


class FakeTranscoder:
    """Stands in for FFmpegTranscoder; the test emits its events by hand."""

    def __init__(self, loop, pid, source, profile, destination, on_start=None, on_progress=None,
                 on_error=None, on_exit=None, fail_spawn=False, **kwargs):
        self.loop = loop
        self.pid = pid
        self.source = source
        self.profile = profile
        self.destination = destination
        self.on_start = on_start
        self.on_progress = on_progress
        self.on_error = on_error
        self.on_exit = on_exit
        self.fail_spawn = fail_spawn
        self.kwargs = kwargs
        self.started = False
        self.kill_calls = 0

    @property
    def command_line(self):
        return f"ffmpeg -i {self.source} {self.destination}"

    @property
    def killed(self):
        return self.kill_calls > 0

    def run(self):
        if self.fail_spawn:
            raise TranscoderError("ffmpeg could not be started: [Errno 2] No such file or directory", code='spawn')
        self.started = True

    def kill(self, sig=None):
        self.kill_calls += 1

    def emit_start(self):
        self.on_start(self.command_line)
        self.loop.run_pending()

    def emit_progress(self, **values):
        block = {'frame': '1', 'out_time': '00:00:01.000000', 'speed': '1x'}
        block.update(values)
        block['progress'] = 'continue'
        self.on_progress(block)
        self.loop.run_pending()

    def emit_error(self, message="Conversion failed!", code=1, stderr_tail=None):
        self.on_error(TranscoderError(message, code=code, stderr_tail=stderr_tail))
        self.loop.run_pending()

    def emit_exit(self, clean=True, returncode=0):
        self.on_exit(clean, returncode)
        self.loop.run_pending()

    def fail(self, message="Conversion failed!", code=1):
        """Error followed by an unclean exit, the order the real transcoder reports them in."""
        self.emit_error(message, code)
        self.emit_exit(False, code)


class TranscoderFactory:
    def __init__(self, loop):
        self.loop = loop
        self.spawned = []
        self.fail_next = 0

    def __call__(self, **kwargs):
        fail_spawn = self.fail_next > 0
        if fail_spawn:
            self.fail_next -= 1
        transcoder = FakeTranscoder(self.loop, 4000 + len(self.spawned), fail_spawn=fail_spawn, **kwargs)
        self.spawned.append(transcoder)
        return transcoder

    @property
    def last(self):
        return self.spawned[-1]


class FakeProber:
    """Answers probes synchronously from a queue of ``(ok, message)`` results."""

    def __init__(self, default=(True, "reachable")):
        self.default = default
        self.results = deque()
        self.calls = []

    def probe(self, endpoint_url, destination, callback, mode='connect'):
        self.calls.append((endpoint_url, mode))
        ok, message = self.results.popleft() if self.results else self.default
        callback(ok, message)


@pytest.fixture
def loop():
    return ManualLoop()


@pytest.fixture
def factory(loop):
    return TranscoderFactory(loop)


@pytest.fixture
def selector():
    return RotationSelector(PROFILES, ENDPOINTS, SOURCES, fallback_image=FALLBACK)


@pytest.fixture
def make_supervisor(loop, factory, selector):
    """Build a supervisor over the manual loop; keyword overrides go to SupervisorConfig."""

    def _make(prober=None, crash_dir=None, persistence_file=None, **overrides):
        values = dict(probe_interval=0, crash_reports=False, persist_session=False)
        values.update(overrides)
        return StreamSupervisor(selector, loop, settings=SupervisorConfig(**values), transcoder_factory=factory,
                                prober=prober, stream_key='secret-key', crash_dir=crash_dir,
                                persistence_file=persistence_file)

    return _make


@pytest.fixture
def supervisor(make_supervisor):
    return make_supervisor()
