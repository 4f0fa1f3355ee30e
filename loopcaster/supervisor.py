"""
Stream supervisor: keeps one ffmpeg push alive, rotating through profiles,
endpoints and sources on failure and falling back to a still image when
normal recovery is exhausted.

All session mutation happens on the event loop thread. Public methods
(``start``, ``stop``, ``restart``, ``rotate_source``, ``set_auto_restart``,
``get_state``) are safe to call from any thread; ``on_subprocess_failure``
and ``on_subprocess_exit`` are loop-side handlers.
"""

from __future__ import annotations

import enum
import logging
import time
from typing import Callable, Optional

from .config import SupervisorConfig
from .eventloop import EventLoop
from .failures import FailureKind, TranscoderError, classify_failure
from .liveness import LivenessMonitor
from .persistence import clear_session_state, load_session_state, save_session_state
from .profiles import RotationSelector
from .transcoder import FFmpegTranscoder, prune_crash_reports, save_crash_report

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    RECOVERING = 'recovering'
    ROTATING = 'rotating'
    DEGRADED = 'degraded'
    DEGRADED_STARTING = 'degraded_starting'
    DEGRADED_RUNNING = 'degraded_running'
    DEGRADED_RECOVERING = 'degraded_recovering'
    OFFLINE = 'offline'


_STARTING_STATES = (SessionState.STARTING, SessionState.DEGRADED_STARTING)


class StreamSession:
    """Mutable state of the one stream this process supervises."""

    def __init__(self):
        self.state = SessionState.IDLE
        self.running = False
        self.degraded = False
        self.restart_attempts = 0
        self.degraded_attempts = 0
        self.consecutive_error_count = 0
        self.last_activity_at: Optional[float] = None
        self.last_failure_at: Optional[float] = None
        self.last_error: Optional[dict] = None
        self.subprocess = None
        self.auto_restart = True
        self.probe_failures = 0
        self.generation = 0
        self.started_at: Optional[float] = None

    @property
    def offline(self):
        return self.state is SessionState.OFFLINE

    def reset_attempts(self):
        self.restart_attempts = 0
        self.degraded_attempts = 0


class StreamSupervisor:
    def __init__(
        self,
        selector: RotationSelector,
        loop: EventLoop,
        settings: Optional[SupervisorConfig] = None,
        transcoder_factory: Callable = FFmpegTranscoder,
        prober=None,
        stream_key: str = '',
        ffmpeg_path: str = 'ffmpeg',
        ffmpeg_log_file: Optional[str] = None,
        crash_dir: Optional[str] = None,
        crash_retention_days: int = 30,
        persistence_file: Optional[str] = None,
    ) -> None:
        self.selector = selector
        self.settings = settings or SupervisorConfig()
        self.session = StreamSession()
        self._loop = loop
        self._transcoder_factory = transcoder_factory
        self._prober = prober
        self.stream_key = stream_key
        self.ffmpeg_path = ffmpeg_path
        self.ffmpeg_log_file = ffmpeg_log_file
        self.crash_dir = crash_dir
        self.crash_retention_days = crash_retention_days
        self.persistence_file = persistence_file

        self._pending = None  # Spawned transcoder awaiting its start confirmation
        self._spawn_id = 0
        self._timers = []
        self._liveness = LivenessMonitor(
            loop, self.settings.liveness_interval, self.settings.stale_threshold,
            lambda: self.session.last_activity_at, self.on_subprocess_failure)

    # --- Public operations (any thread) ---

    def start(self):
        return self._loop.run_sync(self._start, True)

    def stop(self):
        return self._loop.run_sync(self._stop)

    def restart(self):
        return self._loop.run_sync(self._restart)

    def rotate_source(self):
        return self._loop.run_sync(self._rotate_source, 'manual')

    def set_auto_restart(self, enabled):
        return self._loop.run_sync(self._set_auto_restart, bool(enabled))

    def get_state(self):
        return self._loop.run_sync(self._snapshot)

    def shutdown(self):
        logger.info("Shutting down stream supervisor...")
        try:
            self.stop()
        except TimeoutError as e:
            logger.error(f"Stop during shutdown did not complete: {e}")
        self._loop.stop()

    def restore_session(self):
        """Apply persisted rotation indices and auto-restart flag, if any."""
        if not self.persistence_file:
            return False
        state = load_session_state(self.persistence_file)
        if not state:
            logger.info("No persisted session state found")
            return False
        self.selector.restore(state.get('indices', {}))
        self.session.auto_restart = bool(state.get('auto_restart', True))
        logger.info(f"Restored session state: indices={self.selector.indices}, auto_restart={self.session.auto_restart}")
        return True

    def clear_saved_state(self):
        """Delete the persisted session state. The running session is left alone."""
        if not self.persistence_file:
            return False
        self._loop.run_sync(clear_session_state, self.persistence_file)
        logger.info(f"Cleared persisted session state {self.persistence_file}")
        return True

    # --- Timers ---

    def _schedule(self, delay, callback, *args):
        generation = self.session.generation
        now = self._loop.time()
        self._timers = [h for h in self._timers if not h.cancelled and h.when > now]
        handle = self._loop.call_later(delay, self._fire, generation, callback, args)
        self._timers.append(handle)
        return handle

    def _fire(self, generation, callback, args):
        if generation != self.session.generation:
            logger.debug(f"Dropping stale timer {callback.__name__} (generation {generation} != {self.session.generation})")
            return
        callback(*args)

    def _cancel_timers(self):
        for handle in self._timers:
            handle.cancel()
        self._timers = []

    # --- Loop-side handlers ---

    def _teardown(self):
        """Kill whatever is live, stop monitoring and invalidate every pending timer."""
        s = self.session
        s.generation += 1
        self._cancel_timers()
        self._liveness.stop()
        for handle in (s.subprocess, self._pending):
            if handle is None:
                continue
            try:
                handle.kill()
            except OSError as e:
                logger.warning(f"Error terminating ffmpeg (PID {getattr(handle, 'pid', None)}): {e}")
        s.subprocess = None
        self._pending = None
        s.running = False

    def _start(self, operator=False):
        s = self.session
        if s.running or self._pending is not None or s.state in _STARTING_STATES:
            logger.info(f"Start ignored: stream is already {s.state.value}")
            return False
        if operator:
            self._teardown()
            s.reset_attempts()
            s.degraded = False
            s.probe_failures = 0
            logger.info("Operator start: attempt counters reset")
        elif not s.auto_restart:
            logger.warning("Auto-restart is disabled; automatic start skipped")
            s.state = SessionState.IDLE
            return False

        s.state = SessionState.DEGRADED_STARTING if s.degraded else SessionState.STARTING
        if self.settings.probe_before_start and self._prober is not None and not s.degraded:
            self._probe_before_spawn()
        else:
            self._schedule(0, self._spawn)
        return True

    def _spawn(self):
        s = self.session
        if s.degraded:
            profile = self.selector.conservative_profile()
            source = self.selector.fallback_image
            duration = self.settings.degraded_duration_cap
        else:
            profile = self.selector.current_profile()
            source = self.selector.current_source()
            duration = self.settings.session_duration_cap
        destination = self.selector.destination(self.stream_key)

        self._spawn_id += 1
        spawn_id = self._spawn_id
        logger.info(f"Starting {'degraded ' if s.degraded else ''}stream: profile={profile['name']}, "
                    f"endpoint={self.selector.current_endpoint()} ({self.selector.index('endpoint') + 1}/{self.selector.total('endpoint')}), "
                    f"source={source}")

        if not source:
            self.on_subprocess_failure('spawn', TranscoderError("No fallback image configured", code='spawn'))
            return

        handle = self._transcoder_factory(
            source=source,
            profile=profile,
            destination=destination,
            ffmpeg_path=self.ffmpeg_path,
            duration=duration,
            still_image=s.degraded,
            on_start=lambda command: self._loop.call_soon(self._on_started, spawn_id, command),
            on_progress=lambda progress: self._loop.call_soon(self._on_progress, spawn_id, progress),
            on_error=lambda error: self._loop.call_soon(self._on_error, spawn_id, error),
            on_exit=lambda clean, returncode: self._loop.call_soon(self._on_exit, spawn_id, clean, returncode),
            log_file=self.ffmpeg_log_file,
        )
        self._pending = handle
        try:
            handle.run()
        except TranscoderError as e:
            self._pending = None
            logger.error(f"Spawn failed: {e}")
            self.on_subprocess_failure('spawn', e)

    def _is_current(self, spawn_id):
        return spawn_id == self._spawn_id and (self._pending is not None or self.session.subprocess is not None)

    def _on_started(self, spawn_id, command):
        if not self._is_current(spawn_id) or self._pending is None:
            return
        s = self.session
        s.subprocess = self._pending
        self._pending = None
        s.running = True
        s.last_activity_at = self._loop.time()
        s.started_at = time.time()
        s.state = SessionState.DEGRADED_RUNNING if s.degraded else SessionState.RUNNING
        logger.info(f"Stream started successfully (PID {getattr(s.subprocess, 'pid', None)})")
        logger.debug(f"FFmpeg command: {command}")

        self._liveness.start()
        if not s.degraded:
            if self.settings.source_rotation_interval > 0 and self.selector.total('source') > 1:
                self._schedule(self.settings.source_rotation_interval, self._rotate_source, 'timer')
            if self._prober is not None and self.settings.probe_interval > 0:
                self._schedule(self.settings.probe_interval, self._run_probe)
        self._persist()

    def _on_progress(self, spawn_id, progress):
        if not self._is_current(spawn_id):
            return
        self.session.last_activity_at = self._loop.time()
        logger.debug(f"Progress: frame={progress.get('frame')} out_time={progress.get('out_time')} speed={progress.get('speed')}")

    def _on_error(self, spawn_id, error):
        if not self._is_current(spawn_id):
            return
        self.on_subprocess_failure('error', error)

    def _on_exit(self, spawn_id, clean, returncode):
        if not self._is_current(spawn_id):
            return
        self.on_subprocess_exit(clean, returncode)

    def _classify(self, reason, error):
        if reason == 'activity-timeout':
            return FailureKind.ACTIVITY_TIMEOUT
        if reason == 'probe':
            return FailureKind.PROBE
        if reason == 'spawn':
            return FailureKind.SPAWN
        return classify_failure(error, self.settings.connectivity_exit_codes, self.settings.connectivity_patterns)

    def on_subprocess_failure(self, reason, error=None):
        """Central failure handler: classify, tear down and pick the recovery path."""
        s = self.session
        kind = self._classify(reason, error)
        now = self._loop.time()
        if s.last_failure_at is not None and now - s.last_failure_at <= self.settings.error_window:
            s.consecutive_error_count += 1
        else:
            s.consecutive_error_count = 0
        s.last_failure_at = now
        message = str(error) if error is not None else reason
        s.last_error = {
            'cause': kind.value,
            'message': message,
            'code': getattr(error, 'code', None),
            'at': time.time(),
        }
        handle = s.subprocess or self._pending
        command = getattr(handle, 'command_line', None)
        self._teardown()

        if kind is FailureKind.OPERATOR_TERMINATED:
            logger.warning(f"ffmpeg was terminated by an external signal ({message}); treating as a stop")
            s.reset_attempts()
            s.degraded = False
            s.state = SessionState.IDLE
            self._persist()
            return

        logger.error(f"Stream failure [{kind.value}]: {message} | restart_attempts={s.restart_attempts}/"
                     f"{self.settings.max_restart_attempts}, degraded_attempts={s.degraded_attempts}/"
                     f"{self.settings.max_degraded_attempts}, degraded={s.degraded}, "
                     f"profile={self.selector.index('profile')}, endpoint={self.selector.index('endpoint')}, "
                     f"source={self.selector.index('source')}, consecutive_errors={s.consecutive_error_count}")
        self._write_crash_report(kind, error if error is not None else message, command)

        if not s.auto_restart:
            logger.warning("Auto-restart is disabled; failure reported but not acted upon")
            s.state = SessionState.IDLE
            return
        if s.degraded:
            self._recover_degraded()
        else:
            self._recover(kind)

    def _recover(self, kind):
        s = self.session
        s.state = SessionState.RECOVERING
        if s.restart_attempts >= self.settings.max_restart_attempts:
            self._enter_degraded()
            return
        s.restart_attempts += 1
        if kind in (FailureKind.CONNECTIVITY, FailureKind.PROBE):
            self.selector.advance('endpoint')
        elif self.selector.advance('profile'):
            self.selector.advance('endpoint')
        logger.info(f"Auto-restarting stream in {self.settings.retry_delay}s (attempt {s.restart_attempts}/"
                    f"{self.settings.max_restart_attempts}) with profile '{self.selector.current_profile()['name']}' "
                    f"on endpoint {self.selector.index('endpoint') + 1}/{self.selector.total('endpoint')}")
        self._schedule(self.settings.retry_delay, self._start, False)

    def _enter_degraded(self):
        s = self.session
        s.degraded = True
        s.degraded_attempts = 0
        s.state = SessionState.DEGRADED
        logger.error(f"Max restart attempts ({self.settings.max_restart_attempts}) reached; entering degraded mode "
                     f"in {self.settings.degraded_entry_delay}s")
        self._schedule(self.settings.degraded_entry_delay, self._start, False)

    def _recover_degraded(self):
        s = self.session
        s.state = SessionState.DEGRADED_RECOVERING
        if s.degraded_attempts >= self.settings.max_degraded_attempts:
            s.state = SessionState.OFFLINE
            logger.critical(f"Degraded mode failed {s.degraded_attempts} times; stream is offline until an operator starts it")
            return
        s.degraded_attempts += 1
        self.selector.advance('endpoint')
        logger.info(f"Retrying degraded stream in {self.settings.degraded_retry_delay}s (attempt "
                    f"{s.degraded_attempts}/{self.settings.max_degraded_attempts}) on endpoint "
                    f"{self.selector.index('endpoint') + 1}/{self.selector.total('endpoint')}")
        self._schedule(self.settings.degraded_retry_delay, self._start, False)

    def on_subprocess_exit(self, clean, returncode=None):
        s = self.session
        if not clean:
            self.on_subprocess_failure('exit', TranscoderError(f"ffmpeg exited unexpectedly with code {returncode}",
                                                               code=returncode))
            return

        self._teardown()
        if not s.auto_restart:
            logger.info("Stream ended; auto-restart is disabled")
            s.state = SessionState.IDLE
            return
        if s.degraded:
            s.state = SessionState.DEGRADED
            logger.info(f"Degraded stream reached its duration cap; restarting in {self.settings.degraded_retry_delay}s")
            self._schedule(self.settings.degraded_retry_delay, self._start, False)
            return

        s.restart_attempts = 0
        s.state = SessionState.ROTATING
        self.selector.advance('source')
        logger.info(f"Source playback completed; rotating to source {self.selector.index('source') + 1}/"
                    f"{self.selector.total('source')}")
        self._schedule(self.settings.rotation_delay, self._start, False)

    def _stop(self):
        s = self.session
        was_active = s.running or self._pending is not None or s.state is not SessionState.IDLE
        self._teardown()
        s.reset_attempts()
        s.degraded = False
        s.probe_failures = 0
        s.state = SessionState.IDLE
        if was_active:
            logger.info("Stream stopped by operator")
        self._persist()
        return was_active

    def _restart(self):
        self._stop()
        logger.info(f"Restarting stream in {self.settings.restart_delay}s")
        self._schedule(self.settings.restart_delay, self._start, True)
        return True

    def _rotate_source(self, trigger):
        s = self.session
        if not s.running or s.degraded:
            logger.warning(f"Source rotation ({trigger}) ignored: stream is {s.state.value}")
            return False
        if trigger == 'timer' and not s.auto_restart:
            logger.info("Scheduled source rotation skipped: auto-restart is disabled")
            self._schedule(self.settings.source_rotation_interval, self._rotate_source, 'timer')
            return False
        self._teardown()
        s.state = SessionState.ROTATING
        self.selector.advance('source')
        logger.info(f"Rotating source ({trigger}) to {self.selector.current_source()} "
                    f"({self.selector.index('source') + 1}/{self.selector.total('source')})")
        self._schedule(self.settings.rotation_delay, self._start, False)
        return True

    def _set_auto_restart(self, enabled):
        self.session.auto_restart = enabled
        logger.info(f"Auto-restart {'enabled' if enabled else 'disabled'}")
        self._persist()
        return enabled

    # --- Probing ---

    def _probe_before_spawn(self):
        generation = self.session.generation
        endpoint = self.selector.current_endpoint()
        logger.info(f"Probing {endpoint} before starting")
        self._prober.probe(endpoint, self.selector.destination(self.stream_key),
                           lambda ok, message: self._loop.call_soon(self._on_prestart_probe, generation, ok, message),
                           mode='transmit')

    def _on_prestart_probe(self, generation, ok, message):
        if generation != self.session.generation or self.session.state is not SessionState.STARTING:
            return
        if ok:
            logger.info(f"Pre-start probe succeeded: {message}")
            self._spawn()
        else:
            self.on_subprocess_failure('probe', TranscoderError(f"Pre-start probe failed: {message}", code='probe'))

    def _run_probe(self):
        s = self.session
        if not s.running or s.degraded:
            return
        generation = s.generation
        self._prober.probe(self.selector.current_endpoint(), self.selector.destination(self.stream_key),
                           lambda ok, message: self._loop.call_soon(self._on_probe_result, generation, ok, message),
                           mode='connect')
        self._schedule(self.settings.probe_interval, self._run_probe)

    def _on_probe_result(self, generation, ok, message):
        s = self.session
        if generation != s.generation or not s.running:
            return
        if ok:
            if s.probe_failures:
                logger.info(f"Endpoint probe recovered after {s.probe_failures} failure(s)")
            s.probe_failures = 0
            return
        s.probe_failures += 1
        logger.warning(f"Endpoint probe failed ({s.probe_failures}/{self.settings.probe_failure_threshold}): {message}")
        if s.probe_failures >= self.settings.probe_failure_threshold:
            failures = s.probe_failures
            s.probe_failures = 0
            self.on_subprocess_failure('probe', TranscoderError(f"{failures} consecutive probe failures: {message}",
                                                                code='probe'))

    # --- Reporting ---

    def _write_crash_report(self, kind, error, command):
        if not self.settings.crash_reports or not self.crash_dir:
            return
        s = self.session
        session_info = {
            'state': s.state.value,
            'degraded': s.degraded,
            'restart_attempts': s.restart_attempts,
            'degraded_attempts': s.degraded_attempts,
            'consecutive_errors': s.consecutive_error_count,
            'profile': self.selector.current_profile()['name'],
            'endpoint': self.selector.current_endpoint(),
            'source': self.selector.fallback_image if s.degraded else self.selector.current_source(),
        }
        save_crash_report(self.crash_dir, kind.value, error, command, session_info)
        prune_crash_reports(self.crash_dir, self.crash_retention_days)

    def _persist(self):
        if self.settings.persist_session and self.persistence_file:
            save_session_state(self.persistence_file, self.selector.indices, self.session.auto_restart)

    def _snapshot(self):
        s = self.session
        sel = self.selector
        handle = s.subprocess or self._pending
        profile = sel.conservative_profile() if s.degraded else sel.current_profile()
        last_activity = s.last_activity_at
        return {
            'state': s.state.value,
            'running': s.running,
            'degraded': s.degraded,
            'offline': s.offline,
            'profile': {
                'name': profile['name'],
                'index': sel.total('profile') - 1 if s.degraded else sel.index('profile'),
                'total': sel.total('profile'),
            },
            'endpoint': {'url': sel.current_endpoint(), 'index': sel.index('endpoint'), 'total': sel.total('endpoint')},
            'source': {
                'url': sel.fallback_image if s.degraded else sel.current_source(),
                'index': None if s.degraded else sel.index('source'),
                'total': sel.total('source'),
            },
            'restart_attempts': s.restart_attempts,
            'max_restart_attempts': self.settings.max_restart_attempts,
            'degraded_attempts': s.degraded_attempts,
            'max_degraded_attempts': self.settings.max_degraded_attempts,
            'consecutive_errors': s.consecutive_error_count,
            'seconds_since_activity': round(self._loop.time() - last_activity, 1) if s.running and last_activity is not None else None,
            'auto_restart': s.auto_restart,
            'probe_failures': s.probe_failures,
            'last_error': dict(s.last_error) if s.last_error else None,
            'pid': getattr(handle, 'pid', None) if handle is not None else None,
        }
