"""
Behaviour of the stream supervisor state machine, driven through a manual
clock and a scripted transcoder.
"""

import json

from .conftest import ENDPOINTS, FALLBACK, SOURCES, FakeProber, ManualLoop
from .profiles import PROFILES, RotationSelector
from .supervisor import SessionState, StreamSupervisor
from .transcoder import error_from_exit


def start_running(supervisor, factory):
    assert supervisor.start(), "start() should be accepted"
    factory.last.emit_start()
    return factory.last


def drive_to_degraded(supervisor, loop, factory):
    start_running(supervisor, factory)
    for _ in range(supervisor.settings.max_restart_attempts):
        factory.last.fail()
        loop.advance(supervisor.settings.retry_delay)
        factory.last.emit_start()
    factory.last.fail()
    loop.advance(supervisor.settings.degraded_entry_delay)
    factory.last.emit_start()
    assert supervisor.session.state is SessionState.DEGRADED_RUNNING


def test_start_spawns_and_confirms(supervisor, factory):
    """running only becomes true once the transcoder confirms its start"""
    assert supervisor.start()
    assert len(factory.spawned) == 1
    assert supervisor.session.state is SessionState.STARTING
    assert not supervisor.session.running

    transcoder = factory.last
    assert transcoder.source == SOURCES[0]
    assert transcoder.profile['name'] == 'High Performance'
    assert transcoder.destination == f"{ENDPOINTS[0]}/secret-key"
    assert transcoder.kwargs['still_image'] is False

    transcoder.emit_start()
    assert supervisor.session.running
    assert supervisor.session.subprocess is transcoder
    assert supervisor.session.state is SessionState.RUNNING


def test_start_is_a_noop_while_starting_or_running(supervisor, factory):
    assert supervisor.start()
    assert not supervisor.start(), "second start while a spawn is pending should be ignored"
    factory.last.emit_start()
    assert not supervisor.start(), "start while running should be ignored"
    assert len(factory.spawned) == 1


def test_restart_attempts_count_up_then_degrade(make_supervisor, loop, factory):
    supervisor = make_supervisor(max_restart_attempts=10)
    start_running(supervisor, factory)

    for n in range(1, 11):
        factory.last.fail()
        assert supervisor.session.restart_attempts == n
        assert not supervisor.session.degraded, f"should not be degraded after {n} failures"
        loop.advance(supervisor.settings.retry_delay)
        factory.last.emit_start()

    factory.last.fail()
    assert supervisor.session.degraded
    assert supervisor.session.restart_attempts == 10, "attempt counter freezes on entering degraded mode"
    assert supervisor.session.state is SessionState.DEGRADED

    loop.advance(supervisor.settings.degraded_entry_delay)
    degraded = factory.last
    assert len(factory.spawned) == 12
    assert degraded.source == FALLBACK
    assert degraded.profile['name'] == 'Ultra Stable'
    assert degraded.kwargs['still_image'] is True
    assert degraded.kwargs['duration'] == supervisor.settings.degraded_duration_cap
    assert supervisor.session.state is SessionState.DEGRADED_STARTING

    degraded.emit_start()
    assert supervisor.session.state is SessionState.DEGRADED_RUNNING
    assert supervisor.session.restart_attempts == 10


def test_profile_cycles_fully_before_endpoint_advances(supervisor, loop, factory, selector):
    start_running(supervisor, factory)
    seen = []
    for _ in range(3):
        factory.last.fail()
        seen.append((selector.index('profile'), selector.index('endpoint')))
        loop.advance(supervisor.settings.retry_delay)
        factory.last.emit_start()

    assert seen == [(1, 0), (2, 0), (0, 1)]
    assert factory.last.profile['name'] == 'High Performance'
    assert factory.last.destination == f"{ENDPOINTS[1]}/secret-key"


def test_connectivity_failure_advances_endpoint_only(supervisor, loop, factory, selector):
    start_running(supervisor, factory)
    factory.last.fail(message="Connection refused", code=-111)

    assert selector.index('endpoint') == 1
    assert selector.index('profile') == 0
    assert supervisor.session.restart_attempts == 1
    assert supervisor.session.state is SessionState.RECOVERING
    assert supervisor.session.last_error['cause'] == 'connectivity'

    loop.advance(1.5)
    assert len(factory.spawned) == 1, "retry must wait for the retry delay"
    loop.advance(0.5)
    assert len(factory.spawned) == 2
    assert factory.last.destination == f"{ENDPOINTS[1]}/secret-key"
    assert factory.last.profile['name'] == 'High Performance'


def test_connectivity_detected_from_message(supervisor, factory, selector):
    start_running(supervisor, factory)
    factory.last.fail(message="Error opening output rtmp://a.example.com/live/secret-key: I/O error", code=1)
    assert selector.index('endpoint') == 1
    assert selector.index('profile') == 0


def test_natural_exit_rotates_source_without_counting(supervisor, loop, factory, selector):
    start_running(supervisor, factory)
    factory.last.fail()
    loop.advance(supervisor.settings.retry_delay)
    factory.last.emit_start()
    assert supervisor.session.restart_attempts == 1

    factory.last.emit_exit(True, 0)
    assert selector.index('source') == 1
    assert supervisor.session.restart_attempts == 0
    assert supervisor.session.state is SessionState.ROTATING

    loop.advance(supervisor.settings.rotation_delay)
    assert len(factory.spawned) == 3
    assert factory.last.source == SOURCES[1]


def test_stop_from_running(supervisor, factory):
    transcoder = start_running(supervisor, factory)
    assert supervisor.stop()
    assert transcoder.killed
    assert not supervisor.session.running
    assert supervisor.session.subprocess is None
    assert supervisor.session.state is SessionState.IDLE


def test_stop_when_idle_reports_nothing_active(supervisor):
    assert not supervisor.stop()


def test_stop_cancels_pending_retry(supervisor, loop, factory):
    start_running(supervisor, factory)
    factory.last.fail()
    supervisor.stop()
    loop.advance(60)
    assert len(factory.spawned) == 1, "a retry scheduled before stop() must never spawn"
    assert supervisor.session.state is SessionState.IDLE
    assert supervisor.session.restart_attempts == 0


def test_stop_from_degraded_resets_everything(make_supervisor, loop, factory):
    supervisor = make_supervisor(max_restart_attempts=1)
    drive_to_degraded(supervisor, loop, factory)
    assert supervisor.stop()

    session = supervisor.session
    assert not session.running
    assert session.subprocess is None
    assert session.restart_attempts == 0
    assert session.degraded_attempts == 0
    assert not session.degraded
    assert session.state is SessionState.IDLE


def test_degraded_failures_end_offline(make_supervisor, loop, factory, selector):
    supervisor = make_supervisor(max_restart_attempts=1, max_degraded_attempts=2)
    drive_to_degraded(supervisor, loop, factory)

    for n in range(1, 3):
        endpoint_before = selector.index('endpoint')
        factory.last.fail()
        assert supervisor.session.degraded_attempts == n
        assert supervisor.session.state is SessionState.DEGRADED_RECOVERING
        assert selector.index('endpoint') == (endpoint_before + 1) % len(ENDPOINTS)
        loop.advance(supervisor.settings.degraded_retry_delay)
        assert factory.last.source == FALLBACK
        factory.last.emit_start()

    factory.last.fail()
    assert supervisor.session.state is SessionState.OFFLINE
    spawned = len(factory.spawned)
    loop.advance(600)
    assert len(factory.spawned) == spawned, "OFFLINE must not retry on its own"
    assert supervisor.get_state()['offline']

    assert supervisor.start()
    assert supervisor.session.state is SessionState.STARTING
    assert not supervisor.session.degraded
    assert supervisor.session.restart_attempts == 0
    assert supervisor.session.degraded_attempts == 0
    assert factory.last.source == SOURCES[selector.index('source')]


def test_degraded_natural_exit_respawns_without_counting(make_supervisor, loop, factory):
    supervisor = make_supervisor(max_restart_attempts=1)
    drive_to_degraded(supervisor, loop, factory)
    spawned = len(factory.spawned)

    factory.last.emit_exit(True, 0)
    assert supervisor.session.state is SessionState.DEGRADED
    assert supervisor.session.degraded_attempts == 0

    loop.advance(supervisor.settings.degraded_retry_delay)
    assert len(factory.spawned) == spawned + 1
    assert factory.last.source == FALLBACK


def test_auto_restart_off_reports_failure_without_retry(supervisor, loop, factory):
    start_running(supervisor, factory)
    supervisor.set_auto_restart(False)
    factory.last.fail()

    assert not supervisor.session.running
    assert supervisor.session.subprocess is None
    assert supervisor.session.state is SessionState.IDLE
    assert supervisor.session.last_error is not None
    loop.advance(120)
    assert len(factory.spawned) == 1, "no retry may be spawned while auto-restart is off"


def test_auto_restart_off_does_not_stop_running_stream(supervisor, factory):
    transcoder = start_running(supervisor, factory)
    supervisor.set_auto_restart(False)
    assert supervisor.session.running
    assert not transcoder.killed


def test_liveness_timeout_is_a_single_failure(supervisor, loop, factory):
    start_running(supervisor, factory)
    loop.advance(36)
    assert supervisor.session.restart_attempts == 1
    assert supervisor.session.last_error['cause'] == 'activity-timeout'

    loop.advance(60)
    assert supervisor.session.restart_attempts == 1, "an unconfirmed retry is not monitored"
    assert len(factory.spawned) == 2


def test_progress_keeps_stream_alive(supervisor, loop, factory):
    start_running(supervisor, factory)
    for _ in range(10):
        loop.advance(10)
        factory.last.emit_progress()
    assert supervisor.session.running
    assert supervisor.session.restart_attempts == 0
    assert supervisor.get_state()['seconds_since_activity'] == 0.0


def test_manual_rotation(supervisor, loop, factory, selector):
    first = start_running(supervisor, factory)
    assert supervisor.rotate_source()
    assert first.killed
    assert supervisor.session.state is SessionState.ROTATING
    assert selector.index('source') == 1
    assert supervisor.session.restart_attempts == 0

    loop.advance(supervisor.settings.rotation_delay)
    assert factory.last.source == SOURCES[1]


def test_rotation_refused_when_not_running(supervisor):
    assert not supervisor.rotate_source()


def test_rotation_refused_while_degraded(make_supervisor, loop, factory, selector):
    supervisor = make_supervisor(max_restart_attempts=1)
    drive_to_degraded(supervisor, loop, factory)
    source_index = selector.index('source')
    assert not supervisor.rotate_source()
    assert selector.index('source') == source_index
    assert supervisor.session.state is SessionState.DEGRADED_RUNNING


def test_rotation_timer(make_supervisor, loop, factory):
    supervisor = make_supervisor(source_rotation_interval=60, stale_threshold=1000)
    start_running(supervisor, factory)
    loop.advance(60)
    assert supervisor.session.state is SessionState.ROTATING
    loop.advance(supervisor.settings.rotation_delay)
    assert factory.last.source == SOURCES[1]


def test_rotation_timer_skipped_while_auto_restart_off(make_supervisor, loop, factory):
    supervisor = make_supervisor(source_rotation_interval=60, stale_threshold=1000)
    transcoder = start_running(supervisor, factory)
    supervisor.set_auto_restart(False)
    loop.advance(61)
    assert supervisor.session.running
    assert not transcoder.killed


def test_restart(supervisor, loop, factory):
    start_running(supervisor, factory)
    factory.last.fail()
    loop.advance(supervisor.settings.retry_delay)
    current = factory.last
    current.emit_start()

    supervisor.restart()
    assert current.killed
    assert supervisor.session.state is SessionState.IDLE
    assert supervisor.session.restart_attempts == 0

    loop.advance(supervisor.settings.restart_delay)
    assert len(factory.spawned) == 3
    assert supervisor.session.state is SessionState.STARTING


def test_events_from_replaced_transcoder_are_ignored(supervisor, loop, factory):
    old = start_running(supervisor, factory)
    supervisor.rotate_source()
    old.emit_exit(False, -15)
    loop.advance(supervisor.settings.rotation_delay)
    new = factory.last

    old.emit_start()
    old.emit_progress()
    old.emit_error("Conversion failed!", 1)
    assert supervisor.session.restart_attempts == 0
    assert supervisor.session.state is SessionState.STARTING

    new.emit_start()
    assert supervisor.session.subprocess is new


def test_spawn_failure_enters_recovery(supervisor, loop, factory, selector):
    factory.fail_next = 1
    assert supervisor.start()
    assert supervisor.session.last_error['cause'] == 'spawn'
    assert supervisor.session.restart_attempts == 1
    assert supervisor.session.state is SessionState.RECOVERING
    assert selector.index('profile') == 1

    loop.advance(supervisor.settings.retry_delay)
    factory.last.emit_start()
    assert supervisor.session.state is SessionState.RUNNING


def test_external_termination_stops_cleanly(supervisor, loop, factory):
    start_running(supervisor, factory)
    factory.last.fail(message="Exiting normally, received signal 15.", code=255)
    assert supervisor.session.state is SessionState.IDLE
    assert supervisor.session.restart_attempts == 0
    loop.advance(60)
    assert len(factory.spawned) == 1


def test_silent_255_exit_stops_cleanly(supervisor, loop, factory):
    transcoder = start_running(supervisor, factory)
    transcoder.on_error(error_from_exit(255, ["[flv @ 0x1] Packet mismatch 1 2"]))
    transcoder.emit_exit(False, 255)
    assert supervisor.session.state is SessionState.IDLE
    assert supervisor.session.restart_attempts == 0
    loop.advance(60)
    assert len(factory.spawned) == 1


def test_consecutive_error_window(supervisor, loop, factory):
    start_running(supervisor, factory)
    factory.last.fail()
    assert supervisor.session.consecutive_error_count == 0
    loop.advance(supervisor.settings.retry_delay)
    factory.last.emit_start()
    factory.last.fail()
    assert supervisor.session.consecutive_error_count == 1

    loop.advance(supervisor.settings.retry_delay)
    factory.last.emit_start()
    loop.advance(20)
    factory.last.fail()
    assert supervisor.session.consecutive_error_count == 0


def test_periodic_probe_failures_advance_endpoint(make_supervisor, loop, factory, selector):
    prober = FakeProber()
    prober.results.extend([(False, "unreachable")] * 3)
    supervisor = make_supervisor(prober=prober, probe_interval=30, stale_threshold=1000)
    start_running(supervisor, factory)

    loop.advance(30)
    assert supervisor.session.probe_failures == 1
    loop.advance(30)
    assert supervisor.session.probe_failures == 2
    assert supervisor.session.running
    loop.advance(30)

    assert [mode for _, mode in prober.calls] == ['connect'] * 3
    assert supervisor.session.last_error['cause'] == 'probe'
    assert supervisor.session.probe_failures == 0
    assert selector.index('endpoint') == 1
    assert selector.index('profile') == 0
    assert supervisor.session.restart_attempts == 1


def test_probe_success_resets_failure_count(make_supervisor, loop, factory):
    prober = FakeProber()
    prober.results.extend([(False, "unreachable"), (True, "reachable")])
    supervisor = make_supervisor(prober=prober, probe_interval=30, stale_threshold=1000)
    start_running(supervisor, factory)
    loop.advance(30)
    assert supervisor.session.probe_failures == 1
    loop.advance(30)
    assert supervisor.session.probe_failures == 0


def test_failed_prestart_probe_is_a_connectivity_failure(make_supervisor, factory, selector):
    prober = FakeProber(default=(False, "test transmission failed"))
    supervisor = make_supervisor(prober=prober, probe_before_start=True)
    assert supervisor.start()

    assert prober.calls == [(ENDPOINTS[0], 'transmit')]
    assert factory.spawned == []
    assert selector.index('endpoint') == 1
    assert selector.index('profile') == 0
    assert supervisor.session.state is SessionState.RECOVERING


def test_successful_prestart_probe_spawns(make_supervisor, factory):
    prober = FakeProber()
    supervisor = make_supervisor(prober=prober, probe_before_start=True)
    supervisor.start()
    assert len(factory.spawned) == 1


def test_state_snapshot(supervisor, factory):
    start_running(supervisor, factory)
    state = supervisor.get_state()
    assert state['state'] == 'running'
    assert state['running'] and not state['degraded'] and not state['offline']
    assert state['profile'] == {'name': 'High Performance', 'index': 0, 'total': 3}
    assert state['endpoint'] == {'url': ENDPOINTS[0], 'index': 0, 'total': 3}
    assert state['source'] == {'url': SOURCES[0], 'index': 0, 'total': 2}
    assert state['pid'] == 4000
    assert state['seconds_since_activity'] == 0.0
    assert state['auto_restart'] is True
    assert state['last_error'] is None
    assert state['max_restart_attempts'] == 10


def test_state_snapshot_while_degraded(make_supervisor, loop, factory):
    supervisor = make_supervisor(max_restart_attempts=1)
    drive_to_degraded(supervisor, loop, factory)
    state = supervisor.get_state()
    assert state['degraded']
    assert state['state'] == 'degraded_running'
    assert state['profile']['name'] == 'Ultra Stable'
    assert state['source']['url'] == FALLBACK
    assert state['source']['index'] is None


def test_crash_report_written_on_failure(make_supervisor, factory, tmp_path):
    supervisor = make_supervisor(crash_reports=True, crash_dir=str(tmp_path))
    start_running(supervisor, factory)
    factory.last.fail(message="Conversion failed!")

    reports = list(tmp_path.glob('*_crash.log'))
    assert len(reports) == 1
    content = reports[0].read_text()
    assert "Cause: generic" in content
    assert "Conversion failed!" in content
    assert "profile: High Performance" in content


def test_session_state_persisted_and_restored(make_supervisor, loop, factory, tmp_path):
    path = tmp_path / "session.json"
    supervisor = make_supervisor(persist_session=True, persistence_file=str(path))
    start_running(supervisor, factory)
    supervisor.rotate_source()
    loop.advance(supervisor.settings.rotation_delay)
    factory.last.emit_start()
    supervisor.set_auto_restart(False)

    data = json.loads(path.read_text())
    assert data['indices']['source'] == 1
    assert data['auto_restart'] is False

    selector = RotationSelector(PROFILES, ENDPOINTS, SOURCES)
    restored = StreamSupervisor(selector, ManualLoop(), persistence_file=str(path))
    assert restored.restore_session()
    assert selector.index('source') == 1
    assert restored.session.auto_restart is False


def test_shutdown_stops_stream(supervisor, factory):
    transcoder = start_running(supervisor, factory)
    supervisor.shutdown()
    assert transcoder.killed
    assert supervisor.session.state is SessionState.IDLE
