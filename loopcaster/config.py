# LoopCaster Configuration

import os
import platform
import tempfile
from dataclasses import dataclass, field

# Detect operating system
SYSTEM = platform.system().lower()
IS_WINDOWS = SYSTEM == 'windows'

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATE_DIR = os.path.join(BASE_DIR, "templates")

# Runtime directories - OS-specific temp directories
if IS_WINDOWS:
    DEFAULT_TMP_DIR = os.path.join(tempfile.gettempdir(), 'loopcaster')
else:
    DEFAULT_TMP_DIR = '/tmp/loopcaster'

BASE_TMP_DIR = os.environ.get('LOOPCASTER_TMP_DIR', DEFAULT_TMP_DIR)
LOG_DIR = os.path.join(BASE_TMP_DIR, "logs")
CRASH_LOG_DIR = os.path.join(BASE_TMP_DIR, "crash_logs")
FALLBACK_IMAGE_PATH = os.environ.get('FALLBACK_IMAGE_PATH', os.path.join(BASE_TMP_DIR, "fallback.png"))
FALLBACK_IMAGE_TEXT = os.environ.get('FALLBACK_IMAGE_TEXT', 'We will be right back')

# Server configuration
HOST = os.environ.get('LOOPCASTER_HOST', '0.0.0.0')
PORT = int(os.environ.get('LOOPCASTER_PORT', os.environ.get('PORT', '3000')))
DEBUG = os.environ.get('LOOPCASTER_DEBUG', 'False').lower() == 'true'
AUTO_START = os.environ.get('AUTO_START', 'True').lower() == 'true'
AUTO_START_DELAY = float(os.environ.get('AUTO_START_DELAY', '3'))  # Seconds after the server comes up

# Ingest and sources
FFMPEG_PATH = os.environ.get('FFMPEG_PATH', 'ffmpeg')
STREAM_KEY = os.environ.get('STREAM_KEY', '')
ENDPOINTS = [e.strip() for e in os.environ.get(
    'LOOPCASTER_ENDPOINTS',
    'rtmps://ingest.example.com:443/live,rtmp://ingest.example.com/live,rtmps://backup-ingest.example.com:443/live'
).split(',') if e.strip()]
SOURCES = [s.strip() for s in os.environ.get(
    'LOOPCASTER_SOURCES',
    'https://media.example.com/loop-1.mp4,https://media.example.com/loop-2.mp4'
).split(',') if s.strip()]

# Recovery policy
MAX_RESTART_ATTEMPTS = int(os.environ.get('MAX_RESTART_ATTEMPTS', '10'))
MAX_DEGRADED_ATTEMPTS = int(os.environ.get('MAX_DEGRADED_ATTEMPTS', '5'))
RETRY_DELAY = float(os.environ.get('RETRY_DELAY', '2'))  # Seconds
DEGRADED_ENTRY_DELAY = float(os.environ.get('DEGRADED_ENTRY_DELAY', '3'))
DEGRADED_RETRY_DELAY = float(os.environ.get('DEGRADED_RETRY_DELAY', '5'))
RESTART_DELAY = float(os.environ.get('RESTART_DELAY', '1.5'))
ROTATION_DELAY = float(os.environ.get('ROTATION_DELAY', '1'))
SOURCE_ROTATION_INTERVAL = float(os.environ.get('SOURCE_ROTATION_INTERVAL', '300'))  # 0 disables
ERROR_WINDOW = float(os.environ.get('ERROR_WINDOW', '10'))
# Seconds, 0 = unlimited. Sources are read with -stream_loop -1 and never end
# on their own, so moving to the next source at the end of a run needs a
# positive cap; with 0 only SOURCE_ROTATION_INTERVAL rotates sources.
SESSION_DURATION_CAP = int(os.environ.get('SESSION_DURATION_CAP', '0'))
DEGRADED_DURATION_CAP = int(os.environ.get('DEGRADED_DURATION_CAP', str(6 * 3600)))

# Liveness monitoring
LIVENESS_INTERVAL = float(os.environ.get('LIVENESS_INTERVAL', '5'))
STALE_THRESHOLD = float(os.environ.get('STALE_THRESHOLD', '30'))

# Connection probing
PROBE_BEFORE_START = os.environ.get('PROBE_BEFORE_START', 'False').lower() == 'true'
PROBE_INTERVAL = float(os.environ.get('PROBE_INTERVAL', '30'))  # 0 disables periodic probing
PROBE_DURATION = float(os.environ.get('PROBE_DURATION', '3'))
PROBE_TIMEOUT = float(os.environ.get('PROBE_TIMEOUT', '5'))
PROBE_FAILURE_THRESHOLD = int(os.environ.get('PROBE_FAILURE_THRESHOLD', '3'))

# Failure classification. Negative codes are errno values reported by ffmpeg,
# the positive ones are the same values as seen in a process exit status.
CONNECTIVITY_EXIT_CODES = [int(c) for c in os.environ.get(
    'CONNECTIVITY_EXIT_CODES', '-5,251,-104,152,-110,146,-111,145,-113,143,-32,224').split(',') if c.strip()]
CONNECTIVITY_PATTERNS = [
    'connection refused', 'connection reset', 'connection timed out', 'input/output error',
    'network is unreachable', 'no route to host', 'broken pipe', 'handshake',
    'server returned 4', 'failed to resolve hostname', 'error opening output',
]

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

APP_LOG_FILE = os.environ.get('APP_LOG_FILE', os.path.join(LOG_DIR, "app.log"))
APP_LOG_MAX_BYTES = int(os.environ.get('APP_LOG_MAX_BYTES', 10*1024*1024))  # 10 MB
APP_LOG_BACKUP_COUNT = int(os.environ.get('APP_LOG_BACKUP_COUNT', 5))

# FFmpeg stderr log (written by the transcoder's reader thread)
FFMPEG_LOG_FILE = os.environ.get('FFMPEG_LOG_FILE', os.path.join(LOG_DIR, "ffmpeg.log"))
FFMPEG_LOG_MAX_BYTES = int(os.environ.get('FFMPEG_LOG_MAX_BYTES', 5*1024*1024))
FFMPEG_LOG_BACKUP_COUNT = int(os.environ.get('FFMPEG_LOG_BACKUP_COUNT', 2))

# Crash reports
ENABLE_CRASH_REPORTS = os.environ.get('ENABLE_CRASH_REPORTS', 'True').lower() == 'true'
CRASH_LOG_RETENTION_DAYS = int(os.environ.get('CRASH_LOG_RETENTION_DAYS', 30))

# Session persistence
ENABLE_SESSION_PERSISTENCE = os.environ.get('ENABLE_SESSION_PERSISTENCE', 'True').lower() == 'true'
SESSION_PERSISTENCE_DIR = os.environ.get('SESSION_PERSISTENCE_DIR', os.path.join(BASE_TMP_DIR, 'data'))
SESSION_PERSISTENCE_FILE = os.path.join(SESSION_PERSISTENCE_DIR, "session.json")

# Flask Secret Key
SECRET_KEY = os.environ.get('SECRET_KEY', 'a_very_secret_dev_key_please_change_in_prod')


@dataclass
class SupervisorConfig:
    """Thresholds, delays and caps used by the stream supervisor.

    All durations are in seconds. Build from the environment with
    ``SupervisorConfig.from_env()``; tests construct it directly.
    """
    max_restart_attempts: int = 10
    max_degraded_attempts: int = 5
    retry_delay: float = 2.0
    degraded_entry_delay: float = 3.0
    degraded_retry_delay: float = 5.0
    restart_delay: float = 1.5
    rotation_delay: float = 1.0
    source_rotation_interval: float = 300.0
    error_window: float = 10.0
    session_duration_cap: int = 0
    degraded_duration_cap: int = 6 * 3600
    liveness_interval: float = 5.0
    stale_threshold: float = 30.0
    probe_before_start: bool = False
    probe_interval: float = 30.0
    probe_failure_threshold: int = 3
    connectivity_exit_codes: list = field(default_factory=lambda: list(CONNECTIVITY_EXIT_CODES))
    connectivity_patterns: list = field(default_factory=lambda: list(CONNECTIVITY_PATTERNS))
    crash_reports: bool = False
    persist_session: bool = False

    @classmethod
    def from_env(cls):
        return cls(
            max_restart_attempts=MAX_RESTART_ATTEMPTS,
            max_degraded_attempts=MAX_DEGRADED_ATTEMPTS,
            retry_delay=RETRY_DELAY,
            degraded_entry_delay=DEGRADED_ENTRY_DELAY,
            degraded_retry_delay=DEGRADED_RETRY_DELAY,
            restart_delay=RESTART_DELAY,
            rotation_delay=ROTATION_DELAY,
            source_rotation_interval=SOURCE_ROTATION_INTERVAL,
            error_window=ERROR_WINDOW,
            session_duration_cap=SESSION_DURATION_CAP,
            degraded_duration_cap=DEGRADED_DURATION_CAP,
            liveness_interval=LIVENESS_INTERVAL,
            stale_threshold=STALE_THRESHOLD,
            probe_before_start=PROBE_BEFORE_START,
            probe_interval=PROBE_INTERVAL,
            probe_failure_threshold=PROBE_FAILURE_THRESHOLD,
            crash_reports=ENABLE_CRASH_REPORTS,
            persist_session=ENABLE_SESSION_PERSISTENCE,
        )


def validate_config():
    """Validate configuration values"""
    errors = []

    if not ENDPOINTS:
        errors.append("At least one ingest endpoint is required (LOOPCASTER_ENDPOINTS)")
    for endpoint in ENDPOINTS:
        if not endpoint.startswith(('rtmp://', 'rtmps://')):
            errors.append(f"Endpoint must be an rtmp:// or rtmps:// URI, got {endpoint}")

    if not SOURCES:
        errors.append("At least one source is required (LOOPCASTER_SOURCES)")

    if not STREAM_KEY:
        errors.append("STREAM_KEY is not set")

    if MAX_RESTART_ATTEMPTS < 0:
        errors.append(f"MAX_RESTART_ATTEMPTS must not be negative, got {MAX_RESTART_ATTEMPTS}")

    if STALE_THRESHOLD <= LIVENESS_INTERVAL:
        errors.append(f"STALE_THRESHOLD ({STALE_THRESHOLD}) must be larger than LIVENESS_INTERVAL ({LIVENESS_INTERVAL})")

    if PORT < 1 or PORT > 65535:
        errors.append(f"PORT must be between 1 and 65535, got {PORT}")

    return errors
