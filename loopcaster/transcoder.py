"""
FFmpeg subprocess wrapper.

The supervisor treats ffmpeg as an opaque child process: it gets a start
confirmation, progress notifications parsed from ``-progress pipe:1``, at
most one error and exactly one exit notification. Everything ffmpeg prints
on stderr goes to the rotating ffmpeg log.
"""

import glob
import logging
import os
import platform
import re
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from logging.handlers import RotatingFileHandler

import psutil

from . import config
from .failures import TranscoderError
from .profiles import SILENT_AUDIO_INPUT, STILL_IMAGE_INPUT_OPTIONS

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50
_ERRNO_RE = re.compile(r'error number (-?\d+)', re.IGNORECASE)
FFMPEG_SIGNAL_EXIT = 255
STATS_PRIME_INTERVAL = 0.2  # Seconds

_ffmpeg_log_handlers = {}  # Cache for RotatingFileHandlers keyed by log path


def _get_ffmpeg_log_handler(log_file_path):
    if log_file_path not in _ffmpeg_log_handlers:
        os.makedirs(os.path.dirname(log_file_path), exist_ok=True)
        handler = RotatingFileHandler(
            log_file_path,
            maxBytes=getattr(config, 'FFMPEG_LOG_MAX_BYTES', 5*1024*1024),
            backupCount=getattr(config, 'FFMPEG_LOG_BACKUP_COUNT', 2)
        )
        handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))  # Simpler format for ffmpeg output
        _ffmpeg_log_handlers[log_file_path] = handler
    return _ffmpeg_log_handlers[log_file_path]


def get_ffmpeg_logger(log_file_path=None):
    """Non-propagating logger that writes raw ffmpeg output to its own rotating file."""
    ffmpeg_logger = logging.getLogger("loopcaster.ffmpeg_output")
    if log_file_path:
        handler = _get_ffmpeg_log_handler(log_file_path)
        if handler not in ffmpeg_logger.handlers:
            ffmpeg_logger.addHandler(handler)
            ffmpeg_logger.setLevel(logging.INFO)
            ffmpeg_logger.propagate = False
    return ffmpeg_logger


def build_command(source, profile, destination, ffmpeg_path='ffmpeg', duration=0, still_image=False):
    cmd = [ffmpeg_path, '-hide_banner', '-nostdin', '-loglevel', 'warning', '-progress', 'pipe:1', '-nostats']
    if still_image:
        cmd += STILL_IMAGE_INPUT_OPTIONS + ['-i', source] + SILENT_AUDIO_INPUT
        cmd += list(profile['output_options']) + ['-pix_fmt', 'yuv420p']
    else:
        cmd += list(profile['input_options']) + ['-i', source] + list(profile['output_options'])
    if duration and duration > 0:
        cmd += ['-t', str(int(duration))]
    cmd.append(destination)
    return cmd


def parse_progress_line(line, block):
    """Accumulate one ``key=value`` line into ``block``.

    Returns True when the line closes a progress block (``progress=...``).
    """
    line = line.strip()
    if '=' not in line:
        return False
    key, _, value = line.partition('=')
    block[key.strip()] = value.strip()
    return key.strip() == 'progress'


def error_from_exit(returncode, stderr_tail):
    """Build the TranscoderError reported for a non-zero exit.

    ffmpeg traps SIGTERM/SIGINT and exits with status 255; its "received
    signal" notice is logged at info level and hidden by ``-loglevel warning``.
    A 255 exit with no error line in the tail is therefore reported as a
    termination signal (code ``'signal'``).
    """
    message = f"ffmpeg exited with code {returncode}"
    code = returncode
    error_line = None
    for line in reversed(stderr_tail):
        lowered = line.lower()
        if 'error' in lowered or 'failed' in lowered or 'refused' in lowered or 'received signal' in lowered:
            error_line = line.strip()
            break
    if error_line:
        message = error_line
    elif returncode == FFMPEG_SIGNAL_EXIT:
        return TranscoderError("ffmpeg exited after a termination signal", code='signal', stderr_tail=stderr_tail)
    for line in reversed(stderr_tail):
        match = _ERRNO_RE.search(line)
        if match:
            code = int(match.group(1))
            break
    return TranscoderError(message, code=code, stderr_tail=stderr_tail)


def _signal_process_group(proc, sig=signal.SIGTERM):
    pid = proc.pid
    logger.info(f"Sending {signal.Signals(sig).name} to ffmpeg process group {pid}")
    try:
        if hasattr(os, 'killpg'):
            os.killpg(pid, sig)
        else:
            proc.terminate()
        return True
    except ProcessLookupError:
        logger.info(f"PGID {pid} not found for {signal.Signals(sig).name}.")
    except OSError as e:
        logger.warning(f"Error sending {signal.Signals(sig).name} to PGID {pid}: {e}")
    return False


def _escalate_kill(proc, grace=2.0):
    pid = proc.pid
    try:
        proc.wait(timeout=grace)
        return
    except subprocess.TimeoutExpired:
        pass
    try:
        if hasattr(os, 'killpg'):
            os.killpg(pid, signal.SIGKILL)
        else:
            proc.kill()
        logger.warning(f"ffmpeg process group {pid} required SIGKILL")
    except ProcessLookupError:
        logger.info(f"PGID {pid} not found for SIGKILL.")
    except OSError as e:
        logger.warning(f"Error sending SIGKILL to PGID {pid}: {e}")


class FFmpegTranscoder:
    """One ffmpeg run. Create a new instance for every spawn."""

    def __init__(self, source, profile, destination, ffmpeg_path='ffmpeg', duration=0, still_image=False,
                 on_start=None, on_progress=None, on_error=None, on_exit=None, log_file=None, kill_grace=2.0):
        self.source = source
        self.profile = profile
        self.destination = destination
        self.command = build_command(source, profile, destination, ffmpeg_path, duration, still_image)
        self.on_start = on_start
        self.on_progress = on_progress
        self.on_error = on_error
        self.on_exit = on_exit
        self.kill_grace = kill_grace
        self._ffmpeg_log = get_ffmpeg_logger(log_file)
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        self._proc = None
        self._kill_requested = False

    @property
    def pid(self):
        return self._proc.pid if self._proc else None

    @property
    def command_line(self):
        return " ".join(shlex.quote(part) for part in self.command)

    def stderr_tail(self):
        return list(self._stderr_tail)

    def run(self):
        """Spawn ffmpeg. Raises TranscoderError with code 'spawn' if it cannot be started."""
        try:
            self._proc = subprocess.Popen(
                self.command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, stdin=subprocess.DEVNULL,
                text=True, bufsize=1, start_new_session=True)
        except (OSError, ValueError) as e:
            raise TranscoderError(f"ffmpeg could not be started: {e}", code='spawn') from e

        logger.info(f"ffmpeg spawned with PID {self._proc.pid}")
        self._ffmpeg_log.info(f"Starting: {self.command_line}")

        stdout_reader = threading.Thread(target=self._read_progress, name=f"ffmpeg-progress-{self.pid}", daemon=True)
        stderr_reader = threading.Thread(target=self._read_stderr, name=f"ffmpeg-stderr-{self.pid}", daemon=True)
        stdout_reader.start()
        stderr_reader.start()
        if self.on_start:
            self.on_start(self.command_line)
        threading.Thread(target=self._wait, args=(stdout_reader, stderr_reader),
                         name=f"ffmpeg-wait-{self.pid}", daemon=True).start()

    def kill(self, sig=signal.SIGTERM):
        """Best-effort termination; the signal is sent now, SIGKILL escalation runs in the background."""
        self._kill_requested = True
        if self._proc is None or self._proc.poll() is not None:
            return
        if _signal_process_group(self._proc, sig):
            threading.Thread(target=_escalate_kill, args=(self._proc, self.kill_grace),
                             name=f"ffmpeg-kill-{self._proc.pid}", daemon=True).start()

    def _read_progress(self):
        block = {}
        try:
            for line in self._proc.stdout:
                if parse_progress_line(line, block):
                    if self.on_progress:
                        self.on_progress(block)
                    block = {}
        except (OSError, ValueError) as e:
            logger.debug(f"ffmpeg progress reader stopped: {e}")

    def _read_stderr(self):
        try:
            for line in self._proc.stderr:
                line = line.rstrip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                self._ffmpeg_log.info(line)
        except (OSError, ValueError) as e:
            logger.debug(f"ffmpeg stderr reader stopped: {e}")

    def _wait(self, stdout_reader, stderr_reader):
        returncode = self._proc.wait()
        stdout_reader.join(timeout=2)
        stderr_reader.join(timeout=2)
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream:
                stream.close()
        self._ffmpeg_log.info(f"ffmpeg (PID {self._proc.pid}) exited with code {returncode}")

        if self._kill_requested:
            if self.on_exit:
                self.on_exit(False, returncode)
            return
        if returncode != 0 and self.on_error:
            self.on_error(error_from_exit(returncode, self.stderr_tail()))
        if self.on_exit:
            self.on_exit(returncode == 0, returncode)


_monitored_process = {}  # pid -> psutil.Process kept between calls so cpu_percent has a baseline


def process_stats(pid):
    """CPU and memory usage for a running process, or None.

    CPU is measured since the previous call for the same pid; the first call
    samples over a short interval.
    """
    if not pid:
        return None
    try:
        process = _monitored_process.get(pid)
        if process is None:
            process = psutil.Process(pid)
            process.cpu_percent(interval=None)
            _monitored_process.clear()
            _monitored_process[pid] = process
            time.sleep(STATS_PRIME_INTERVAL)
        with process.oneshot():
            return {
                'cpu_percent': process.cpu_percent(interval=None),
                'memory_mb': process.memory_info().rss / (1024 * 1024),
                'status': process.status(),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        _monitored_process.pop(pid, None)
        return None


def save_crash_report(crash_dir, cause, error, command, session_info):
    """Write a crash report for one failed run. Returns the report path, or None."""
    os.makedirs(crash_dir, exist_ok=True)
    stamp = time.strftime('%Y%m%d-%H%M%S')
    path = os.path.join(crash_dir, f"ffmpeg_{stamp}_{int(time.time() * 1000) % 1000:03d}_crash.log")
    report = [f"FFmpeg Crash @ {time.strftime('%Y-%m-%d %H:%M:%S')}",
              f"Cause: {cause}",
              f"Code: {getattr(error, 'code', None)}, Message: {getattr(error, 'message', error)}",
              f"Cmd: {command or 'N/A'}", ""]
    report.append("--- Session ---")
    report.extend(f"{key}: {value}" for key, value in session_info.items())
    report.append("")
    tail = getattr(error, 'stderr_tail', None) or []
    report.append(f"--- STDERR (last {len(tail)}) ---")
    report.extend(tail)
    report.append("")
    report.append("--- System Info ---")
    try:
        report.append(f"Kernel: {' '.join(platform.uname())}")
        report.append(f"Load: {' '.join(f'{l:.2f}' for l in psutil.getloadavg())}")
        report.append(f"Memory available: {psutil.virtual_memory().available / (1024 * 1024):.0f} MB")
    except (OSError, AttributeError) as e:
        report.append(f"Sys Info Error: {e}")
    try:
        with open(path, 'w') as f:
            f.write("\n".join(report))
    except OSError as e:
        logger.error(f"Error saving crash report {path}: {e}")
        return None
    logger.info(f"Crash report: {path}")
    return path


def prune_crash_reports(crash_dir, retention_days, pattern="*_crash.log"):
    """Delete crash reports older than ``retention_days``. Returns the number deleted."""
    if not os.path.isdir(crash_dir):
        return 0
    now = time.time()
    deleted_count = 0
    for filename_path in glob.glob(os.path.join(crash_dir, pattern)):
        try:
            file_mtime = os.stat(filename_path).st_mtime
            if (now - file_mtime) > (retention_days * 86400):
                os.remove(filename_path)
                deleted_count += 1
                logger.info(f"Cleanup: Deleted old crash report {filename_path} (age: {(now - file_mtime)/86400:.1f} days)")
        except OSError as e:
            logger.error(f"Cleanup: Error deleting file {filename_path}: {e}")
    return deleted_count
