"""
Connection prober: short-lived checks that an ingest endpoint accepts us.

``transmit`` pushes a few seconds of a synthetic test pattern with ffmpeg,
which is only safe while no live session is publishing to the same key.
``connect`` only opens a TCP connection to the endpoint host, which is what
the supervisor uses during an active session.
"""

import logging
import socket
import subprocess
import threading
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {'rtmp': 1935, 'rtmps': 443}


def endpoint_address(endpoint_url):
    parsed = urlparse(endpoint_url)
    if not parsed.hostname:
        raise ValueError(f"Endpoint has no host: {endpoint_url}")
    port = parsed.port or DEFAULT_PORTS.get(parsed.scheme, 1935)
    return parsed.hostname, port


def synthetic_stream_command(destination, ffmpeg_path='ffmpeg', duration=3):
    return [
        ffmpeg_path, '-hide_banner', '-nostdin', '-loglevel', 'error',
        '-re', '-f', 'lavfi', '-i', f'testsrc=size=640x360:rate=30:duration={duration}',
        '-f', 'lavfi', '-i', 'anullsrc=channel_layout=stereo:sample_rate=44100',
        '-c:v', 'libx264', '-preset', 'ultrafast', '-tune', 'zerolatency', '-pix_fmt', 'yuv420p',
        '-c:a', 'aac', '-b:a', '64k', '-t', str(duration), '-f', 'flv', destination,
    ]


class ConnectionProber:
    def __init__(self, ffmpeg_path='ffmpeg', duration=3.0, timeout=5.0):
        self.ffmpeg_path = ffmpeg_path
        self.duration = duration
        self.timeout = timeout

    def probe(self, endpoint_url, destination, callback, mode='connect'):
        """Run one probe on a worker thread; ``callback(ok, message)`` is called exactly once."""
        if mode not in ('connect', 'transmit'):
            raise ValueError(f"Unknown probe mode: {mode}")
        target = self.check_connect if mode == 'connect' else self.check_transmit
        arg = endpoint_url if mode == 'connect' else destination

        def _worker():
            try:
                ok, message = target(arg)
            except Exception as e:
                ok, message = False, f"probe error: {e}"
            callback(ok, message)

        thread = threading.Thread(target=_worker, name=f"probe-{mode}", daemon=True)
        thread.start()
        return thread

    def check_connect(self, endpoint_url):
        try:
            host, port = endpoint_address(endpoint_url)
        except ValueError as e:
            return False, str(e)
        try:
            with socket.create_connection((host, port), timeout=self.timeout):
                return True, f"{host}:{port} reachable"
        except OSError as e:
            return False, f"{host}:{port} unreachable: {e}"

    def check_transmit(self, destination):
        cmd = synthetic_stream_command(destination, self.ffmpeg_path, int(max(1, self.duration)))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.duration + self.timeout,
                                    stdin=subprocess.DEVNULL, check=False)
        except subprocess.TimeoutExpired:
            return False, f"test transmission did not finish within {self.duration + self.timeout:.0f}s"
        except OSError as e:
            return False, f"test transmission could not start: {e}"
        if result.returncode == 0:
            return True, "test transmission succeeded"
        last_line = (result.stderr or '').strip().splitlines()[-1:] or [f"exit code {result.returncode}"]
        return False, f"test transmission failed: {last_line[0]}"
