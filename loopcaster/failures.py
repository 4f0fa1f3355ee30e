"""
Failure taxonomy for the transcoder subprocess.
"""

import enum
import signal
from typing import Iterable, Optional


class FailureKind(enum.Enum):
    SPAWN = 'spawn'
    CONNECTIVITY = 'connectivity'
    GENERIC = 'generic'
    OPERATOR_TERMINATED = 'operator-terminated'
    ACTIVITY_TIMEOUT = 'activity-timeout'
    PROBE = 'probe'


class TranscoderError(Exception):
    """Raised or reported when the transcoder fails.

    ``code`` is the process exit status (negative for a signal, as reported
    by ``subprocess``), an errno-style value, or a short symbolic string.
    """

    def __init__(self, message, code=None, stderr_tail=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.stderr_tail = list(stderr_tail or [])

    def __str__(self):
        if self.code is None:
            return self.message
        return f"{self.message} (code {self.code})"


_TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def is_operator_termination(error: TranscoderError) -> bool:
    """True when the subprocess was ended by a termination signal we did not send."""
    if isinstance(error.code, int) and error.code < 0 and -error.code in [int(s) for s in _TERMINATION_SIGNALS]:
        return True
    if error.code in ('SIGTERM', 'SIGINT', 'signal'):
        return True
    # ffmpeg traps SIGTERM/SIGINT and exits on its own with this message
    text = " ".join([error.message] + error.stderr_tail).lower()
    return 'exiting normally, received signal' in text


def classify_failure(error: Optional[TranscoderError], connectivity_codes: Iterable = (),
                     connectivity_patterns: Iterable[str] = ()) -> FailureKind:
    if error is None:
        return FailureKind.GENERIC
    if error.code == 'spawn':
        return FailureKind.SPAWN
    if is_operator_termination(error):
        return FailureKind.OPERATOR_TERMINATED
    if error.code is not None and error.code in set(connectivity_codes):
        return FailureKind.CONNECTIVITY
    text = " ".join([error.message] + error.stderr_tail).lower()
    if any(pattern.lower() in text for pattern in connectivity_patterns):
        return FailureKind.CONNECTIVITY
    return FailureKind.GENERIC
