"""
Encoding profiles, ingest endpoints and sources, plus the rotation cursor
the supervisor walks through them with.
"""

from typing import Dict, List, Optional

LOOP_INPUT_OPTIONS = ['-re', '-stream_loop', '-1', '-fflags', '+genpts', '-avoid_negative_ts', 'make_zero']

# Ordered from most aggressive to most conservative. The last entry is
# the one used in degraded mode.
PROFILES = [
    {
        'name': 'High Performance',
        'input_options': LOOP_INPUT_OPTIONS,
        'output_options': ['-c:v', 'libx264', '-preset', 'ultrafast', '-tune', 'zerolatency', '-crf', '22',
                           '-maxrate', '3M', '-bufsize', '1M', '-g', '30', '-c:a', 'aac', '-b:a', '128k', '-f', 'flv'],
    },
    {
        'name': 'Stable Fallback',
        'input_options': LOOP_INPUT_OPTIONS,
        'output_options': ['-c:v', 'libx264', '-preset', 'ultrafast', '-tune', 'zerolatency', '-crf', '25',
                           '-maxrate', '2M', '-bufsize', '1M', '-g', '60', '-c:a', 'aac', '-b:a', '96k', '-f', 'flv'],
    },
    {
        'name': 'Ultra Stable',
        'input_options': LOOP_INPUT_OPTIONS,
        'output_options': ['-c:v', 'libx264', '-preset', 'fast', '-tune', 'zerolatency', '-crf', '28',
                           '-maxrate', '1M', '-bufsize', '2M', '-g', '120', '-c:a', 'aac', '-b:a', '64k', '-f', 'flv'],
    },
]

# Still image input: loop the picture and add a silent audio track, ingest
# servers tend to drop video-only publishes.
STILL_IMAGE_INPUT_OPTIONS = ['-re', '-loop', '1', '-framerate', '30']
SILENT_AUDIO_INPUT = ['-f', 'lavfi', '-i', 'anullsrc=channel_layout=stereo:sample_rate=44100']

DIMENSIONS = ('profile', 'endpoint', 'source')


class RotationSelector:
    """Current position in the profile, endpoint and source tables."""

    def __init__(self, profiles: List[Dict], endpoints: List[str], sources: List[str],
                 fallback_image: Optional[str] = None):
        if not profiles:
            raise ValueError("At least one encoding profile is required")
        if not endpoints:
            raise ValueError("At least one ingest endpoint is required")
        if not sources:
            raise ValueError("At least one source is required")
        self.profiles = list(profiles)
        self.endpoints = list(endpoints)
        self.sources = list(sources)
        self.fallback_image = fallback_image
        self.indices = {d: 0 for d in DIMENSIONS}

    def _table(self, dimension):
        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown rotation dimension: {dimension}")
        return {'profile': self.profiles, 'endpoint': self.endpoints, 'source': self.sources}[dimension]

    def total(self, dimension) -> int:
        return len(self._table(dimension))

    def index(self, dimension) -> int:
        return self.indices[dimension] % self.total(dimension)

    def current_profile(self) -> Dict:
        return self.profiles[self.index('profile')]

    def current_endpoint(self) -> str:
        return self.endpoints[self.index('endpoint')]

    def current_source(self) -> str:
        return self.sources[self.index('source')]

    def conservative_profile(self) -> Dict:
        return self.profiles[-1]

    def advance(self, dimension) -> bool:
        """Move one step along ``dimension``. Returns True when it wrapped to 0."""
        total = self.total(dimension)
        self.indices[dimension] = (self.indices[dimension] + 1) % total
        return self.indices[dimension] == 0

    def reset(self):
        self.indices = {d: 0 for d in DIMENSIONS}

    def restore(self, indices):
        """Restore saved positions, ignoring unknown or malformed entries."""
        for dimension in DIMENSIONS:
            value = indices.get(dimension)
            if isinstance(value, int) and value >= 0:
                self.indices[dimension] = value % self.total(dimension)

    def destination(self, stream_key) -> str:
        endpoint = self.current_endpoint().rstrip('/')
        return f"{endpoint}/{stream_key}" if stream_key else endpoint
