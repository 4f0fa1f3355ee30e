"""LoopCaster: keeps a looping ffmpeg push to an RTMP/RTMPS ingest alive."""

__version__ = "1.0.0"
