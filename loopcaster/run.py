#!/usr/bin/env python3
"""
Launcher for LoopCaster: checks the environment, wires the supervisor to
the control surface and serves it until SIGINT/SIGTERM.
"""

import argparse
import atexit
import logging
import os
import shutil
import signal
import sys
from logging.handlers import RotatingFileHandler

from . import config
from .app import create_app
from .eventloop import EventLoop
from .fallback_image import ensure_fallback_image
from .profiles import PROFILES, RotationSelector
from .prober import ConnectionProber
from .supervisor import StreamSupervisor

logger = logging.getLogger("loopcaster")


def check_dependencies():
    """Check if required dependencies are available"""
    missing_deps = []

    if sys.version_info < (3, 8):
        missing_deps.append(f"Python 3.8+ (found {sys.version})")

    if not shutil.which(config.FFMPEG_PATH):
        missing_deps.append(f"FFmpeg (not found: {config.FFMPEG_PATH})")

    return missing_deps


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT
    )
    root_logger = logging.getLogger()
    if config.APP_LOG_FILE:
        os.makedirs(os.path.dirname(config.APP_LOG_FILE), exist_ok=True)
        app_log_handler = RotatingFileHandler(
            config.APP_LOG_FILE,
            maxBytes=config.APP_LOG_MAX_BYTES,
            backupCount=config.APP_LOG_BACKUP_COUNT
        )
        app_log_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))
        root_logger.addHandler(app_log_handler)
        logger.info(f"Application logging configured. Main application logs will be written to: {config.APP_LOG_FILE}")


def build_supervisor(loop):
    os.makedirs(config.CRASH_LOG_DIR, exist_ok=True)
    try:
        fallback_image = ensure_fallback_image(config.FALLBACK_IMAGE_PATH, config.FALLBACK_IMAGE_TEXT)
    except OSError as e:
        logger.error(f"Fallback image unavailable, degraded mode will not be able to stream: {e}")
        fallback_image = None

    selector = RotationSelector(PROFILES, config.ENDPOINTS, config.SOURCES, fallback_image=fallback_image)
    prober = ConnectionProber(config.FFMPEG_PATH, duration=config.PROBE_DURATION, timeout=config.PROBE_TIMEOUT)
    supervisor = StreamSupervisor(
        selector,
        loop,
        settings=config.SupervisorConfig.from_env(),
        prober=prober,
        stream_key=config.STREAM_KEY,
        ffmpeg_path=config.FFMPEG_PATH,
        ffmpeg_log_file=config.FFMPEG_LOG_FILE,
        crash_dir=config.CRASH_LOG_DIR,
        crash_retention_days=config.CRASH_LOG_RETENTION_DAYS,
        persistence_file=config.SESSION_PERSISTENCE_FILE,
    )
    if config.ENABLE_SESSION_PERSISTENCE:
        supervisor.restore_session()
    return supervisor


def install_shutdown_handlers(supervisor):
    state = {'done': False}

    def cleanup():
        if state['done']:
            return
        state['done'] = True
        supervisor.shutdown()
        logger.info("Cleanup complete.")

    def signal_handler(signum, frame):
        """Handle SIGINT (Ctrl+C) and SIGTERM signals"""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        cleanup()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    atexit.register(cleanup)
    return cleanup


def main(argv=None):
    parser = argparse.ArgumentParser(description='LoopCaster stream supervisor')
    parser.add_argument('--host', default=config.HOST, help=f'Bind address (default: {config.HOST})')
    parser.add_argument('--port', type=int, default=config.PORT, help=f'Port (default: {config.PORT})')
    parser.add_argument('--no-auto-start', action='store_true', help='Do not start streaming on launch')
    args = parser.parse_args(argv)

    setup_logging()

    missing_deps = check_dependencies()
    if missing_deps:
        for dep in missing_deps:
            logger.error(f"Missing dependency: {dep}")
        return 1

    errors = config.validate_config()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    print(
        f"\n"
        f"****************************************************\n"
        f"* LoopCaster Runtime Files Location:\n"
        f"****************************************************\n"
        f"  Base Temporary Directory: {config.BASE_TMP_DIR}\n"
        f"  Logs Directory:           {config.LOG_DIR}\n"
        f"  Crash Logs Directory:     {config.CRASH_LOG_DIR}\n"
        f"  Session State File:       {config.SESSION_PERSISTENCE_FILE}"
    )

    loop = EventLoop()
    loop.start()
    supervisor = build_supervisor(loop)
    install_shutdown_handlers(supervisor)

    if config.AUTO_START and not args.no_auto_start:
        logger.info(f"Auto-starting stream in {config.AUTO_START_DELAY}s")
        loop.call_later(config.AUTO_START_DELAY, supervisor.start)

    app = create_app(supervisor)
    app.logger.info(f"Control surface listening on http://{args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=config.DEBUG, use_reloader=False, threaded=True)
    return 0


if __name__ == '__main__':
    sys.exit(main())
