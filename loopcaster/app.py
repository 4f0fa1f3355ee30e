from flask import Flask, render_template, jsonify, request, Response
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import html
import os
import time
from collections import deque

from . import config
from .transcoder import process_stats

LOG_TAIL_LINES = 500


def _latest_crash_report(crash_dir):
    if not os.path.isdir(crash_dir):
        return None
    reports = [os.path.join(crash_dir, f) for f in os.listdir(crash_dir) if f.endswith('_crash.log')]
    return max(reports, key=os.path.getmtime) if reports else None


def _read_log_tail(file_path, num_lines):
    with open(file_path, 'r', errors='replace') as f:
        return list(deque(f, maxlen=num_lines))


def create_app(supervisor, app_log_file=None, ffmpeg_log_file=None, crash_dir=None):
    """Build the Flask control surface around one ``StreamSupervisor``."""
    app = Flask(__name__, template_folder=config.TEMPLATE_DIR)
    app.secret_key = config.SECRET_KEY
    CORS(app)
    app.config['SUPERVISOR'] = supervisor

    log_files = {
        'main': lambda: app_log_file or config.APP_LOG_FILE,
        'ffmpeg': lambda: ffmpeg_log_file or config.FFMPEG_LOG_FILE,
        'crash': lambda: _latest_crash_report(crash_dir or config.CRASH_LOG_DIR),
    }

    @app.route('/')
    def index_route():
        return render_template('index.html', config=config)

    @app.route('/status', methods=['GET'])
    def status_route():
        state = supervisor.get_state()
        state['process'] = process_stats(state.get('pid'))
        state['timestamp'] = time.time()
        return jsonify(success=True, status=state)

    @app.route('/health', methods=['GET'])
    def health_route():
        state = supervisor.get_state()
        return jsonify(success=True, service='up', state=state['state'], running=state['running'],
                       offline=state['offline'])

    @app.route('/start', methods=['POST'])
    def start_route():
        app.logger.info("Start requested via control surface")
        if supervisor.start():
            return jsonify(success=True, message="Stream start initiated")
        return jsonify(success=True, message="Stream is already running or starting")

    @app.route('/stop', methods=['POST'])
    def stop_route():
        app.logger.info("Stop requested via control surface")
        if supervisor.stop():
            return jsonify(success=True, message="Stream stopped")
        return jsonify(success=True, message="Stream was not running")

    @app.route('/restart', methods=['POST'])
    def restart_route():
        app.logger.info("Restart requested via control surface")
        supervisor.restart()
        return jsonify(success=True, message=f"Stream restarting in {supervisor.settings.restart_delay}s")

    @app.route('/rotate', methods=['POST'])
    def rotate_route():
        app.logger.info("Source rotation requested via control surface")
        if supervisor.rotate_source():
            return jsonify(success=True, message="Rotating to the next source")
        return jsonify(success=False, message="Source rotation is only possible while streaming normally"), 409

    @app.route('/auto_restart', methods=['POST'])
    def auto_restart_route():
        data = request.get_json(silent=True) or {}
        if 'enabled' not in data:
            app.logger.warning("auto_restart request without 'enabled' field")
            return jsonify(success=False, message="Missing 'enabled' field"), 400
        enabled = supervisor.set_auto_restart(bool(data['enabled']))
        return jsonify(success=True, message=f"Auto-restart {'enabled' if enabled else 'disabled'}",
                       enabled=enabled)

    @app.route('/clear_state', methods=['POST'])
    def clear_state_route():
        """Forget the persisted rotation indices and auto-restart flag"""
        if supervisor.clear_saved_state():
            app.logger.info("Cleared persisted session state")
            return jsonify(success=True, message="Persisted session state cleared")
        return jsonify(success=False, message="Session persistence is not configured"), 409

    @app.route('/view_log/<log_type>')
    def view_log_route(log_type):
        if log_type not in log_files:
            return "Invalid log type.", 400
        file_path = log_files[log_type]()
        if not file_path or not os.path.exists(file_path):
            return f"Log ({log_type}) not found.", 404
        try:
            lines = _read_log_tail(file_path, LOG_TAIL_LINES)
        except OSError as e:
            app.logger.error(f"Error reading log file {file_path}: {e}")
            return f"Error reading log ({log_type}).", 500

        body = "".join(html.escape(line) for line in lines)
        page = (f"<!DOCTYPE html><html lang=\"en\"><head><meta charset=\"UTF-8\">"
                f"<title>Log Viewer - {html.escape(log_type)}</title>"
                f"<style>body {{ font-family: monospace; background-color: #1e1e1e; color: #d4d4d4; padding: 20px; }}"
                f" pre {{ white-space: pre-wrap; }}</style></head>"
                f"<body><h1>{html.escape(os.path.basename(file_path))}</h1>"
                f"<p>Last {len(lines)} lines</p><pre>{body}</pre></body></html>")
        return Response(page, mimetype='text/html')

    @app.errorhandler(Exception)
    def handle_unhandled_exception(e):
        if isinstance(e, HTTPException):
            return e
        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify(success=False, message="An unhandled server error occurred."), 500

    return app
