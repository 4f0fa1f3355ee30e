#!/usr/bin/env python3
"""
LoopCaster control client.

Talks to a running LoopCaster control surface over HTTP:

    loopcaster-ctl status | health
    loopcaster-ctl start | stop | restart | rotate
    loopcaster-ctl auto-restart on|off
    loopcaster-ctl clear-state
"""

import argparse
import json
import os
import sys
from typing import Dict, Optional

import requests

DEFAULT_API_URL = os.environ.get('LOOPCASTER_API_URL', "http://localhost:3000")


class ControlError(Exception):
    pass


class StreamController:
    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 15.0):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method: str, path: str, payload: Optional[Dict] = None) -> Dict:
        try:
            response = self.session.request(method, f"{self.api_url}{path}", json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ControlError(f"API connection failed: {e}") from e
        try:
            result = response.json()
        except ValueError:
            raise ControlError(f"Unexpected response ({response.status_code}): {response.text[:200]}")
        if response.status_code >= 400 or not result.get('success', False):
            raise ControlError(result.get('message', f"Request failed with status {response.status_code}"))
        return result

    def status(self) -> Dict:
        return self._request('GET', '/status')['status']

    def health(self) -> Dict:
        return self._request('GET', '/health')

    def start(self) -> str:
        return self._request('POST', '/start')['message']

    def stop(self) -> str:
        return self._request('POST', '/stop')['message']

    def restart(self) -> str:
        return self._request('POST', '/restart')['message']

    def rotate(self) -> str:
        return self._request('POST', '/rotate')['message']

    def set_auto_restart(self, enabled: bool) -> str:
        return self._request('POST', '/auto_restart', {'enabled': enabled})['message']

    def clear_state(self) -> str:
        return self._request('POST', '/clear_state')['message']


def format_status(status: Dict) -> str:
    """Render a status snapshot as aligned ``key: value`` lines"""
    lines = [
        ("State", status['state']),
        ("Profile", f"{status['profile']['name']} ({status['profile']['index'] + 1}/{status['profile']['total']})"),
        ("Endpoint", f"{status['endpoint']['url']} ({status['endpoint']['index'] + 1}/{status['endpoint']['total']})"),
    ]
    source = status['source']
    if source['index'] is None:
        lines.append(("Source", f"{source['url']} (fallback)"))
    else:
        lines.append(("Source", f"{source['url']} ({source['index'] + 1}/{source['total']})"))
    lines += [
        ("Restart attempts", f"{status['restart_attempts']}/{status['max_restart_attempts']}"),
        ("Degraded attempts", f"{status['degraded_attempts']}/{status['max_degraded_attempts']}"),
        ("Auto-restart", "on" if status['auto_restart'] else "off"),
        ("Since activity", "-" if status['seconds_since_activity'] is None else f"{status['seconds_since_activity']}s"),
        ("PID", status['pid'] or "-"),
    ]
    if status.get('last_error'):
        lines.append(("Last error", f"[{status['last_error']['cause']}] {status['last_error']['message']}"))
    width = max(len(label) for label, _ in lines)
    return "\n".join(f"{label.ljust(width)} : {value}" for label, value in lines)


def main(argv=None):
    parser = argparse.ArgumentParser(description="LoopCaster control client")
    parser.add_argument("--api-url",
                        default=DEFAULT_API_URL,
                        help=f"LoopCaster API URL (default: {DEFAULT_API_URL})")
    parser.add_argument("--json",
                        action="store_true",
                        help="Print raw JSON for status and health")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show the stream status")
    subparsers.add_parser("health", help="Check that the service is up")
    subparsers.add_parser("start", help="Start streaming")
    subparsers.add_parser("stop", help="Stop streaming")
    subparsers.add_parser("restart", help="Stop, then start again")
    subparsers.add_parser("rotate", help="Switch to the next source")
    auto_restart = subparsers.add_parser("auto-restart", help="Enable or disable automatic recovery")
    auto_restart.add_argument("mode", choices=["on", "off"])
    subparsers.add_parser("clear-state", help="Forget the persisted rotation state")

    args = parser.parse_args(argv)
    controller = StreamController(args.api_url)

    try:
        if args.command == "status":
            status = controller.status()
            print(json.dumps(status, indent=2) if args.json else format_status(status))
        elif args.command == "health":
            health = controller.health()
            if args.json:
                print(json.dumps(health, indent=2))
            else:
                print(f"Service {health['service']}, stream {health['state']}"
                      f"{' (offline)' if health.get('offline') else ''}")
        elif args.command == "clear-state":
            print(controller.clear_state())
        elif args.command == "auto-restart":
            print(controller.set_auto_restart(args.mode == "on"))
        else:
            print(getattr(controller, args.command)())
    except ControlError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
