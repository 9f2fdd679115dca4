"""
Operator panel: a JSON view over the relay's state files, plus stop/restart.

Endpoints (all require `Authorization: Bearer <token>`):
    GET  /api/health       Relay health snapshot + liveness
    GET  /api/supervisor   Supervisor health snapshot
    GET  /api/messages     Message history, newest first
    GET  /api/logs?lines=N Tail of the activity log
    POST /api/stop         SIGTERM the supervisor (or an unsupervised relay)
    POST /api/restart      Ask the relay to exit so its supervisor respawns it

Control actions only signal PIDs whose heartbeat is fresh. The panel never
writes any file it serves.
"""

import hmac
import json
import logging
import os
import signal
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional, Tuple
from urllib import parse as urllib_parse

from .config import Config
from .exceptions import ConfigurationError
from .logs import tail_lines
from .state import heartbeat_age, is_alive, read_json
from .supervisor import RESTART_SIGNAL

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 100
MAX_LOG_LINES = 1000

Kill = Callable[[int, int], None]


def health_payload(config: Config, now: Optional[float] = None) -> dict:
    """Relay snapshot annotated with `bridge_running` and `heartbeat_age`."""
    now = now if now is not None else time.time()
    data = read_json(config.paths.health_file, {}) or {}
    age = heartbeat_age(data, now)
    payload = dict(data)
    payload["bridge_running"] = is_alive(data, config.liveness_threshold, now)
    payload["heartbeat_age"] = round(age, 1) if age is not None else None
    return payload


def supervisor_payload(config: Config) -> dict:
    data = read_json(config.paths.supervisor_health_file, None)
    return data if isinstance(data, dict) else {"status": "unknown"}


def messages_payload(config: Config) -> list:
    entries = read_json(config.paths.history_file, []) or []
    if not isinstance(entries, list):
        return []
    return list(reversed(entries))


def logs_payload(config: Config, lines: int = DEFAULT_LOG_LINES) -> dict:
    lines = max(1, min(lines, MAX_LOG_LINES))
    return {"lines": tail_lines(config.paths.log_file, lines)}


def live_pid(data: Optional[dict], threshold: float, now: Optional[float] = None) -> Optional[int]:
    """PID from a health snapshot, only while its heartbeat is fresh.

    A stale snapshot's PID may already belong to an unrelated process.
    """
    if not isinstance(data, dict) or not is_alive(data, threshold, now):
        return None
    pid = data.get("pid")
    return pid if isinstance(pid, int) and pid > 0 else None


def _signal_pid(kill: Kill, pid: int, sig: int, name: str) -> Tuple[int, dict]:
    try:
        kill(pid, sig)
    except ProcessLookupError:
        return HTTPStatus.CONFLICT, {"success": False, "message": f"{name} process {pid} not found"}
    except OSError as e:
        logger.error(f"Could not signal {name.lower()} {pid}: {e}")
        return HTTPStatus.INTERNAL_SERVER_ERROR, {"success": False, "message": str(e)}
    logger.info(f"Sent {signal.Signals(sig).name} to {name.lower()} {pid}")
    return HTTPStatus.OK, {"success": True, "pid": pid}


def stop_action(config: Config, kill: Kill = os.kill, now: Optional[float] = None) -> Tuple[int, dict]:
    """Stop the supervisor (which stops the relay), or a bare relay if none supervises it."""
    supervisor = read_json(config.paths.supervisor_health_file)
    relay = read_json(config.paths.health_file)

    if pid := live_pid(supervisor, config.supervisor.heartbeat_interval * 2, now):
        status, payload = _signal_pid(kill, pid, signal.SIGTERM, "Supervisor")
        payload.setdefault("message", "Supervisor stopping")
        return status, payload

    if pid := live_pid(relay, config.liveness_threshold, now):
        status, payload = _signal_pid(kill, pid, signal.SIGTERM, "Relay")
        payload.setdefault("message", "Relay stopping")
        return status, payload

    return HTTPStatus.CONFLICT, {"success": False, "message": "Nothing running"}


def restart_action(config: Config, kill: Kill = os.kill, now: Optional[float] = None) -> Tuple[int, dict]:
    """Ask the relay to exit for an immediate respawn by its supervisor."""
    supervisor = read_json(config.paths.supervisor_health_file)
    relay = read_json(config.paths.health_file)

    relay_pid = live_pid(relay, config.liveness_threshold, now)
    if relay_pid is None:
        return HTTPStatus.CONFLICT, {"success": False, "message": "Relay is not running"}

    supervisor_pid = live_pid(supervisor, config.supervisor.heartbeat_interval * 2, now)
    if supervisor_pid is None or supervisor.get("child_pid") != relay_pid:
        return HTTPStatus.CONFLICT, {
            "success": False,
            "message": "Relay is not running under a supervisor; a restart would only stop it",
        }

    status, payload = _signal_pid(kill, relay_pid, RESTART_SIGNAL, "Relay")
    payload.setdefault("message", "Relay restarting...")
    return status, payload


def make_panel_handler(config: Config, token: str, kill: Kill = os.kill) -> type[BaseHTTPRequestHandler]:
    expected = f"Bearer {token}"

    class PanelHandler(BaseHTTPRequestHandler):
        _config = config

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
            return

        def _send_bytes(self, status: int, data: bytes, content_type: str) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            self.wfile.write(data)

        def _send_json(self, status: int, payload: Any) -> None:
            body = json.dumps(payload, indent=2) + "\n"
            self._send_bytes(status, body.encode("utf-8"), "application/json; charset=utf-8")

        def _authorized(self) -> bool:
            supplied = self.headers.get("Authorization", "")
            return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))

        def _reject(self) -> bool:
            if self._authorized():
                return False
            logger.warning(f"Rejected panel request from {self.client_address[0]}")
            self._send_json(HTTPStatus.UNAUTHORIZED, {"error": "Unauthorized"})
            return True

        def do_GET(self) -> None:  # noqa: N802
            if self._reject():
                return

            parsed = urllib_parse.urlparse(self.path)
            path = parsed.path

            if path == "/api/health":
                self._send_json(HTTPStatus.OK, health_payload(self._config))
                return

            if path == "/api/supervisor":
                self._send_json(HTTPStatus.OK, supervisor_payload(self._config))
                return

            if path == "/api/messages":
                self._send_json(HTTPStatus.OK, messages_payload(self._config))
                return

            if path == "/api/logs":
                query = urllib_parse.parse_qs(parsed.query)
                try:
                    lines = int(query.get("lines", [DEFAULT_LOG_LINES])[0])
                except ValueError:
                    self._send_json(HTTPStatus.BAD_REQUEST, {"error": "lines must be an integer"})
                    return
                self._send_json(HTTPStatus.OK, logs_payload(self._config, lines))
                return

            self._send_json(HTTPStatus.NOT_FOUND, {"error": "Not found"})

        def do_POST(self) -> None:  # noqa: N802
            if self._reject():
                return

            path = urllib_parse.urlparse(self.path).path
            if path == "/api/stop":
                action = stop_action
            elif path == "/api/restart":
                action = restart_action
            else:
                self._send_json(HTTPStatus.NOT_FOUND, {"error": "Not found"})
                return

            logger.info(f"Panel control request: {path} from {self.client_address[0]}")
            status, payload = action(self._config, kill)
            self._send_json(status, payload)

    return PanelHandler


def build_panel_server(
    config: Config, port: Optional[int] = None, kill: Kill = os.kill
) -> ThreadingHTTPServer:
    """Bind the panel server. Raises ConfigurationError without a token."""
    token = config.panel.token
    if not token:
        raise ConfigurationError("Panel token is required (set RELAYBOT_PANEL_TOKEN)")
    handler = make_panel_handler(config, token, kill)
    bind_port = config.panel.port if port is None else port
    return ThreadingHTTPServer((config.panel.host, int(bind_port)), handler)
