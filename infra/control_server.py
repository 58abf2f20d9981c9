"""Lightweight HTTP control API for the scheduler, telemetry and execution history."""

from __future__ import annotations

import json
import logging
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from core.exceptions import ConcurrencyConflict, DelegationExpired, DelegationNotFound, ValidationError

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

_EXECUTIONS = re.compile(r"^/executions/(?P<account>[^/]+)(?P<suffix>/summary|/analytics)?$")
_PREVIEW = re.compile(r"^/preview/(?P<account>[^/]+)$")


def _int_param(query: Dict[str, Any], name: str, default: int, low: int, high: int) -> int:
    values = query.get(name)
    if not values:
        return default
    try:
        return max(low, min(high, int(values[0])))
    except ValueError:
        return default


class ControlApi:
    """
    Request routing, independent of the HTTP transport.

    handle_request(method, path) returns (status, payload) so routes can be
    exercised without sockets.
    """

    def __init__(self, scheduler, telemetry, history, orchestrator):
        self.scheduler = scheduler
        self.telemetry = telemetry
        self.history = history
        self.orchestrator = orchestrator

    def handle_request(self, method: str, raw_path: str) -> Response:
        parsed = urlparse(raw_path)
        path = parsed.path.rstrip("/") or "/"
        query = parse_qs(parsed.query)

        try:
            if method == "GET":
                return self._get(path, query)
            if method == "POST":
                return self._post(path)
        except Exception as e:
            logger.error(f"Control request {method} {path} failed: {e}", exc_info=True)
            return 500, {"message": str(e) or "Internal error"}
        return 405, {"message": f"Method {method} not allowed"}

    def _get(self, path: str, query: Dict[str, Any]) -> Response:
        if path in ("/", "/health", "/healthz"):
            status = self.scheduler.get_status()
            return 200, {
                "ok": True,
                "scheduler": {"enabled": status["enabled"], "running": status["running"]},
                "telemetry": self.telemetry.summary(),
            }

        if path == "/scheduler/status":
            return 200, self.scheduler.get_status()

        if path == "/telemetry":
            limit = _int_param(query, "limit", 20, 0, 500)
            return 200, self.telemetry.get_metrics(limit)

        match = _EXECUTIONS.match(path)
        if match:
            account = match.group("account")
            suffix = match.group("suffix")
            if suffix == "/summary":
                return 200, self.history.summarize(account)
            if suffix == "/analytics":
                return 200, self.history.analyze(account)
            limit = _int_param(query, "limit", 10, 1, 200)
            records = self.history.list(account, limit)
            return 200, {"account": account.lower(), "executions": [r.to_dict() for r in records]}

        match = _PREVIEW.match(path)
        if match:
            try:
                return 200, self.orchestrator.preview(match.group("account")).to_dict()
            except DelegationNotFound as e:
                return 404, {"message": str(e)}
            except (DelegationExpired, ValidationError) as e:
                return 422, {"message": str(e)}

        return 404, {"message": f"Not found: {path}"}

    def _post(self, path: str) -> Response:
        if path == "/scheduler/start":
            started = self.scheduler.start()
            return 200, {"started": started, "status": self.scheduler.get_status()}

        if path == "/scheduler/stop":
            stopped = self.scheduler.stop()
            return 200, {"stopped": stopped, "status": self.scheduler.get_status()}

        if path == "/scheduler/run-once":
            try:
                summary = self.scheduler.run_once("manual")
            except ConcurrencyConflict as e:
                return 409, {"message": str(e), "status": self.scheduler.get_status()}
            except Exception as e:
                logger.error(f"Manual scheduler run failed: {e}", exc_info=True)
                return 500, {"message": str(e) or "Scheduler run failed", "status": self.scheduler.get_status()}
            if summary is None:
                return 202, {
                    "message": "Automatic iteration in progress; manual run skipped.",
                    "status": self.scheduler.get_status(),
                }
            return 200, {"summary": summary.to_dict(), "status": self.scheduler.get_status()}

        return 404, {"message": f"Not found: {path}"}


class ControlServer:
    """Threaded JSON server in front of ControlApi."""

    def __init__(self, api: ControlApi, port: int, host: str = "0.0.0.0"):
        self._api = api
        self._host = host
        self._port = int(port)
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._api)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="ControlServer", daemon=True)
        self._thread.start()
        logger.info("Control server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:  # pragma: no cover
            logger.warning("Failed shutting down control server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(api: ControlApi):

        class ControlHandler(BaseHTTPRequestHandler):
            def _respond(self, method: str) -> None:
                status, payload = api.handle_request(method, self.path)
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self):  # type: ignore[override]
                self._respond("GET")

            def do_POST(self):  # type: ignore[override]
                length = int(self.headers.get("Content-Length") or 0)
                if length:
                    self.rfile.read(length)
                self._respond("POST")

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                logger.debug("control %s", format % args)

        return ControlHandler


__all__ = ["ControlApi", "ControlServer"]
