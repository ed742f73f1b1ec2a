"""JSON status and control endpoints for a running agent.

GET /status        live AgentStatus
GET /slowstatus    queued task ids and recently finished ids (newest first)
GET|POST /pause, /unpause, /abort, /restart
"""

import json
import logging
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from vea.pipeline.agent import EncodingAgent

logger = logging.getLogger(__name__)

DEFAULT_PORT = 14580


def _status_payload(agent: "EncodingAgent") -> Dict[str, Any]:
    return agent.status_snapshot().model_dump()


def _slow_status_payload(agent: "EncodingAgent") -> Dict[str, Any]:
    return {
        "queuedTasks": agent.queued_tasks(),
        "recentlyFinishedTasks": agent.recently_finished(),
    }


class VEARequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for agent status and control.

    Class attribute ``agent`` is set by VEAWebServer before the server starts.
    """

    agent: "EncodingAgent"

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, payload: Any, status: int = 200) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.end_headers()
        self.wfile.write(encoded)

    def _handle(self) -> None:
        path = self.path.split("?")[0].rstrip("/") or "/"
        agent = self.__class__.agent
        try:
            if path == "/status":
                self._send_json(_status_payload(agent))
            elif path == "/slowstatus":
                self._send_json(_slow_status_payload(agent))
            elif path == "/pause":
                agent.pause()
                self._send_json({"success": True})
            elif path == "/unpause":
                agent.unpause()
                self._send_json({"success": True})
            elif path == "/abort":
                self._send_json({"success": agent.abort_current()})
            elif path == "/restart":
                self._send_json({"success": agent.restart()})
            else:
                self._send_json({"error": "not found"}, status=404)
        except Exception as exc:
            logger.exception(f"Web request error for {path}: {exc}")
            self._send_json({"error": str(exc)}, status=500)

    def do_GET(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Thread-per-request HTTP server with address reuse and daemon threads."""

    allow_reuse_address = True
    daemon_threads = True


class VEAWebServer:
    """Status/control server running on a daemon thread.

    Usage::

        server = VEAWebServer(agent, port=14580)
        server.start()
        # ... agent runs ...
        server.stop()
    """

    def __init__(self, agent: "EncodingAgent", port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        self.agent = agent
        self.port = port
        self.host = host
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def bound_port(self) -> Optional[int]:
        return self._server.server_address[1] if self._server else None

    def start(self) -> bool:
        """Starts serving in the background. False if the port could not be bound."""
        VEARequestHandler.agent = self.agent
        try:
            self._server = _ThreadingHTTPServer((self.host, self.port), VEARequestHandler)
        except OSError as exc:
            logger.warning("Web server: could not bind to %s:%d: %s", self.host, self.port, exc)
            return False

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="vea-web-server",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("Web server: http://%s:%d/status", display_host, self.bound_port)
        return True

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
