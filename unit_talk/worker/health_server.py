"""
Agent Health Check Server
=========================

Lightweight HTTP server exposing the supervisor's view of agent health
for load-balancer and platform probes. Runs in a daemon thread alongside
the asyncio event loop.

Endpoints:
    GET /health          -- overall status plus one entry per agent
    GET /health/<agent>  -- a single agent's entry (404 if unknown)

Both return 200 when the status is ``healthy`` and 503 otherwise.

Default port: 8082 (``PORT`` or ``AGENT_HEALTH_PORT`` override it).
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, Optional, Type

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PORT: int = 8082

SystemStatusProvider = Callable[[], Dict[str, Any]]
AgentStatusProvider = Callable[[str], Optional[Dict[str, Any]]]


def _make_handler(
    system_status: SystemStatusProvider,
    agent_status: AgentStatusProvider,
) -> Type[BaseHTTPRequestHandler]:

    class _HealthHandler(BaseHTTPRequestHandler):
        """Serves ``GET /health`` and ``GET /health/<agent>``."""

        def do_GET(self) -> None:  # noqa: N802  (required by BaseHTTPRequestHandler)
            path = self.path.split("?", 1)[0].rstrip("/")

            if path == "/health":
                payload: Optional[Dict[str, Any]] = system_status()
            elif path.startswith("/health/"):
                payload = agent_status(path[len("/health/"):])
                if payload is None:
                    self.send_error(404, "Unknown agent")
                    return
            else:
                self.send_error(404, "Not Found")
                return

            body = json.dumps(payload, indent=2, default=str).encode("utf-8")
            self.send_response(200 if payload.get("status") == "healthy" else 503)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: Any) -> None:
            """Route access logs through the module logger."""
            logger.debug("HealthHTTP %s", format % args)

    return _HealthHandler


class HealthServer:
    """
    Health endpoint for one supervisor.

    Usage:
        server = HealthServer(supervisor.system_status, supervisor.agent_status, port=8082)
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        system_status: SystemStatusProvider,
        agent_status: AgentStatusProvider,
        port: Optional[int] = None,
        host: str = "0.0.0.0",
    ):
        self.system_status = system_status
        self.agent_status = agent_status
        self.port = port or DEFAULT_HEALTH_PORT
        self.host = host
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start serving in a daemon thread. Non-blocking."""
        if self._server is not None:
            return
        handler = _make_handler(self.system_status, self.agent_status)
        self._server = HTTPServer((self.host, self.port), handler)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="agent-health-http",
            daemon=True,
        )
        self._thread.start()
        logger.info("Health server started on port %d", self.port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._thread = None
            logger.info("Health server stopped")
