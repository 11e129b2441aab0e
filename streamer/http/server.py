"""
HTTP control surface for the frame streamer.

Endpoints (all GET, JSON responses):
    /info               frame counter and average frame duration
    /status             session status (reconnecting, aborted, accumulated errors, ...)
    /setText?text=...   replace the scene title
    /bang               flash the background
    /toggle             pause / resume streaming
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

from streamer.scene.commands import CommandQueue

logger = logging.getLogger(__name__)


def make_control_handler(
    commands: CommandQueue,
    pump_stats: Callable[[], Dict[str, Any]],
    sink_status: Optional[Callable[[], Dict[str, Any]]] = None,
):
    """Create a ControlHandler class with dependencies."""

    class ControlHandler(BaseHTTPRequestHandler):
        """HTTP request handler for control endpoints."""

        def do_GET(self):
            """Handle GET requests."""
            parsed = urlparse(self.path)
            query = parse_qs(parsed.query)

            if parsed.path == "/info":
                self._handle_info()
            elif parsed.path == "/status":
                self._handle_status()
            elif parsed.path == "/setText":
                text = query.get("text", [""])[0]
                self._enqueue(f"setText {text}")
            elif parsed.path == "/bang":
                self._enqueue("bang")
            elif parsed.path == "/toggle":
                self._enqueue("toggle")
            else:
                self._send_json(404, {"ok": False, "error": "Not Found"})

        def _handle_info(self):
            stats = pump_stats()
            self._send_json(200, {
                "ok": True,
                "frame": stats.get("frame"),
                "avg_frame_duration": stats.get("avg_frame_duration"),
            })

        def _handle_status(self):
            try:
                response: Dict[str, Any] = {"ok": True, "pump": pump_stats()}
                if sink_status is not None:
                    response["sink"] = sink_status()
            except Exception as e:
                logger.error(f"Error handling /status: {e}")
                self._send_json(500, {"ok": False, "error": "Internal server error"})
                return
            self._send_json(200, response)

        def _enqueue(self, line: str):
            if not commands.submit(line):
                self._send_json(503, {"ok": False, "error": "command queue full"})
                return
            self._send_json(200, {"ok": True})

        def _send_json(self, status_code: int, payload: Dict[str, Any]):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            """Override to use our logger."""
            logger.debug(f"{self.address_string()} - {format % args}")

    return ControlHandler


class ControlServer:
    """Control HTTP server running in a background thread."""

    def __init__(
        self,
        host: str,
        port: int,
        commands: CommandQueue,
        pump_stats: Callable[[], Dict[str, Any]],
        sink_status: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        """
        Initialize control server.

        Args:
            host: Host to bind to
            port: Port to bind to (0 picks a free port)
            commands: Queue receiving setText/bang/toggle commands
            pump_stats: Callable returning frame pump statistics
            sink_status: Optional callable returning the session status dict
        """
        self.host = host
        self.port = port
        self.commands = commands
        self.pump_stats = pump_stats
        self.sink_status = sink_status
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._shutdown = False

    @property
    def address(self):
        """Bound (host, port); valid after start()."""
        if self.server is None:
            return self.host, self.port
        return self.server.server_address[:2]

    def start(self) -> None:
        """Start HTTP server in a background thread."""
        if self.server is not None:
            raise RuntimeError("Server already started")

        handler_class = make_control_handler(self.commands, self.pump_stats, self.sink_status)
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True

        self.server_thread = threading.Thread(
            target=self._run_server,
            daemon=True,
            name="ControlHTTPServer",
        )
        self.server_thread.start()

        host, port = self.address
        logger.info(f"Control server started on {host}:{port}")

    def _run_server(self):
        """Run server (called in background thread)."""
        try:
            self.server.serve_forever()
        except Exception as e:
            if not self._shutdown:
                logger.error(f"Control server error: {e}")

    def stop(self) -> None:
        """Stop HTTP server."""
        if self.server is None:
            return

        self._shutdown = True
        self.server.shutdown()
        self.server.server_close()

        if self.server_thread:
            self.server_thread.join(timeout=2.0)

        self.server = None
        self.server_thread = None
