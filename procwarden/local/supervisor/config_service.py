import json
import logging
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from procwarden.local.supervisor.supervisor import ProcessManager

log = logging.getLogger(__name__)

APP_ACTIONS = ("start", "stop", "restart")


class ConfigServiceHandler(BaseHTTPRequestHandler):
    """
    A request handler for the supervisor's control API.
    This runs in a thread within the Supervisor process.
    """
    # Set on a per-server subclass by create_config_server
    manager: "ProcessManager" = None

    def _send_response(self, code: int, content_type: str, body: bytes):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, code: int, payload: Any) -> None:
        self._send_response(code, "application/json", json.dumps(payload, indent=4, default=str).encode("utf-8"))

    def _read_json(self) -> Any:
        content_length = int(self.headers.get("Content-Length") or 0)
        if not content_length:
            return {}
        return json.loads(self.rfile.read(content_length))

    def do_GET(self):
        try:
            if self.path == "/config":
                self._send_json(200, self.manager.get_serializable_config())
            elif self.path == "/status":
                self._send_json(200, self.manager.get_status_report())
            else:
                self._send_response(404, "text/plain", b"Not Found")
        except Exception as e:
            log.error(f"Error handling GET {self.path} in control API: {e}", exc_info=True)
            self._send_json(500, {"error": "Internal Server Error", "detail": str(e)})

    def do_POST(self):
        try:
            if self.path == "/config":
                self._handle_config_update()
            elif self.path == "/logs/reload":
                count = self.manager.reload_logs()
                self._send_json(200, {"status": "success", "message": f"Reopened {count} log file(s)."})
            elif self.path.startswith("/apps/"):
                self._handle_app_action()
            else:
                self._send_response(404, "text/plain", b"Not Found")
        except json.JSONDecodeError:
            self._send_json(400, {"error": "Bad Request", "detail": "Invalid JSON"})
        except Exception as e:
            log.error(f"Error handling POST {self.path} in control API: {e}", exc_info=True)
            self._send_json(500, {"error": "Internal Server Error", "detail": str(e)})

    def _handle_config_update(self) -> None:
        payload = self._read_json()
        key = payload.get("key") if isinstance(payload, dict) else None
        value = payload.get("value") if isinstance(payload, dict) else None

        if not (key and value is not None):
            self._send_json(400, {"error": "Bad Request", "detail": "'key' and 'value' are required."})
            return

        # Delegate the update logic to the ProcessManager
        success, message = self.manager.update_setting(key, value)
        if success:
            self._send_json(200, {"status": "success", "message": message})
        else:
            self._send_json(400, {"error": "Update Failed", "detail": message})

    def _handle_app_action(self) -> None:
        parts = self.path.strip("/").split("/")
        if len(parts) != 3:
            self._send_response(404, "text/plain", b"Not Found")
            return
        _, app_name, action = parts
        if action not in APP_ACTIONS:
            self._send_json(400, {"error": "Bad Request", "detail": f"Unknown action '{action}'."})
            return
        if app_name not in self.manager.app_names:
            self._send_json(404, {"error": "Not Found", "detail": f"Unknown app '{app_name}'."})
            return

        message = self.manager.app_action(app_name, action)
        self._send_json(200, {"status": "success", "message": message})

    def log_message(self, format_str: str, *args: Any) -> None:
        """Override to direct HTTP server logs to our application's logger."""
        log.debug("ControlAPI: " + (format_str % args))


def create_config_server(manager: "ProcessManager", host: Optional[str] = None,
                         port: Optional[int] = None) -> HTTPServer:
    """
    Binds the control API server for a manager without serving it.

    :param manager: The ProcessManager the handlers operate on.
    :param host: Bind host, defaults to CONFIG_API_HOST.
    :param port: Bind port, defaults to CONFIG_API_PORT. Use 0 for an ephemeral port.
    """
    host = host if host is not None else manager.config.get("CONFIG_API_HOST")
    port = port if port is not None else manager.config.get("CONFIG_API_PORT")
    handler_cls = type("BoundConfigServiceHandler", (ConfigServiceHandler,), {"manager": manager})
    server = HTTPServer((host, port), handler_cls)
    # Lets handle_request return so the shutdown event is noticed
    server.timeout = 0.5
    return server


def run_config_service(manager: "ProcessManager", server: Optional[HTTPServer] = None) -> None:
    """
    Serves the control API until the manager's shutdown event is set.
    """
    server = server or create_config_server(manager)
    host, port = server.server_address[:2]
    log.info(f"Control API service starting on http://{host}:{port}")

    while not manager.shutdown_signal_received.is_set():
        server.handle_request()

    log.info("Control API service shutting down.")
    server.server_close()
