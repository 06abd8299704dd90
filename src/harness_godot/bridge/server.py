import json
import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict

from harness_godot.bridge.classify import classify_failure, suggestions_for
from harness_godot.bridge.operations import BridgeOperationError, execute, shutdown
from harness_godot.bridge.protocol import PROTOCOL_VERSION

logger = logging.getLogger(__name__)


class BridgeRequestHandler(BaseHTTPRequestHandler):
    server_version = "HarnessGodotBridge/1.0"

    def do_POST(self) -> None:  # noqa: N802
        if self.path != "/rpc":
            self._send(404, {"ok": False, "error": {"code": "NOT_FOUND", "message": "Route not found"}})
            return
        request_id = None
        try:
            content_length = int(self.headers.get("Content-Length", "0"))
            raw_body = self.rfile.read(content_length).decode("utf-8")
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise BridgeOperationError("INVALID_INPUT", "Request body must be a JSON object")
            method = payload.get("method")
            params = payload.get("params") or {}
            request_id = payload.get("id")
            result = execute(method, params)
            self._send(
                200,
                {
                    "ok": True,
                    "protocolVersion": PROTOCOL_VERSION,
                    "id": request_id,
                    "result": result,
                },
            )
        except BridgeOperationError as exc:
            logger.error("Error response: %s", exc.message)
            if exc.suggestions:
                logger.error("Possible solutions: %s", ", ".join(exc.suggestions))
            error: Dict[str, Any] = {"code": exc.code, "message": exc.message, "suggestions": exc.suggestions}
            if exc.details:
                error["details"] = exc.details
            self._send(400, {"ok": False, "protocolVersion": PROTOCOL_VERSION, "id": request_id, "error": error})
        except json.JSONDecodeError as exc:
            failure = classify_failure(exc)
            self._send(
                400,
                {
                    "ok": False,
                    "protocolVersion": PROTOCOL_VERSION,
                    "error": {"code": failure.category, "message": failure.message, "suggestions": failure.suggestions},
                },
            )
        except Exception as exc:
            logger.exception("Unhandled bridge error")
            self._send(
                500,
                {
                    "ok": False,
                    "protocolVersion": PROTOCOL_VERSION,
                    "id": request_id,
                    "error": {"code": "ERROR", "message": str(exc), "suggestions": suggestions_for(str(exc))},
                },
            )

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/health":
            self._send(200, {"ok": True, "protocolVersion": PROTOCOL_VERSION, "status": "ok"})
            return
        self._send(404, {"ok": False, "error": {"code": "NOT_FOUND", "message": "Route not found"}})

    def log_message(self, format: str, *args: object) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send(self, status: int, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


def create_bridge_server(host: str, port: int) -> ThreadingHTTPServer:
    return ThreadingHTTPServer((host, port), BridgeRequestHandler)


def run_bridge_server(host: str, port: int) -> None:
    server = create_bridge_server(host, port)
    logger.info("Godot bridge listening on http://%s:%s", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down Godot bridge")
    finally:
        shutdown()
        server.server_close()
