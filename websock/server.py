"""
Controller HTTP front end.

``ChannelService`` is the one object owning the registry, the dispatcher
and a threaded HTTP server bound to the gate path; request handlers reach
it through ``self.server``. One worker thread serves each request.
"""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

from websock.config import CONFIG, ConfigError, validate_config
from websock.dispatcher import ChannelCounters, PollDispatcher, PollResponse
from websock.logging_utils import get_logger
from websock.registry import NewSessionHandler, SessionRegistry

logger = get_logger("websock")

# Upper bound on a request body; handshake and data forms are far smaller.
MAX_BODY_BYTES = 16 * 1024 * 1024


def _parse_form(body: bytes, query: str) -> List[Tuple[str, str]]:
    """Body parameters first, then query-string parameters."""
    pairs = parse_qsl(body.decode("latin-1"), keep_blank_values=True)
    pairs.extend(parse_qsl(query, keep_blank_values=True))
    return pairs


class _GateServer(ThreadingHTTPServer):
    allow_reuse_address = True
    # In-flight polls are joined on server_close(); each is bounded by its own timeout.
    daemon_threads = False
    block_on_close = True

    def __init__(self, server_address: Tuple[str, int], handler, service: "ChannelService") -> None:
        super().__init__(server_address, handler)
        self.service = service


class _GateHandler(BaseHTTPRequestHandler):
    server_version = "Apache"
    sys_version = ""
    protocol_version = "HTTP/1.1"

    def _send(self, response: PollResponse) -> None:
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        if "Connection" not in response.headers:
            self.send_header("Connection", "close")
        self.end_headers()
        if response.body:
            self.wfile.write(response.body)
        self.close_connection = True

    def _dispatch(self, body: bytes) -> None:
        service: ChannelService = self.server.service  # type: ignore[attr-defined]
        url = urlsplit(self.path)
        if url.path != service.path:
            self._send(PollResponse(status=404, body=b"404 page not found\n"))
            return
        try:
            response = service.dispatcher.handle(_parse_form(body, url.query), request_uri=self.path)
        except Exception:
            logger.exception("Unhandled error while processing poll", extra={"peer": self.client_address[0]})
            response = PollResponse.error("internal error")
        self._send(response)

    def do_POST(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self._send(PollResponse.error("bad content length"))
            return
        body = self.rfile.read(length) if length else b""
        self._dispatch(body)

    def do_GET(self) -> None:
        self._dispatch(b"")

    def log_message(self, format: str, *args) -> None:
        logger.debug("http " + format % args, extra={"peer": self.client_address[0]})


class ChannelService:
    """Controller service: session registry + poll dispatcher + HTTP listener."""

    def __init__(
        self,
        on_new_session: Optional[NewSessionHandler] = None,
        cfg: Optional[dict] = None,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        path: Optional[str] = None,
    ) -> None:
        self.cfg = dict(cfg or CONFIG)
        if host is not None:
            self.cfg["CONTROLLER_HOST"] = host
        if port is not None:
            self.cfg["CONTROLLER_PORT"] = port
        if path is not None:
            self.cfg["CONTROLLER_PATH"] = path
        # Port 0 asks the OS for a free port; accept it here only.
        checked = dict(self.cfg)
        if checked["CONTROLLER_PORT"] == 0:
            checked["CONTROLLER_PORT"] = 1
        validate_config(checked)

        self.path = self.cfg["CONTROLLER_PATH"]
        self.counters = ChannelCounters()
        self.registry = SessionRegistry(on_new_session, log_session_id=self.cfg["LOG_SESSION_ID"])
        self.dispatcher = PollDispatcher(self.registry, self.cfg, self.counters)
        self._httpd: Optional[_GateServer] = None
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "ChannelService":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def address(self) -> Tuple[str, int]:
        if self._httpd is None:
            raise RuntimeError("service not started")
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    @property
    def url(self) -> str:
        host, port = self.address
        if host in ("0.0.0.0", ""):
            host = "127.0.0.1"
        return f"http://{host}:{port}{self.path}"

    def start(self, ready_event: Optional[threading.Event] = None) -> "ChannelService":
        if self._httpd is not None:
            return self
        self.registry.start()
        self._httpd = _GateServer(
            (self.cfg["CONTROLLER_HOST"], self.cfg["CONTROLLER_PORT"]), _GateHandler, self
        )
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="websock-httpd", daemon=True
        )
        self._thread.start()
        logger.info("Handling requests", extra={"path": self.path, "address": "%s:%d" % self.address})
        if ready_event is not None:
            ready_event.set()
        return self

    def stats(self) -> Dict[str, int]:
        stats = self.counters.to_dict()
        stats["sessions"] = len(self.registry)
        return stats

    def close(self) -> None:
        """Stop registering sessions, stop the listener, let in-flight polls finish, close sessions."""
        self.registry.close(timeout=self.cfg["REGISTRATION_TIMEOUT_S"])
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            if self._thread is not None:
                self._thread.join()
            self._httpd = None
            self._thread = None
        self.registry.close_all()
        logger.info("Service closed", extra={"path": self.path})


def create_server(
    path_gate: str,
    port: int,
    on_new_session: Optional[NewSessionHandler] = None,
    cfg: Optional[dict] = None,
) -> ChannelService:
    """Build and start a controller listening on ``port`` for ``path_gate``."""
    cfg = dict(cfg or CONFIG)
    if not cfg.get("ENCRYPTION", False):
        raise ConfigError("ENCRYPTION must be set")
    service = ChannelService(on_new_session, cfg, port=port, path=path_gate)
    return service.start()
