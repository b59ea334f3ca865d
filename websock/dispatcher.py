"""
Poll dispatcher: the controller's single entry point for agent requests.

Each inbound form is either a handshake (a key decoding to a sentinel) or
a data poll for a registered session (a key decoding to its id). Data
polls carry one envelope; command payloads drive the duplex emulation:

* CHECK_STREAM_DATA   block up to RESPONSE_TIMEOUT_S for outbound data
* TEST_CONNECTION_DATA  echo the probe back
* TERMINATE_CONNECTION_DATA  tear the session down

Any other payload is appended to the session's inbound buffer, and any
queued outbound data rides back on the same response.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from websock.config import CONFIG
from websock.decoy import Handshake, SessionData, classify, sentinel_set
from websock.envelope import EnvelopeError, b64encode, compress_stream, open_envelope, seal_envelope
from websock.handshake import HandshakeFormatError, HandshakeVerifyError, accept_agent_hello
from websock.logging_utils import get_logger, mask_session_id
from websock.registry import SessionRegistry
from websock.session import NotConnectedError, Session

logger = get_logger("websock")

CHECK_STREAM_DATA = b"CHECK_STREAM_DATA"
TEST_CONNECTION_DATA = b"TEST_CONNECTION_DATA"
TERMINATE_CONNECTION_DATA = b"TERMINATE_CONNECTION_DATA"


class ChannelCounters:
    """Simple counters for controller statistics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.polls = 0              # requests seen by the dispatcher
        self.ignored = 0            # requests matching neither a handshake nor a session
        self.handshakes_ok = 0
        self.handshakes_fail = 0
        self.sessions_rejected = 0  # handshakes whose session the registry refused
        self.envelopes_in = 0
        self.envelopes_out = 0
        self.bytes_in = 0           # application bytes appended to inbound buffers
        self.bytes_out = 0          # application bytes drained from outbound buffers
        # Granular drop reasons
        self.drop_integrity = 0
        self.drop_session_mismatch = 0
        self.drop_not_connected = 0
        self.terminations = 0
        self.stream_timeouts = 0

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def to_dict(self) -> Dict[str, int]:
        with self._lock:
            return {k: v for k, v in vars(self).items() if not k.startswith("_")}


@dataclass
class PollResponse:
    status: int = 200
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "PollResponse":
        return cls()

    @classmethod
    def payload(cls, raw: bytes, content_type: str) -> "PollResponse":
        return cls(
            status=200,
            body=(b64encode(raw) + "\n").encode("ascii"),
            headers={"Content-Type": content_type, "Connection": "close"},
        )

    @classmethod
    def sealed(cls, text: str, content_type: str) -> "PollResponse":
        # seal_envelope already base64-encodes
        return cls(
            status=200,
            body=(text + "\n").encode("ascii"),
            headers={"Content-Type": content_type, "Connection": "close"},
        )

    @classmethod
    def error(cls, reason: str) -> "PollResponse":
        return cls(
            status=500,
            body=("500 - " + reason).encode("utf-8"),
            headers={"Content-Type": "text/plain; charset=utf-8"},
        )


Form = Union[Mapping[str, Sequence[str]], Iterable[Tuple[str, str]]]


class PollDispatcher:
    def __init__(
        self,
        registry: SessionRegistry,
        cfg: Optional[dict] = None,
        counters: Optional[ChannelCounters] = None,
    ) -> None:
        self.registry = registry
        self.cfg = cfg or CONFIG
        self.counters = counters or ChannelCounters()
        self._sentinels = sentinel_set(self.cfg)

    def _label(self, session_id: str) -> str:
        return mask_session_id(session_id, self.cfg["LOG_SESSION_ID"])

    def handle(self, form: Form, request_uri: str = "") -> PollResponse:
        self.counters.inc("polls")
        found = classify(form, self._sentinels, lambda sid: self.registry.lookup(sid) is not None)
        if isinstance(found, Handshake):
            return self._handle_handshake(found, request_uri)
        if isinstance(found, SessionData):
            session = self.registry.lookup(found.session_id)
            if session is not None:
                return self._handle_session_data(session, found.value)
        self.counters.inc("ignored")
        return PollResponse.empty()

    # -- handshake ---------------------------------------------------------

    def _handle_handshake(self, found: Handshake, request_uri: str) -> PollResponse:
        try:
            reply = accept_agent_hello(found.value, request_uri)
        except (HandshakeFormatError, HandshakeVerifyError) as exc:
            self.counters.inc("handshakes_fail")
            logger.warning("Rejected handshake", extra={"reason": str(exc), "uri": request_uri})
            return PollResponse.error(str(exc))

        if not self.registry.register(reply.session, timeout=self.cfg["REGISTRATION_TIMEOUT_S"]):
            self.counters.inc("sessions_rejected")
            return PollResponse.error("session rejected")

        self.counters.inc("handshakes_ok")
        return PollResponse.payload(reply.raw, self.cfg["HTTP_CONTENT_TYPE"])

    # -- data polls --------------------------------------------------------

    def _drop(self, session: Session, reason: str) -> PollResponse:
        self.counters.inc(reason)
        logger.warning(
            "Dropping session after rejected poll",
            extra={"session": self._label(session.session_id), "reason": reason},
        )
        session.close()
        return PollResponse.empty()

    def _seal(self, session: Session, data: bytes, *, compress: bool) -> PollResponse:
        if compress and self.cfg["COMPRESSION"]:
            data = compress_stream(data)
        self.counters.inc("envelopes_out")
        return PollResponse.sealed(seal_envelope(session.secret, session.session_id, data), self.cfg["HTTP_CONTENT_TYPE"])

    def _outbound_response(self, session: Session, outbound: bytes) -> PollResponse:
        if not outbound:
            return PollResponse.empty()
        self.counters.inc("bytes_out", len(outbound))
        return self._seal(session, outbound, compress=True)

    def _handle_session_data(self, session: Session, value: str) -> PollResponse:
        try:
            envelope = open_envelope(session.secret, value)
        except EnvelopeError as exc:
            logger.debug("Envelope rejected", extra={"reason": str(exc)})
            return self._drop(session, "drop_integrity")
        if envelope.session_id != session.session_id:
            return self._drop(session, "drop_session_mismatch")

        self.counters.inc("envelopes_in")
        payload = envelope.payload
        try:
            if payload == CHECK_STREAM_DATA:
                outbound = session.take_outbound(self.cfg["RESPONSE_TIMEOUT_S"])
                if not outbound:
                    self.counters.inc("stream_timeouts")
                return self._outbound_response(session, outbound)

            if payload == TEST_CONNECTION_DATA:
                session.require_connected()
                return self._seal(session, payload, compress=False)

            if payload == TERMINATE_CONNECTION_DATA:
                self.counters.inc("terminations")
                logger.info("Agent terminated session", extra={"session": self._label(session.session_id)})
                session.close()
                return PollResponse.empty()

            outbound = session.deliver(payload)
            self.counters.inc("bytes_in", len(payload))
            return self._outbound_response(session, outbound)
        except NotConnectedError:
            return self._drop(session, "drop_not_connected")
