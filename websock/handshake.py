from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.hazmat.primitives.asymmetric import ec

from websock.crypto import (
    KeyFormatError,
    checksum,
    derive_secret,
    generate_keypair,
    marshal_public_key,
    unmarshal_public_key,
)
from websock.envelope import (
    EnvelopeFormatError,
    IntegrityError,
    b64decode,
    b64encode,
    pack_handshake_blob,
    pack_handshake_reply,
    unpack_handshake_blob,
    unpack_handshake_reply,
)
from websock.session import Session


class HandshakeFormatError(Exception):
    pass


class HandshakeVerifyError(Exception):
    pass


@dataclass
class AgentHello:
    private_key: ec.EllipticCurvePrivateKey
    marshalled: bytes
    blob: str  # base64 form value


@dataclass
class ControllerReply:
    session: Session
    raw: bytes  # unencoded reply payload; the dispatcher base64s it


def create_agent_hello() -> AgentHello:
    private_key, public_key = generate_keypair()
    marshalled = marshal_public_key(public_key)
    blob = b64encode(pack_handshake_blob(marshalled))
    return AgentHello(private_key=private_key, marshalled=marshalled, blob=blob)


def _recover_agent_key(blob: str) -> bytes:
    try:
        raw = b64decode(blob)
        return unpack_handshake_blob(raw)
    except IntegrityError as exc:
        raise HandshakeVerifyError("Data integrity mismatch") from exc
    except EnvelopeFormatError as exc:
        raise HandshakeFormatError(str(exc)) from exc


def accept_agent_hello(blob: str, request_uri: str = "") -> ControllerReply:
    """Controller side of the exchange.

    Recovers the agent's public key from ``blob``, generates the controller
    keypair and derives the shared secret. The returned session is pending;
    registering it is the caller's job.
    """
    marshalled = _recover_agent_key(blob)
    try:
        agent_public = unmarshal_public_key(marshalled)
    except KeyFormatError as exc:
        raise HandshakeFormatError(str(exc)) from exc

    private_key, public_key = generate_keypair()
    try:
        secret = derive_secret(private_key, agent_public)
    except KeyFormatError as exc:
        raise HandshakeFormatError("Failed to generate a shared secret key") from exc

    session_bytes = checksum(marshalled)
    session = Session(session_id=session_bytes.hex(), secret=secret, request_uri=request_uri)
    raw = pack_handshake_reply(marshal_public_key(public_key), session_bytes)
    return ControllerReply(session=session, raw=raw)


def complete_agent_hello(hello: AgentHello, response_body: Union[str, bytes]) -> Tuple[str, bytes]:
    """Agent side: parse the controller reply and return ``(session_id, secret)``."""
    try:
        marshalled, session_bytes = unpack_handshake_reply(b64decode(response_body))
        server_public = unmarshal_public_key(marshalled)
    except (EnvelopeFormatError, KeyFormatError) as exc:
        raise HandshakeFormatError(f"malformed controller reply: {exc}") from exc

    expected = checksum(hello.marshalled)
    if session_bytes != expected:
        raise HandshakeVerifyError("controller returned a session id for a different key")

    try:
        secret = derive_secret(hello.private_key, server_public)
    except KeyFormatError as exc:
        raise HandshakeFormatError(str(exc)) from exc
    return session_bytes.hex(), secret
