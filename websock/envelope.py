"""
Wire codec for the websock channel.

Two framings live here:

* The data envelope ``{session_id, payload, checksum(payload)}``. It is
  serialized as ``MAGIC || version`` followed by three tag-length-value
  fields, RC4-encrypted under the session secret and base64-encoded for
  transport inside a form value or a response body.
* The handshake blob used for the public-key exchange:
  ``xor_key(8) || xor(pubkey) || md5(first two)`` from the agent and
  ``xor_key(8) || xor(pubkey) || session_id(16)`` from the controller.
"""

import base64
import binascii
import os
import struct
import zlib
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

from websock.crypto import CHECKSUM_SIZE, checksum, checksum_hex, decrypt, encrypt


class EnvelopeError(Exception):
    """Base class for envelope rejections."""
    pass


class EnvelopeFormatError(EnvelopeError):
    """Envelope could not be decoded (base64, framing or field layout)."""
    pass


class IntegrityError(EnvelopeError):
    """Checksum carried in the envelope does not match its payload."""
    pass


# Constants
MAGIC = b"WSE"
VERSION = 1
FIELD_STRUCT = "!BI"
FIELD_HEADER_LEN = struct.calcsize(FIELD_STRUCT)

TAG_SESSION_ID = 0x01
TAG_PAYLOAD = 0x02
TAG_CHECKSUM = 0x03
_TAGS = (TAG_SESSION_ID, TAG_PAYLOAD, TAG_CHECKSUM)

XOR_KEY_SIZE = 8
SESSION_ID_SIZE = 16


@dataclass(frozen=True)
class Envelope:
    session_id: str
    payload: bytes
    checksum: str

    @classmethod
    def build(cls, session_id: str, payload: bytes) -> "Envelope":
        return cls(session_id=session_id, payload=payload, checksum=checksum_hex(payload))

    def verify(self) -> None:
        if checksum_hex(self.payload) != self.checksum:
            raise IntegrityError("Data corruption")


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: Union[str, bytes]) -> bytes:
    """Strict standard-alphabet base64 decode; raises EnvelopeFormatError."""
    if isinstance(text, str):
        try:
            text = text.encode("ascii")
        except UnicodeEncodeError as exc:
            raise EnvelopeFormatError("base64 input is not ASCII") from exc
    try:
        return base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EnvelopeFormatError(f"malformed base64: {exc}") from exc


def encode_envelope(envelope: Envelope) -> bytes:
    fields = (
        (TAG_SESSION_ID, envelope.session_id.encode("utf-8")),
        (TAG_PAYLOAD, envelope.payload),
        (TAG_CHECKSUM, envelope.checksum.encode("ascii")),
    )
    wire = MAGIC + struct.pack("!B", VERSION)
    for tag, value in fields:
        wire += struct.pack(FIELD_STRUCT, tag, len(value)) + value
    return wire


def decode_envelope(wire: bytes) -> Envelope:
    """Parse a serialized envelope. Does not verify the checksum."""
    if len(wire) < len(MAGIC) + 1 or wire[: len(MAGIC)] != MAGIC:
        raise EnvelopeFormatError("bad envelope magic")
    offset = len(MAGIC)
    version = wire[offset]
    offset += 1
    if version != VERSION:
        raise EnvelopeFormatError(f"unsupported envelope version {version}")

    fields: Dict[int, bytes] = {}
    while offset < len(wire):
        if len(wire) - offset < FIELD_HEADER_LEN:
            raise EnvelopeFormatError("truncated field header")
        tag, length = struct.unpack_from(FIELD_STRUCT, wire, offset)
        offset += FIELD_HEADER_LEN
        if tag not in _TAGS:
            raise EnvelopeFormatError(f"unknown field tag {tag:#04x}")
        if tag in fields:
            raise EnvelopeFormatError(f"duplicate field tag {tag:#04x}")
        if length > len(wire) - offset:
            raise EnvelopeFormatError("truncated field value")
        fields[tag] = wire[offset : offset + length]
        offset += length

    missing = [tag for tag in _TAGS if tag not in fields]
    if missing:
        raise EnvelopeFormatError(f"missing field tags {missing}")
    try:
        session_id = fields[TAG_SESSION_ID].decode("utf-8")
        digest = fields[TAG_CHECKSUM].decode("ascii")
    except UnicodeDecodeError as exc:
        raise EnvelopeFormatError("text field is not valid text") from exc
    return Envelope(session_id=session_id, payload=fields[TAG_PAYLOAD], checksum=digest)


def seal_envelope(secret: bytes, session_id: str, payload: bytes) -> str:
    """Build, serialize, encrypt and base64 an envelope carrying ``payload``."""
    wire = encode_envelope(Envelope.build(session_id, payload))
    return b64encode(encrypt(secret, wire))


def open_envelope(secret: bytes, text: Union[str, bytes]) -> Envelope:
    """Reverse of seal_envelope. Raises EnvelopeFormatError or IntegrityError."""
    ciphertext = b64decode(text)
    try:
        wire = decrypt(secret, ciphertext)
    except (TypeError, ValueError) as exc:
        raise EnvelopeFormatError(f"cannot decrypt envelope: {exc}") from exc
    envelope = decode_envelope(wire)
    envelope.verify()
    return envelope


def compress_stream(data: bytes) -> bytes:
    return zlib.compress(data)


def decompress_stream(data: bytes) -> bytes:
    try:
        return zlib.decompress(data)
    except zlib.error as exc:
        raise EnvelopeFormatError(f"decompression failed: {exc}") from exc


def xor_obfuscate(key: bytes, data: bytes) -> bytes:
    """XOR ``data`` against ``key`` repeated every len(key) bytes (self-inverse)."""
    if not key:
        raise ValueError("xor key must not be empty")
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def pack_handshake_blob(marshalled: bytes, xor_key: Optional[bytes] = None) -> bytes:
    """``xor_key || xor(marshalled) || md5(xor_key || xor(marshalled))``."""
    if xor_key is None:
        xor_key = os.urandom(XOR_KEY_SIZE)
    if len(xor_key) != XOR_KEY_SIZE:
        raise ValueError(f"xor key must be {XOR_KEY_SIZE} bytes")
    pool = xor_key + xor_obfuscate(xor_key, marshalled)
    return pool + checksum(pool)


def unpack_handshake_blob(raw: bytes) -> bytes:
    """Verify the trailing checksum, then recover the marshalled key."""
    if len(raw) <= XOR_KEY_SIZE + CHECKSUM_SIZE:
        raise EnvelopeFormatError("handshake blob too short")
    pool, digest = raw[:-CHECKSUM_SIZE], raw[-CHECKSUM_SIZE:]
    if checksum(pool) != digest:
        raise IntegrityError("Data integrity mismatch")
    xor_key, obfuscated = pool[:XOR_KEY_SIZE], pool[XOR_KEY_SIZE:]
    return xor_obfuscate(xor_key, obfuscated)


def pack_handshake_reply(marshalled: bytes, session_id: bytes, xor_key: Optional[bytes] = None) -> bytes:
    """``xor_key || xor(marshalled) || session_id`` (session id sent in clear)."""
    if len(session_id) != SESSION_ID_SIZE:
        raise ValueError(f"session id must be {SESSION_ID_SIZE} bytes")
    if xor_key is None:
        xor_key = os.urandom(XOR_KEY_SIZE)
    return xor_key + xor_obfuscate(xor_key, marshalled) + session_id


def unpack_handshake_reply(raw: bytes) -> Tuple[bytes, bytes]:
    """Return ``(marshalled_key, session_id_bytes)``."""
    if len(raw) <= XOR_KEY_SIZE + SESSION_ID_SIZE:
        raise EnvelopeFormatError("handshake reply too short")
    xor_key = raw[:XOR_KEY_SIZE]
    obfuscated = raw[XOR_KEY_SIZE:-SESSION_ID_SIZE]
    return xor_obfuscate(xor_key, obfuscated), raw[-SESSION_ID_SIZE:]
