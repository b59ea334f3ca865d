import struct

import pytest

from websock.crypto import derive_secret, generate_keypair
from websock.envelope import (
    FIELD_HEADER_LEN,
    MAGIC,
    SESSION_ID_SIZE,
    TAG_CHECKSUM,
    TAG_PAYLOAD,
    TAG_SESSION_ID,
    VERSION,
    XOR_KEY_SIZE,
    Envelope,
    EnvelopeFormatError,
    IntegrityError,
    b64decode,
    b64encode,
    compress_stream,
    decode_envelope,
    decompress_stream,
    encode_envelope,
    open_envelope,
    pack_handshake_blob,
    pack_handshake_reply,
    seal_envelope,
    unpack_handshake_blob,
    unpack_handshake_reply,
    xor_obfuscate,
)

SECRET = bytes(range(48))
SID = "0123456789abcdef0123456789abcdef"


def _field(tag: int, value: bytes) -> bytes:
    return struct.pack("!BI", tag, len(value)) + value


def _flip(text: str, index: int) -> str:
    raw = bytearray(b64decode(text))
    raw[index] ^= 0x01
    return b64encode(bytes(raw))


def test_seal_and_open():
    text = seal_envelope(SECRET, SID, b"PING")
    env = open_envelope(SECRET, text)
    assert env.session_id == SID
    assert env.payload == b"PING"
    # Body framing: trailing newline is tolerated
    assert open_envelope(SECRET, (text + "\n").encode()).payload == b"PING"


def test_sealed_text_is_opaque():
    text = seal_envelope(SECRET, SID, b"PING")
    assert b"PING" not in b64decode(text)
    assert MAGIC not in b64decode(text)


def test_payload_bit_flips_are_rejected():
    payload = b"sensitive payload"
    text = seal_envelope(SECRET, SID, payload)
    start = len(MAGIC) + 1 + FIELD_HEADER_LEN + len(SID) + FIELD_HEADER_LEN
    for i in range(len(payload)):
        with pytest.raises(IntegrityError):
            open_envelope(SECRET, _flip(text, start + i))


def test_checksum_bit_flips_are_rejected():
    payload = b"sensitive payload"
    text = seal_envelope(SECRET, SID, payload)
    wire_len = len(b64decode(text))
    for i in range(wire_len - 32, wire_len):
        with pytest.raises(IntegrityError):
            open_envelope(SECRET, _flip(text, i))


def test_wrong_secret_is_rejected():
    text = seal_envelope(SECRET, SID, b"PING")
    with pytest.raises((EnvelopeFormatError, IntegrityError)):
        open_envelope(b"x" * 48, text)


def test_encode_layout():
    env = Envelope.build(SID, b"data")
    wire = encode_envelope(env)
    assert wire[:3] == MAGIC and wire[3] == VERSION
    assert decode_envelope(wire) == env


@pytest.mark.parametrize(
    "wire",
    [
        b"",
        b"XXX\x01",
        MAGIC + b"\x02",
        MAGIC + b"\x01" + b"\x01\x00",
        MAGIC + b"\x01" + _field(TAG_SESSION_ID, b"s") + _field(TAG_PAYLOAD, b"p"),
        MAGIC + b"\x01" + _field(TAG_SESSION_ID, b"s") + _field(TAG_SESSION_ID, b"s"),
        MAGIC + b"\x01" + _field(0x09, b"?"),
        MAGIC + b"\x01" + struct.pack("!BI", TAG_PAYLOAD, 10) + b"short",
    ],
)
def test_decode_rejects_malformed(wire):
    with pytest.raises(EnvelopeFormatError):
        decode_envelope(wire)


def test_decode_does_not_verify_checksum():
    wire = MAGIC + bytes([VERSION]) + _field(TAG_SESSION_ID, b"s") + _field(TAG_PAYLOAD, b"p") + _field(TAG_CHECKSUM, b"00")
    env = decode_envelope(wire)
    with pytest.raises(IntegrityError):
        env.verify()


@pytest.mark.parametrize("text", ["not base64!", "abc", "é"])
def test_b64decode_is_strict(text):
    with pytest.raises(EnvelopeFormatError):
        b64decode(text)


def test_compression():
    data = b"A" * 1000
    packed = compress_stream(data)
    assert len(packed) < len(data)
    assert decompress_stream(packed) == data
    with pytest.raises(EnvelopeFormatError):
        decompress_stream(b"not zlib")


def test_xor_is_self_inverse():
    key = b"12345678"
    data = bytes(range(100))
    assert xor_obfuscate(key, xor_obfuscate(key, data)) == data
    with pytest.raises(ValueError):
        xor_obfuscate(b"", data)


def test_handshake_blob():
    marshalled = b"\x04" + bytes(range(96))
    blob = pack_handshake_blob(marshalled)
    assert len(blob) == XOR_KEY_SIZE + len(marshalled) + 16
    assert marshalled not in blob
    assert unpack_handshake_blob(blob) == marshalled


def test_handshake_blob_tamper():
    marshalled = b"\x04" + bytes(range(96))
    blob = bytearray(pack_handshake_blob(marshalled, xor_key=b"k" * XOR_KEY_SIZE))
    blob[20] ^= 0x80
    with pytest.raises(IntegrityError):
        unpack_handshake_blob(bytes(blob))
    with pytest.raises(EnvelopeFormatError):
        unpack_handshake_blob(b"short")


def test_handshake_reply():
    marshalled = b"\x04" + bytes(range(96))
    sid = bytes(range(SESSION_ID_SIZE))
    raw = pack_handshake_reply(marshalled, sid)
    assert raw.endswith(sid)
    assert unpack_handshake_reply(raw) == (marshalled, sid)
    with pytest.raises(ValueError):
        pack_handshake_reply(marshalled, b"short")
    with pytest.raises(EnvelopeFormatError):
        unpack_handshake_reply(b"x" * (XOR_KEY_SIZE + SESSION_ID_SIZE))


def test_seal_and_open_with_ecdh_secret():
    a_priv, _ = generate_keypair()
    _, b_pub = generate_keypair()
    secret = derive_secret(a_priv, b_pub)
    env = open_envelope(secret, seal_envelope(secret, SID, b"PING"))
    assert env.payload == b"PING"


def test_cipher_failure_is_a_format_error(monkeypatch):
    text = seal_envelope(SECRET, SID, b"PING")

    def broken(secret, data):
        raise ValueError("Invalid key size")

    monkeypatch.setattr("websock.envelope.decrypt", broken)
    with pytest.raises(EnvelopeFormatError):
        open_envelope(SECRET, text)
