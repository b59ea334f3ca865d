"""
Crypto primitives for the websock channel.

ECDH key agreement over NIST P-384, the RC4 stream cipher keyed by the
derived secret, and MD5 checksums. Every function is stateless; only key
generation draws randomness (from the OS CSPRNG via ``cryptography``).
"""

import hashlib
from typing import Tuple

from cryptography.hazmat.decrepit.ciphers.algorithms import ARC4
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

CURVE = ec.SECP384R1()
# Uncompressed X9.62 point: 0x04 || X(48) || Y(48)
MARSHALLED_KEY_SIZE = 97
SECRET_SIZE = 48
CHECKSUM_SIZE = 16


class KeyFormatError(Exception):
    """Marshalled public key is not a valid P-384 point."""
    pass


def generate_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    private_key = ec.generate_private_key(CURVE)
    return private_key, private_key.public_key()


def marshal_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def unmarshal_public_key(data: bytes) -> ec.EllipticCurvePublicKey:
    if len(data) != MARSHALLED_KEY_SIZE or data[0] != 0x04:
        raise KeyFormatError("unmarshalling failed")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, data)
    except ValueError as exc:
        raise KeyFormatError("unmarshalling failed") from exc


def derive_secret(private_key: ec.EllipticCurvePrivateKey, peer_public: ec.EllipticCurvePublicKey) -> bytes:
    """Raw ECDH shared secret (the x-coordinate of the shared point)."""
    try:
        return private_key.exchange(ec.ECDH(), peer_public)
    except ValueError as exc:
        raise KeyFormatError("Failed to generate a shared secret key") from exc


def stream_key(secret: bytes) -> bytes:
    """RC4 key for a shared secret: SHA-256 of the secret (ARC4 takes at most 256 bits)."""
    return hashlib.sha256(secret).digest()


def _rc4(secret: bytes, data: bytes) -> bytes:
    # A fresh keystream per message; envelopes are independently decryptable.
    cipher = Cipher(ARC4(stream_key(secret)), mode=None)
    return cipher.encryptor().update(data)


def encrypt(secret: bytes, data: bytes) -> bytes:
    return _rc4(secret, data)


def decrypt(secret: bytes, data: bytes) -> bytes:
    return _rc4(secret, data)


def checksum(data: bytes) -> bytes:
    return hashlib.md5(data).digest()


def checksum_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()
